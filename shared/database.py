from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shared.config import DB_DSN


def make_engine(dsn: str):
    if dsn.startswith("sqlite"):
        return create_engine(dsn, connect_args={"check_same_thread": False}, future=True)
    return create_engine(
        dsn,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_size=5,
        max_overflow=10,
        future=True,
    )


engine = make_engine(DB_DSN)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
