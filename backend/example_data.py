import argparse
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from shared.config import GHOST_OPERATOR_EMAIL
from shared.database import SessionLocal, engine
from shared.models import Base, Journey, MileageEntry, User, Vehicle
from shared.timeutils import utcnow


def ensure_ghost_operator(s: Session) -> User:
    """The reserved account that owns synthetic journeys."""
    ghost = s.execute(select(User).where(User.email == GHOST_OPERATOR_EMAIL)).scalars().first()
    if ghost is None:
        ghost = User(name="SYSTEM GHOST", email=GHOST_OPERATOR_EMAIL, role="bot")
        s.add(ghost)
        s.flush()
        print("👻 Ghost operator created")
    return ghost


def seed_example(session_factory=SessionLocal):
    with session_factory() as s:
        ensure_ghost_operator(s)

        if s.execute(select(User).where(User.email == "admin@fleet.example")).scalars().first():
            s.commit()
            print("ℹ️ Example data already present")
            return

        admin = User(name="Administrator", email="admin@fleet.example", role="admin")
        driver = User(name="Example Driver", email="driver@fleet.example", role="operator")
        truck = Vehicle(plate="ABC1D23", model="Example truck")
        s.add_all([admin, driver, truck]); s.flush()

        started = utcnow() - timedelta(hours=20)
        s.add(MileageEntry(vehicle_id=truck.id, km=1000, source="manual", recorded_at=started - timedelta(days=1)))
        s.add(Journey(
            vehicle_id=truck.id,
            operator_id=driver.id,
            supervisor_id=admin.id,
            start_time=started,
            start_mileage=1000,
            notes="Example journey left open",
        ))
        s.commit()
        print("✅ Example data inserted")


def wipe_example(session_factory=SessionLocal):
    """Removes everything except the ghost operator."""
    with session_factory() as s:
        s.execute(delete(Journey))
        s.execute(delete(MileageEntry))
        s.execute(delete(Vehicle))
        s.execute(delete(User).where(User.email != GHOST_OPERATOR_EMAIL))
        s.commit()
        print("🧹 Example data wiped")


def main():
    parser = argparse.ArgumentParser(description="Example fleet data")
    parser.add_argument("--wipe", action="store_true", help="delete example data instead of inserting it")
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    if args.wipe:
        wipe_example()
    else:
        seed_example()


if __name__ == "__main__":
    main()
