"""
Pytest configuration.

DB_DSN must be set before any project module is imported: shared.database
builds its engine at import time.
"""
import os

os.environ["DB_DSN"] = "sqlite://"

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from shared.config import GHOST_OPERATOR_EMAIL
from shared.database import make_engine
from shared.models import Base, Journey, MileageEntry, User, Vehicle

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'fleet.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as s:
        yield s


def _seed(session_factory, with_ghost=True):
    with session_factory() as s:
        users = {
            "admin": User(name="Admin", email="admin@test", role="admin"),
            "supervisor": User(name="Supervisor", email="supervisor@test", role="supervisor"),
            "driver": User(name="Driver One", email="driver1@test", role="operator"),
            "driver2": User(name="Driver Two", email="driver2@test", role="operator"),
        }
        if with_ghost:
            users["ghost"] = User(name="SYSTEM GHOST", email=GHOST_OPERATOR_EMAIL, role="bot")
        truck = Vehicle(plate="TRK0001", model="Test truck")
        s.add_all(list(users.values()) + [truck])
        s.commit()
        ids = {f"{k}_id": u.id for k, u in users.items()}
        return SimpleNamespace(vehicle_id=truck.id, ghost_id=ids.pop("ghost_id", None), **ids)


@pytest.fixture
def fleet(session_factory):
    return _seed(session_factory)


@pytest.fixture
def fleet_without_ghost(session_factory):
    return _seed(session_factory, with_ghost=False)


@pytest.fixture
def make_journey(session_factory):
    def _make(vehicle_id, operator_id, start_time, start_km, end_time=None, end_km=None, **kw):
        with session_factory() as s:
            j = Journey(
                vehicle_id=vehicle_id,
                operator_id=operator_id,
                supervisor_id=kw.pop("supervisor_id", None),
                start_time=start_time,
                start_mileage=start_km,
                end_time=end_time,
                end_mileage=end_km,
                **kw,
            )
            s.add(j)
            s.commit()
            return j.id
    return _make


@pytest.fixture
def make_reading(session_factory):
    def _make(vehicle_id, km, at, source="fuel_up"):
        with session_factory() as s:
            e = MileageEntry(vehicle_id=vehicle_id, km=km, source=source, recorded_at=at)
            s.add(e)
            s.commit()
            return e.id
    return _make


@pytest.fixture
def history(make_journey):
    """Closed journeys giving the vehicle a known daily average."""
    def _make(vehicle_id, operator_id, distances, end_before=NOW, first_km=100):
        km = first_km
        for n, d in enumerate(distances):
            end = end_before - timedelta(days=n + 1)
            make_journey(vehicle_id, operator_id, end - timedelta(hours=8), km, end_time=end, end_km=km + d)
            km += d
        return km
    return _make
