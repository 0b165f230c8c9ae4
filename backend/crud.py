from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared import ledger
from shared.lifecycle import JourneyConflict, NotFound
from shared.models import Journey, Vehicle


def list_journeys(session: Session, open_only: bool = False, vehicle_id: Optional[int] = None, limit: int = 100):
    stmt = select(Journey)
    if open_only:
        stmt = stmt.where(Journey.end_time.is_(None))
    if vehicle_id is not None:
        stmt = stmt.where(Journey.vehicle_id == vehicle_id)
    stmt = stmt.order_by(Journey.start_time.desc(), Journey.id.desc()).limit(limit)
    return session.execute(stmt).scalars().all()


def onboard_vehicle(session: Session, plate: str, model: Optional[str], initial_km: int) -> Vehicle:
    plate = plate.strip().upper()
    exists = session.execute(select(Vehicle).where(Vehicle.plate == plate)).scalars().first()
    if exists:
        raise JourneyConflict(f"vehicle {plate} already registered")
    v = Vehicle(plate=plate, model=model)
    session.add(v)
    session.flush()
    ledger.record(session, v.id, initial_km, "manual", origin_id=v.id)
    return v


def report_odometer(session: Session, vehicle_id: int, km: int, source: str, origin_id: Optional[str] = None):
    """Readings from fuel-ups, maintenance orders or manual checks."""
    if session.get(Vehicle, vehicle_id) is None:
        raise NotFound("vehicle not found")
    return ledger.record(session, vehicle_id, km, source, origin_id=origin_id)
