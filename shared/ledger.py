"""
Mileage ledger: append-only odometer observations per vehicle.

Both reads and writes are fail-open. A lost audit entry or an unknown
current mileage (reported as 0) never blocks the caller's own transaction.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.models import MILEAGE_SOURCES, MileageEntry
from shared.timeutils import utcnow

log = logging.getLogger(__name__)


def record(
    session: Session,
    vehicle_id: int,
    km: int,
    source: str,
    origin_id: Optional[str] = None,
    recorded_at: Optional[datetime] = None,
) -> Optional[MileageEntry]:
    """Append one reading. Returns the entry, or None when nothing was written."""
    if not vehicle_id or not km:
        return None
    if source not in MILEAGE_SOURCES:
        log.error("ledger: unknown source %r for vehicle=%s, reading km=%s dropped", source, vehicle_id, km)
        return None

    entry = MileageEntry(
        vehicle_id=vehicle_id,
        km=int(km),
        source=source,
        origin_id=str(origin_id) if origin_id is not None else None,
        recorded_at=recorded_at or utcnow(),
    )
    try:
        # SAVEPOINT so a failed insert leaves the outer transaction usable
        with session.begin_nested():
            session.add(entry)
    except SQLAlchemyError as e:
        log.warning("ledger: failed to record km=%s for vehicle=%s (%s): %s", km, vehicle_id, source, e)
        return None
    return entry


def latest_verified_mileage(session: Session, vehicle_id: int) -> int:
    """Highest km ever observed for the vehicle, 0 if none or unknown."""
    try:
        km = session.execute(
            select(func.max(MileageEntry.km)).where(MileageEntry.vehicle_id == vehicle_id)
        ).scalar()
    except SQLAlchemyError as e:
        log.critical("ledger: could not read mileage for vehicle=%s: %s", vehicle_id, e)
        return 0
    return int(km) if km is not None else 0


def next_reference(session: Session, vehicle_id: int, after: datetime, min_km: int) -> Optional[MileageEntry]:
    """Earliest reading strictly after `after` that is at or above `min_km`."""
    stmt = (
        select(MileageEntry)
        .where(
            MileageEntry.vehicle_id == vehicle_id,
            MileageEntry.recorded_at > after,
            MileageEntry.km >= min_km,
        )
        .order_by(MileageEntry.recorded_at.asc(), MileageEntry.id.asc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def entries_for(session: Session, vehicle_id: int, limit: int = 100) -> list[MileageEntry]:
    stmt = (
        select(MileageEntry)
        .where(MileageEntry.vehicle_id == vehicle_id)
        .order_by(MileageEntry.recorded_at.desc(), MileageEntry.id.desc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())
