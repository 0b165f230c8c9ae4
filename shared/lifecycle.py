"""
Driver-facing journey actions: start a shift, finish a shift.

These functions do not commit; the caller owns the transaction.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared import ledger
from shared.models import Journey, User, Vehicle
from shared.timeutils import utcnow

log = logging.getLogger(__name__)

MANAGER_ROLES = ("admin", "supervisor")

# Audit markers appended to Journey.notes
NOTE_AUTO_NO_READING = "[AUTO: closed for inactivity, no later reading]"
NOTE_AUTO_SIMPLE = "[AUTO: simple automatic adjustment]"
NOTE_HANDOVER = "[Handover: closed by next operator]"
NOTE_CORRECTION = "[Correction: mileage confirmed by next operator]"


class LifecycleError(Exception):
    status_code = 400


class NotFound(LifecycleError):
    status_code = 404


class Forbidden(LifecycleError):
    status_code = 403


class JourneyConflict(LifecycleError):
    status_code = 409


class InvalidMileage(LifecycleError):
    status_code = 400


def append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    if not existing:
        return note
    return f"{existing} {note}"


def open_journey_for_operator(session: Session, operator_id: int) -> Optional[Journey]:
    return session.execute(
        select(Journey).where(Journey.operator_id == operator_id, Journey.end_time.is_(None))
    ).scalars().first()


def open_journey_for_vehicle(session: Session, vehicle_id: int) -> Optional[Journey]:
    return session.execute(
        select(Journey)
        .where(Journey.vehicle_id == vehicle_id, Journey.end_time.is_(None))
        .order_by(Journey.start_time.desc())
    ).scalars().first()


def last_closed_journey(session: Session, vehicle_id: int) -> Optional[Journey]:
    return session.execute(
        select(Journey)
        .where(Journey.vehicle_id == vehicle_id, Journey.end_time.is_not(None))
        .order_by(Journey.end_time.desc(), Journey.id.desc())
    ).scalars().first()


def start_journey(
    session: Session,
    vehicle_id: int,
    operator_id: int,
    supervisor_id: Optional[int],
    start_km: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Journey:
    now = now or utcnow()
    if not supervisor_id:
        raise LifecycleError("a supervisor is required to start a journey")

    current = open_journey_for_operator(session, operator_id)
    if current is not None:
        plate = current.vehicle.plate if current.vehicle else current.vehicle_id
        raise JourneyConflict(f"operator already has an open journey on vehicle {plate}; finish it first")

    vehicle = session.get(Vehicle, vehicle_id)
    operator = session.get(User, operator_id)
    if vehicle is None or operator is None:
        raise NotFound("vehicle or operator not found")
    if session.get(User, supervisor_id) is None:
        raise NotFound("supervisor not found")

    latest_km = ledger.latest_verified_mileage(session, vehicle_id)
    previous = open_journey_for_vehicle(session, vehicle_id)
    reference_km = max(latest_km, previous.start_mileage) if previous else latest_km
    if start_km < reference_km:
        raise InvalidMileage(f"invalid mileage: vehicle already has a reading of {reference_km} km")

    if previous is not None:
        # Another operator left the vehicle open: this start closes it
        previous.end_time = max(now, previous.start_time)
        previous.end_mileage = start_km
        previous.notes = append_note(previous.notes, NOTE_HANDOVER)
        session.flush()
        ledger.record(session, vehicle_id, start_km, "journey", origin_id=previous.id)
        log.info("journey %s handed over at %s km", previous.id, start_km)
    else:
        last = last_closed_journey(session, vehicle_id)
        if (
            last is not None
            and last.origin == "driver"
            and NOTE_AUTO_NO_READING in (last.notes or "")
            and NOTE_CORRECTION not in (last.notes or "")
            and start_km >= last.start_mileage
        ):
            last.end_mileage = start_km
            last.notes = append_note(last.notes, NOTE_CORRECTION)
            log.info("journey %s end mileage corrected to %s km", last.id, start_km)

    journey = Journey(
        vehicle_id=vehicle_id,
        operator_id=operator_id,
        supervisor_id=supervisor_id,
        start_time=now,
        start_mileage=start_km,
        notes=notes,
        origin="driver",
        auto_close_attempt_count=0,
    )
    session.add(journey)
    session.flush()
    return journey


def finish_journey(
    session: Session,
    journey_id: int,
    actor_id: int,
    end_km: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Journey:
    now = now or utcnow()
    journey = session.get(Journey, journey_id)
    if journey is None:
        raise NotFound("journey not found")

    actor = session.get(User, actor_id)
    if actor is None:
        raise NotFound("user not found")
    if actor.id != journey.operator_id and actor.role not in MANAGER_ROLES:
        raise Forbidden("not allowed to finish this journey")

    if not journey.is_open:
        raise JourneyConflict("journey already finished")
    if end_km < journey.start_mileage:
        raise InvalidMileage(f"end mileage ({end_km}) cannot be lower than start mileage ({journey.start_mileage})")

    latest_km = ledger.latest_verified_mileage(session, journey.vehicle_id)
    if end_km < latest_km and latest_km > journey.start_mileage:
        raise InvalidMileage(f"inconsistent mileage: a reading of {latest_km} km exists after this journey started")

    journey.end_time = max(now, journey.start_time)
    journey.end_mileage = end_km
    journey.notes = append_note(journey.notes, notes)
    session.flush()
    ledger.record(session, journey.vehicle_id, end_km, "journey", origin_id=journey.id)
    return journey
