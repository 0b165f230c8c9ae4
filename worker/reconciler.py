"""
Automatic closure of abandoned journeys.

Each overdue open journey is closed in its own transaction, using the next
verified odometer reading on the vehicle as reference:

  A. no later reading      -> close now with zero distance
  B. reading below start   -> data inconsistency, counted as a failed attempt
  C. gap within tolerance  -> close at the reading
  D. gap beyond tolerance  -> close with zero distance (capped shift) and
                              backfill the gap with ghost-operator journeys

A journey that fails MAX_RETRIES times is no longer picked up and is reported
by list_stuck_journeys() for manual review.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared import ledger
from shared.config import (
    BATCH_SIZE,
    ERROR_MAX_LENGTH,
    GAP_TOLERANCE_FACTOR,
    GAP_TOLERANCE_SLACK_KM,
    GHOST_MAX_SEGMENTS,
    GHOST_MIN_TAIL_KM,
    GHOST_OPERATOR_EMAIL,
    GHOST_REST_HOURS,
    GHOST_SHIFT_HOURS,
    GHOST_START_DELAY_HOURS,
    MAX_RETRIES,
    SHIFT_CAP_HOURS,
    STALE_THRESHOLD_HOURS,
)
from shared.database import SessionLocal
from shared.estimator import daily_average_mileage
from shared.lifecycle import NOTE_AUTO_NO_READING, NOTE_AUTO_SIMPLE, append_note
from shared.models import Journey, User
from shared.timeutils import fmt_local, utcnow

log = logging.getLogger("worker")

OUTCOMES = ("no_reading", "simple", "backfilled", "skipped")


class ReconciliationError(Exception):
    pass


class MileageRegressionError(ReconciliationError):
    pass


@dataclass
class GhostSegment:
    start_time: datetime
    end_time: datetime
    start_km: int
    end_km: int
    kind: str = "ghost_segment"

    @property
    def distance(self) -> int:
        return self.end_km - self.start_km


@dataclass
class ReconcileSummary:
    started_at: datetime
    aborted: bool = False
    candidates: int = 0
    failed: int = 0
    stuck: int = 0
    outcomes: dict = field(default_factory=lambda: {k: 0 for k in OUTCOMES})

    @property
    def closed(self) -> int:
        return sum(v for k, v in self.outcomes.items() if k != "skipped")


def acceptable_gap(daily_average: int) -> float:
    return daily_average * GAP_TOLERANCE_FACTOR + GAP_TOLERANCE_SLACK_KM


def plan_ghost_segments(
    start_km: int,
    distance: int,
    daily_average: int,
    cursor_time: datetime,
    reference_time: datetime,
) -> List[GhostSegment]:
    """
    Split `distance` into ghost shifts walking forward from `cursor_time`
    until `reference_time`. Distances always sum to exactly `distance`;
    anything the loop could not place goes into one final adjustment.
    """
    step = max(int(daily_average), 0)
    remaining = distance
    cursor_km = start_km
    segments: List[GhostSegment] = []

    iterations = 0
    while remaining > 0 and iterations < GHOST_MAX_SEGMENTS:
        if cursor_time >= reference_time:
            break
        seg_km = min(step, remaining)
        if remaining - seg_km < GHOST_MIN_TAIL_KM:
            seg_km = remaining
        seg_end = min(cursor_time + timedelta(hours=GHOST_SHIFT_HOURS), reference_time)

        segments.append(GhostSegment(cursor_time, seg_end, cursor_km, cursor_km + seg_km))

        remaining -= seg_km
        cursor_km += seg_km
        cursor_time = seg_end + timedelta(hours=GHOST_REST_HOURS)
        iterations += 1

    if remaining > 0:
        segments.append(GhostSegment(
            start_time=min(cursor_time, reference_time),
            end_time=reference_time,
            start_km=cursor_km,
            end_km=cursor_km + remaining,
            kind="ghost_adjustment",
        ))
    return segments


def _close(session: Session, journey: Journey, end_time: datetime, end_km: int, note: str) -> bool:
    """Close the journey unless another pass already closed it. Returns False if it lost."""
    result = session.execute(
        update(Journey)
        .where(Journey.id == journey.id, Journey.end_time.is_(None))
        .values(
            end_time=end_time,
            end_mileage=end_km,
            notes=append_note(journey.notes, note),
            auto_close_attempt_count=0,
            auto_close_last_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    session.refresh(journey)
    if result.rowcount != 1:
        log.info("journey %s: already closed elsewhere, leaving it", journey.id)
        return False
    return True


def reconcile_one_journey(session: Session, journey: Journey, ghost_operator_id: int, now: datetime) -> str:
    """Close one overdue journey. Runs inside the caller's transaction."""
    if not journey.is_open:
        return "skipped"

    reference = ledger.next_reference(session, journey.vehicle_id, journey.start_time, journey.start_mileage)

    if reference is None:
        if not _close(session, journey, now, journey.start_mileage, NOTE_AUTO_NO_READING):
            return "skipped"
        return "no_reading"

    if reference.km < journey.start_mileage:
        raise MileageRegressionError(
            f"critical inconsistency: later reading ({reference.km}) below journey start ({journey.start_mileage})"
        )

    gap = reference.km - journey.start_mileage
    daily_average = daily_average_mileage(session, journey.vehicle_id, now=now)

    if gap <= acceptable_gap(daily_average):
        if not _close(session, journey, reference.recorded_at, reference.km, NOTE_AUTO_SIMPLE):
            return "skipped"
        return "simple"

    # The operator is credited nothing; ghost journeys carry the gap
    closed_at = min(journey.start_time + timedelta(hours=SHIFT_CAP_HOURS), reference.recorded_at)
    closed = _close(
        session,
        journey,
        closed_at,
        journey.start_mileage,
        f"[AUTO: gap of {gap} km detected up to {fmt_local(reference.recorded_at)}, assigned to ghost journeys]",
    )
    if not closed:
        return "skipped"

    segments = plan_ghost_segments(
        start_km=journey.start_mileage,
        distance=gap,
        daily_average=daily_average,
        cursor_time=closed_at + timedelta(hours=GHOST_START_DELAY_HOURS),
        reference_time=reference.recorded_at,
    )
    for n, seg in enumerate(segments, start=1):
        if seg.kind == "ghost_adjustment":
            note = f"[AUTO] Final adjustment ({seg.distance} km) for journey {journey.id} - system"
        else:
            note = f"[AUTO] Unidentified route #{n} for journey {journey.id} - system"
        session.add(Journey(
            vehicle_id=journey.vehicle_id,
            operator_id=ghost_operator_id,
            supervisor_id=journey.supervisor_id,
            start_time=seg.start_time,
            end_time=seg.end_time,
            start_mileage=seg.start_km,
            end_mileage=seg.end_km,
            notes=note,
            origin=seg.kind,
            auto_close_attempt_count=0,
        ))

    log.info(
        "journey %s: gap %s km (avg %s/day) split into %d ghost journey(s)",
        journey.id, gap, daily_average, len(segments),
    )
    return "backfilled"


def find_ghost_operator(session: Session) -> Optional[User]:
    return session.execute(select(User).where(User.email == GHOST_OPERATOR_EMAIL)).scalars().first()


def overdue_journey_ids(session: Session, now: datetime, limit: int = BATCH_SIZE) -> List[int]:
    cutoff = now - timedelta(hours=STALE_THRESHOLD_HOURS)
    stmt = (
        select(Journey.id)
        .where(
            Journey.end_time.is_(None),
            Journey.start_time < cutoff,
            Journey.auto_close_attempt_count < MAX_RETRIES,
        )
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


def list_stuck_journeys(session: Session) -> List[Journey]:
    return list(session.execute(
        select(Journey)
        .where(Journey.end_time.is_(None), Journey.auto_close_attempt_count >= MAX_RETRIES)
        .order_by(Journey.start_time)
    ).scalars().all())


def _record_failure(session_factory: Callable[[], Session], journey_id: int, message: str) -> None:
    try:
        with session_factory() as s, s.begin():
            s.execute(
                update(Journey)
                .where(Journey.id == journey_id)
                .values(
                    auto_close_attempt_count=Journey.auto_close_attempt_count + 1,
                    auto_close_last_error=(message or "unknown error")[:ERROR_MAX_LENGTH],
                )
            )
    except SQLAlchemyError as e:
        log.error("journey %s: could not store failure: %s", journey_id, e)


def reconcile_overdue_journeys(
    now: Optional[datetime] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> ReconcileSummary:
    """One reconciliation pass. Never raises for per-journey problems."""
    now = now or utcnow()
    summary = ReconcileSummary(started_at=now)
    log.info("reconcile: starting pass at %s", fmt_local(now))

    with session_factory() as s:
        ghost = find_ghost_operator(s)
        if ghost is None:
            log.error("reconcile: ghost operator %s not found, run the seed first", GHOST_OPERATOR_EMAIL)
            summary.aborted = True
            return summary
        ghost_id = ghost.id
        ids = overdue_journey_ids(s, now)

    summary.candidates = len(ids)
    if not ids:
        log.info("reconcile: no overdue journeys")

    for journey_id in ids:
        try:
            with session_factory() as s, s.begin():
                journey = s.get(Journey, journey_id, with_for_update=True)
                if journey is None:
                    outcome = "skipped"
                else:
                    outcome = reconcile_one_journey(s, journey, ghost_id, now)
            summary.outcomes[outcome] += 1
            if log.isEnabledFor(logging.DEBUG):
                log.debug("journey %s: %s", journey_id, outcome)
        except Exception as e:
            summary.failed += 1
            log.error("reconcile: journey %s failed: %s", journey_id, e)
            _record_failure(session_factory, journey_id, str(e))

    try:
        with session_factory() as s:
            summary.stuck = s.execute(
                select(func.count(Journey.id)).where(
                    Journey.end_time.is_(None), Journey.auto_close_attempt_count >= MAX_RETRIES
                )
            ).scalar() or 0
    except SQLAlchemyError as e:
        log.error("reconcile: could not count stuck journeys: %s", e)
    if summary.stuck:
        log.warning("reconcile: %d journey(s) exhausted automatic retries and need manual review", summary.stuck)

    log.info(
        "reconcile: done. candidates=%d closed=%d failed=%d outcomes=%s",
        summary.candidates, summary.closed, summary.failed, summary.outcomes,
    )
    return summary
