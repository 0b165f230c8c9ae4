from datetime import timedelta

from sqlalchemy import func, select

from backend.example_data import ensure_ghost_operator, seed_example, wipe_example
from shared.config import GHOST_OPERATOR_EMAIL
from shared.models import Journey, MileageEntry, User, Vehicle
from worker.reconciler import reconcile_overdue_journeys


def test_ensure_ghost_operator_is_idempotent(db):
    first = ensure_ghost_operator(db)
    db.commit()
    second = ensure_ghost_operator(db)

    assert first.id == second.id
    assert (first.email, first.role) == (GHOST_OPERATOR_EMAIL, "bot")
    assert db.execute(select(func.count(User.id)).where(User.role == "bot")).scalar() == 1


def test_provisioning_unblocks_reconciliation(fleet_without_ghost, now, session_factory, make_journey, db):
    fleet = fleet_without_ghost
    jid = make_journey(fleet.vehicle_id, fleet.driver_id, now - timedelta(hours=30), 1000)
    assert reconcile_overdue_journeys(now=now, session_factory=session_factory).aborted

    ensure_ghost_operator(db)
    db.commit()
    summary = reconcile_overdue_journeys(now=now, session_factory=session_factory)

    assert not summary.aborted
    db.expire_all()
    assert not db.get(Journey, jid).is_open


def test_wipe_keeps_only_the_ghost_operator(session_factory, db):
    seed_example(session_factory)
    seed_example(session_factory)
    assert db.execute(select(func.count(Journey.id))).scalar() == 1

    wipe_example(session_factory)

    assert db.execute(select(func.count(Journey.id))).scalar() == 0
    assert db.execute(select(func.count(Vehicle.id))).scalar() == 0
    assert db.execute(select(func.count(MileageEntry.id))).scalar() == 0
    assert [u.email for u in db.execute(select(User)).scalars()] == [GHOST_OPERATOR_EMAIL]
