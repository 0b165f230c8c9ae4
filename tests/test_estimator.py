from datetime import timedelta

from shared.config import DEFAULT_DAILY_MILEAGE
from shared.estimator import daily_average_mileage


def test_sparse_history_returns_default(fleet, now, history, db):
    history(fleet.vehicle_id, fleet.driver_id, [300, 400])

    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == DEFAULT_DAILY_MILEAGE


def test_no_history_returns_default(fleet, now, db):
    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == DEFAULT_DAILY_MILEAGE


def test_average_is_rounded_up(fleet, now, history, db):
    history(fleet.vehicle_id, fleet.driver_id, [40, 50, 61])

    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == 51


def test_implausibly_small_average_returns_default(fleet, now, history, db):
    history(fleet.vehicle_id, fleet.driver_id, [5, 5, 5, 5])

    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == DEFAULT_DAILY_MILEAGE


def test_zero_distance_journeys_are_not_samples(fleet, now, history, db):
    history(fleet.vehicle_id, fleet.driver_id, [0, 0, 0, 80, 90])

    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == DEFAULT_DAILY_MILEAGE


def test_journeys_outside_window_are_ignored(fleet, now, history, db):
    history(fleet.vehicle_id, fleet.driver_id, [500, 500, 500], end_before=now - timedelta(days=40))
    history(fleet.vehicle_id, fleet.driver_id, [20, 30, 40], first_km=5000)

    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == 30


def test_only_most_recent_sample_is_used(fleet, now, history, db):
    km = history(fleet.vehicle_id, fleet.driver_id, [20] * 10)
    history(fleet.vehicle_id, fleet.driver_id, [1000] * 5, end_before=now - timedelta(days=10), first_km=km)

    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == 20


def test_other_vehicles_do_not_count(fleet, now, history, db):
    history(fleet.vehicle_id + 1000, fleet.driver_id, [70, 70, 70])

    assert daily_average_mileage(db, fleet.vehicle_id, now=now) == DEFAULT_DAILY_MILEAGE


def test_query_failure_returns_default():
    class BrokenSession:
        def execute(self, *args, **kwargs):
            raise RuntimeError("connection lost")

    assert daily_average_mileage(BrokenSession(), 1) == DEFAULT_DAILY_MILEAGE
