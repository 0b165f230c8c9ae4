import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.config import (
    DEFAULT_DAILY_MILEAGE,
    RATE_MIN_PLAUSIBLE_KM,
    RATE_MIN_SAMPLES,
    RATE_SAMPLE_SIZE,
    RATE_WINDOW_DAYS,
)
from shared.models import Journey
from shared.timeutils import utcnow

log = logging.getLogger(__name__)


def daily_average_mileage(session: Session, vehicle_id: int, now: Optional[datetime] = None) -> int:
    """
    Average distance per closed journey over the recent window.
    Falls back to DEFAULT_DAILY_MILEAGE when data is sparse, implausibly
    small, or the query fails. Never raises.
    """
    now = now or utcnow()
    since = now - timedelta(days=RATE_WINDOW_DAYS)
    try:
        rows = session.execute(
            select(Journey.start_mileage, Journey.end_mileage)
            .where(
                Journey.vehicle_id == vehicle_id,
                Journey.end_time.is_not(None),
                Journey.end_time >= since,
                Journey.end_mileage.is_not(None),
            )
            .order_by(Journey.end_time.desc())
            .limit(RATE_SAMPLE_SIZE)
        ).all()

        distances = [
            end - start
            for start, end in rows
            if start is not None and end is not None and end - start > 0
        ]
        if len(distances) < RATE_MIN_SAMPLES:
            return DEFAULT_DAILY_MILEAGE

        average = math.ceil(sum(distances) / len(distances))
        return average if average > RATE_MIN_PLAUSIBLE_KM else DEFAULT_DAILY_MILEAGE
    except Exception as e:
        log.warning("estimator: falling back to default for vehicle=%s: %s", vehicle_id, e)
        return DEFAULT_DAILY_MILEAGE
