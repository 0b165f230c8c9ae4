import time
import logging
import argparse

from shared.config import LOG_FORMAT, LOG_LEVEL, RECONCILE_INTERVAL_SECONDS
from shared.database import SessionLocal, engine
from shared.models import Base

from worker.reconciler import reconcile_overdue_journeys

# =========================================================
# Logging
# =========================================================
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
log = logging.getLogger("worker")


def run_once() -> None:
    summary = reconcile_overdue_journeys(session_factory=SessionLocal)
    if summary.aborted:
        log.error("Cycle aborted: configuration error")


def main() -> None:
    parser = argparse.ArgumentParser(description="Fleet journey reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Run a single pass then exit")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args()
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    Base.metadata.create_all(bind=engine)

    if args.once:
        run_once()
        return

    log.info("Worker started (interval=%ss)", RECONCILE_INTERVAL_SECONDS)
    while True:
        try:
            run_once()
        except Exception as e:
            log.exception("Cycle error: %s", e)
        time.sleep(RECONCILE_INTERVAL_SECONDS)


if __name__ == "__main__":
    main()
