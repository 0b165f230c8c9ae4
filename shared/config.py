import os
import logging

# =========================================================
# Runtime
# =========================================================
DB_DSN = os.getenv("DB_DSN", "mysql+pymysql://app:change_me@db:3306/fleet")
TZ = os.getenv("TZ", "America/Sao_Paulo")

DEBUG = os.getenv("DEBUG", "false").lower() in ("1", "true", "yes")
LOG_LEVEL_ENV = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL = logging.DEBUG if (DEBUG or LOG_LEVEL_ENV == "DEBUG") else getattr(logging, LOG_LEVEL_ENV, logging.INFO)
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

# Reserved account owning synthetic journeys (provisioned by backend/example_data.py)
GHOST_OPERATOR_EMAIL = os.getenv("GHOST_OPERATOR_EMAIL", "system@fleet.ghost")

# =========================================================
# Reconciliation
# =========================================================
RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "3600"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "50"))
STALE_THRESHOLD_HOURS = int(os.getenv("STALE_THRESHOLD_HOURS", "17"))

SHIFT_CAP_HOURS = 9
GHOST_START_DELAY_HOURS = 1
GHOST_SHIFT_HOURS = 8
GHOST_REST_HOURS = 2
GHOST_MAX_SEGMENTS = 30
GHOST_MIN_TAIL_KM = 20

GAP_TOLERANCE_FACTOR = 1.2
GAP_TOLERANCE_SLACK_KM = 50

ERROR_MAX_LENGTH = 500

# =========================================================
# Rate estimator
# =========================================================
RATE_WINDOW_DAYS = 30
RATE_SAMPLE_SIZE = 10
RATE_MIN_SAMPLES = 3
RATE_MIN_PLAUSIBLE_KM = 10
DEFAULT_DAILY_MILEAGE = 100
