# /gastracker/core/logger.py
import logging
import structlog
from structlog.contextvars import bind_contextvars
import sentry_sdk
from prometheus_client import Counter
from gastracker.core.config import settings

# --- Prometheus Metrics ---
GAS_POINTS_INGESTED = Counter("gastracker_gas_points_ingested_total", "Gas points appended to chain history", ["chain"])
CHAIN_CONNECT_FAILURES = Counter("gastracker_chain_connect_failures_total", "Failed chain source connection attempts", ["chain"])
ORACLE_FAILURES = Counter("gastracker_oracle_failures_total", "Failed spot price refreshes")
TICKS_COMPLETED = Counter("gastracker_ticks_completed_total", "Completed orchestrator ticks", ["mode"])
ERRORS_LOGGED = Counter("gastracker_errors_logged_total", "Total number of warnings and errors logged", ["level"])

_COUNTED_LEVELS = {"warning", "error", "critical"}

def count_errors(logger, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that counts warning-and-above events per level.

    Runs after ``add_log_level`` so ``event_dict["level"]`` is populated.
    """
    level = event_dict.get("level", method_name)
    if level in _COUNTED_LEVELS:
        ERRORS_LOGGED.labels(level).inc()
    return event_dict

def configure_logging():
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, traces_sample_rate=1.0)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            count_errors,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.LOG_LEVEL.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

def get_logger(name: str):
    return structlog.get_logger(name)

def bind_chain(chain_id: str):
    bind_contextvars(chain=chain_id)

configure_logging()
log = get_logger("GasTracker.System")
