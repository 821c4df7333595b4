# /mintgate/core/logger.py
import logging
import structlog
from structlog.contextvars import bind_contextvars
import sentry_sdk
from prometheus_client import Counter
from mintgate.core.config import settings
import json
import hmac
import hashlib
import os

# --- Prometheus Metrics ---
PAYMENTS_PROCESSED = Counter("mintgate_payments_processed_total", "Payments that reached a terminal status", ["status"])
MINTS_PROCESSED = Counter("mintgate_mints_processed_total", "Mint items that reached a terminal or retry status", ["status"])
TX_ACCELERATED = Counter("mintgate_tx_accelerated_total", "Replacement transactions sent with a higher gas price")
TX_ABANDONED = Counter("mintgate_tx_abandoned_total", "Transactions the monitor stopped tracking without a receipt")
NONCE_CONFLICTS = Counter("mintgate_nonce_conflicts_total", "Nonces found consumed at broadcast time")
ERRORS_LOGGED = Counter("mintgate_errors_logged_total", "Total number of errors logged", ["level"])

SIGNING_KEY = (
    settings.LOG_SIGNING_KEY.get_secret_value().encode()
    if settings.LOG_SIGNING_KEY
    else b"insecure"
)

# Tests monkey-patch this to redirect the audit trail.
AUDIT_FILE = os.path.join(settings.SESSION_DIR, "audit.log")


def count_errors(logger, method_name: str, event_dict: dict) -> dict:
    if method_name in ("error", "critical", "exception"):
        ERRORS_LOGGED.labels(method_name).inc()
    return event_dict


def sign_and_append(logger, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that signs audit events and appends them to the audit log.

    Only events logged with ``audit=True`` are written. Settlement and mint
    confirmations carry the flag so that the trail of money movements can be
    verified offline with LOG_SIGNING_KEY.
    """
    if not event_dict.pop("audit", False):
        return event_dict

    # Serialize with deterministic key order to ensure reproducible signature.
    payload = json.dumps(event_dict, sort_keys=True, default=str)
    sig = hmac.new(SIGNING_KEY, payload.encode(), hashlib.sha256).hexdigest()

    audit_file = str(AUDIT_FILE)
    try:
        with open(audit_file, "a", encoding="utf-8") as f:
            f.write(payload + "|" + sig + "\n")
    except FileNotFoundError:
        os.makedirs(os.path.dirname(audit_file), exist_ok=True)
        with open(audit_file, "a", encoding="utf-8") as f:
            f.write(payload + "|" + sig + "\n")

    event_dict["signature"] = sig
    return event_dict


def configure_logging():
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN.get_secret_value(), traces_sample_rate=1.0)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            count_errors,
            sign_and_append,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)


def bind_processor(name: str, address: str):
    """Tag every log line emitted by the current task with its pipeline."""
    bind_contextvars(processor=name, account=address)


configure_logging()
log = get_logger("MintGate.System")
