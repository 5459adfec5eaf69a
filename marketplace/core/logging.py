"""
One JSON object per log line. Event names go in the message
(`payout_dispatched`), identifiers and measurements go in `extra`.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from logging.handlers import RotatingFileHandler

from marketplace.core.config import settings

# `extra` keys copied into the JSON line; anything else is dropped
EXTRA_FIELDS = (
    # http
    "request_id", "path", "method", "status_code", "latency_ms",
    # payments / webhooks
    "provider", "event_type", "order_id", "payment_id", "purchase_id",
    "user_id", "product_id", "old_status", "new_status",
    # referrals / payouts
    "referral_id", "referrer_id", "conversion_id", "payout_id", "request_payout_id",
    "status", "amount", "fee_amount", "net_amount", "transaction_id", "outcome",
    # batches / sweeps
    "total", "processed", "skipped", "failed", "period_start", "period_end", "repaired",
    # breaker
    "breaker_name", "old_state", "new_state",
    "action", "duration_ms", "error",
)

NOISY_LOGGERS = ("httpx", "httpcore", "stripe", "uvicorn.access")


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return repr(value)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(
            (name, getattr(record, name))
            for name in EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=_json_default)


def _handlers(formatter: logging.Formatter) -> list[logging.Handler]:
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    if not settings.log_file:
        return [stream]
    rotating = RotatingFileHandler(
        settings.log_file,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
    )
    rotating.setFormatter(formatter)
    return [stream, rotating]


def configure_logging(level: str | None = None) -> None:
    """Replace root handlers; safe to call again (API process and Celery worker both do)."""
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    root.handlers = _handlers(JsonFormatter())
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
