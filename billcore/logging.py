import json
import logging
import logging.config
from datetime import datetime, timezone

_CONTEXT_KEYS = (
    "request_id",
    "method",
    "path",
    "duration_ms",
    "tenant_id",
    "invoice_id",
    "invoice_number",
    "subscription_id",
    "credit_id",
    "amount",
    "status",
    "attempt",
)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = str(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO") -> None:
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JsonLogFormatter,
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json",
            }
        },
        "loggers": {
            # SQL echo stays opt-in
            "sqlalchemy.engine": {"level": "WARNING"},
        },
        "root": {"handlers": ["default"], "level": level.upper()},
    }
    logging.config.dictConfig(logging_config)
