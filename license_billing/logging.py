import json
import logging
import logging.config
from datetime import datetime, timezone

# Context passed through ``extra=`` by the middleware, webhook and queue code.
_CONTEXT_KEYS = (
    "request_id",
    "account",
    "path",
    "method",
    "status",
    "duration_ms",
    "event_id",
    "event_type",
    "queue_id",
)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            {key: getattr(record, key) for key in _CONTEXT_KEYS if getattr(record, key, None) is not None}
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonLogFormatter}},
            "handlers": {
                "default": {"class": "logging.StreamHandler", "formatter": "json"},
            },
            "root": {"handlers": ["default"], "level": level.upper()},
            "loggers": {
                # The Stripe SDK logs every request at INFO.
                "stripe": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
        }
    )
