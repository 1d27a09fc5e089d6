"""
Structured logging configuration.

JSON logs in production, plain text for local runs and tests. Experiment
services tag their lifecycle records with run/batch/provider identifiers
via ``experiment_extra()`` so one run can be followed across interleaved
background tasks.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from core.config import settings

# Libraries that are chatty at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "openai", "anthropic")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; extra_fields are merged in at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_data.update(extra_fields)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with any extra_fields appended as key=value."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            line += " [" + " ".join(f"{k}={v}" for k, v in extra_fields.items()) + "]"
        return line


def experiment_extra(
    run_id: Optional[int] = None,
    batch_id: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    """
    ``extra=`` payload for experiment log records. None values are dropped.

        logger.info("Run completed", extra=experiment_extra(run_id=4, tokens=300))
    """
    values = {"run_id": run_id, "batch_id": batch_id, "provider": provider, "model": model, **fields}
    return {"extra_fields": {k: v for k, v in values.items() if v is not None}}


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger.

    JSON when LOG_FORMAT is json or ENVIRONMENT is production, text otherwise.
    Arguments override the settings (used by scripts).
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    fmt = (log_format or settings.LOG_FORMAT).lower()

    if fmt == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
