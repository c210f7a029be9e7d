import json
import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from growroom.core import config
from growroom.core.request_context import get_automation_id, get_method, get_path, get_request_id


# Attributes copied into the JSON line when a caller passes them via `extra=`
_EXTRA_FIELDS = (
    "request_id",
    "path",
    "method",
    "status_code",
    "user_id",
    "automation_id",
    "execution_id",
    "device_id",
    "job_id",
    "duration_ms",
)

_CONTEXT_GETTERS = (
    ("request_id", get_request_id),
    ("path", get_path),
    ("method", get_method),
    ("automation_id", get_automation_id),
)

_SECRET_RE = re.compile(r"(?i)\b(password|secret|token|api[_-]?key|authorization)\b\s*[:=]\s*([^\s,;]+)")


def redact(msg: str) -> str:
    return _SECRET_RE.sub(lambda m: f"{m.group(1)}=********", msg)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact(record.getMessage()),
        }
        line.update(
            (field, getattr(record, field))
            for field in _EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Fills request and automation ids from contextvars unless the record already has them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, getter in _CONTEXT_GETTERS:
            if getattr(record, attr, None) is not None:
                continue
            value = getter()
            if value is not None:
                setattr(record, attr, value)
        return True


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter, ctx: logging.Filter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ctx)
    return handler


def configure_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL, logging.INFO)
    if config.LOG_FORMAT == "text":
        formatter: logging.Formatter = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    else:
        formatter = JsonFormatter()
    ctx = ContextFilter()

    handlers = [_handler(logging.StreamHandler(sys.stdout), level, formatter, ctx)]
    file_error = None
    if config.LOG_FILE:
        try:
            os.makedirs(os.path.dirname(config.LOG_FILE) or ".", exist_ok=True)
            rotating = RotatingFileHandler(
                config.LOG_FILE,
                maxBytes=config.LOG_MAX_BYTES,
                backupCount=config.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            handlers.append(_handler(rotating, level, formatter, ctx))
        except OSError as e:
            file_error = e

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = handlers

    # uvicorn and celery install their own handlers; route them through ours
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "celery"):
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers = handlers
        logger.propagate = False

    if file_error is not None:
        logging.getLogger(__name__).warning("file logging disabled: %s", file_error)
