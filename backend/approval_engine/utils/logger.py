"""
Structured JSON Logging

Every record is one JSON object. Records carry the correlation id of the
current service call or SLA sweep, plus any workflow fields passed through
``extra`` (see EXTRA_FIELDS). ``instance_logger`` binds the fields of one
instance so call sites do not repeat them.
"""
import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Iterator, MutableMapping, Optional, Tuple

from ..config.settings import settings


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

EXTRA_FIELDS = (
    "instance_id", "template_id", "step_order", "actor_id", "action",
    "status", "sla_status", "escalation_level", "event_type", "phase_id"
)

LOG_FILE = "approval_engine.log"
ERROR_LOG_FILE = "approval_engine.error.log"
MAX_LOG_BYTES = 10 * 1024 * 1024


class JsonFormatter(logging.Formatter):
    """One JSON object per record; workflow fields only when present"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "environment": settings.environment,
        }

        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        entry.update({
            field: getattr(record, field)
            for field in EXTRA_FIELDS
            if getattr(record, field, None) is not None
        })

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _rotating_handler(path: str, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=5, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(to_files: bool = True) -> None:
    """
    Configure the root logger for the engine

    Args:
        to_files: Also write rotating files under settings.logs_path
            (all records, and errors only)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    formatter = JsonFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if to_files:
        os.makedirs(settings.logs_path, exist_ok=True)
        root_logger.addHandler(
            _rotating_handler(os.path.join(settings.logs_path, LOG_FILE), logging.NOTSET, formatter)
        )
        root_logger.addHandler(
            _rotating_handler(os.path.join(settings.logs_path, ERROR_LOG_FILE), logging.ERROR, formatter)
        )

    # Driver and scheduler chatter
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class InstanceLoggerAdapter(logging.LoggerAdapter):
    """Adds the bound instance fields to every record; call-site extras win"""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def instance_logger(logger: logging.Logger, instance: Any) -> InstanceLoggerAdapter:
    """Logger bound to a workflow instance's id, template and current step"""
    return InstanceLoggerAdapter(logger, {
        "instance_id": instance.instance_id,
        "template_id": instance.template_id,
        "step_order": instance.current_step_order,
        "status": instance.status.value,
        "escalation_level": instance.escalation_level,
    })


def set_correlation_id(correlation_id: Optional[str]) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Run a block under correlation_id, restoring the previous id afterwards"""
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)
