"""Logging configuration for the HTTPFilterPolicy controller."""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from htnn_controller.core.config import get_settings


class ControllerJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter for structured controller logs."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        settings = get_settings()
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["app_name"] = settings.app_name
        log_record["app_version"] = settings.app_version
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        # Resource context passed through `extra`
        for attr in ("kind", "resource_namespace", "resource_name"):
            if hasattr(record, attr):
                log_record[attr] = getattr(record, attr)


def setup_logging() -> None:
    """Configure logging for the controller."""
    settings = get_settings()
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.value)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(settings.log_level.value)

    if settings.log_json:
        formatter = ControllerJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s"
        )
    else:
        formatter = logging.Formatter(settings.log_format)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Third-party noise
    logging.getLogger("kopf").setLevel(logging.INFO)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    get_logger(__name__).info(
        "Logging configured",
        extra={"log_level": settings.log_level.value, "log_json": settings.log_json},
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


def resource_extra(kind: str, namespace: str, name: str) -> Dict[str, str]:
    """Build the `extra` mapping that tags a log line with a resource."""
    return {"kind": kind, "resource_namespace": namespace, "resource_name": name}
