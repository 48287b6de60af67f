from __future__ import annotations

import logging
import os
from typing import Any, Dict

import structlog

_SERVICE_NAME = "spruce-sync"
_CONFIGURED_LEVEL: str | None = None


def _add_log_level(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["level"] = method_name
    return event_dict


def _add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def configure_logging() -> None:
    global _CONFIGURED_LEVEL
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    if _CONFIGURED_LEVEL == level:
        return
    numeric_level = getattr(logging, level, logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric_level)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _add_log_level,
            _add_service,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED_LEVEL = level


def get_logger(name: str):
    configure_logging()
    return structlog.get_logger(name)
