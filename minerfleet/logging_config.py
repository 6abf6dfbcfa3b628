"""
Custom logging configuration to suppress miner status probe logs
"""

import logging
import logging.config
import os
from typing import Any, Dict, List, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
# journald already timestamps every line
JOURNAL_FORMAT = "%(name)s - %(levelname)s - %(message)s"


class HealthProbeFilter(logging.Filter):
    """Filter to suppress per-cycle miner status probe logs."""

    def __init__(self, probe_path: str = "/summary"):
        super().__init__()
        self.probe_path = probe_path

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter out loopback status requests from httpx request logs."""
        if record.name.startswith("httpx"):
            message = record.getMessage()
            if self.probe_path in message and "GET" in message:
                return False
        return True


def _stream_handler(filters: Optional[List[str]] = None) -> Dict[str, Any]:
    handler = {"class": "logging.StreamHandler", "formatter": "default", "stream": "ext://sys.stdout"}
    if filters:
        handler["filters"] = filters
    return handler


def get_logging_config(level: Optional[str] = None) -> Dict[str, Any]:
    """Get logging configuration with status probe suppression.

    Args:
        level: Level for the ``minerfleet`` loggers. Falls back to ``LOG_LEVEL``.

    Returns:
        A ``logging.config.dictConfig`` dictionary.
    """
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    journal = bool(os.environ.get("JOURNAL_STREAM"))

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"health_probe_filter": {"()": HealthProbeFilter}},
        "formatters": {"default": {"format": JOURNAL_FORMAT if journal else LOG_FORMAT}},
        "handlers": {
            "default": _stream_handler(),
            "probe": _stream_handler(filters=["health_probe_filter"]),
        },
        "loggers": {
            "httpx": {"handlers": ["probe"], "level": "INFO", "propagate": False},
            "minerfleet": {"handlers": ["default"], "level": level, "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": ["default"]},
    }


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the logging configuration."""
    logging.config.dictConfig(get_logging_config(level))
