"""
Logging setup shared by the API process and the import workers.

Every module logs through ``logging.getLogger(__name__)``; this module only
installs the stdout handler and the line format once per process.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Third-party loggers that are chatty at INFO during batch imports.
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")

_is_configured = False


def configure_logging(level: Optional[str] = None, *, force: bool = False) -> None:
    """
    Install the application log handler.

    Args:
        level: Log level name (e.g. "DEBUG", "INFO"); defaults to INFO.
        force: Reconfigure even if logging was already set up.
    """
    global _is_configured

    if _is_configured and not force:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": LOG_FORMAT,
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "stream": "ext://sys.stdout",
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": {
                name: {"level": "WARNING"} for name in _NOISY_LOGGERS
            },
        }
    )

    logging.getLogger("app").setLevel(log_level)

    _is_configured = True
