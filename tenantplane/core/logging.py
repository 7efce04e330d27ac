from __future__ import annotations

import logging
import logging.config

from tenantplane.core.config import get_settings


_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure process-wide logging once; API and worker entrypoints both call this.
    global _configured
    if _configured:
        return
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                "tenantplane": {"level": resolved, "handlers": ["console"], "propagate": False},
                # httpx logs every request at INFO, which would leak provider URLs into app logs.
                "httpx": {"level": "WARNING"},
            },
            "root": {"level": "WARNING", "handlers": ["console"]},
        }
    )
    _configured = True
