"""Structured logging configuration using dictConfig.

Console output in development; one JSON object per line in production, with
the service name attached as a field so ranker and cron script logs can be
told apart downstream.
"""
import logging
import logging.config
import sys
from typing import Dict, Any, Optional

from .settings import get_settings

settings = get_settings()

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _logger(level: str) -> Dict[str, Any]:
    return {"level": level, "handlers": ["console"], "propagate": False}


def get_logging_config(service_name: Optional[str] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary."""
    production = settings.environment == "production"
    service = service_name or "catalogrank"

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "datefmt": DATE_FORMAT,
                "static_fields": {"service": service},
            },
            "console": {
                "format": f"%(asctime)s [{service}] [%(levelname)s] %(name)s: %(message)s",
                "datefmt": DATE_FORMAT,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": "json" if production else "console",
                "stream": sys.stdout,
            }
        },
        "loggers": {
            "catalogrank": _logger(settings.log_level),
            # Run stages, batch progress and per-entity failures
            "catalogrank.ranker": _logger(settings.log_level),
            # Per-page read logs are DEBUG; keep them out of production output
            "catalogrank.core": _logger("WARNING" if production else settings.log_level),
            "uvicorn": _logger("INFO"),
            "uvicorn.access": _logger("WARNING"),
            "sqlalchemy.engine": _logger("INFO" if settings.debug else "WARNING"),
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["console"],
        },
    }

    return config


def setup_logging(service_name: Optional[str] = None) -> None:
    """Configure structured logging using dictConfig."""
    config = get_logging_config(service_name)
    logging.config.dictConfig(config)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
