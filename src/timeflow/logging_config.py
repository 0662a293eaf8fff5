"""Logging for the client and its HTTP surface.

Level and log file come from ``[logging]`` in config.toml; ``LOG_LEVEL`` and
``TIMEFLOW_LOG_FILE`` override them. An empty file setting logs to the console only.
"""
import logging
import logging.config
import os
import sys

from timeflow.config import cfg

QUIET = ("httpx", "websockets", "uvicorn.access")


def build_config(level: str | None = None, log_file: str | None = None) -> dict:
    settings = cfg.get("logging", {})
    level = (level or os.getenv("LOG_LEVEL") or settings.get("level", "INFO")).upper()
    log_file = log_file if log_file is not None else os.getenv("TIMEFLOW_LOG_FILE", settings.get("file", ""))

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": log_file,
            "mode": "a",
        }
    names = list(handlers)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-6s %(name)s:%(lineno)d %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            "timeflow": {"level": level, "handlers": names, "propagate": False},
            **{name: {"level": "WARNING", "handlers": names, "propagate": False} for name in QUIET},
        },
        "root": {"level": "WARNING", "handlers": names},
    }


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    logging.config.dictConfig(build_config(level, log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
