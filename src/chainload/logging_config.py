import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("CHAINLOAD_LOG_FILE")  # unset: console only
SUBMIT_LOG_LEVEL = os.getenv("CHAINLOAD_SUBMIT_LOG_LEVEL", LOG_LEVEL).upper()


def build_config(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> dict:
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
                "format": "%(asctime)s %(levelname)-7s %(name)-20s %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            "chainload": {"level": level, "handlers": names, "propagate": False},
            # One line per attempt at DEBUG, so it gets its own knob
            "chainload.submit": {"level": SUBMIT_LOG_LEVEL},
            "httpx": {"level": "WARNING", "handlers": names, "propagate": False},
            "httpcore": {"level": "WARNING", "handlers": names, "propagate": False},
            "uvicorn.access": {"level": "WARNING", "handlers": names, "propagate": False},
            "xrpl": {"level": "WARNING", "handlers": names, "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": names},
    }


def setup_logging(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE):
    logging.config.dictConfig(build_config(level, log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
