import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/txrelay.log")

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "txrelay": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False, # Keep 'txrelay' logs out of the root logger
        },
        # uvicorn, httpx and xrpl-py only at WARNING
        "uvicorn": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "uvicorn.access": {
             "level": "WARNING", # Prometheus scrapes every few seconds
             "handlers": ["console", "file"],
             "propagate": False,
        },
        "httpx": {
            "level": "WARNING", # One INFO line per JSON-RPC call otherwise
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "xrpl": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        }
    },
    # Default for all other loggers
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}

def setup_logging():
    """ Apply the logging configuration. """
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
