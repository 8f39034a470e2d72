import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/l2load.log")


def logging_config(log_file: str = LOG_FILE, level: str = LOG_LEVEL, process: str = "l2load") -> dict:
    """Every wallet process and the block turner may share one log sink; `process` tells them apart."""
    handlers = ["console", "file"]
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": f"%(asctime)s %(levelname)-6s [{process}] %(name)s:%(lineno)d %(message)s",
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
                "filename": log_file,
                "mode": "a",
            },
        },
        "loggers": {
            "l2load": {
                "level": level,
                "handlers": handlers,
                "propagate": False,  # Don't pass 'l2load' logs up to the root logger
            },
            "uvicorn.access": {
                "level": "WARNING",
                "handlers": handlers,
                "propagate": False,
            },
            "httpx": {
                "level": "WARNING",
                "handlers": handlers,
                "propagate": False,
            },
            "websockets": {
                "level": "WARNING",
                "handlers": handlers,
                "propagate": False,
            },
        },
        "root": {
            "level": "WARNING",
            "handlers": handlers,
        },
    }


def setup_logging(log_file: str | None = None, process: str = "l2load"):
    logging.config.dictConfig(logging_config(log_file or LOG_FILE, process=process))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
