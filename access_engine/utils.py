"""
Logging helpers shared by every module.

Usage:
    from access_engine.utils import get_logger

    log = get_logger(__name__)
"""
import logging
import sys

from access_engine.core import config


ROOT_LOGGER_NAME = "access_engine"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Third-party loggers that only need to report problems
QUIET_LOGGERS = ("aiosqlite", "asyncio", "httpx", "httpcore")

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Attach a stream handler to the package root logger once."""
    global _configured
    if _configured:
        return

    root = logging.getLogger(ROOT_LOGGER_NAME)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level or config.LOG_LEVEL)
    root.propagate = False

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    if name == "__main__" or not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
