"""
Logging setup shared by the wallet, the CLI and the reference relay.
"""
import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
ROOT_LOGGER = "notewallet"

_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stderr handler to the package logger (idempotent)."""
    global _configured
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, lvl, logging.INFO))
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a child of the package logger, e.g. get_logger("database.note_store")."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
