"""
Logging setup shared by all modules.

Usage:
    from impact_ledger.core.log import get_logger, log_event
    logger = get_logger(__name__)
    log_event(logger, "ledger.event.persisted", event_id=event.id)
    # event=ledger.event.persisted | event_id=...
"""

import logging
import sys
from typing import Any

_FMT = "%(asctime)s [%(levelname)-5s] %(name)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

# Marks handlers installed here so repeated setup stays idempotent
_APP_HANDLER_MARKER = "_is_impact_ledger_handler"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def setup_logging(level: str = "INFO") -> None:
    """Attach one stdout handler to the package logger."""
    logger = logging.getLogger("impact_ledger")
    logger.setLevel(_LEVELS.get(level.upper(), logging.INFO))
    if any(getattr(h, _APP_HANDLER_MARKER, False) for h in logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
    setattr(handler, _APP_HANDLER_MARKER, True)
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Named logger; modules call get_logger(__name__)."""
    return logging.getLogger(name)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Write a greppable `event=x | key=val` line."""
    parts = [f"event={event}"]
    parts.extend(f"{key}={value}" for key, value in fields.items())
    logger.log(level, " | ".join(parts))
