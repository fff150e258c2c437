# logconfig.py
"""Logging setup for the pingwatch logger namespace."""
from __future__ import annotations

import logging
from typing import Optional

LOGGER_NAME = "pingwatch"


class ContextSafeFormatter(logging.Formatter):
    """Formatter that tolerates records without probe context fields."""

    _defaults = {
        "target": "-",
        "sequence": "-",
    }

    def format(self, record: logging.LogRecord) -> str:
        for key, default in self._defaults.items():
            if not hasattr(record, key):
                setattr(record, key, default)
        return super().format(record)


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """Configure only the pingwatch logger; the root logger is left alone."""
    fmt = (
        "%(asctime)s %(levelname)s %(name)s "
        "target=%(target)s sequence=%(sequence)s message=%(message)s"
    )
    formatter = ContextSafeFormatter(fmt)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # stderr keeps log lines out of the table on stdout
    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger
