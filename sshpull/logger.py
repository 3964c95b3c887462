"""Logging set-up: messages go both to stdout and to a log file."""

from __future__ import annotations

import logging
import os
import sys

LOGGER_NAME = "sshpull"

_LEVELS = {
    "all": logging.DEBUG,
    "dev": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.WARNING,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "prod": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger() -> logging.Logger:
    """Return the package logger."""
    return logging.getLogger(LOGGER_NAME)


def init_logger(log_file: str, level: str) -> logging.Logger:
    """Configure the package logger; an unknown or empty level means "all"."""
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)

    log = get_logger()
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    log.setLevel(_LEVELS.get((level or "all").strip().lower(), logging.DEBUG))
    log.propagate = False

    formatter = logging.Formatter(_FORMAT, _DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        log.addHandler(handler)
    return log