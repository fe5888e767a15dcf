"""Logging configuration."""

from __future__ import annotations

import logging
import os
from typing import Optional

from pythonjsonlogger.json import JsonFormatter


def configure_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("estclient")
    if logger.handlers:
        return logger

    log_level = getattr(logging, os.environ.get("LOG_LEVEL", level).upper(), logging.INFO)
    logger.setLevel(log_level)
    handler = logging.StreamHandler()
    formatter = JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    base = logging.getLogger("estclient")
    if not base.handlers:
        configure_logging()
    if name is None:
        return base
    if name.startswith("estclient."):
        name = name[len("estclient.") :]
    return base.getChild(name)
