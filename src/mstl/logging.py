# src/mstl/logging.py
from __future__ import annotations

import logging
import os

_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

_configured = False


def _ensure_base_logger() -> None:
    global _configured
    if _configured:
        return
    level = os.getenv("MSTL_LOG_LEVEL", "WARNING").upper()
    root = logging.getLogger("mstl")
    # stdout carries the JSON result; diagnostics go to stderr.
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.WARNING))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    _ensure_base_logger()
    return logging.getLogger(name)


def set_verbose(verbose: bool) -> None:
    """Raise the package log level to DEBUG so every external command is traced."""
    _ensure_base_logger()
    if verbose:
        logging.getLogger("mstl").setLevel(logging.DEBUG)
