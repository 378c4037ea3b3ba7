"""Shared logging helpers for the Nado signal trader.

All component loggers live under the ``nadobot`` namespace so a single
``setup_logging()`` call (console + optional file) covers every module.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from env_utils import env_str

ROOT_LOGGER = "nadobot"

_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _env_level(default: int) -> int:
    raw = env_str("NADOBOT_LOG_LEVEL") or env_str("LOG_LEVEL")
    if not raw:
        return default
    val = str(raw).strip().upper()
    if val.isdigit():
        return int(val)
    return getattr(logging, val, default)


def _qualified(name: str) -> str:
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return name
    return f"{ROOT_LOGGER}.{name}"


def _ensure_root_handler() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT))
        root.addHandler(handler)
        root.setLevel(_env_level(logging.INFO))
    return root


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get a component logger (``nadobot.<name>``) with standard formatting."""
    _ensure_root_handler()
    logger = logging.getLogger(_qualified(name))
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    name: str = ROOT_LOGGER,
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Setup logging for a component (console + optional file)."""
    logger = logging.getLogger(_qualified(name))
    logger.handlers = []
    logger.setLevel(_env_level(logging.DEBUG if verbose else logging.INFO) if level is None else level)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT))
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT))
    logger.addHandler(console_handler)

    return logger
