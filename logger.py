"""Logging for the chat relay: one named logger configured from AppConfig."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import colorlog

from config import AppConfig

LOGGER_NAME = "chat_relay"

LOG_MAX_BYTES = 1_048_576  # 1 MB
LOG_BACKUP_COUNT = 3

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"
LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(config: AppConfig) -> logging.Logger:
    """
    Configure the relay logger from the loaded configuration.

    Records go to `config.log_path` (rotated at 1 MB, 3 backups), or to
    stderr when that file cannot be opened. `LOG_LEVEL=DISABLE` silences
    the relay logger without touching other loggers in the process.
    Safe to call repeatedly; previous handlers are closed.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.propagate = False

    if config.log_level == "DISABLE":
        logger.disabled = True
        logger.addHandler(logging.NullHandler())
        return logger

    logger.disabled = False
    logger.setLevel(getattr(logging, config.log_level, logging.INFO))

    handler, open_err = _open_handler(config.log_path)
    handler.setFormatter(_build_formatter(config.log_color))
    logger.addHandler(handler)

    if open_err is not None:
        logger.warning("Cannot write log file %r (%s); logging to stderr instead.", config.log_path, open_err)
    return logger


def _open_handler(log_path: str) -> tuple[logging.Handler, OSError | None]:
    """Rotating file handler for `log_path`, creating its directory if needed."""
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as e:
        return logging.StreamHandler(), e
    return handler, None


def _build_formatter(color: bool) -> logging.Formatter:
    if not color:
        return logging.Formatter(PLAIN_FORMAT)
    return colorlog.ColoredFormatter(COLOR_FORMAT, reset=True, log_colors=LEVEL_COLORS, style="%")


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
