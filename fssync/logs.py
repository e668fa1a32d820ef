from __future__ import annotations

import datetime as dt
import logging
import sys
from pathlib import Path
from typing import Optional, Union

from colorama import init as colorama_init

LOGGER_NAME = "fssync"


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    LIGHT_BROWN = "\x1b[33m"
    CYAN = "\x1b[36m"


ACTION_COLORS = {
    "SYNC": Ansi.GREEN,
    "WATCH": Ansi.GREEN,
    "UNWATCH": Ansi.ORANGE,
    "RESCAN": Ansi.ORANGE,
    "EVENT": Ansi.LIGHT_BROWN,
    "CHILD": Ansi.LIGHT_BROWN,
}

# Logged paths are always watched directories or the mirror source.
PATH_COLOR = Ansi.CYAN


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if record.levelno >= logging.WARNING:
                action_color = Ansi.ORANGE
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            base = base.replace(path_text, f"{PATH_COLOR}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = LOGGER_NAME) -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Configure the package logger: colored stdout, plus a plain daily file when log_dir is set."""
    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()

        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(level)
        logger.addHandler(fh)

        logger.info("Logging to: %s", log_path)

    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
) -> None:
    if not logger.isEnabledFor(level):
        return
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
    logger.log(level, f"{action} | {message}", extra=extra)
