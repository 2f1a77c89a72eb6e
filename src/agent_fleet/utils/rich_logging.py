"""Console and file logging with per-run context."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = "agent_fleet"


class FleetLogFormatter(logging.Formatter):
    """Formatter that prefixes messages with the repo/task a record belongs to."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        context = ""
        if hasattr(record, "repo"):
            context += f"[{record.repo}] "
        if hasattr(record, "task_id"):
            context += f"[{record.task_id}] "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = self.RESET
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"{context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(
    log_level: str = "INFO",
    logs_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        logs_dir: Directory for agent-fleet.log; no file handler when None

    Returns:
        The configured "agent_fleet" logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.propagate = False

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    # Skip the console handler when stdout is redirected to avoid duplicate logs
    stdout_is_redirected = not sys.stdout.isatty() if hasattr(sys.stdout, "isatty") else False
    if not stdout_is_redirected:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(FleetLogFormatter(use_colors=True))
        logger.addHandler(console_handler)

    if logs_dir is not None:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / "agent-fleet.log", encoding="utf-8")
        file_handler.setFormatter(FleetLogFormatter(use_colors=False))
        logger.addHandler(file_handler)

    return logger
