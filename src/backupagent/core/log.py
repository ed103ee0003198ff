"""Logging setup for backupagent."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int = logging.INFO, log_path: Path | None = None) -> logging.Logger:
    """Configure logging to output to stdout and optionally a file.

    Handlers installed by an earlier call are replaced, so calling this
    twice does not duplicate log lines.

    Args:
        level: Log level for the backupagent logger.
        log_path: Optional path to a log file.

    Returns:
        The configured backupagent root logger.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger("backupagent")
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger
