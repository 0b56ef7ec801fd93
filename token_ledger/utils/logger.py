"""
Logging utilities.

Library modules only create module-level loggers; the command line entry
point calls ``setup_logging`` once to attach handlers.
"""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

# Diagnostics go to stderr so command output stays clean
console = Console(stderr=True)

LOGGER_NAME = "token_ledger"
FILE_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)s | %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure the package logger.

    Args:
        verbose: Show debug messages on the console
        log_file: Optional file that receives every message

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    rich_handler = RichHandler(
        console=console,
        show_time=False,
        show_path=False,
        rich_tracebacks=True
    )
    rich_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.addHandler(rich_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger below the package logger, e.g. ``get_logger("cli")``."""
    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
