"""Logging configuration for etz."""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "INFO", log_file: Path | None = None,
                  console: Console | None = None) -> None:
    """
    Configure logging for the application.

    Args:
        level: Console log level name
        log_file: If given, also write every DEBUG message to this file
        console: Console the handler writes to; stderr by default
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file else numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=numeric_level <= logging.DEBUG,
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root_logger.addHandler(file_handler)

    # GitPython logs every command it runs at DEBUG
    logging.getLogger("git").setLevel(logging.WARNING)
