"""
Logging - Application logging configuration.

Provides:
- Python logging configuration with console and optional file output
- Idempotent setup: a second call only adjusts the level
"""

from pathlib import Path
from typing import Optional
import logging

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def configure_logging(level: int = logging.INFO, log_file: Optional[str | Path] = None) -> None:
    """
    Configure Python logging for the application.

    Sets up a root logger with console output and, when log_file is
    given, an appended file with full dates.

    Args:
        level: Logging level (default: INFO)
        log_file: Optional path to also log to
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Only add handlers if not already configured
    if root_logger.handlers:
        for handler in root_logger.handlers:
            handler.setLevel(level)
        return

    # Console handler with simple format
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%H:%M:%S'))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        root_logger.addHandler(file_handler)


def parse_level(name: str) -> int:
    """Map a level name ('debug', 'INFO', ...) to its logging constant."""
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level
