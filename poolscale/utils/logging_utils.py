"""
Logging utilities for the autoscaler.
"""
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union


def setup_logging(
    log_dir: Optional[str] = None,
    level: Union[int, str] = logging.INFO,
    log_to_console: bool = True,
    log_to_file: bool = True,
    log_filename: str = "poolscale.log",
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """Set up logging configuration.

    Args:
        log_dir: Directory to store log files. If None, use 'logs' in current directory.
        level: Logging level, as a number or a name such as ``"DEBUG"``.
        log_to_console: Whether to log to console.
        log_to_file: Whether to log to file.
        log_filename: Log file name.
        max_bytes: Maximum log file size before rotating.
        backup_count: Number of backup log files to keep.

    Returns:
        Configured root logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger()
    logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if log_to_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_to_file:
        if log_dir is None:
            log_dir = "logs"

        log_path = Path(log_dir)
        os.makedirs(log_path, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / log_filename, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def setup_logging_from_config(
    logging_config: Optional[Dict[str, Any]], log_dir: Optional[str] = None, level: Optional[str] = None
) -> logging.Logger:
    """Configure logging from the ``logging`` config block.

    Args:
        logging_config: ``logging`` configuration block.
        log_dir: Log directory, usually ``Config.logs_dir``.
        level: Level override, e.g. from the command line.
    """
    logging_config = logging_config or {}
    return setup_logging(
        log_dir=log_dir,
        level=level or logging_config.get("level", "INFO"),
        log_to_console=logging_config.get("log_to_console", True),
        log_to_file=logging_config.get("log_to_file", True),
        log_filename=logging_config.get("log_filename", "poolscale.log"),
        max_bytes=logging_config.get("max_bytes", 10485760),
        backup_count=logging_config.get("backup_count", 5),
    )
