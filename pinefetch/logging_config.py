"""
Configures the application's logging setup.

This module sets up a root logger that directs messages to both a rotating
file log and the console.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .constants import LOG_DIR


def setup_logging(file_log_level_str: str = 'INFO', console: Optional[Console] = None,
                  console_level_str: str = 'WARNING', log_dir: Path = LOG_DIR):
    """
    Configures the root logger for file and console logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on application startup.

    Args:
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        console: The rich console used for terminal output.
        console_level_str: The minimum logging level shown on the console.
        log_dir: Where `latest.log` and its archives live.
    """
    # 1. Ensure Log Directory Exists
    log_dir.mkdir(parents=True, exist_ok=True)

    # 2. Implement Log Rotation
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)

    # 3. Configure Root Logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Capture all levels at the root

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # 4. Configure File Handler
    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)

    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
    ))
    root_logger.addHandler(file_handler)

    # 5. Configure Console Handler
    console_handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(getattr(logging, console_level_str.upper(), logging.WARNING))
    console_handler.setFormatter(logging.Formatter('%(message)s', datefmt='[%X]'))
    root_logger.addHandler(console_handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")
