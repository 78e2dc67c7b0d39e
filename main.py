"""
Main entry point for the Pinefetch command-line application.

This script installs the global exception hooks and hands control to the
Typer application, which loads the configuration, sets up logging and runs
the asyncio event loop for each command.
"""

import sys
import logging
from types import TracebackType
from typing import Type

from pinefetch.cli import app

def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


if __name__ == "__main__":
    sys.excepthook = handle_exception
    app()
