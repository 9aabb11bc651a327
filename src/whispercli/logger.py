"""
Centralized logging for whispercli.

Console output goes to stderr so stdout stays clean for transcripts.
Errors are additionally appended to a log file with full tracebacks.
"""

import logging
from pathlib import Path

from .compat import get_cache_dir

LOGGER_NAME = 'whispercli'


class WhisperCliLogger:
    """Centralized logger for the whispercli application."""

    _instance = None
    _logger = None

    def __init__(self, verbose=False, logs_dir=None):
        """Initialize the logger (singleton)."""
        if WhisperCliLogger._logger is None:
            WhisperCliLogger._logger = self._setup_logger(verbose, logs_dir)

    @classmethod
    def get_logger(cls):
        """Get the singleton logger instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._logger

    @classmethod
    def configure(cls, verbose=False, logs_dir=None):
        """(Re)configure handlers, e.g. once --verbose is known."""
        cls._logger = None
        cls._instance = cls(verbose=verbose, logs_dir=logs_dir)
        return cls._logger

    def _setup_logger(self, verbose, logs_dir):
        """Set up the console handler and the error file handler."""
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(logging.DEBUG)

        # Remove any existing handlers
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # Format: [14:30:25] INFO - message
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        console_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        ))
        logger.addHandler(console_handler)

        logs_dir = Path(logs_dir) if logs_dir else get_cache_dir() / "logs"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(
                logs_dir / "whispercli_errors.log", mode='a', encoding='utf-8'
            )
            file_handler.setLevel(logging.ERROR)
            file_handler.setFormatter(logging.Formatter(
                '[%(asctime)s] %(levelname)s %(name)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Error log file disabled: {e}")

        logger.propagate = False
        return logger


def get_logger(name=None):
    """Return the application logger, or a named child of it."""
    WhisperCliLogger.get_logger()
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)


def log_error(message, exception=None):
    """
    Log an error message.

    Args:
        message: Error message string
        exception: Optional exception object to include traceback
    """
    logger = WhisperCliLogger.get_logger()
    if exception:
        logger.error(f"{message}: {str(exception)}", exc_info=exception)
    else:
        logger.error(message)


def log_exception(exception, context=""):
    """
    Log an exception with full traceback.

    Args:
        exception: Exception object
        context: Optional context string (e.g., "in transcription")
    """
    logger = WhisperCliLogger.get_logger()
    if context:
        logger.error(f"Exception {context}", exc_info=exception)
    else:
        logger.error("Exception occurred", exc_info=exception)
