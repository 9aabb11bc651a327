"""
Clipboard and desktop integration for finished transcripts.
"""

import time

import pyperclip

from . import compat
from .logger import get_logger

logger = get_logger('output')


def copy_to_clipboard(text, retries=3):
    """Copy text to clipboard with retries and fallback."""
    for attempt in range(retries):
        try:
            pyperclip.copy(text)
            if pyperclip.paste() == text:
                logger.info("Transcript copied to clipboard")
                return True
        except pyperclip.PyperclipException as e:
            logger.debug(f"Clipboard attempt {attempt + 1} failed: {e}")
        time.sleep(0.1)

    # Fallback: platform clipboard command
    if compat.clipboard_copy_fallback(text):
        logger.info("Transcript copied to clipboard")
        return True

    logger.warning("Could not copy transcript to clipboard")
    return False


def open_file(path):
    """Open the transcript with the default application."""
    try:
        compat.open_with_default_app(path)
        return True
    except OSError as e:
        logger.warning(f"Could not open {path}: {e}")
        return False
