"""
Non-blocking console key reading.

Windows uses msvcrt.kbhit/getch. POSIX puts the controlling tty into cbreak
mode and polls it with a zero-timeout select, so reading a key never blocks
the caller.
"""

import sys
from typing import Optional

from ..compat import IS_WINDOWS

# Named keys accepted by --stop-key, mapped to the character they produce.
KEY_NAMES = {
    "space": " ",
    "spacebar": " ",
    "enter": "\r",
    "return": "\r",
    "escape": "\x1b",
    "esc": "\x1b",
    "tab": "\t",
    "backspace": "\x7f",
}


def normalize_key(key: str) -> str:
    """Map a key name ('Space', 'enter', 'q') to the character it produces."""
    if not key:
        raise ValueError("Stop key must not be empty")
    lowered = key.lower()
    if lowered in KEY_NAMES:
        return KEY_NAMES[lowered]
    if len(key) == 1:
        return key.lower()
    raise ValueError(f"Unknown key '{key}'. Use a single character or one of: {', '.join(sorted(KEY_NAMES))}")


def key_matches(pressed: str, target: str) -> bool:
    pressed = pressed.lower()
    if target == "\r":
        return pressed in ("\r", "\n")
    if target == "\x7f":
        return pressed in ("\x7f", "\x08")
    return pressed == target


class ConsoleKeySource:
    """Reads pending key presses from the console without blocking."""

    def __init__(self):
        self._fd = None
        self._saved_attrs = None
        self._opened = False

    def open(self) -> None:
        if self._opened:
            return
        self._opened = True
        if IS_WINDOWS or not sys.stdin.isatty():
            return
        import termios
        import tty

        self._fd = sys.stdin.fileno()
        self._saved_attrs = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)

    def close(self) -> None:
        if self._saved_attrs is not None:
            import termios
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None
        self._opened = False

    def read_key(self) -> Optional[str]:
        """Return one pending key, or None if nothing was pressed."""
        if not self._opened:
            self.open()
        if IS_WINDOWS:
            import msvcrt

            if not msvcrt.kbhit():
                return None
            ch = msvcrt.getwch()
            if ch in ('\x00', '\xe0'):
                # Function/arrow key prefix; consume the scan code
                msvcrt.getwch()
                return None
            return ch

        if self._fd is None:
            return None
        import os
        import select

        readable, _, _ = select.select([self._fd], [], [], 0)
        if not readable:
            return None
        data = os.read(self._fd, 1)
        return data.decode('utf-8', errors='ignore') or None

    def __enter__(self) -> "ConsoleKeySource":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()
