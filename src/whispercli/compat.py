"""
Platform-specific utilities for cross-platform compatibility.

Provides abstractions for Windows/macOS/Linux differences:
- Per-user cache and temp locations
- Clipboard fallback (clip.exe vs pbcopy vs xclip)
- Opening a file with the desktop's default application
- ffmpeg discovery
- Default compute device selection
"""

import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

IS_WINDOWS = sys.platform == 'win32'
IS_MACOS = sys.platform == 'darwin'

APP_NAME = "whispercli"


def get_cache_dir() -> Path:
    """Per-user cache root (models, logs). WHISPERCLI_CACHE_DIR overrides it."""
    override = os.environ.get('WHISPERCLI_CACHE_DIR')
    if override:
        return Path(override)
    if IS_WINDOWS:
        local_app_data = os.environ.get('LOCALAPPDATA')
        if local_app_data:
            return Path(local_app_data) / APP_NAME / "Cache"
    if IS_MACOS:
        return Path.home() / "Library" / "Caches" / APP_NAME
    xdg = os.environ.get('XDG_CACHE_HOME')
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".cache" / APP_NAME


def get_temp_dir() -> Path:
    """Per-user temporary working directory."""
    path = Path(tempfile.gettempdir()) / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def clipboard_copy_fallback(text):
    """Platform-specific clipboard fallback when pyperclip fails."""
    if IS_WINDOWS:
        command, payload = ['clip'], text.encode('utf-16le')
    elif IS_MACOS:
        command, payload = ['pbcopy'], text.encode('utf-8')
    elif shutil.which('wl-copy'):
        command, payload = ['wl-copy'], text.encode('utf-8')
    else:
        command, payload = ['xclip', '-selection', 'clipboard'], text.encode('utf-8')
    try:
        process = subprocess.Popen(command, stdin=subprocess.PIPE)
        process.communicate(payload)
        return process.returncode == 0
    except OSError:
        return False


def open_with_default_app(path):
    """Open a file with the platform's default application."""
    path = str(path)
    if IS_WINDOWS:
        os.startfile(path)  # type: ignore[attr-defined]
        return
    opener = 'open' if IS_MACOS else 'xdg-open'
    subprocess.Popen([opener, path], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)


def get_default_device():
    """Get the default compute device for this platform.

    macOS: Always 'cpu' (CTranslate2 has no Metal backend).
    Windows/Linux: 'cuda' if a CUDA device is visible to CTranslate2, else 'cpu'.
    """
    if IS_MACOS:
        return "cpu"
    try:
        import ctranslate2
        if ctranslate2.get_cuda_device_count() > 0:
            return "cuda"
    except Exception:
        pass
    return "cpu"


def default_compute_type(device):
    """float16 on GPU, int8 on CPU."""
    return "float16" if device == "cuda" else "int8"


def find_ffmpeg():
    """Find ffmpeg executable on the system. Returns None if absent."""
    override = os.environ.get('WHISPERCLI_FFMPEG')
    if override and os.path.exists(override):
        return override

    found = shutil.which("ffmpeg")
    if found:
        return found

    # Windows: check winget install location
    if IS_WINDOWS:
        local_app_data = os.environ.get('LOCALAPPDATA', '')
        if local_app_data:
            winget_glob = Path(local_app_data) / "Microsoft" / "WinGet" / "Packages"
            if winget_glob.exists():
                for ffmpeg_bin in winget_glob.rglob("ffmpeg.exe"):
                    return str(ffmpeg_bin)
    # macOS: check Homebrew
    if IS_MACOS:
        for brew_path in ["/opt/homebrew/bin/ffmpeg", "/usr/local/bin/ffmpeg"]:
            if os.path.exists(brew_path):
                return brew_path
    return None


def ffmpeg_install_hint():
    if IS_MACOS:
        return "brew install ffmpeg"
    if IS_WINDOWS:
        return "winget install ffmpeg"
    return "install ffmpeg with your package manager (e.g. apt install ffmpeg)"
