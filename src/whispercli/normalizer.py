"""
Media normalization through ffmpeg.

Any audio or video input is converted into the canonical PCM the engines
expect: a 16 kHz mono 16-bit WAV file in a private temp directory.
"""

import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional

from . import compat
from .errors import ConversionError, IOFault
from .logger import get_logger

logger = get_logger('normalizer')

VIDEO_EXTENSIONS = {
    '.mp4', '.mkv', '.mov', '.avi', '.webm', '.wmv', '.flv', '.m4v', '.mpg', '.mpeg', '.ts',
}


def is_video(path) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS


def build_ffmpeg_command(ffmpeg: str, input_path, output_path) -> list:
    cmd = [ffmpeg, '-y', '-hide_banner', '-loglevel', 'error', '-i', str(input_path)]
    if is_video(input_path):
        # Drop the video stream, keep the first audio stream
        cmd.append('-vn')
    cmd += [
        '-ar', '16000',       # 16kHz sample rate
        '-ac', '1',           # Mono
        '-sample_fmt', 's16',  # 16-bit signed
        '-acodec', 'pcm_s16le',
        str(output_path),
    ]
    return cmd


class MediaNormalizer:
    """Converts media files to canonical WAV and cleans up afterwards."""

    def __init__(self, ffmpeg_path: Optional[str] = None, runner: Callable = subprocess.run, temp_root=None):
        self._ffmpeg_path = ffmpeg_path
        self._runner = runner
        self._temp_root = Path(temp_root) if temp_root else None

    @property
    def ffmpeg(self) -> str:
        """
        Path to the ffmpeg executable.

        Raises:
            ConversionError: If ffmpeg cannot be found
        """
        if self._ffmpeg_path is None:
            self._ffmpeg_path = compat.find_ffmpeg()
        if self._ffmpeg_path is None:
            raise ConversionError(f"ffmpeg not found. Install with: {compat.ffmpeg_install_hint()}")
        return self._ffmpeg_path

    def convert(self, input_path) -> Path:
        """
        Convert input_path to a temporary canonical WAV file.

        Raises:
            ConversionError: If ffmpeg is missing or fails for this input
        """
        input_path = Path(input_path)
        if not input_path.is_file():
            raise ConversionError(f"Input file not found: {input_path}")

        ffmpeg = self.ffmpeg
        temp_root = self._temp_root or compat.get_temp_dir()
        temp_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix='convert-', dir=str(temp_root)))
        output_path = work_dir / f"{input_path.stem}.wav"

        logger.info(f"Converting {input_path.name} to 16kHz mono WAV...")
        cmd = build_ffmpeg_command(ffmpeg, input_path, output_path)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = self._runner(cmd, capture_output=True, text=True)
        except OSError as e:
            self._remove_dir(work_dir)
            raise ConversionError(f"Could not run ffmpeg: {e}") from e

        if result.returncode != 0 or not output_path.exists():
            self._remove_dir(work_dir)
            stderr = (result.stderr or '').strip()
            raise ConversionError(f"ffmpeg failed for {input_path.name}: {stderr or f'exit {result.returncode}'}")

        logger.info(f"Converted to {output_path}")
        return output_path

    def cleanup(self, path) -> bool:
        """Remove a converted file and its temp directory. Never raises."""
        path = Path(path)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(str(IOFault(f"Could not remove temporary file {path}: {e}")))
            return False
        return self._remove_dir(path.parent)

    @staticmethod
    def _remove_dir(work_dir: Path) -> bool:
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(str(IOFault(f"Could not remove temporary directory {work_dir}: {e}")))
            return False
        return True
