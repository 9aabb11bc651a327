"""
Engine interface and the types that cross it.

Engines receive canonical PCM (16 kHz, mono, 16-bit) and hand back
RecognizedSegment objects; ModelInfo describes what can be downloaded.
"""

import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Union

import numpy as np

from ..cancellation import CancellationToken
from ..errors import AssetUnavailable

PcmSource = Union[str, Path, bytes, np.ndarray]

SAMPLE_RATE = 16000


@dataclass
class RecognizedSegment:
    """A single recognized span of speech with timing information."""
    text: str
    language: Optional[str]
    start: float  # Offset from the start of the audio, seconds
    end: float    # Offset from the start of the audio, seconds
    is_partial: bool = False

    def shifted(self, offset: float) -> "RecognizedSegment":
        """Copy with both offsets moved by offset seconds."""
        return RecognizedSegment(
            text=self.text,
            language=self.language,
            start=self.start + offset,
            end=self.end + offset,
            is_partial=self.is_partial,
        )


@dataclass
class ModelInfo:
    """Information about a transcription model."""
    id: str
    name: str
    engine: str
    repo_id: str
    size_mb: int
    description: str
    languages: List[str] = field(default_factory=lambda: ["multilingual"])


class EngineNotAvailableError(AssetUnavailable):
    """Raised when an engine is not available (missing dependencies)."""
    def __init__(self, engine_id: str, install_hint: str):
        self.engine_id = engine_id
        self.install_hint = install_hint
        super().__init__(engine_id, f"engine not available. {install_hint}")


def load_pcm(pcm_source: PcmSource) -> np.ndarray:
    """
    Load canonical PCM into a float32 array normalized to [-1, 1].

    Accepts a path to a 16 kHz mono 16-bit WAV file, raw s16le bytes,
    or a numpy array (int16 samples or float32 already normalized).
    """
    if isinstance(pcm_source, (str, Path)):
        with wave.open(str(pcm_source), 'rb') as wf:
            if wf.getframerate() != SAMPLE_RATE or wf.getnchannels() != 1 or wf.getsampwidth() != 2:
                raise ValueError(
                    f"{pcm_source} is not canonical PCM "
                    f"({wf.getframerate()} Hz, {wf.getnchannels()} ch, {8 * wf.getsampwidth()} bit)"
                )
            pcm_source = wf.readframes(wf.getnframes())

    if isinstance(pcm_source, (bytes, bytearray, memoryview)):
        audio = np.frombuffer(pcm_source, dtype=np.int16)
    else:
        audio = np.asarray(pcm_source)

    if audio.dtype == np.float32:
        return audio
    if audio.dtype == np.int16:
        return audio.astype(np.float32) / 32768.0
    return audio.astype(np.float32)


class TranscriptionEngine(ABC):
    """
    A speech recognition backend.

    process() turns canonical PCM into a lazy sequence of RecognizedSegment
    in non-decreasing start order. The sequence is consumed once; nothing is
    decoded until the caller asks for the next segment.
    """

    ENGINE_ID: str = "base"
    ENGINE_NAME: str = "Base Engine"

    def __init__(self):
        self._model = None
        self._device: Optional[str] = None
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def device(self) -> Optional[str]:
        """Device the model actually ended up on, after any fallback."""
        return self._device

    @abstractmethod
    def load(self, model_path: str, device: str = "auto", compute_type: str = "default") -> None:
        """
        Load weights from a local model directory.

        Raises:
            AssetUnavailable: If the model cannot be loaded on any device
        """

    @abstractmethod
    def process(
        self,
        pcm_source: PcmSource,
        cancellation_token: Optional[CancellationToken] = None,
        language: Optional[str] = None,
        **kwargs
    ) -> Iterator[RecognizedSegment]:
        """
        Recognize 16 kHz mono PCM.

        The token is checked before each segment is decoded. language=None
        detects the language. Engine failures part-way through raise
        TranscriptionFault from the iterator.
        """

    @abstractmethod
    def get_supported_models(self) -> List[ModelInfo]:
        """Static metadata for every model id this engine accepts."""

    @classmethod
    def is_available(cls) -> bool:
        """Whether the engine's third-party dependencies are importable."""
        return True

    @classmethod
    def get_install_hint(cls) -> str:
        return "Install required dependencies."
