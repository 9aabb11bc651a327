"""
Whisper transcription engine using faster-whisper.

faster-whisper is a CTranslate2 implementation that's significantly faster
than the reference PyTorch Whisper at the same accuracy.
Its transcribe() call returns a lazy generator; segments are decoded one at
a time as they are requested, which is what makes mid-stream cancellation
possible.
"""

from typing import Iterator, List, Optional

from .base import (
    ModelInfo,
    PcmSource,
    RecognizedSegment,
    TranscriptionEngine,
    load_pcm,
)
from .factory import register_engine
from .. import compat
from ..cancellation import CancellationToken
from ..errors import AssetUnavailable, TranscriptionFault
from ..logger import get_logger

logger = get_logger('engines.whisper')


def _model(id, repo_id, size_mb, description, name=None, languages=None):
    return ModelInfo(
        id=id,
        name=name or f"Whisper {id}",
        engine="whisper",
        repo_id=repo_id,
        size_mb=size_mb,
        description=description,
        languages=languages or ["multilingual"],
    )


# Model metadata
WHISPER_MODELS = [
    _model("tiny", "Systran/faster-whisper-tiny", 75, "Fastest, lowest accuracy. Good for testing."),
    _model("tiny.en", "Systran/faster-whisper-tiny.en", 75, "English-only variant of Tiny.", languages=["en"]),
    _model("base", "Systran/faster-whisper-base", 150, "Good balance of speed and accuracy for CPU."),
    _model("base.en", "Systran/faster-whisper-base.en", 150, "English-only variant of Base.", languages=["en"]),
    _model("small", "Systran/faster-whisper-small", 500, "Better accuracy, still CPU-friendly."),
    _model("small.en", "Systran/faster-whisper-small.en", 500, "English-only variant of Small.", languages=["en"]),
    _model("medium", "Systran/faster-whisper-medium", 1500, "High accuracy, needs ~2GB VRAM."),
    _model("medium.en", "Systran/faster-whisper-medium.en", 1500, "English-only variant of Medium.", languages=["en"]),
    _model("large-v1", "Systran/faster-whisper-large-v1", 3000, "Original large model."),
    _model("large-v2", "Systran/faster-whisper-large-v2", 3000, "Previous best model, still excellent."),
    _model("large-v3", "Systran/faster-whisper-large-v3", 3000, "Best accuracy, needs ~4GB VRAM."),
    _model("large-v3-turbo", "mobiuslabsgmbh/faster-whisper-large-v3-turbo", 1600,
           "Pruned large-v3 decoder. Near large-v3 accuracy at several times the speed."),
    _model("distil-large-v3", "Systran/faster-distil-whisper-large-v3", 1500,
           "Distilled large-v3, English-focused.", languages=["en"]),
]


@register_engine
class WhisperEngine(TranscriptionEngine):
    """Transcription engine using OpenAI Whisper via faster-whisper."""

    ENGINE_ID = "whisper"
    ENGINE_NAME = "Whisper (faster-whisper)"

    def __init__(self):
        super().__init__()
        self.compute_type: Optional[str] = None
        self.beam_size = 5

    @classmethod
    def is_available(cls) -> bool:
        """Check if faster-whisper is installed."""
        try:
            import faster_whisper  # noqa: F401
            return True
        except ImportError:
            return False

    @classmethod
    def get_install_hint(cls) -> str:
        return "pip install faster-whisper"

    def load(self, model_path: str, device: str = "auto", compute_type: str = "default") -> None:
        """Load a Whisper model from a local CTranslate2 model directory."""
        from faster_whisper import WhisperModel

        if device == "auto":
            device = compat.get_default_device()
        if compute_type == "default":
            compute_type = compat.default_compute_type(device)

        logger.info(f"Loading model '{model_path}' on {device} ({compute_type})...")

        try:
            self._model = WhisperModel(str(model_path), device=device, compute_type=compute_type)
            self._device = device
        except Exception as e:
            if device == "cpu":
                raise AssetUnavailable(str(model_path), f"failed to load model: {e}") from e
            logger.warning(f"GPU load failed ({e}), falling back to CPU...")
            compute_type = compat.default_compute_type("cpu")
            try:
                self._model = WhisperModel(str(model_path), device="cpu", compute_type=compute_type)
            except Exception as cpu_error:
                raise AssetUnavailable(str(model_path), f"failed to load model: {cpu_error}") from cpu_error
            self._device = "cpu"

        self.compute_type = compute_type
        self._loaded = True
        logger.info(f"Model loaded on {self._device} ({compute_type})")

    def process(
        self,
        pcm_source: PcmSource,
        cancellation_token: Optional[CancellationToken] = None,
        language: Optional[str] = None,
        **kwargs
    ) -> Iterator[RecognizedSegment]:
        """Transcribe audio using Whisper, yielding segments as they decode."""
        if not self._loaded or self._model is None:
            raise RuntimeError("Model not loaded. Call load() first.")

        audio = load_pcm(pcm_source)
        if audio.size == 0:
            return

        if language in (None, "", "auto"):
            language = None

        try:
            segments_iter, info = self._model.transcribe(
                audio=audio,
                language=language,
                beam_size=kwargs.get("beam_size", self.beam_size),
                vad_filter=kwargs.get("vad_filter", True),
                condition_on_previous_text=kwargs.get("condition_on_previous_text", False),
                initial_prompt=kwargs.get("initial_prompt"),
            )
        except Exception as e:
            raise TranscriptionFault(f"Whisper failed to start decoding: {e}") from e

        detected = info.language
        logger.debug(f"Detected language '{detected}' (p={info.language_probability:.2f})")

        while True:
            if cancellation_token is not None and cancellation_token.is_cancelled:
                return
            try:
                segment = next(segments_iter)
            except StopIteration:
                return
            except Exception as e:
                raise TranscriptionFault(f"Whisper failed mid-stream: {e}") from e

            yield RecognizedSegment(
                text=segment.text,
                language=detected,
                start=segment.start,
                end=segment.end,
            )

    def get_supported_models(self) -> List[ModelInfo]:
        """Get list of supported Whisper models."""
        return WHISPER_MODELS.copy()
