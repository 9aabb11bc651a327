"""
Speech recognition backends.

Only faster-whisper ships today; engines plug in through register_engine.
"""

from .base import (
    TranscriptionEngine,
    RecognizedSegment,
    ModelInfo,
    EngineNotAvailableError,
    load_pcm,
)
from .factory import (
    create_engine,
    get_all_models,
    get_engine_for_model,
    get_model_info,
    get_default_engine,
    register_engine,
)

__all__ = [
    "TranscriptionEngine",
    "RecognizedSegment",
    "ModelInfo",
    "EngineNotAvailableError",
    "load_pcm",
    "create_engine",
    "get_all_models",
    "get_engine_for_model",
    "get_model_info",
    "get_default_engine",
    "register_engine",
]
