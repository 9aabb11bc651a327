"""
Engine registry.

Engine modules register themselves with @register_engine on import; the
pipeline resolves a model id to its engine and instantiates it here.
"""

from typing import Dict, List, Optional, Type

from .base import TranscriptionEngine, ModelInfo, EngineNotAvailableError


_engine_registry: Dict[str, Type[TranscriptionEngine]] = {}


def register_engine(engine_class: Type[TranscriptionEngine]) -> Type[TranscriptionEngine]:
    """Class decorator adding an engine under its ENGINE_ID."""
    _engine_registry[engine_class.ENGINE_ID] = engine_class
    return engine_class


def get_available_engines() -> List[str]:
    """Registered engine ids whose dependencies are installed."""
    return [engine_id for engine_id, cls in _engine_registry.items() if cls.is_available()]


def create_engine(engine_id: str) -> TranscriptionEngine:
    """
    Instantiate a registered engine.

    Raises:
        ValueError: If engine_id was never registered
        EngineNotAvailableError: If its dependencies are missing
    """
    engine_class = _engine_registry.get(engine_id)
    if engine_class is None:
        raise ValueError(f"Unknown engine '{engine_id}'. Registered: {sorted(_engine_registry)}")
    if not engine_class.is_available():
        raise EngineNotAvailableError(engine_id, engine_class.get_install_hint())
    return engine_class()


def get_all_models() -> List[ModelInfo]:
    """
    Every model any registered engine knows about.

    Model metadata is static, so engines are listed even when their
    dependencies are missing.
    """
    models = []
    for engine_class in _engine_registry.values():
        models.extend(engine_class().get_supported_models())
    return models


def get_model_info(model_id: str) -> Optional[ModelInfo]:
    for info in get_all_models():
        if info.id == model_id:
            return info
    return None


def get_engine_for_model(model_id: str) -> Optional[str]:
    info = get_model_info(model_id)
    return info.engine if info else None


def get_default_engine() -> str:
    """Engine used for local model directories; whisper unless it is missing."""
    available = get_available_engines()
    if not available:
        raise EngineNotAvailableError("whisper", "pip install faster-whisper")
    return "whisper" if "whisper" in available else available[0]


def _register_engines():
    from . import whisper_engine  # noqa: F401


_register_engines()
