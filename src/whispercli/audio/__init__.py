"""
Audio capture, stop conditions and speech segmentation for live input.
"""

from .capture import (
    AudioCaptureSession,
    RecordingSession,
    SessionState,
    query_input_devices,
)
from .stop_conditions import (
    StopCondition,
    KeyPress,
    Predicate,
    ExternalCancellation,
    FixedDuration,
    AnyOf,
)

__all__ = [
    "AudioCaptureSession",
    "RecordingSession",
    "SessionState",
    "query_input_devices",
    "StopCondition",
    "KeyPress",
    "Predicate",
    "ExternalCancellation",
    "FixedDuration",
    "AnyOf",
]
