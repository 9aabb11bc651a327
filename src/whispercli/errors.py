"""
Error taxonomy for whispercli.

Preparation errors (configuration, assets, devices, conversion) are fatal and
unwind immediately. Errors raised after capture or transcription has begun
are drained first: the partial transcript is persisted before they surface.
"""


class WhisperCliError(Exception):
    """Base class for all whispercli errors."""

    exit_code = 1


class ConfigurationError(WhisperCliError):
    """Invalid command-line or config file input. No work is performed."""

    exit_code = 2


class AssetUnavailable(WhisperCliError):
    """A model asset could not be resolved (download failed or timed out)."""

    def __init__(self, model_id: str, reason: str):
        self.model_id = model_id
        self.reason = reason
        super().__init__(f"Model '{model_id}' unavailable: {reason}")


class DeviceError(WhisperCliError):
    """No capture devices, or the requested device index is out of range."""


class AlreadyRunning(WhisperCliError):
    """Another instance holds the lock marker."""

    exit_code = 0

    def __init__(self, marker_path, reason: str = "another instance is already running"):
        self.marker_path = marker_path
        super().__init__(f"{reason} (lock: {marker_path})")


class TranscriptionFault(WhisperCliError):
    """The engine failed mid-stream. Recovered locally by halting the stream."""


class IOFault(WhisperCliError):
    """Output could not be written or a temporary file could not be removed."""


class ConversionError(WhisperCliError):
    """ffmpeg is missing or failed to normalize a specific input."""
