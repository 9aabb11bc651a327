"""
Pytest fixtures for whispercli tests.
"""

import os
import sys
import tempfile
import threading
import time
import wave
from pathlib import Path
from typing import List

import numpy as np
import pytest

# Keep logs, models and config out of the user's home during tests
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="whispercli-tests-"))
os.environ["WHISPERCLI_CACHE_DIR"] = str(_SESSION_DIR / "cache")
os.environ["WHISPERCLI_CONFIG"] = str(_SESSION_DIR / "config.yaml")

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from whispercli.engines.base import RecognizedSegment, TranscriptionEngine, ModelInfo, load_pcm  # noqa: E402
from whispercli.errors import TranscriptionFault  # noqa: E402
from whispercli.utils import ConfigManager  # noqa: E402

SAMPLE_RATE = 16000
BLOCK_SAMPLES = 480  # 30 ms


def seg(text, start=0.0, end=None, language="en"):
    """Shorthand for building a RecognizedSegment."""
    return RecognizedSegment(text=text, language=language, start=start, end=end if end is not None else start + 1.0)


def write_wav(path, samples, sample_rate=SAMPLE_RATE):
    """Write int16 mono samples to a WAV file."""
    path = Path(path)
    with wave.open(str(path), 'wb') as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(np.asarray(samples, dtype=np.int16).tobytes())
    return path


class FakeEngine(TranscriptionEngine):
    """Engine returning scripted segments instead of running a model."""

    ENGINE_ID = "fake"
    ENGINE_NAME = "Fake Engine"

    def __init__(self, segments=None, fail_after=None, per_call=None, on_segment=None):
        super().__init__()
        self.segments = list(segments or [])
        self.fail_after = fail_after
        self.per_call = per_call
        self.on_segment = on_segment
        self.calls: List[dict] = []
        self.loaded_from = None
        self.yielded = 0

    def load(self, model_path, device="auto", compute_type="default"):
        self.loaded_from = model_path
        self._device = "cpu" if device == "auto" else device
        self._loaded = True

    def process(self, pcm_source, cancellation_token=None, language=None, **kwargs):
        audio = load_pcm(pcm_source)
        self.calls.append({"samples": int(audio.size), "language": language, "kwargs": kwargs})
        script = self.per_call(len(self.calls), audio) if self.per_call else self.segments
        for i, segment in enumerate(script):
            if cancellation_token is not None and cancellation_token.is_cancelled:
                return
            if self.fail_after is not None and i >= self.fail_after:
                raise TranscriptionFault("decoder crashed")
            self.yielded += 1
            yield segment
            if self.on_segment:
                self.on_segment(self.yielded)

    def get_supported_models(self):
        return [ModelInfo(id="fake", name="Fake", engine="fake", repo_id="none/fake", size_mb=0, description="")]


class FakeProvisioner:
    """Resolves every model to a local directory without downloading."""

    def __init__(self, root, error=None):
        self.root = Path(root)
        self.error = error
        self.resolved: List[str] = []

    def resolve(self, model_id, cancellation_token=None):
        self.resolved.append(model_id)
        if self.error is not None:
            raise self.error
        path = self.root / "models" / model_id
        path.mkdir(parents=True, exist_ok=True)
        return path


class FakeNormalizer:
    """Writes a canonical WAV of silence instead of running ffmpeg."""

    def __init__(self, root, seconds=1.0, error=None):
        self.root = Path(root)
        self.seconds = seconds
        self.error = error
        self.converted: List[Path] = []
        self.cleaned: List[Path] = []

    def convert(self, input_path):
        if self.error is not None:
            raise self.error
        out = self.root / "converted" / (Path(input_path).stem + ".wav")
        out.parent.mkdir(parents=True, exist_ok=True)
        write_wav(out, np.zeros(int(SAMPLE_RATE * self.seconds), dtype=np.int16))
        self.converted.append(out)
        return out

    def cleanup(self, path):
        self.cleaned.append(Path(path))
        Path(path).unlink()
        return True


class FakeStream:
    """Stands in for sounddevice.InputStream, feeding blocks from a thread."""

    def __init__(self, callback, blocksize=BLOCK_SAMPLES, block_source=None, interval=0.002, **kwargs):
        self.callback = callback
        self.blocksize = blocksize
        self.block_source = block_source or (lambda i: np.zeros((blocksize, 1), dtype=np.int16))
        self.interval = interval
        self.kwargs = kwargs
        self.blocks_sent = 0
        self.started = False
        self.closed = False
        self._running = threading.Event()
        self._thread = None

    def start(self):
        self.started = True
        self._running.set()
        self._thread = threading.Thread(target=self._pump, daemon=True)
        self._thread.start()

    def _pump(self):
        while self._running.is_set():
            block = self.block_source(self.blocks_sent)
            if block is None:
                return
            self.callback(block, len(block), None, None)
            self.blocks_sent += 1
            time.sleep(self.interval)

    def stop(self):
        self._running.clear()
        if self._thread is not None:
            self._thread.join()

    def close(self):
        self.closed = True


class DummyVad:
    """webrtcvad.Vad stand-in: any non-zero sample counts as speech."""

    def __init__(self, level):
        self.level = level
        self.frames = 0

    def is_speech(self, frame, sample_rate):
        self.frames += 1
        return any(frame)


class DummyWebRTC:
    def __init__(self):
        self.instances: List[DummyVad] = []

    def Vad(self, level):  # noqa: N802
        vad = DummyVad(level)
        self.instances.append(vad)
        return vad


def fake_devices(count=2):
    return [
        {"index": i * 2, "name": f"Mic {i}", "max_input_channels": 1, "default_samplerate": 16000.0}
        for i in range(count)
    ]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def fresh_config():
    """Each test starts from schema defaults."""
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def dummy_webrtc(monkeypatch):
    from whispercli.audio import segmenter as seg_mod

    fake = DummyWebRTC()
    monkeypatch.setattr(seg_mod, "webrtcvad", fake)
    return fake


@pytest.fixture
def stream_factory():
    """Factory recording every FakeStream it builds."""
    streams: List[FakeStream] = []

    def factory(**kwargs):
        stream = FakeStream(**kwargs)
        streams.append(stream)
        return stream

    factory.streams = streams
    return factory
