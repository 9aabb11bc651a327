"""
Tests for the engine registry and the faster-whisper adapter.
"""

import sys
import types
from collections import namedtuple

import numpy as np
import pytest

from conftest import write_wav
from whispercli.cancellation import CancellationToken
from whispercli.engines import (
    create_engine,
    get_all_models,
    get_engine_for_model,
    get_model_info,
    load_pcm,
)
from whispercli.engines.whisper_engine import WhisperEngine
from whispercli.errors import AssetUnavailable, TranscriptionFault

Segment = namedtuple("Segment", "text start end")
Info = namedtuple("Info", "language language_probability")


class FakeWhisperModel:
    """faster_whisper.WhisperModel stand-in with scripted segments."""

    instances = []
    fail_on_device = None
    segments = [Segment(" one", 0.0, 1.0), Segment(" two", 1.0, 2.0), Segment(" three", 2.0, 3.0)]
    fail_at = None

    def __init__(self, model_path, device, compute_type):
        if device == FakeWhisperModel.fail_on_device:
            raise RuntimeError(f"{device} unavailable")
        self.model_path = model_path
        self.device = device
        self.compute_type = compute_type
        self.transcribe_kwargs = None
        self.decoded = 0
        FakeWhisperModel.instances.append(self)

    def transcribe(self, audio, **kwargs):
        self.transcribe_kwargs = kwargs
        self.audio = audio

        def generate():
            for i, segment in enumerate(FakeWhisperModel.segments):
                if FakeWhisperModel.fail_at == i:
                    raise RuntimeError("CUDA out of memory")
                self.decoded += 1
                yield segment

        return generate(), Info("en", 0.98)


@pytest.fixture
def fake_faster_whisper(monkeypatch):
    FakeWhisperModel.instances = []
    FakeWhisperModel.fail_on_device = None
    FakeWhisperModel.fail_at = None
    monkeypatch.setitem(sys.modules, "faster_whisper", types.SimpleNamespace(WhisperModel=FakeWhisperModel))
    return FakeWhisperModel


@pytest.fixture
def loaded_engine(fake_faster_whisper):
    engine = WhisperEngine()
    engine.load("/models/small", device="cpu")
    return engine


class TestRegistry:
    """Tests for the engine factory."""

    def test_whisper_models_listed(self):
        """All Whisper sizes are known, including turbo."""
        ids = {m.id for m in get_all_models()}
        assert {"tiny", "base", "small", "medium", "large-v3", "large-v3-turbo", "small.en"} <= ids

    def test_engine_for_model(self):
        """Models map back to their engine."""
        assert get_engine_for_model("small") == "whisper"
        assert get_engine_for_model("nope") is None

    def test_model_info(self):
        """Model metadata carries the hub repo."""
        assert get_model_info("medium").repo_id == "Systran/faster-whisper-medium"

    def test_unknown_engine(self):
        """Unknown engine ids are rejected."""
        with pytest.raises(ValueError):
            create_engine("does-not-exist")


class TestLoadPcm:
    """Tests for canonical PCM loading."""

    def test_bytes_normalized(self):
        """int16 bytes become float32 in [-1, 1)."""
        audio = load_pcm(np.array([0, 16384, -32768], dtype=np.int16).tobytes())
        assert audio.dtype == np.float32
        assert audio.tolist() == [0.0, 0.5, -1.0]

    def test_wav_file(self, temp_dir):
        """Canonical WAV files load directly."""
        path = write_wav(temp_dir / "a.wav", np.zeros(1600, dtype=np.int16))
        assert load_pcm(path).size == 1600

    def test_non_canonical_wav_rejected(self, temp_dir):
        """Anything but 16 kHz mono 16-bit must go through the normalizer first."""
        path = write_wav(temp_dir / "a.wav", np.zeros(100, dtype=np.int16), sample_rate=44100)
        with pytest.raises(ValueError):
            load_pcm(path)


class TestWhisperEngine:
    """Tests for the faster-whisper adapter."""

    def test_load_uses_device_and_compute_type(self, fake_faster_whisper):
        """CPU defaults to int8."""
        engine = WhisperEngine()
        engine.load("/models/small", device="cpu")

        model = fake_faster_whisper.instances[0]
        assert model.device == "cpu"
        assert model.compute_type == "int8"
        assert engine.is_loaded

    def test_gpu_failure_falls_back_to_cpu(self, fake_faster_whisper):
        """A CUDA load failure retries on CPU."""
        fake_faster_whisper.fail_on_device = "cuda"
        engine = WhisperEngine()
        engine.load("/models/small", device="cuda")

        assert engine.device == "cpu"

    def test_cpu_failure_is_asset_unavailable(self, fake_faster_whisper):
        """If CPU also fails, the model is unavailable."""
        fake_faster_whisper.fail_on_device = "cpu"
        with pytest.raises(AssetUnavailable):
            WhisperEngine().load("/models/small", device="cpu")

    def test_process_yields_segments_in_order(self, loaded_engine):
        """Segments come back in order with the detected language."""
        segments = list(loaded_engine.process(np.zeros(16000, dtype=np.int16)))

        assert [s.text for s in segments] == [" one", " two", " three"]
        assert all(s.language == "en" for s in segments)
        assert [s.start for s in segments] == [0.0, 1.0, 2.0]

    def test_process_is_lazy(self, loaded_engine, fake_faster_whisper):
        """Nothing is decoded until segments are requested."""
        stream = loaded_engine.process(np.zeros(16000, dtype=np.int16))
        next(stream)

        assert fake_faster_whisper.instances[0].decoded == 1

    def test_auto_language_detects(self, loaded_engine, fake_faster_whisper):
        """'auto' is passed to faster-whisper as None."""
        list(loaded_engine.process(np.zeros(16000, dtype=np.int16), language="auto"))
        assert fake_faster_whisper.instances[0].transcribe_kwargs["language"] is None

    def test_cancellation_checked_between_segments(self, loaded_engine, fake_faster_whisper):
        """A cancelled token stops decoding before the next segment."""
        token = CancellationToken()
        stream = loaded_engine.process(np.zeros(16000, dtype=np.int16), cancellation_token=token)

        first = next(stream)
        token.cancel()
        rest = list(stream)

        assert first.text == " one"
        assert rest == []
        assert fake_faster_whisper.instances[0].decoded == 1

    def test_mid_stream_error_becomes_fault(self, loaded_engine, fake_faster_whisper):
        """Decoder exceptions surface as TranscriptionFault."""
        fake_faster_whisper.fail_at = 1
        stream = loaded_engine.process(np.zeros(16000, dtype=np.int16))

        assert next(stream).text == " one"
        with pytest.raises(TranscriptionFault):
            next(stream)

    def test_process_requires_load(self):
        """Processing without a model is a programming error."""
        with pytest.raises(RuntimeError):
            list(WhisperEngine().process(b"\x00\x00"))

    def test_empty_audio_yields_nothing(self, loaded_engine):
        """Empty input produces no segments."""
        assert list(loaded_engine.process(b"")) == []
