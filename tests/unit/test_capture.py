"""
Tests for AudioCaptureSession.
"""

import sys
import threading
import time
import types
import wave

import numpy as np
import pytest

from conftest import fake_devices
from whispercli.audio.capture import AudioCaptureSession, SessionState, query_input_devices
from whispercli.errors import DeviceError, IOFault


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def make_session(stream_factory, sink_path=None, devices=None, **kwargs):
    return AudioCaptureSession(
        sink_path=sink_path,
        device_lister=lambda: fake_devices(2) if devices is None else devices,
        stream_factory=stream_factory,
        **kwargs
    )


class TestDeviceValidation:
    """Invalid devices fail before any I/O."""

    @pytest.mark.parametrize("index", [-1, 2, 99])
    def test_out_of_range_index(self, temp_dir, stream_factory, index):
        """Indices outside [0, device_count) raise DeviceError."""
        sink = temp_dir / "capture.wav"
        session = make_session(stream_factory, sink_path=sink)

        with pytest.raises(DeviceError):
            session.start(index)

        assert not sink.exists()
        assert stream_factory.streams == []
        assert session.state is SessionState.IDLE

    def test_no_devices(self, temp_dir, stream_factory):
        """No input devices at all is a DeviceError."""
        sink = temp_dir / "capture.wav"
        session = make_session(stream_factory, sink_path=sink, devices=[])

        with pytest.raises(DeviceError):
            session.start(0)

        assert not sink.exists()
        assert stream_factory.streams == []

    def test_non_integer_index(self, stream_factory):
        """A non-integer index is rejected the same way."""
        session = make_session(stream_factory)
        with pytest.raises(DeviceError):
            session.start("1")

    def test_index_maps_to_listing_position(self, stream_factory):
        """The index selects by position in the input-device listing."""
        session = make_session(stream_factory)
        session.start(1)
        session.stop()

        assert stream_factory.streams[0].kwargs["device"] == 2
        assert session.session.device_name == "Mic 1"

    def test_stream_open_failure(self, temp_dir):
        """A device that fails to open leaves the session stopped."""
        def broken(**kwargs):
            raise OSError("device busy")

        session = make_session(broken, sink_path=temp_dir / "capture.wav")
        with pytest.raises(DeviceError):
            session.start(0)

        assert session.state is SessionState.STOPPED
        assert session.stopped_future.done()


class TestRecording:
    """Frames flow to the sink and listeners."""

    def test_wav_sink_is_canonical(self, temp_dir, stream_factory):
        """File sink is 16 kHz mono 16-bit and readable after stop()."""
        sink = temp_dir / "capture.wav"
        session = make_session(stream_factory, sink_path=sink)
        session.start(0)
        assert wait_for(lambda: session.session.frames_written >= 5)
        recorded = session.stop()

        with wave.open(str(sink), 'rb') as wf:
            assert wf.getframerate() == 16000
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getnframes() == recorded.samples_written
        assert recorded.state is SessionState.STOPPED

    def test_memory_sink(self, stream_factory):
        """Without a sink path, PCM is kept in memory."""
        session = make_session(stream_factory)
        session.start(0)
        assert wait_for(lambda: session.session.frames_written >= 3)
        session.stop()

        assert len(session.audio_bytes()) == session.session.samples_written * 2

    def test_frame_listeners_get_increasing_offsets(self, stream_factory):
        """Listeners see every frame with its start offset."""
        offsets = []
        session = make_session(stream_factory)
        session.add_frame_listener(lambda frame, offset: offsets.append(offset))
        session.start(0)
        assert wait_for(lambda: len(offsets) >= 4)
        session.stop()

        assert offsets[0] == 0.0
        assert offsets == sorted(offsets)
        assert offsets[1] == pytest.approx(0.03)

    def test_failing_listener_does_not_stop_capture(self, stream_factory):
        """A listener error is logged and recording continues."""
        def bad_listener(frame, offset):
            raise ValueError("listener bug")

        session = make_session(stream_factory)
        session.add_frame_listener(bad_listener)
        session.start(0)
        assert wait_for(lambda: session.session.frames_written >= 3)
        session.stop()

    def test_callback_drops_when_queue_full(self):
        """The audio callback never blocks; overflow frames are counted and dropped."""
        session = AudioCaptureSession(queue_max_frames=2)
        block = np.zeros((480, 1), dtype=np.int16)

        for _ in range(5):
            session._callback(block, 480, None, None)

        assert session.session.frames_dropped == 3


class TestStop:
    """stop() is idempotent and thread-safe."""

    def test_concurrent_stop_runs_teardown_once(self, stream_factory):
        """Racing stop() calls share one teardown and all see a closed sink."""
        session = make_session(stream_factory)
        session.start(0)
        assert wait_for(lambda: session.session.frames_written >= 2)

        barrier = threading.Barrier(6)
        results = []

        def stop():
            barrier.wait()
            results.append(session.stop(timeout=5))

        threads = [threading.Thread(target=stop) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert session.stop_executions == 1
        assert len(results) == 6
        assert all(r is session.session for r in results)
        assert stream_factory.streams[0].closed

    def test_stop_twice(self, stream_factory):
        """A second stop() returns the same session without tearing down again."""
        session = make_session(stream_factory)
        session.start(0)
        first = session.stop()
        second = session.stop()

        assert first is second
        assert session.stop_executions == 1

    def test_no_frames_after_stop(self, stream_factory):
        """Nothing is written once stop() has returned."""
        session = make_session(stream_factory)
        session.start(0)
        assert wait_for(lambda: session.session.frames_written >= 2)
        session.stop()
        written = session.session.frames_written
        time.sleep(0.05)

        assert session.session.frames_written == written

    def test_cannot_restart(self, stream_factory):
        """A stopped session stays stopped."""
        session = make_session(stream_factory)
        session.start(0)
        session.stop()

        with pytest.raises(RuntimeError):
            session.start(0)

    def test_sink_write_failure_does_not_hang_stop(self, temp_dir, stream_factory, monkeypatch):
        """A dead write path still lets stop() close everything and report IOFault."""
        def disk_full(self, data):
            raise OSError("No space left on device")

        monkeypatch.setattr(wave.Wave_write, "writeframes", disk_full)
        session = make_session(stream_factory, sink_path=temp_dir / "capture.wav", queue_max_frames=5)
        session.start(0)
        # Long enough for the callback to outrun a small queue
        time.sleep(0.3)

        errors = []

        def stop():
            try:
                session.stop(timeout=5)
            except IOFault as e:
                errors.append(e)

        stopper = threading.Thread(target=stop, daemon=True)
        stopper.start()
        stopper.join(3)

        assert not stopper.is_alive()
        assert len(errors) == 1
        assert "No space left on device" in str(errors[0])
        assert session.state is SessionState.STOPPED
        assert session.stop_executions == 1
        assert stream_factory.streams[0].closed
        # Later callers see the same failure
        with pytest.raises(IOFault):
            session.stop()


class TestDeviceQuery:
    """Host audio failures surface as DeviceError."""

    def test_portaudio_missing(self, monkeypatch):
        """An unusable sounddevice backend is a device problem, not a crash."""
        def no_portaudio():
            raise OSError("PortAudio library not found")

        monkeypatch.setitem(sys.modules, "sounddevice", types.SimpleNamespace(query_devices=no_portaudio))

        with pytest.raises(DeviceError, match="PortAudio library not found"):
            query_input_devices()

    def test_only_input_devices_listed(self, monkeypatch):
        """Output-only devices are skipped; index keeps the host numbering."""
        monkeypatch.setitem(sys.modules, "sounddevice", types.SimpleNamespace(query_devices=lambda: [
            {"name": "Speakers", "max_input_channels": 0},
            {"name": "USB Mic", "max_input_channels": 1},
        ]))

        devices = query_input_devices()

        assert [d["name"] for d in devices] == ["USB Mic"]
        assert devices[0]["index"] == 1

    def test_lister_failure_on_start(self, stream_factory):
        """start() turns a failing device query into DeviceError before any I/O."""
        def broken():
            raise RuntimeError("Error querying host API")

        session = AudioCaptureSession(device_lister=broken, stream_factory=stream_factory)

        with pytest.raises(DeviceError):
            session.start(0)
        assert stream_factory.streams == []
