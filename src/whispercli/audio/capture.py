"""
Live audio capture.

A sounddevice callback stream delivers 30 ms blocks of 16 kHz mono int16 PCM.
The callback never blocks: it hands each block to a bounded queue with
put_nowait and drops the block when the writer falls behind. A dedicated
writer thread drains the queue into the sink (WAV file or memory) and fans
frames out to listeners such as the streaming speech segmenter.

stop() may be called concurrently from several places. Exactly one call does
the teardown; every caller waits on the same future, which resolves only
after the sink has been flushed and closed.
"""

import io
import queue
import threading
import time
import uuid
import wave
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import DeviceError, IOFault
from ..logger import get_logger, log_error

logger = get_logger('audio.capture')

SAMPLE_RATE = 16000
CHANNELS = 1
SAMPLE_WIDTH = 2  # bytes per sample (int16)
BLOCK_MS = 30  # matches the webrtcvad frame size

FrameListener = Callable[[bytes, float], None]

_SENTINEL = object()


class SessionState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"


@dataclass
class RecordingSession:
    """Bookkeeping for one capture run."""
    id: str
    sink_path: Optional[Path]
    device_name: Optional[str] = None
    state: SessionState = SessionState.IDLE
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    frames_written: int = 0
    frames_dropped: int = 0
    samples_written: int = 0

    @property
    def duration_seconds(self) -> float:
        return self.samples_written / SAMPLE_RATE


def query_input_devices() -> List[dict]:
    """
    List input-capable devices. Position in the list is the device index.

    Raises:
        DeviceError: PortAudio is missing or the host API query failed
    """
    try:
        import sounddevice as sd
        all_devices = sd.query_devices()
    except Exception as e:
        raise DeviceError(f"Could not query audio devices: {e}") from e

    devices = []
    for i, dev in enumerate(all_devices):
        if dev['max_input_channels'] > 0:
            dev_copy = dict(dev)
            dev_copy['index'] = i
            devices.append(dev_copy)
    return devices


def _default_stream_factory(**kwargs):
    import sounddevice as sd
    return sd.InputStream(**kwargs)


class AudioCaptureSession:
    """Owns one capture device for its lifetime and streams frames to a sink."""

    def __init__(
        self,
        sink_path=None,
        sample_rate: int = SAMPLE_RATE,
        block_ms: int = BLOCK_MS,
        queue_max_frames: int = 500,
        device_lister: Callable[[], List[dict]] = query_input_devices,
        stream_factory: Callable = _default_stream_factory,
    ):
        self.sample_rate = sample_rate
        self.blocksize = int(sample_rate * block_ms / 1000)
        self.session = RecordingSession(
            id=uuid.uuid4().hex,
            sink_path=Path(sink_path) if sink_path else None,
        )

        self._device_lister = device_lister
        self._stream_factory = stream_factory
        self._frames: queue.Queue = queue.Queue(maxsize=queue_max_frames)
        self._listeners: List[FrameListener] = []

        self._stream = None
        self._writer: Optional[threading.Thread] = None
        self._wav: Optional[wave.Wave_write] = None
        self._buffer: Optional[io.BytesIO] = None

        self._state_lock = threading.Lock()
        self._stop_started = False
        self._stopped: Future = Future()
        self._write_error: Optional[BaseException] = None
        self.stop_executions = 0

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def stopped_future(self) -> Future:
        """Resolves with the session once the sink is flushed and closed."""
        return self._stopped

    def add_frame_listener(self, listener: FrameListener) -> None:
        """Receive every written frame with its start offset in seconds."""
        self._listeners.append(listener)

    def start(self, device_index: int) -> RecordingSession:
        """
        Validate the device, open the sink and start streaming.

        Raises:
            DeviceError: No input devices, or device_index outside [0, count)
        """
        with self._state_lock:
            if self.session.state is SessionState.RECORDING:
                return self.session
            if self.session.state is SessionState.STOPPED:
                raise RuntimeError("A capture session cannot be restarted")

            try:
                devices = self._device_lister()
            except DeviceError:
                raise
            except Exception as e:
                raise DeviceError(f"Could not query audio devices: {e}") from e
            if not devices:
                raise DeviceError("No audio input devices found.")

            logger.info(f"Found {len(devices)} audio input device(s):")
            for i, dev in enumerate(devices):
                logger.info(f"  Device {i}: {dev.get('name', 'unknown')}")

            if not isinstance(device_index, int) or not 0 <= device_index < len(devices):
                raise DeviceError(
                    f"Invalid microphone index {device_index}. Valid range is 0-{len(devices) - 1}."
                )

            device = devices[device_index]
            self.session.device_name = device.get('name')
            logger.info(f"Using microphone {device_index}: {self.session.device_name}")

            self._open_sink()
            self._writer = threading.Thread(
                target=self._write_frames, name=f"capture-writer-{self.session.id[:8]}", daemon=True
            )
            self._writer.start()

            try:
                self._stream = self._stream_factory(
                    samplerate=self.sample_rate,
                    channels=CHANNELS,
                    dtype='int16',
                    blocksize=self.blocksize,
                    device=device.get('index', device_index),
                    callback=self._callback,
                )
                self._stream.start()
            except Exception as e:
                self._frames.put(_SENTINEL)
                self._writer.join()
                self._close_sink()
                self.session.state = SessionState.STOPPED
                self._stop_started = True
                self._stopped.set_result(self.session)
                raise DeviceError(f"Could not open microphone {device_index}: {e}") from e

            self.session.state = SessionState.RECORDING
            self.session.started_at = time.monotonic()
            logger.debug(f"Capture session {self.session.id} recording")
            return self.session

    def _callback(self, indata, frames, time_info, status):
        """sounddevice callback. Runs on the audio thread; must not block."""
        if status:
            logger.debug(f"Audio callback status: {status}")
        if indata is None or len(indata) == 0:
            return
        try:
            self._frames.put_nowait(indata.tobytes())
        except queue.Full:
            self.session.frames_dropped += 1

    def _open_sink(self) -> None:
        if self.session.sink_path is None:
            self._buffer = io.BytesIO()
            return
        self.session.sink_path.parent.mkdir(parents=True, exist_ok=True)
        self._wav = wave.open(str(self.session.sink_path), 'wb')
        self._wav.setnchannels(CHANNELS)
        self._wav.setsampwidth(SAMPLE_WIDTH)
        self._wav.setframerate(self.sample_rate)

    def _close_sink(self) -> None:
        if self._wav is not None:
            wav, self._wav = self._wav, None
            wav.close()

    def _write_frames(self) -> None:
        """
        Writer thread: drain the queue into the sink until the sentinel.

        A failed sink write is recorded and the rest of the audio discarded;
        the queue keeps draining so the callback and stop() never wait on it.
        """
        while True:
            frame = self._frames.get()
            if frame is _SENTINEL:
                return
            if self._write_error is not None:
                self.session.frames_dropped += 1
                continue

            offset = self.session.samples_written / self.sample_rate
            try:
                if self._wav is not None:
                    self._wav.writeframes(frame)
                else:
                    self._buffer.write(frame)
            except Exception as e:
                self._write_error = e
                log_error("Writing captured audio failed, discarding the rest", e)
                continue
            self.session.frames_written += 1
            self.session.samples_written += len(frame) // SAMPLE_WIDTH

            for listener in self._listeners:
                try:
                    listener(frame, offset)
                except Exception as e:
                    logger.warning(f"Frame listener failed: {e}")

    def stop(self, timeout: Optional[float] = None) -> RecordingSession:
        """
        Stop capture, flush and close the sink. Idempotent and thread-safe.

        Returns once the sink is fully readable, regardless of which caller
        performed the teardown.

        Raises:
            IOFault: The sink could not be written or closed; every caller
                sees the same error
        """
        with self._state_lock:
            first = not self._stop_started
            self._stop_started = True

        if first:
            self._teardown()
        return self._stopped.result(timeout)

    def _join_writer(self) -> None:
        while self._writer.is_alive():
            try:
                self._frames.put(_SENTINEL, timeout=0.1)
                break
            except queue.Full:
                continue
        self._writer.join()
        self._writer = None

    def _teardown(self) -> None:
        self.stop_executions += 1
        try:
            if self._stream is not None:
                try:
                    self._stream.stop()
                    self._stream.close()
                except Exception as e:
                    logger.warning(f"Error closing audio stream: {e}")
                self._stream = None

            try:
                if self._writer is not None:
                    self._join_writer()
            finally:
                try:
                    self._close_sink()
                except OSError as e:
                    self._write_error = self._write_error or e
                self.session.state = SessionState.STOPPED
                self.session.stopped_at = time.monotonic()

            if self.session.frames_dropped:
                logger.warning(f"Dropped {self.session.frames_dropped} audio block(s)")
            if self._write_error is not None:
                target = self.session.sink_path or "memory buffer"
                self._stopped.set_exception(
                    IOFault(f"Could not write captured audio to {target}: {self._write_error}")
                )
                return
            logger.info(
                f"Recording stopped. {self.session.duration_seconds:.2f}s captured"
                + (f" to {self.session.sink_path}" if self.session.sink_path else "")
            )
            self._stopped.set_result(self.session)
        except BaseException as e:
            self.session.state = SessionState.STOPPED
            if not self._stopped.done():
                self._stopped.set_exception(e)
            raise

    def audio_bytes(self) -> bytes:
        """Raw PCM captured into the in-memory sink. Valid after stop()."""
        if self._buffer is None:
            raise RuntimeError("Session writes to a file sink")
        return self._buffer.getvalue()

    def __enter__(self) -> "AudioCaptureSession":
        return self

    def __exit__(self, *args) -> None:
        self.stop()
