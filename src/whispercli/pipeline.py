"""
Pipeline coordinator.

Drives one run from input to persisted transcript:

    IDLE -> PREPARING -> CAPTURING | CONVERTING -> TRANSCRIBING -> FINALIZING -> DONE

with FAILED and CANCELLED as the other terminal states. A single
CancellationToken reaches every stage. Anything that goes wrong before
capture or transcription has started unwinds immediately; anything after
that point first persists the partial transcript.
"""

import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .assets import AssetProvisioner
from .audio.capture import AudioCaptureSession
from .audio.segmenter import SpeechSegmenter, Utterance
from .audio.stop_conditions import AnyOf, ExternalCancellation, KeyPress, StopCondition
from .cancellation import CancellationToken
from .engines import create_engine, get_default_engine, get_engine_for_model
from .engines.base import RecognizedSegment, TranscriptionEngine
from .errors import ConfigurationError, IOFault, WhisperCliError
from .logger import get_logger, log_error, log_exception
from .normalizer import MediaNormalizer
from .transcript import SegmentAggregator, Transcript
from .utils import ConfigManager

logger = get_logger('pipeline')

_END_OF_SPEECH = object()


class PipelineState(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    CAPTURING = "capturing"
    CONVERTING = "converting"
    TRANSCRIBING = "transcribing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {PipelineState.DONE, PipelineState.FAILED, PipelineState.CANCELLED}


@dataclass
class PipelineOptions:
    """Everything a run needs to know. Built from config plus CLI overrides."""
    input_path: Optional[Path] = None
    model: str = "large-v3-turbo"
    language: Optional[str] = None
    device: str = "auto"
    compute_type: str = "default"
    beam_size: int = 5
    download_timeout_seconds: float = 600
    microphone_index: int = 0
    stop_key: str = "space"
    poll_interval: float = 0.1
    sample_rate: int = 16000
    queue_max_frames: int = 500
    streaming: bool = False
    vad_aggressiveness: int = 2
    silence_duration_ms: int = 900
    min_speech_ms: int = 300
    output_dir: Optional[Path] = None

    @classmethod
    def from_config(cls, input_path=None) -> "PipelineOptions":
        model_options = ConfigManager.get_config_section('model_options')
        recording_options = ConfigManager.get_config_section('recording_options')
        output_options = ConfigManager.get_config_section('output_options')

        language = model_options.get('language') or 'auto'
        output_dir = output_options.get('output_dir')
        return cls(
            input_path=Path(input_path) if input_path else None,
            model=model_options.get('model', cls.model),
            language=None if language == 'auto' else language,
            device=model_options.get('device', cls.device),
            compute_type=model_options.get('compute_type', cls.compute_type),
            beam_size=model_options.get('beam_size', cls.beam_size),
            download_timeout_seconds=model_options.get('download_timeout_seconds', cls.download_timeout_seconds),
            microphone_index=recording_options.get('microphone_index', cls.microphone_index),
            stop_key=recording_options.get('stop_key', cls.stop_key),
            poll_interval=recording_options.get('poll_interval_ms', 100) / 1000.0,
            sample_rate=recording_options.get('sample_rate', cls.sample_rate),
            queue_max_frames=recording_options.get('queue_max_frames', cls.queue_max_frames),
            streaming=bool(recording_options.get('streaming', cls.streaming)),
            vad_aggressiveness=recording_options.get('vad_aggressiveness', cls.vad_aggressiveness),
            silence_duration_ms=recording_options.get('silence_duration_ms', cls.silence_duration_ms),
            min_speech_ms=recording_options.get('min_speech_ms', cls.min_speech_ms),
            output_dir=Path(output_dir) if output_dir else None,
        )

    @property
    def is_live(self) -> bool:
        return self.input_path is None


@dataclass
class PipelineResult:
    state: PipelineState
    transcript: Optional[Transcript] = None
    output_path: Optional[Path] = None
    exit_code: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[WhisperCliError] = None

    @property
    def text(self) -> str:
        return self.transcript.text if self.transcript else ""


def output_path_for(options: PipelineOptions, now: Optional[datetime] = None) -> Path:
    """<input>.txt beside the input, or a timestamped file for live capture."""
    if options.input_path is not None:
        name = options.input_path.with_suffix('.txt').name
        directory = options.output_dir or options.input_path.parent
        return Path(directory) / name
    now = now or datetime.now()
    directory = options.output_dir or Path.cwd()
    return Path(directory) / f"recording-{now.strftime('%Y%m%d_%H%M%S')}.txt"


class PipelineCoordinator:
    """Runs capture/conversion, transcription and persistence for one input."""

    def __init__(
        self,
        options: PipelineOptions,
        cancellation_token: Optional[CancellationToken] = None,
        engine: Optional[TranscriptionEngine] = None,
        provisioner: Optional[AssetProvisioner] = None,
        normalizer: Optional[MediaNormalizer] = None,
        capture_factory: Callable[..., AudioCaptureSession] = AudioCaptureSession,
        stop_condition: Optional[StopCondition] = None,
        segmenter_factory: Callable[..., SpeechSegmenter] = SpeechSegmenter,
    ):
        self.options = options
        self.token = cancellation_token or CancellationToken()
        self.engine = engine
        self.provisioner = provisioner or AssetProvisioner(timeout_seconds=options.download_timeout_seconds)
        self.normalizer = normalizer or MediaNormalizer()
        self.capture_factory = capture_factory
        self.stop_condition = stop_condition
        self.segmenter_factory = segmenter_factory

        self.state = PipelineState.IDLE
        self.state_history: List[PipelineState] = [PipelineState.IDLE]
        self.warnings: List[str] = []
        self.polls = 0
        self.capture_session: Optional[AudioCaptureSession] = None
        self.transcript: Optional[Transcript] = None
        self.aggregator: Optional[SegmentAggregator] = None
        self._state_lock = threading.Lock()

    def _transition(self, new_state: PipelineState) -> None:
        with self._state_lock:
            if self.state in TERMINAL_STATES:
                raise RuntimeError(f"Pipeline already finished in state {self.state.value}")
            logger.debug(f"Pipeline {self.state.value} -> {new_state.value}")
            self.state = new_state
            self.state_history.append(new_state)

    def run(self) -> PipelineResult:
        """Execute the pipeline. Never raises WhisperCliError; see result.error."""
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("A pipeline can only run once")
        self._transition(PipelineState.PREPARING)

        try:
            self._prepare()
        except WhisperCliError as e:
            if self.token.is_cancelled:
                logger.info(f"Cancelled during preparation: {e}")
                self._transition(PipelineState.CANCELLED)
                return self._result(exit_code=1, error=e)
            return self._fail(e)

        if self.token.is_cancelled:
            return self._finalize()

        try:
            if self.options.is_live:
                return self._run_live()
            return self._run_file()
        except WhisperCliError as e:
            return self._drain_and_fail(e)
        except Exception as e:
            log_exception(e, "Unexpected pipeline failure")
            return self._drain_and_fail(WhisperCliError(str(e)))

    # Preparation

    def _prepare(self) -> None:
        opts = self.options
        if opts.input_path is not None and not opts.input_path.is_file():
            raise ConfigurationError(f"Input file not found: {opts.input_path}")

        self.transcript = Transcript(output_path_for(opts))
        self.aggregator = SegmentAggregator(self.transcript)

        model_path = self.provisioner.resolve(opts.model, self.token)
        if self.engine is None:
            engine_id = get_engine_for_model(opts.model) or get_default_engine()
            self.engine = create_engine(engine_id)
        if not self.engine.is_loaded:
            self.engine.load(str(model_path), device=opts.device, compute_type=opts.compute_type)

    # File input

    def _run_file(self) -> PipelineResult:
        self._transition(PipelineState.CONVERTING)
        wav_path = self.normalizer.convert(self.options.input_path)
        try:
            self._transcribe(wav_path)
        finally:
            self.normalizer.cleanup(wav_path)
        return self._finalize()

    # Live input

    def _start_capture(self) -> AudioCaptureSession:
        """Open the device while still PREPARING so device errors are fatal."""
        session = self.capture_factory(
            sample_rate=self.options.sample_rate,
            queue_max_frames=self.options.queue_max_frames,
        )
        session.start(self.options.microphone_index)
        self.capture_session = session
        return session

    def _build_stop_condition(self) -> StopCondition:
        if self.stop_condition is not None:
            return AnyOf(self.stop_condition, ExternalCancellation(self.token))
        return AnyOf(KeyPress(self.options.stop_key), ExternalCancellation(self.token))

    def _run_live(self) -> PipelineResult:
        try:
            session = self._start_capture()
        except WhisperCliError as e:
            return self._fail(e)

        def stop_on_cancel():
            # Signal handlers run on the main thread; never tear down inline
            threading.Thread(target=self._stop_quietly, args=(session,), name="capture-cancel-stop", daemon=True).start()

        self.token.register(stop_on_cancel)
        try:
            if self.options.streaming:
                self._capture_streaming(session)
            else:
                self._capture_batch(session)
        finally:
            self.token.unregister(stop_on_cancel)
            if not session.stopped_future.done():
                session.stop()
        return self._finalize()

    @staticmethod
    def _stop_quietly(session: AudioCaptureSession) -> None:
        """Cancellation-side stop. Sink errors surface from the main flow's stop()."""
        try:
            session.stop()
        except WhisperCliError as e:
            logger.debug(f"Capture teardown after cancellation reported: {e}")

    def _poll_until_stopped(self) -> None:
        """Evaluate the stop condition every poll_interval until it fires."""
        condition = self._build_stop_condition()
        with condition:
            logger.info(f"Recording... ({condition.describe()})")
            while True:
                self.polls += 1
                if condition.evaluate():
                    break
                if self.token.wait(self.options.poll_interval):
                    break
        if self.token.is_cancelled:
            logger.info("Recording cancelled")
        else:
            logger.info("Stop requested")

    def _capture_batch(self, session: AudioCaptureSession) -> None:
        self._transition(PipelineState.CAPTURING)
        try:
            self._poll_until_stopped()
        finally:
            session.stop()
        self._transcribe(session.audio_bytes())

    def _capture_streaming(self, session: AudioCaptureSession) -> None:
        utterances: queue.Queue = queue.Queue(maxsize=32)
        consumer_done = threading.Event()
        consumer_errors: List[BaseException] = []

        def enqueue(utterance: Utterance) -> None:
            # Runs on the capture writer thread; give up once the consumer is gone
            while not consumer_done.is_set():
                try:
                    utterances.put(utterance, timeout=0.1)
                    return
                except queue.Full:
                    continue

        segmenter = self.segmenter_factory(
            on_utterance=enqueue,
            sample_rate=self.options.sample_rate,
            aggressiveness=self.options.vad_aggressiveness,
            silence_duration_ms=self.options.silence_duration_ms,
            min_speech_ms=self.options.min_speech_ms,
        )
        session.add_frame_listener(segmenter.feed)

        def consume():
            try:
                self.aggregator.consume(self._stream_segments(utterances), self.token)
            except BaseException as e:
                consumer_errors.append(e)
            finally:
                consumer_done.set()

        consumer = threading.Thread(target=consume, name="streaming-transcriber", daemon=True)
        started = time.time()
        consumer.start()

        capture_error = None
        self._transition(PipelineState.CAPTURING)
        try:
            self._poll_until_stopped()
        finally:
            try:
                session.stop()
            except WhisperCliError as e:
                capture_error = e
            # Writer thread has exited, so the segmenter is ours now
            segmenter.flush()
            self._put_end_of_speech(utterances, consumer_done)

        self._transition(PipelineState.TRANSCRIBING)
        consumer.join()
        logger.info(f"Transcription took {time.time() - started:.2f}s")
        self._note_fault()
        if consumer_errors:
            raise consumer_errors[0]
        if capture_error is not None:
            raise capture_error

    @staticmethod
    def _put_end_of_speech(utterances: queue.Queue, consumer_done: threading.Event) -> None:
        while not consumer_done.is_set():
            try:
                utterances.put(_END_OF_SPEECH, timeout=0.1)
                return
            except queue.Full:
                continue

    def _stream_segments(self, utterances: queue.Queue) -> Iterator[RecognizedSegment]:
        """Transcribe utterances as they arrive, shifted onto the capture timeline."""
        while not self.token.is_cancelled:
            try:
                utterance = utterances.get(timeout=0.1)
            except queue.Empty:
                continue
            if utterance is _END_OF_SPEECH:
                return
            segments = self.engine.process(
                utterance.audio,
                cancellation_token=self.token,
                language=self.options.language,
                beam_size=self.options.beam_size,
            )
            for segment in segments:
                yield segment.shifted(utterance.start)

    # Transcription and output

    def _transcribe(self, pcm_source) -> None:
        self._transition(PipelineState.TRANSCRIBING)
        started = time.time()
        segments = self.engine.process(
            pcm_source,
            cancellation_token=self.token,
            language=self.options.language,
            beam_size=self.options.beam_size,
        )
        self.aggregator.consume(segments, self.token)
        logger.info(f"Transcription took {time.time() - started:.2f}s")
        self._note_fault()

    def _note_fault(self) -> None:
        if self.aggregator.fault is not None:
            self.warnings.append(f"Transcription halted early: {self.aggregator.fault}")

    def _finalize(self) -> PipelineResult:
        self._transition(PipelineState.FINALIZING)
        if self.token.is_cancelled:
            self.transcript.partial = True
        self.transcript.freeze()

        try:
            output_path = self.transcript.save()
        except IOFault as e:
            logger.error(str(e))
            self._transition(PipelineState.FAILED)
            return self._result(exit_code=1, error=e)

        final = PipelineState.CANCELLED if self.token.is_cancelled else PipelineState.DONE
        self._transition(final)
        return self._result(output_path=output_path)

    def _drain_and_fail(self, error: WhisperCliError) -> PipelineResult:
        """Persist what was recognized so far, then report the failure."""
        log_error("Run failed after work began", error)
        if self.transcript is not None and not self.transcript.frozen:
            self.transcript.partial = True
            self.transcript.freeze()
            if self.transcript.segments:
                try:
                    self.transcript.save()
                except IOFault as e:
                    logger.error(str(e))
        self._transition(PipelineState.FAILED)
        return self._result(exit_code=error.exit_code, error=error)

    def _fail(self, error: WhisperCliError) -> PipelineResult:
        logger.error(str(error))
        self._transition(PipelineState.FAILED)
        return self._result(exit_code=error.exit_code, error=error)

    def _result(self, output_path=None, exit_code=0, error=None) -> PipelineResult:
        for warning in self.warnings:
            logger.warning(warning)
        return PipelineResult(
            state=self.state,
            transcript=self.transcript,
            output_path=output_path,
            exit_code=exit_code,
            warnings=list(self.warnings),
            error=error,
        )
