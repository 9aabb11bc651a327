"""
Streaming speech segmenter.

Consumes live PCM frames and emits finalized speech utterances using WebRTC
VAD, so transcription can start on one utterance while capture continues.
"""

import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional

import webrtcvad

from ..logger import get_logger

logger = get_logger('audio.segmenter')

SAMPLE_WIDTH = 2


@dataclass
class Utterance:
    """A finalized span of speech."""
    audio: bytes
    start: float  # seconds from start of capture
    end: float

    @property
    def duration_ms(self) -> float:
        return (self.end - self.start) * 1000.0


class SpeechSegmenter:
    """
    VAD-based utterance detector.

    Frames are re-chunked to the VAD frame size. An utterance opens on the
    first speech frame (with a short pre-roll), and closes after
    silence_duration_ms of non-speech or when it reaches max_utterance_ms.
    Utterances with less than min_speech_ms of speech are discarded.
    """

    def __init__(
        self,
        on_utterance: Optional[Callable[[Utterance], None]] = None,
        sample_rate: int = 16000,
        aggressiveness: int = 2,
        frame_ms: int = 30,
        silence_duration_ms: int = 900,
        min_speech_ms: int = 300,
        max_utterance_ms: int = 30_000,
        pre_roll_ms: int = 150,
    ):
        if frame_ms not in (10, 20, 30):
            raise ValueError("frame_ms must be 10, 20 or 30")
        self.on_utterance = on_utterance
        self.sample_rate = sample_rate
        self.frame_ms = frame_ms
        self.frame_bytes = int(sample_rate * frame_ms / 1000) * SAMPLE_WIDTH
        self.silence_frames = max(1, int(silence_duration_ms / frame_ms))
        self.min_speech_ms = min_speech_ms
        self.max_utterance_ms = max_utterance_ms

        self.vad = webrtcvad.Vad(min(max(int(aggressiveness), 0), 3))
        self._pre_roll: deque = deque(maxlen=max(1, int(math.ceil(pre_roll_ms / frame_ms))))

        self._pending = bytearray()
        self._pending_offset = 0.0
        self._reset_collection()

    def _reset_collection(self) -> None:
        self._collecting = False
        self._utterance = bytearray()
        self._utter_start: Optional[float] = None
        self._speech_ms = 0
        self._total_ms = 0
        self._silent_frame_count = 0

    def feed(self, audio: bytes, offset: float) -> List[Utterance]:
        """
        Process a block of PCM and return any utterances it completed.

        Args:
            audio: Raw PCM (int16, mono)
            offset: Start of this block in seconds from start of capture
        """
        if not self._pending:
            self._pending_offset = offset
        self._pending.extend(audio)

        completed: List[Utterance] = []
        while len(self._pending) >= self.frame_bytes:
            frame = bytes(self._pending[:self.frame_bytes])
            del self._pending[:self.frame_bytes]
            frame_ts = self._pending_offset
            self._pending_offset += self.frame_ms / 1000.0

            utterance = self._process_frame(frame, frame_ts)
            if utterance is not None:
                completed.append(utterance)

        for utterance in completed:
            if self.on_utterance:
                self.on_utterance(utterance)
        return completed

    def _process_frame(self, frame: bytes, frame_ts: float) -> Optional[Utterance]:
        try:
            is_speech = self.vad.is_speech(frame, self.sample_rate)
        except Exception:
            is_speech = False

        if not self._collecting:
            self._pre_roll.append((frame, frame_ts))
            if not is_speech:
                return None
            self._collecting = True
            self._utter_start = self._pre_roll[0][1]
            for pr_frame, _ in self._pre_roll:
                self._utterance.extend(pr_frame)
                self._total_ms += self.frame_ms
            self._pre_roll.clear()
            self._speech_ms += self.frame_ms
            return self._check_max_length(frame_ts)

        self._utterance.extend(frame)
        self._total_ms += self.frame_ms
        if is_speech:
            self._speech_ms += self.frame_ms
            self._silent_frame_count = 0
            return self._check_max_length(frame_ts)

        self._silent_frame_count += 1
        if self._silent_frame_count >= self.silence_frames:
            return self._finalize(frame_ts + self.frame_ms / 1000.0)
        return None

    def _check_max_length(self, frame_ts: float) -> Optional[Utterance]:
        if self._total_ms >= self.max_utterance_ms:
            return self._finalize(frame_ts + self.frame_ms / 1000.0)
        return None

    def _finalize(self, end_ts: float) -> Optional[Utterance]:
        """Finalize current utterance and reset state."""
        if self._speech_ms < self.min_speech_ms or self._utter_start is None:
            logger.debug(f"Discarded {self._speech_ms}ms speech burst (min {self.min_speech_ms}ms)")
            self._reset_collection()
            return None

        utterance = Utterance(audio=bytes(self._utterance), start=self._utter_start, end=end_ts)
        logger.debug(f"Utterance {utterance.start:.2f}s-{utterance.end:.2f}s ({utterance.duration_ms:.0f}ms)")
        self._reset_collection()
        return utterance

    def flush(self) -> List[Utterance]:
        """Finalize whatever is being collected (end of capture)."""
        completed: List[Utterance] = []
        if self._collecting:
            utterance = self._finalize(self._utter_start + self._total_ms / 1000.0)
            if utterance is not None:
                completed.append(utterance)
        self._pending.clear()
        self._pre_roll.clear()
        for utterance in completed:
            if self.on_utterance:
                self.on_utterance(utterance)
        return completed
