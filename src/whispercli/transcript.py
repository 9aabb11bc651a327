"""
Transcript aggregation and output.

SegmentAggregator drains the engine's segment stream in order, drops
immediate repeats of the last kept text, and builds a Transcript. The
transcript text is the plain concatenation of kept segments: Whisper
segment texts already carry their own leading spaces.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from .cancellation import CancellationToken
from .engines.base import RecognizedSegment
from .errors import IOFault, TranscriptionFault
from .logger import get_logger

logger = get_logger('transcript')


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    seconds = max(0, int(seconds))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


@dataclass
class Transcript:
    """Ordered text of the retained segments, bound to its output file."""

    output_path: Path
    segments: List[RecognizedSegment] = field(default_factory=list)
    partial: bool = False
    _frozen: bool = False

    def __post_init__(self):
        self.output_path = Path(self.output_path)

    @property
    def text(self) -> str:
        return "".join(segment.text for segment in self.segments)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def append(self, segment: RecognizedSegment) -> None:
        if self._frozen:
            raise RuntimeError("Transcript is finalized and can no longer change")
        self.segments.append(segment)

    def freeze(self) -> None:
        self._frozen = True

    def save(self) -> Path:
        """
        Write the text as UTF-8 (atomic: temp file then rename).

        Raises:
            IOFault: If the file cannot be written
        """
        temp_path = self.output_path.with_name(self.output_path.name + '.tmp')
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'w', encoding='utf-8', newline='') as f:
                f.write(self.text)
            temp_path.replace(self.output_path)
        except OSError as e:
            try:
                temp_path.unlink()
            except OSError:
                pass
            raise IOFault(f"Could not write transcript to {self.output_path}: {e}") from e

        logger.info(
            f"Transcription {'partially ' if self.partial else ''}complete. "
            f"Output saved to: {self.output_path}"
        )
        return self.output_path


class SegmentAggregator:
    """Consumes a chronological segment stream into a Transcript."""

    def __init__(self, transcript: Transcript):
        self.transcript = transcript
        self.fault: Optional[TranscriptionFault] = None
        self.consumed = 0
        self.dropped = 0
        self._last_text: Optional[str] = None

    def add(self, segment: RecognizedSegment) -> bool:
        """Offer one segment. Returns True if it was kept."""
        self.consumed += 1
        if self._last_text is not None and segment.text == self._last_text:
            self.dropped += 1
            return False

        self.transcript.append(segment)
        self._last_text = segment.text
        logger.info(
            f"{segment.language or '??'}: {format_timestamp(segment.start)}->"
            f"{format_timestamp(segment.end)}: {segment.text}"
        )
        return True

    def consume(
        self,
        segments: Iterable[RecognizedSegment],
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Transcript:
        """
        Drain segments until exhausted, cancelled, or the engine faults.

        A cancellation or TranscriptionFault keeps everything consumed so
        far and marks the transcript partial. The fault is kept on
        self.fault instead of being raised.
        """
        iterator = iter(segments)
        while True:
            if cancellation_token is not None and cancellation_token.is_cancelled:
                logger.info("Cancellation requested - stopping recognition")
                self.transcript.partial = True
                break
            try:
                segment = next(iterator)
            except StopIteration:
                break
            except TranscriptionFault as e:
                logger.warning(f"Transcription halted, keeping partial transcript: {e}")
                self.fault = e
                self.transcript.partial = True
                break
            self.add(segment)

        close = getattr(iterator, 'close', None)
        if close is not None:
            close()
        return self.transcript

    @property
    def text(self) -> str:
        return self.transcript.text
