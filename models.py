# models.py - Data model shared by the conversation engine
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class ConversationState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    PROCESSING = "processing"
    ERROR = "error"


class ServiceMode(Enum):
    LIVE = "live"          # one persistent bidirectional audio session
    PIPELINE = "pipeline"  # speech-to-text -> LLM -> text-to-speech per utterance


@dataclass(frozen=True)
class Turn:
    """One finalized exchange, as appended to history."""
    id: int
    user_text: str
    model_text: str


@dataclass
class PendingTurn:
    """Accumulator for the turn currently in flight."""
    user_text: str = ""
    model_text: str = ""

    def is_empty(self) -> bool:
        return not self.user_text and not self.model_text

    def copy(self) -> "PendingTurn":
        return PendingTurn(self.user_text, self.model_text)


@dataclass
class AudioSegment:
    """
    A block of float32 samples shaped (frames, channels).

    ``start_time`` is filled in by PlaybackScheduler when the segment is
    scheduled on the output clock.
    """
    samples: np.ndarray
    sample_rate: int
    channel_count: int = 1
    start_time: Optional[float] = None

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate


@dataclass(frozen=True)
class LiveEvent:
    """One inbound message from a live streaming session, already parsed."""
    input_transcription: str = ""
    output_transcription: str = ""
    audio_chunks: Tuple[str, ...] = field(default_factory=tuple)
    turn_complete: bool = False
    interrupted: bool = False
