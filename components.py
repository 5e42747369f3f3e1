# components.py - Abstract Base Classes for the Voice Chat Engine
"""
This module defines the abstract interfaces between the conversation engine
and everything it talks to. These interfaces keep the two conversation modes
interchangeable and let tests swap real devices and services for fakes.

The interfaces define the contract for:
- Conversation drivers (live streaming and turn-based pipeline)
- Live bidirectional audio sessions
- Speech recognition systems
- Language model backends
- Text-to-speech backends
- Transcript history storage
- Context retrieval for prompt enrichment
"""

import asyncio
import numpy as np
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, List

from models import LiveEvent, ServiceMode, Turn


class ConversationDriver(ABC):
    """
    Abstract base class for conversation drivers.

    A driver owns a CaptureSession for input and a PlaybackScheduler for
    output. ConversationManager picks exactly one driver per conversation
    and never swaps it mid-session.
    """

    mode: ServiceMode
    stopped_manually: bool = False

    @abstractmethod
    async def start(self) -> None:
        """
        Acquire capture and backend resources.

        Returns once both are held; the manager then moves to ``listening``
        and captured frames start flowing to the backend.
        """
        pass

    @abstractmethod
    async def stop(self, stop_playback: bool = True) -> None:
        """
        Release every resource the driver holds. Must be idempotent.

        Args:
            stop_playback: True stops queued audio at once; False lets the
                           segment in flight finish before the output closes
        """
        pass

    @abstractmethod
    def on_audio_frame(self, frame: np.ndarray) -> None:
        """
        Receive one captured block of float32 samples.

        Called on the event loop for every block; must not block.
        """
        pass


class LiveSession(ABC):
    """
    Abstract base class for a persistent bidirectional audio session.
    """

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def send_audio(self, blob: str) -> None:
        """
        Send one base64 16-bit PCM frame as realtime input.
        """
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[LiveEvent]:
        """
        Iterate inbound messages in arrival order.

        Ends normally when the backend closes the session; raises
        TransportError when the connection drops.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close the session. Must be idempotent.
        """
        pass


class SpeechRecognizer(ABC):
    """
    Abstract base class for Automatic Speech Recognition systems.

    Implementations segment speech into one utterance per call.
    """

    async def connect(self) -> None:
        """
        Open the recognition stream ahead of the first audio.

        Raises:
            TransportError: if the service cannot be reached
        """
        pass

    @abstractmethod
    async def recognize(self, audio_queue: asyncio.Queue,
                        on_interim: Callable[[str], None]) -> str:
        """
        Consume 16-bit PCM chunks until the utterance ends.

        Args:
            audio_queue: Queue of PCM bytes; ``None`` marks the end of input
            on_interim: Called with interim text each time it updates

        Returns:
            str: Final text of the utterance ("" when nothing was recognized)
        """
        pass

    async def close(self) -> None:
        pass


class LanguageBackend(ABC):
    """
    Abstract base class for Large Language Model backends.
    """

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """
        Generate a complete response for a prompt.

        Raises:
            BackendResponseError: on an error payload or empty response text
        """
        pass

    async def close(self) -> None:
        pass


class SpeechBackend(ABC):
    """
    Abstract base class for Text-to-Speech synthesis backends.
    """

    @abstractmethod
    async def synthesize(self, text: str) -> str:
        """
        Convert text to speech.

        Returns:
            str: Base64 encoded 16-bit little-endian PCM

        Raises:
            BackendResponseError: on an error payload or missing audio
        """
        pass

    async def close(self) -> None:
        pass


class HistoryStore(ABC):
    """
    Abstract base class for transcript history storage.
    """

    @abstractmethod
    async def load(self, session_id: str) -> List[Turn]:
        """
        Load every turn of a session, oldest first.
        """
        pass

    @abstractmethod
    async def append(self, session_id: str, turn: Turn) -> None:
        pass


class ContextRetriever(ABC):
    """
    Abstract base class for retrieval of context used to enrich prompts.
    """

    @abstractmethod
    async def search(self, query: str) -> str:
        """
        Return context text for a query; "" on any failure, never raises.
        """
        pass
