# asr.py - Automatic Speech Recognition using Cartesia API
"""
This module implements speech recognition for pipeline mode using Cartesia's
streaming ASR service.

The CartesiaASR class turns one capture session into one utterance:
- Streaming audio input via WebSocket
- Interim results reported as they change, for the live transcript
- The utterance ends at the first final result (silence endpointing),
  or when the stream finishes
- Only the final text is returned

The implementation uses Cartesia's "ink-whisper" model which is based on OpenAI's Whisper
but optimized for real-time streaming applications.
"""

import asyncio
import logging
from typing import Callable, Optional

from cartesia import AsyncCartesia

from components import SpeechRecognizer
from errors import TransportError

logger = logging.getLogger("ASR")


class CartesiaASR(SpeechRecognizer):
    """
    Cartesia-powered Automatic Speech Recognition implementation.
    """

    def __init__(self,
                 api_key: str,
                 sample_rate: int = 16000,
                 language: str = "en",
                 min_volume: float = 0.15,
                 max_silence_duration_secs: float = 1.0,
                 client: Optional[AsyncCartesia] = None):
        """
        Initialize the Cartesia ASR client.

        Args:
            api_key: Cartesia API key
            sample_rate: Rate of the PCM chunks that will be sent
            language: Recognition language code
            min_volume: Volume threshold for voice activity detection (0.0-1.0)
            max_silence_duration_secs: Silence that ends the utterance
            client: Preconfigured AsyncCartesia client
        """
        self.sample_rate = sample_rate
        self.language = language
        self.min_volume = min_volume
        self.max_silence_duration_secs = max_silence_duration_secs
        self.client = client or AsyncCartesia(api_key=api_key)
        self._ws = None

    async def connect(self):
        """
        Open the streaming recognition WebSocket if it is not open yet.
        """
        if self._ws is not None:
            return
        try:
            # Establish WebSocket connection to Cartesia ASR service
            self._ws = await self.client.stt.websocket(
                model="ink-whisper",          # Cartesia's streaming Whisper model
                language=self.language,
                encoding="pcm_s16le",         # 16-bit PCM little-endian format
                sample_rate=self.sample_rate,
                min_volume=self.min_volume,
                max_silence_duration_secs=self.max_silence_duration_secs,
            )
        except Exception as e:
            raise TransportError(f"Speech recognition connection error: {e}") from e
        logger.info("Recognition stream open")

    async def recognize(self, audio_queue: asyncio.Queue,
                        on_interim: Callable[[str], None]) -> str:
        """
        Transcribe queued PCM audio until the utterance is complete.

        Args:
            audio_queue: Queue of 16-bit PCM chunks; None marks the end of input
            on_interim: Called with interim text as it updates

        Returns:
            str: The final transcript ("" if nothing was recognized)
        """
        await self.connect()
        ws, self._ws = self._ws, None

        async def sender():
            """
            Send audio chunks to the ASR service until the end marker.
            """
            while True:
                chunk = await audio_queue.get()
                if chunk is None:
                    await ws.send("done")
                    break
                await ws.send(chunk)

        sender_task = asyncio.create_task(sender())
        final_text = ""
        try:
            async for result in ws.receive():
                kind = result.get('type')
                if kind == 'transcript':
                    text = (result.get('text') or '').strip()
                    if not text:
                        continue
                    if result.get('is_final', False):
                        final_text = text
                        logger.info("Final transcript: '%s'", text)
                        break
                    on_interim(text)
                elif kind == 'error':
                    raise TransportError(f"Speech recognition error: {result.get('message', result)}")
                elif kind == 'done':
                    # ASR session completed
                    break
        finally:
            sender_task.cancel()
            await ws.close()

        if sender_task.done() and not sender_task.cancelled() and sender_task.exception():
            raise TransportError(f"Speech recognition send error: {sender_task.exception()}")
        return final_text

    async def close(self):
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        await self.client.close()
