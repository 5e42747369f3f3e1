# tts.py - Text-to-Speech Synthesis backends
"""
This module implements the speech-synthesis side of pipeline mode.

Both backends answer with base64 encoded 16-bit little-endian PCM, the
same shape the ``tts-proxy`` edge function returns as ``audioContent``:

- ProxyTTS forwards the text to the ``tts-proxy`` edge function and picks
  the audio out of the first accepted response key
- CartesiaTTS synthesizes directly with Cartesia's Sonic model over its
  WebSocket API, requesting raw pcm_s16le at the playback rate
"""

import base64
import logging
from typing import Optional, Sequence

from cartesia import AsyncCartesia

from components import SpeechBackend
from config import Settings
from errors import BackendResponseError, TransportError
from supabase_client import SupabaseClient, extract_field

logger = logging.getLogger("TTS")


class ProxyTTS(SpeechBackend):
    """
    Speech synthesis through the ``tts-proxy`` edge function.
    """

    def __init__(self, client: SupabaseClient,
                 audio_keys: Sequence[str] = ("audioContent", "audio", "data")):
        self.client = client
        self.audio_keys = tuple(audio_keys)

    async def synthesize(self, text: str) -> str:
        data = await self.client.invoke("tts-proxy", {"text": text}, label="TTS Proxy")
        audio = extract_field(data, self.audio_keys)
        if not audio:
            raise BackendResponseError(
                "Did not receive standardized TTS response from proxy. "
                f"Accepted keys: {', '.join(self.audio_keys)}."
            )
        logger.info("Synthesized %d chars of text", len(text))
        return audio


class CartesiaTTS(SpeechBackend):
    """
    Cartesia-powered Text-to-Speech synthesis implementation.

    The whole response is synthesized in one request and collected before
    playback, so the transcript and the audio stay one unit.
    """

    def __init__(self, api_key: str, sample_rate: int = 24000,
                 voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091",
                 client: Optional[AsyncCartesia] = None):
        """
        Initialize the Cartesia TTS client.

        Args:
            api_key: Cartesia API key
            sample_rate: Output audio sample rate in Hz (24kHz for high quality)
            voice_id: Cartesia voice ID for synthesis
        """
        self.sample_rate = sample_rate
        self.voice_id = voice_id
        self.client = client or AsyncCartesia(api_key=api_key)

    async def synthesize(self, text: str) -> str:
        """
        Synthesize text using Cartesia's TTS API.

        Returns:
            str: Base64 encoded PCM s16le audio at ``sample_rate``
        """
        chunks = []
        try:
            ws = await self.client.tts.websocket()
        except Exception as e:
            raise TransportError(f"TTS connection error: {e}") from e
        try:
            async for output in await ws.send(
                model_id="sonic-2",           # Cartesia's Sonic model
                transcript=text,              # Text to synthesize
                voice={"id": self.voice_id},  # Selected voice
                stream=True,                  # Enable streaming output
                output_format={
                    "container": "raw",       # Raw audio format
                    "encoding": "pcm_s16le",  # 16-bit PCM little-endian
                    "sample_rate": self.sample_rate,
                },
            ):
                if output.audio:
                    chunks.append(output.audio)
        except Exception as e:
            raise BackendResponseError(f"TTS API error: {e}") from e
        finally:
            await ws.close()

        audio = b"".join(chunks)
        if not audio:
            raise BackendResponseError("Cartesia returned no audio.")
        logger.info("Synthesized: '%s'", text[:80])
        return base64.b64encode(audio).decode("ascii")

    async def close(self):
        await self.client.close()


def build_speech_backend(settings: Settings, supabase: Optional[SupabaseClient]) -> SpeechBackend:
    if settings.tts_provider == "cartesia":
        return CartesiaTTS(settings.cartesia_api_key, sample_rate=settings.output_sample_rate,
                           voice_id=settings.cartesia_voice_id)
    return ProxyTTS(supabase, audio_keys=settings.tts_audio_keys)
