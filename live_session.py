# live_session.py - Persistent bidirectional audio session with Gemini Live
"""
GeminiLiveSession speaks the Gemini Live WebSocket protocol directly:

1. Connect and send a ``setup`` message (audio responses, prebuilt voice,
   input and output transcription turned on)
2. Wait for ``setupComplete``
3. Stream microphone audio as ``realtimeInput`` (base64 16-bit PCM @16kHz)
4. Receive ``serverContent`` messages carrying transcription deltas, model
   audio, ``turnComplete`` and ``interrupted`` flags

Dropped connections surface as TransportError; a clean close from the
server just ends the event stream.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from components import LiveSession
from config import Settings
from errors import TransportError
from models import LiveEvent

logger = logging.getLogger("LiveSession")

GEMINI_LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


def parse_server_message(message: Mapping[str, Any]) -> LiveEvent:
    """
    Turn one decoded server message into a LiveEvent.

    Messages without ``serverContent`` (setup acks, usage metadata, goAway)
    produce an empty event.
    """
    content = message.get("serverContent") or {}
    input_text = (content.get("inputTranscription") or {}).get("text") or ""
    output_text = (content.get("outputTranscription") or {}).get("text") or ""
    parts = (content.get("modelTurn") or {}).get("parts") or []
    audio_chunks = tuple(
        part["inlineData"]["data"]
        for part in parts
        if isinstance(part, Mapping) and (part.get("inlineData") or {}).get("data")
    )
    return LiveEvent(
        input_transcription=input_text,
        output_transcription=output_text,
        audio_chunks=audio_chunks,
        turn_complete=bool(content.get("turnComplete")),
        interrupted=bool(content.get("interrupted")),
    )


class GeminiLiveSession(LiveSession):
    def __init__(self,
                 api_key: str,
                 model: str,
                 voice: str = "Zephyr",
                 system_instruction: str = "",
                 input_sample_rate: int = 16000,
                 url: str = GEMINI_LIVE_URL):
        self.api_key = api_key
        self.model = model
        self.voice = voice
        self.system_instruction = system_instruction
        self.input_sample_rate = input_sample_rate
        self.url = url
        self._ws = None
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiLiveSession":
        return cls(
            api_key=settings.gemini_api_key,
            model=settings.live_model,
            voice=settings.live_voice,
            system_instruction=settings.system_instruction,
            input_sample_rate=settings.input_sample_rate,
        )

    def _setup_message(self) -> Dict[str, Any]:
        setup: Dict[str, Any] = {
            "model": f"models/{self.model}",
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}},
                },
            },
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
        if self.system_instruction:
            setup["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        return {"setup": setup}

    async def connect(self):
        try:
            ws = await websockets.connect(f"{self.url}?key={self.api_key}", max_size=None)
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Connection error: {e}") from e
        if self._closed:
            # closed while the handshake was in flight
            await ws.close()
            return
        self._ws = ws
        try:
            await ws.send(json.dumps(self._setup_message()))
            reply = json.loads(await ws.recv())
        except (OSError, WebSocketException) as e:
            await self.close()
            raise TransportError(f"Connection error: {e}") from e
        if "setupComplete" not in reply:
            await self.close()
            raise TransportError(f"Connection error: unexpected setup reply {reply!r}")
        logger.info("Session open (model=%s, voice=%s)", self.model, self.voice)

    async def send_audio(self, blob: str):
        if self._closed or self._ws is None:
            return
        message = {
            "realtimeInput": {
                "audio": {"mimeType": f"audio/pcm;rate={self.input_sample_rate}", "data": blob},
            }
        }
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise TransportError(f"Connection error: {e}") from e

    async def events(self) -> AsyncIterator[LiveEvent]:
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                yield parse_server_message(json.loads(raw))
        except ConnectionClosedOK:
            return
        except (ConnectionClosed, WebSocketException) as e:
            if self._closed:
                return
            raise TransportError(f"Connection error: {e}") from e

    async def close(self):
        if self._closed:
            return
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            logger.info("Session closed")
