# pipeline_driver.py - Turn-based speech -> text -> LLM -> text -> speech driver
"""
PipelineModeDriver handles exactly one utterance per conversation start:

1. Capture audio and stream it to the speech recognizer; interim text is
   shown as the pending user text, only the final text is kept
2. Empty text ends the conversation quietly (NoInputError -> idle)
3. Enrich the prompt with retrieved context (failures mean no context)
4. Ask the language backend for the response text
5. Ask the speech backend for the response audio
6. Play it as one segment and finalize the turn once playback completes

Any failure in steps 3-5 becomes the error state with no turn persisted.
The microphone and the recognizer stream are both open before the
conversation reaches ``listening``.
"""

import asyncio
import logging
import numpy as np
from typing import Optional

from asr import CartesiaASR
from audio_player import PlaybackScheduler
from components import (ContextRetriever, ConversationDriver, LanguageBackend,
                        SpeechBackend, SpeechRecognizer)
from config import Settings
from errors import BackendResponseError, DevicePermissionError, NoInputError
from models import ConversationState, ServiceMode
from retrieval import NullRetriever, VectorSearchRetriever
from sources import CaptureSession
from transcoder import decode, pcm16_bytes, to_segment
from tts import build_speech_backend

logger = logging.getLogger("PipelineDriver")

CONTEXT_PROMPT = (
    "Using the following context, answer the question.\n\n"
    "Context:\n{context}\n\n"
    "Question: {question}"
)


def build_prompt(question: str, context: str) -> str:
    if not context:
        return question
    return CONTEXT_PROMPT.format(context=context, question=question)


class PipelineModeDriver(ConversationDriver):
    mode = ServiceMode.PIPELINE

    def __init__(self,
                 manager,
                 settings: Settings,
                 recognizer: Optional[SpeechRecognizer] = None,
                 language: Optional[LanguageBackend] = None,
                 speech: Optional[SpeechBackend] = None,
                 retriever: Optional[ContextRetriever] = None,
                 capture: Optional[CaptureSession] = None,
                 player: Optional[PlaybackScheduler] = None):
        self.manager = manager
        self.settings = settings
        supabase = manager.supabase

        self.recognizer = recognizer or CartesiaASR(
            settings.cartesia_api_key,
            sample_rate=settings.input_sample_rate,
            language=settings.asr_language,
        )
        self.language = language or manager.language_backend(settings)
        self.speech = speech or build_speech_backend(settings, supabase)
        if retriever is None:
            retriever = VectorSearchRetriever(supabase) if supabase is not None else NullRetriever()
        self.retriever = retriever
        self.capture = capture or CaptureSession(
            sample_rate=settings.input_sample_rate,
            block_size=settings.capture_block_size,
            device=settings.input_device,
        )
        self.player = player or PlaybackScheduler(
            sample_rate=settings.output_sample_rate,
            device=settings.output_device,
        )
        self.stopped_manually = False

        self._frames: asyncio.Queue = asyncio.Queue()
        self._capture_open = False
        self._heard_speech = False
        self._task: Optional[asyncio.Task] = None
        self._recognition: Optional[asyncio.Task] = None
        self._released = False

    async def start(self):
        await self.capture.start(self.on_audio_frame)
        self._capture_open = True
        await self.recognizer.connect()
        if self.stopped_manually:
            return
        self._task = asyncio.create_task(self._run())

    def on_audio_frame(self, frame: np.ndarray):
        if (self.stopped_manually or not self._capture_open
                or self.manager.state is not ConversationState.LISTENING):
            return
        self._frames.put_nowait(pcm16_bytes(frame))

    def _on_interim(self, text: str):
        if self.stopped_manually:
            return
        self._heard_speech = True
        self.manager.set_user_text(text)

    def _end_capture(self):
        if self._capture_open:
            self._capture_open = False
            self.capture.stop()
            self._frames.put_nowait(None)

    async def _run(self):
        error = None
        try:
            await self._converse()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
        await self.manager.driver_finished(self, error, stop_playback=error is not None)

    async def _listen(self) -> str:
        """
        Run recognition until a final result, the end of the stream, or the
        no-speech timeout with nothing heard.
        """
        recognition = asyncio.create_task(self.recognizer.recognize(self._frames, self._on_interim))
        self._recognition = recognition
        done, _ = await asyncio.wait({recognition}, timeout=self.settings.no_speech_timeout)
        if not done and not self._heard_speech:
            logger.info("No speech within %.1fs", self.settings.no_speech_timeout)
            self._end_capture()
            recognition.cancel()
            await asyncio.wait({recognition})
            return ""
        return (await recognition).strip()

    async def _converse(self):
        user_text = await self._listen()
        self._end_capture()
        if not user_text:
            raise NoInputError("No speech was recognized.")

        self.manager.set_user_text(user_text)
        self.manager.transition(ConversationState.PROCESSING)

        context = await self.retriever.search(user_text)
        prompt = build_prompt(user_text, context)

        model_text = await self.language.generate(prompt)
        self.manager.set_model_text(model_text)

        audio = await self.speech.synthesize(model_text)
        segment = to_segment(decode(audio), self.settings.output_sample_rate, 1)
        if not segment.frame_count:
            raise BackendResponseError("Speech backend returned empty audio.")

        if not self.player.open():
            raise DevicePermissionError("Audio output device could not be opened.")
        scheduled = self.player.enqueue(segment)
        completed = await scheduled.done
        if completed and not self.stopped_manually:
            self.manager.finalize_turn()

    async def stop(self, stop_playback: bool = True):
        self.stopped_manually = True
        if self._released:
            return
        self._released = True

        self._end_capture()
        current = asyncio.current_task()
        for task in (self._recognition, self._task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        await self.player.drain_and_close(wait_for_playback=not stop_playback)
        # the language backend belongs to the manager and outlives the turn
        for backend in (self.recognizer, self.speech):
            try:
                await backend.close()
            except Exception as e:
                logger.warning("Error closing %s: %s", type(backend).__name__, e)
        logger.info("Pipeline conversation resources released")
