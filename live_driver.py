# live_driver.py - Conversation driver over a persistent bidirectional session
"""
LiveModeDriver streams every captured frame to a live session and plays the
model's audio as it arrives.

Inbound message handling, in order within one message:
- transcription deltas accrete onto the pending turn
- ``turn_complete`` finalizes the pending turn into history
- model audio chunks are decoded and scheduled gap-free
- ``interrupted`` (barge-in) stops all queued model audio at once

Outbound frames go through one queue and one sender task so they reach the
transport in capture order without waiting for acknowledgements.
"""

import asyncio
import logging
import numpy as np
from typing import Callable, Optional

from audio_player import PlaybackScheduler
from components import ConversationDriver, LiveSession
from config import Settings
from errors import DevicePermissionError
from live_session import GeminiLiveSession
from models import ConversationState, LiveEvent, ServiceMode
from sources import CaptureSession
from transcoder import decode, encode, to_segment

logger = logging.getLogger("LiveDriver")


class LiveModeDriver(ConversationDriver):
    mode = ServiceMode.LIVE

    def __init__(self,
                 manager,
                 settings: Settings,
                 session_factory: Optional[Callable[[Settings], LiveSession]] = None,
                 capture: Optional[CaptureSession] = None,
                 player: Optional[PlaybackScheduler] = None):
        self.manager = manager
        self.settings = settings
        self.session_factory = session_factory or GeminiLiveSession.from_settings
        self.capture = capture or CaptureSession(
            sample_rate=settings.input_sample_rate,
            block_size=settings.capture_block_size,
            device=settings.input_device,
        )
        self.player = player or PlaybackScheduler(
            sample_rate=settings.output_sample_rate,
            device=settings.output_device,
        )
        self.session: Optional[LiveSession] = None
        self.stopped_manually = False

        self._outbound: asyncio.Queue = asyncio.Queue()
        self._sender: Optional[asyncio.Task] = None
        self._receiver: Optional[asyncio.Task] = None
        self._released = False

    async def start(self):
        await self.capture.start(self.on_audio_frame)
        if not self.player.open():
            raise DevicePermissionError("Audio output device could not be opened.")

        session = self.session_factory(self.settings)
        self.session = session
        await session.connect()
        if self.stopped_manually:
            return

        self._sender = asyncio.create_task(self._send_loop())
        self._receiver = asyncio.create_task(self._receive_loop())

    def on_audio_frame(self, frame: np.ndarray):
        if self.stopped_manually or self.manager.state is not ConversationState.LISTENING:
            return
        blob = encode(frame)
        if blob:
            self._outbound.put_nowait(blob)

    async def _send_loop(self):
        try:
            while True:
                blob = await self._outbound.get()
                await self.session.send_audio(blob)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Send failed: %s", e)
            await self.manager.driver_finished(self, e)

    async def _receive_loop(self):
        error = None
        try:
            async for event in self.session.events():
                self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Receive failed: %s", e)
            error = e
        else:
            logger.info("Session closed by backend")
        await self.manager.driver_finished(self, error)

    def handle_event(self, event: LiveEvent):
        if self.stopped_manually:
            return
        if event.input_transcription:
            self.manager.append_user_text(event.input_transcription)
        if event.output_transcription:
            self.manager.append_model_text(event.output_transcription)
        if event.turn_complete:
            self.manager.finalize_turn()
        for chunk in event.audio_chunks:
            segment = to_segment(decode(chunk), self.settings.output_sample_rate, 1)
            if segment.frame_count:
                self.player.enqueue(segment)
        if event.interrupted:
            logger.info("Backend reported interruption; stopping playback")
            self.player.interrupt()

    async def stop(self, stop_playback: bool = True):
        self.stopped_manually = True
        if self._released:
            return
        self._released = True

        self.capture.stop()
        current = asyncio.current_task()
        for task in (self._sender, self._receiver):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self.session is not None:
            try:
                await self.session.close()
            except Exception as e:
                logger.warning("Error closing session: %s", e)
        await self.player.drain_and_close(wait_for_playback=not stop_playback)
        logger.info("Live conversation resources released")
