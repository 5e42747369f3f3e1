# audio_player.py - Gapless Audio Playback Scheduling using SoundDevice
"""
This module implements gap-free playback of synthesized speech.

The PlaybackScheduler class provides:
- A monotonic "next start" cursor on a dedicated output clock
- Back-to-back scheduling of AudioSegments in arrival order
- Hard interruption (barge-in) that silences everything at once
- Completion notification per segment, delivered on the event loop

The output clock is the number of frames the device has rendered, so
scheduling stays sample-accurate no matter how the audio thread is timed.
The sounddevice callback runs in its own thread; the registry of scheduled
segments is shared with it under a lock.
"""

import asyncio
import logging
import threading
import numpy as np
from typing import Callable, List, Optional

from models import AudioSegment

logger = logging.getLogger("AudioPlayer")


class SoundDeviceOutput:
    """
    Output device backed by a sounddevice OutputStream.

    Every block the device asks for is filled by the ``render`` callable.
    """

    def __init__(self,
                 sample_rate: int,
                 channels: int,
                 render: Callable[[np.ndarray, int], None],
                 device: Optional[int] = None,
                 blocksize: int = 1024):
        self.sample_rate = sample_rate
        self.channels = channels
        self.render = render
        self.device = device
        self.blocksize = blocksize
        self.stream = None

    def _audio_callback(self, outdata, frames, time, status):
        if status:
            logger.warning("Status: %s", status)
        self.render(outdata, frames)

    def start(self):
        import sounddevice as sd

        self.stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype='float32',
            callback=self._audio_callback,
            blocksize=self.blocksize,
            device=self.device,
            latency='low'
        )
        try:
            self.stream.start()
        except sd.PortAudioError:
            stream, self.stream = self.stream, None
            stream.close()
            raise
        logger.info("Audio stream started with blocksize=%d", self.blocksize)

    def close(self):
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None
            logger.info("Audio stream stopped")


class ScheduledSegment:
    """
    A segment placed on the output clock.

    ``done`` resolves to True once the last frame has been rendered and to
    False if the segment was stopped early.
    """

    def __init__(self, segment: AudioSegment, start_frame: int, done: asyncio.Future):
        self.segment = segment
        self.start_frame = start_frame
        self.end_frame = start_frame + segment.frame_count
        self.done = done

    def _resolve(self, completed: bool):
        if not self.done.done():
            self.done.set_result(completed)


class PlaybackScheduler:
    """
    Plays AudioSegments back to back with no gap or overlap.

    ``enqueue`` starts each segment at ``max(cursor, output clock)`` and
    moves the cursor to its end. ``interrupt`` stops everything and resets
    the cursor so the next segment re-anchors to the live clock.
    If the output device cannot be opened, scheduling becomes a no-op and
    ``open`` reports False so the caller can surface the failure.
    """

    def __init__(self,
                 sample_rate: int = 24000,
                 channels: int = 1,
                 output_factory: Optional[Callable[..., object]] = None,
                 device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self.output_factory = output_factory or SoundDeviceOutput
        self.output = None

        self._lock = threading.Lock()
        self._scheduled: List[ScheduledSegment] = []
        self._clock_frames = 0
        self._cursor_frames = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_open(self) -> bool:
        return self.output is not None

    @property
    def cursor(self) -> float:
        """Scheduled end of the last enqueued segment, in output-clock seconds."""
        return self._cursor_frames / self.sample_rate

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._scheduled)

    def output_clock_now(self) -> float:
        with self._lock:
            return self._clock_frames / self.sample_rate

    def open(self) -> bool:
        """
        Create and start the output device if it is not running yet.

        Returns:
            bool: False when the device could not be created
        """
        if self.output is not None:
            return True
        self._loop = asyncio.get_running_loop()
        output = self.output_factory(
            sample_rate=self.sample_rate,
            channels=self.channels,
            render=self._render,
            device=self.device,
        )
        try:
            output.start()
        except Exception as e:
            logger.error("Failed to start output device: %s", e)
            return False
        with self._lock:
            self._clock_frames = 0
            self._cursor_frames = 0
        self.output = output
        return True

    def enqueue(self, segment: AudioSegment) -> Optional[ScheduledSegment]:
        """
        Schedule a segment right after everything already queued.

        Returns:
            ScheduledSegment, or None when no output device is open
        """
        if self.output is None:
            logger.warning("No output device; dropping %d frames", segment.frame_count)
            return None
        if segment.sample_rate != self.sample_rate:
            raise ValueError(f"Segment rate {segment.sample_rate} does not match output rate {self.sample_rate}")

        samples = segment.samples.reshape(-1, self.channels)
        segment.samples = samples
        with self._lock:
            start_frame = max(self._cursor_frames, self._clock_frames)
            scheduled = ScheduledSegment(segment, start_frame, self._loop.create_future())
            self._cursor_frames = scheduled.end_frame
            self._scheduled.append(scheduled)
        segment.start_time = start_frame / self.sample_rate
        logger.debug("Scheduled %.3fs at %.3fs", segment.duration, segment.start_time)
        return scheduled

    def interrupt(self):
        """
        Stop every scheduled or playing segment immediately.
        """
        with self._lock:
            stopped = self._scheduled
            self._scheduled = []
            self._cursor_frames = 0
        for scheduled in stopped:
            scheduled._resolve(False)
        if stopped:
            logger.info("Interrupted %d segment(s)", len(stopped))

    async def wait_until_idle(self):
        """
        Wait for every segment already scheduled to finish or be stopped.
        """
        with self._lock:
            pending = [s.done for s in self._scheduled]
        if pending:
            await asyncio.gather(*pending)

    async def drain_and_close(self, wait_for_playback: bool = False):
        """
        Stop all segments and release the output device. Idempotent.

        Args:
            wait_for_playback: Let already scheduled audio finish first
        """
        if wait_for_playback and self.output is not None:
            await self.wait_until_idle()
        self.interrupt()
        output, self.output = self.output, None
        if output is not None:
            output.close()

    def _render(self, outdata: np.ndarray, frames: int):
        """
        Fill one device block from the segments overlapping it.

        Runs on the audio thread and advances the output clock by ``frames``.
        """
        outdata.fill(0)
        finished = []
        with self._lock:
            block_start = self._clock_frames
            block_end = block_start + frames
            for scheduled in self._scheduled:
                if scheduled.start_frame >= block_end:
                    continue
                copy_from = max(block_start, scheduled.start_frame)
                copy_to = min(block_end, scheduled.end_frame)
                if copy_to > copy_from:
                    source = scheduled.segment.samples
                    outdata[copy_from - block_start:copy_to - block_start] += \
                        source[copy_from - scheduled.start_frame:copy_to - scheduled.start_frame]
                if scheduled.end_frame <= block_end:
                    finished.append(scheduled)
            for scheduled in finished:
                self._scheduled.remove(scheduled)
            self._clock_frames = block_end

        for scheduled in finished:
            try:
                self._loop.call_soon_threadsafe(scheduled._resolve, True)
            except RuntimeError:
                # event loop already closed during shutdown
                break
