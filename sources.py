# sources.py - Microphone Capture for the Voice Chat Engine
"""
This module implements the microphone capture lifecycle.

The main implementation is CaptureSession, which opens the system microphone
through sounddevice and pushes every captured block to a single sink
callback on the event loop.

Key features:
- Fixed block size per delivery (4096 samples by default)
- Cross-platform compatibility via sounddevice
- Frames hop from the audio thread to the event loop, in capture order
- Deterministic release of the device on stop, error or teardown
"""

import asyncio
import logging
import numpy as np
from typing import Callable, Optional

from errors import DevicePermissionError

logger = logging.getLogger("MicSource")

FrameSink = Callable[[np.ndarray], None]


class SoundDeviceInput:
    """
    Input device backed by a sounddevice InputStream.
    """

    def __init__(self,
                 sample_rate: int,
                 channels: int,
                 block_size: int,
                 callback: Callable,
                 device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size
        self.callback = callback
        self.device = device
        self.stream = None

    def start(self):
        import sounddevice as sd

        try:
            self.stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype=np.float32,
                callback=self.callback,
                blocksize=self.block_size,
                device=self.device,
                latency='low'  # Optimize for low latency
            )
            self.stream.start()
        except sd.PortAudioError as e:
            stream, self.stream = self.stream, None
            if stream is not None:
                stream.close()
            raise DevicePermissionError(f"Microphone access denied: {e}") from e

    def close(self):
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None


class CaptureSession:
    """
    Owns the microphone for one conversation.

    Captured blocks are handed to ``frame_sink`` one at a time, as a
    one-way push stream; the sink must consume promptly.
    """

    def __init__(self,
                 sample_rate: int = 16000,
                 channels: int = 1,
                 block_size: int = 4096,
                 input_factory: Optional[Callable[..., object]] = None,
                 device: Optional[int] = None):
        """
        Initialize the capture session.

        Args:
            sample_rate: Capture rate in Hz, as required by the active driver
            channels: Number of input channels; only the first is delivered
            block_size: Samples per delivered frame
            input_factory: Builds the input device (sounddevice by default)
            device: Audio device ID (None for system default)
        """
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size
        self.input_factory = input_factory or SoundDeviceInput
        self.device = device

        self.input = None
        self.capturing = False
        self._sink: Optional[FrameSink] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def start(self, frame_sink: FrameSink):
        """
        Open the microphone and begin delivering frames to ``frame_sink``.

        Raises:
            DevicePermissionError: if the microphone is denied or unavailable
        """
        if self.input is not None:
            raise RuntimeError("Capture already started")
        self._loop = asyncio.get_running_loop()
        self._sink = frame_sink

        device = self.input_factory(
            sample_rate=self.sample_rate,
            channels=self.channels,
            block_size=self.block_size,
            callback=self._audio_callback,
            device=self.device,
        )
        try:
            device.start()
        except DevicePermissionError:
            self.stop()
            raise
        except Exception as e:
            self.stop()
            raise DevicePermissionError(f"Microphone access denied: {e}") from e

        self.input = device
        self.capturing = True
        logger.info("Started recording: %dHz, %d-sample blocks", self.sample_rate, self.block_size)

    def _audio_callback(self, indata, frames, time, status):
        """
        Sounddevice input callback, called on the audio thread.
        """
        if status:
            logger.warning("Recording status: %s", status)
        if not self.capturing:
            return
        frame = np.array(indata[:, 0] if indata.ndim > 1 else indata, dtype=np.float32)
        try:
            self._loop.call_soon_threadsafe(self._deliver, frame)
        except RuntimeError:
            # event loop already closed
            self.capturing = False

    def _deliver(self, frame: np.ndarray):
        sink = self._sink
        if self.capturing and sink is not None:
            sink(frame)

    def stop(self):
        """
        Stop delivery and release the microphone. Idempotent.
        """
        was_running = self.input is not None
        self.capturing = False
        self._sink = None
        device, self.input = self.input, None
        if device is not None:
            device.close()
        if was_running:
            logger.info("Recording stopped")
