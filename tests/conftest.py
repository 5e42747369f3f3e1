"""Shared fakes: audio devices, live sessions and settings."""

import asyncio
from types import SimpleNamespace

import httpx
import numpy as np
import pytest

from audio_player import PlaybackScheduler
from components import LiveSession
from config import Settings
from errors import DevicePermissionError
from models import LiveEvent, ServiceMode
from sources import CaptureSession
from supabase_client import SupabaseClient


class FakeOutput:
    """Output device whose clock only moves when the test calls advance()."""

    instances = []

    def __init__(self, sample_rate, channels, render, device=None, fail=False):
        self.sample_rate = sample_rate
        self.channels = channels
        self.render = render
        self.fail = fail
        self.started = False
        self.closed = 0
        FakeOutput.instances.append(self)

    def start(self):
        if self.fail:
            raise OSError("no output device")
        self.started = True

    def close(self):
        self.closed += 1

    def advance(self, frames: int) -> np.ndarray:
        block = np.zeros((frames, self.channels), dtype=np.float32)
        self.render(block, frames)
        return block


class FakeInput:
    """Input device that delivers whatever the test pushes."""

    def __init__(self, sample_rate, channels, block_size, callback, device=None, deny=False):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.callback = callback
        self.deny = deny
        self.started = False
        self.closed = 0

    def start(self):
        if self.deny:
            raise DevicePermissionError("Microphone access denied: not allowed")
        self.started = True

    def close(self):
        self.closed += 1

    def push(self, frame):
        block = np.asarray(frame, dtype=np.float32).reshape(-1, 1)
        self.callback(block, block.shape[0], None, None)


class FakeLiveSession(LiveSession):
    """Live session fed from a queue; None ends the stream, an exception is raised."""

    def __init__(self, connect_error=None, close_gate=None):
        self.connect_error = connect_error
        self.close_gate = close_gate
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.connected = False
        self.close_calls = 0

    async def connect(self):
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def send_audio(self, blob):
        self.sent.append(blob)

    async def events(self):
        while True:
            item = await self.inbound.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self):
        self.close_calls += 1
        if self.close_gate is not None:
            await self.close_gate.wait()

    def push(self, **fields):
        self.inbound.put_nowait(LiveEvent(**fields))


class FakeAnthropicStream:
    """Context manager shaped like ``AsyncAnthropic.messages.stream``."""

    def __init__(self, chunks=(), error=None):
        self.chunks = chunks
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def text_stream(self):
        return self._texts()

    async def _texts(self):
        for chunk in self.chunks:
            yield chunk


class FakeAnthropic:
    """Client whose streamed requests answer with the queued replies, in order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []
        self.closed = False
        self.messages = SimpleNamespace(stream=self._stream)

    def _stream(self, **kwargs):
        self.requests.append(kwargs)
        return self.replies.pop(0)

    async def close(self):
        self.closed = True


async def wait_for(predicate, attempts: int = 500):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        service_mode=ServiceMode.LIVE,
        session_id="session-1",
        gemini_api_key="gemini-key",
        cartesia_api_key="cartesia-key",
        supabase_url="https://project.supabase.co",
        supabase_key="anon-key",
        no_speech_timeout=0.05,
    )


@pytest.fixture
def output_factory():
    FakeOutput.instances.clear()
    return FakeOutput


@pytest.fixture
def player(output_factory) -> PlaybackScheduler:
    return PlaybackScheduler(sample_rate=24000, output_factory=output_factory)


@pytest.fixture
def inputs():
    return []


@pytest.fixture
def capture(inputs) -> CaptureSession:
    def factory(**kwargs):
        device = FakeInput(**kwargs)
        inputs.append(device)
        return device
    return CaptureSession(sample_rate=16000, block_size=4, input_factory=factory)


def make_supabase(routes, calls=None):
    """SupabaseClient whose HTTP layer answers from ``routes`` (path -> (status, json))."""
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        status, body = routes.get(request.url.path, (404, {"error": "not found"}))
        return httpx.Response(status, json=body)

    return SupabaseClient("https://project.supabase.co", "anon-key", transport=httpx.MockTransport(handler))
