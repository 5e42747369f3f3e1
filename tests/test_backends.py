"""Tests for the HTTP and SDK backed collaborators and the Cartesia recognizer."""

import asyncio
import base64
import json
from types import SimpleNamespace

import httpx
import pytest
from anthropic import APIConnectionError, APIStatusError

from asr import CartesiaASR
from errors import BackendResponseError, TransportError
from history import InMemoryHistoryStore, SupabaseHistoryStore
from llm import AnthropicLLM, ProxyLLM
from models import Turn
from retrieval import VectorSearchRetriever
from supabase_client import SupabaseClient, extract_field
from tests.conftest import FakeAnthropic, FakeAnthropicStream, make_supabase
from tts import CartesiaTTS, ProxyTTS


class TestExtractField:
    def test_first_non_empty_key_wins(self) -> None:
        assert extract_field({"audio": "", "data": "QUJD"}, ("audioContent", "audio", "data")) == "QUJD"

    def test_non_mapping(self) -> None:
        assert extract_field(["responseText"], ("responseText",)) == ""

    def test_non_string_values_are_skipped(self) -> None:
        assert extract_field({"responseText": {"text": "x"}}, ("responseText",)) == ""


class TestProxyLLM:
    async def test_sends_prompt_and_model(self) -> None:
        calls = []
        client = make_supabase({"/functions/v1/llm-proxy": (200, {"responseText": "Hi!"})}, calls)
        llm = ProxyLLM(client, model="gpt-4o-mini")

        assert await llm.generate("hello") == "Hi!"
        request = calls[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"prompt": "hello", "model": "gpt-4o-mini"}
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["authorization"] == "Bearer anon-key"
        await client.aclose()

    async def test_model_omitted_when_unset(self) -> None:
        calls = []
        client = make_supabase({"/functions/v1/llm-proxy": (200, {"responseText": "ok"})}, calls)
        await ProxyLLM(client).generate("hello")
        assert json.loads(calls[0].content) == {"prompt": "hello"}
        await client.aclose()

    async def test_configured_alias(self) -> None:
        client = make_supabase({"/functions/v1/llm-proxy": (200, {"text": "aliased"})})
        llm = ProxyLLM(client, response_keys=("responseText", "text"))
        assert await llm.generate("hello") == "aliased"
        await client.aclose()

    async def test_missing_field(self) -> None:
        client = make_supabase({"/functions/v1/llm-proxy": (200, {"text": "not accepted"})})
        with pytest.raises(BackendResponseError, match="Accepted keys: responseText"):
            await ProxyLLM(client).generate("hello")
        await client.aclose()

    async def test_error_status(self) -> None:
        client = make_supabase({"/functions/v1/llm-proxy": (502, {"error": "upstream down"})})
        with pytest.raises(BackendResponseError, match="LLM Proxy Error: upstream down"):
            await ProxyLLM(client).generate("hello")
        await client.aclose()


class TestProxyTTS:
    @pytest.mark.parametrize("key", ["audioContent", "audio", "data"])
    async def test_accepted_keys(self, key) -> None:
        client = make_supabase({"/functions/v1/tts-proxy": (200, {key: "AAAA"})})
        assert await ProxyTTS(client).synthesize("hi") == "AAAA"
        await client.aclose()

    async def test_missing_audio(self) -> None:
        client = make_supabase({"/functions/v1/tts-proxy": (200, {})})
        with pytest.raises(BackendResponseError, match="standardized TTS response"):
            await ProxyTTS(client).synthesize("hi")
        await client.aclose()


class TestSupabaseClient:
    async def test_test_connection(self) -> None:
        client = make_supabase({"/functions/v1/test-connection": (200, {"success": True, "message": "pong"})})
        assert (await client.test_connection())["message"] == "pong"
        await client.aclose()

    async def test_test_connection_failure(self) -> None:
        client = make_supabase({"/functions/v1/test-connection": (200, {"success": False})})
        with pytest.raises(BackendResponseError):
            await client.test_connection()
        await client.aclose()

    async def test_unreachable_is_transport_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = SupabaseClient("https://project.supabase.co", "anon-key", transport=httpx.MockTransport(refuse))
        with pytest.raises(TransportError, match="llm-proxy Error: connection refused"):
            await client.invoke("llm-proxy", {})
        await client.aclose()


class TestSupabaseHistoryStore:
    async def test_load_filters_by_session_in_order(self) -> None:
        calls = []
        rows = [{"id": 1, "user_text": "hi", "model_text": "hello"},
                {"id": 2, "user_text": "bye", "model_text": None}]
        client = make_supabase({"/rest/v1/chat_history": (200, rows)}, calls)

        turns = await SupabaseHistoryStore(client).load("s-1")

        assert turns == [Turn(1, "hi", "hello"), Turn(2, "bye", "")]
        params = calls[0].url.params
        assert params["session_id"] == "eq.s-1"
        assert params["order"] == "created_at.asc"
        assert params["select"] == "id,user_text,model_text"
        await client.aclose()

    async def test_append_inserts_row(self) -> None:
        calls = []
        client = make_supabase({"/rest/v1/chat_history": (201, None)}, calls)
        await SupabaseHistoryStore(client).append("s-1", Turn(7, "hi", "hello"))

        assert calls[0].method == "POST"
        assert calls[0].headers["prefer"] == "return=minimal"
        assert json.loads(calls[0].content) == {"session_id": "s-1", "user_text": "hi", "model_text": "hello"}
        await client.aclose()

    async def test_one_sided_turns_are_not_stored(self) -> None:
        calls = []
        client = make_supabase({"/rest/v1/chat_history": (201, None)}, calls)
        await SupabaseHistoryStore(client).append("s-1", Turn(8, "hi", ""))
        assert calls == []
        await client.aclose()

    async def test_load_error(self) -> None:
        client = make_supabase({"/rest/v1/chat_history": (401, {"message": "JWT expired"})})
        with pytest.raises(BackendResponseError, match="JWT expired"):
            await SupabaseHistoryStore(client).load("s-1")
        await client.aclose()


class TestInMemoryHistoryStore:
    async def test_sessions_are_separate(self) -> None:
        store = InMemoryHistoryStore()
        await store.append("a", Turn(1, "x", "y"))
        await store.append("b", Turn(2, "p", "q"))
        await store.append("a", Turn(3, "z", ""))
        assert [t.id for t in await store.load("a")] == [1, 3]
        assert await store.load("missing") == []


class TestVectorSearchRetriever:
    async def test_joins_contents(self) -> None:
        calls = []
        client = make_supabase({"/functions/v1/vector-search": (200, [
            {"content": "first"}, {"content": ""}, {"content": "second"},
        ])}, calls)
        assert await VectorSearchRetriever(client).search("q") == "first\n---\nsecond"
        assert json.loads(calls[0].content) == {"query": "q"}
        await client.aclose()

    async def test_non_list_is_no_context(self) -> None:
        client = make_supabase({"/functions/v1/vector-search": (200, {"content": "x"})})
        assert await VectorSearchRetriever(client).search("q") == ""
        await client.aclose()

    async def test_failure_is_no_context(self) -> None:
        client = make_supabase({"/functions/v1/vector-search": (500, {"error": "boom"})})
        assert await VectorSearchRetriever(client).search("q") == ""
        await client.aclose()


class FakeSTTSocket:
    def __init__(self, results):
        self.results = results
        self.sent = []
        self.closed = False

    async def send(self, chunk):
        self.sent.append(chunk)

    async def receive(self):
        for result in self.results:
            await asyncio.sleep(0)
            yield result

    async def close(self):
        self.closed = True


def fake_cartesia(socket):
    async def websocket(**kwargs):
        socket.options = kwargs
        return socket

    async def close():
        pass

    return SimpleNamespace(stt=SimpleNamespace(websocket=websocket), close=close)


class TestCartesiaASR:
    async def test_first_final_ends_utterance(self) -> None:
        socket = FakeSTTSocket([
            {"type": "transcript", "text": "what", "is_final": False},
            {"type": "transcript", "text": "what time", "is_final": False},
            {"type": "transcript", "text": " what time is it ", "is_final": True},
            {"type": "transcript", "text": "ignored", "is_final": True},
        ])
        asr = CartesiaASR("key", client=fake_cartesia(socket))
        queue = asyncio.Queue()
        queue.put_nowait(b"\x00\x01")
        interims = []

        text = await asr.recognize(queue, interims.append)

        assert text == "what time is it"
        assert interims == ["what", "what time"]
        assert socket.closed
        assert socket.options["encoding"] == "pcm_s16le"
        assert socket.options["sample_rate"] == 16000

    async def test_done_without_final(self) -> None:
        socket = FakeSTTSocket([{"type": "done"}])
        asr = CartesiaASR("key", client=fake_cartesia(socket))
        assert await asr.recognize(asyncio.Queue(), lambda text: None) == ""

    async def test_error_result(self) -> None:
        socket = FakeSTTSocket([{"type": "error", "message": "bad audio"}])
        asr = CartesiaASR("key", client=fake_cartesia(socket))
        with pytest.raises(TransportError, match="bad audio"):
            await asr.recognize(asyncio.Queue(), lambda text: None)
        assert socket.closed

    async def test_connect_failure(self) -> None:
        async def refuse(**kwargs):
            raise OSError("refused")

        async def close():
            pass

        client = SimpleNamespace(stt=SimpleNamespace(websocket=refuse), close=close)
        with pytest.raises(TransportError, match="Speech recognition connection error"):
            await CartesiaASR("key", client=client).connect()

    async def test_connect_ahead_of_recognize_reuses_socket(self) -> None:
        socket = FakeSTTSocket([{"type": "transcript", "text": "hi", "is_final": True}])
        opened = []

        async def websocket(**kwargs):
            opened.append(kwargs)
            return socket

        async def close():
            pass

        asr = CartesiaASR("key", client=SimpleNamespace(stt=SimpleNamespace(websocket=websocket), close=close))
        await asr.connect()
        await asr.connect()
        assert await asr.recognize(asyncio.Queue(), lambda text: None) == "hi"
        assert len(opened) == 1


ANTHROPIC_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class TestAnthropicLLM:
    async def test_streams_and_remembers_exchange(self) -> None:
        client = FakeAnthropic([FakeAnthropicStream(["Hello", " there. "])])
        llm = AnthropicLLM("key", model="claude-test", client=client)

        assert await llm.generate("hi") == "Hello there."
        request = client.requests[0]
        assert request["model"] == "claude-test"
        assert request["messages"] == [{"role": "user", "content": "hi"}]
        assert llm.message_history[-1] == {"role": "assistant", "content": "Hello there."}

    async def test_history_is_bounded(self) -> None:
        client = FakeAnthropic([FakeAnthropicStream([f"answer {i}"]) for i in range(12)])
        llm = AnthropicLLM("key", client=client)
        for i in range(12):
            await llm.generate(f"question {i}")
        assert len(llm.message_history) == 20
        assert llm.message_history[0] == {"role": "user", "content": "question 2"}

    async def test_connection_error(self) -> None:
        client = FakeAnthropic([FakeAnthropicStream(error=APIConnectionError(request=ANTHROPIC_REQUEST))])
        with pytest.raises(TransportError, match="LLM connection error"):
            await AnthropicLLM("key", client=client).generate("hi")

    async def test_api_error(self) -> None:
        error = APIStatusError("overloaded", response=httpx.Response(529, request=ANTHROPIC_REQUEST), body=None)
        client = FakeAnthropic([FakeAnthropicStream(error=error)])
        with pytest.raises(BackendResponseError, match="LLM API error"):
            await AnthropicLLM("key", client=client).generate("hi")

    async def test_empty_response(self) -> None:
        client = FakeAnthropic([FakeAnthropicStream(["  "])])
        llm = AnthropicLLM("key", client=client)
        with pytest.raises(BackendResponseError, match="empty response"):
            await llm.generate("hi")
        assert llm.message_history == []


class FakeTTSSocket:
    def __init__(self, audio=(), error=None):
        self.audio = audio
        self.error = error
        self.request = None
        self.closed = False

    async def send(self, **kwargs):
        self.request = kwargs
        if self.error is not None:
            raise self.error
        return self._outputs()

    async def _outputs(self):
        for chunk in self.audio:
            yield SimpleNamespace(audio=chunk)

    async def close(self):
        self.closed = True


def fake_cartesia_tts(socket):
    async def websocket():
        return socket

    return SimpleNamespace(tts=SimpleNamespace(websocket=websocket))


class TestCartesiaTTS:
    async def test_returns_base64_pcm(self) -> None:
        socket = FakeTTSSocket(audio=[b"\x01\x00", None, b"\x02\x00"])
        tts = CartesiaTTS("key", sample_rate=24000, voice_id="voice-1", client=fake_cartesia_tts(socket))

        audio = await tts.synthesize("Hello")

        assert base64.b64decode(audio) == b"\x01\x00\x02\x00"
        assert socket.request["transcript"] == "Hello"
        assert socket.request["voice"] == {"id": "voice-1"}
        assert socket.request["output_format"] == {
            "container": "raw", "encoding": "pcm_s16le", "sample_rate": 24000,
        }
        assert socket.closed

    async def test_no_audio(self) -> None:
        socket = FakeTTSSocket(audio=[])
        with pytest.raises(BackendResponseError, match="no audio"):
            await CartesiaTTS("key", client=fake_cartesia_tts(socket)).synthesize("Hello")

    async def test_api_error(self) -> None:
        socket = FakeTTSSocket(error=RuntimeError("quota exceeded"))
        with pytest.raises(BackendResponseError, match="TTS API error: quota exceeded"):
            await CartesiaTTS("key", client=fake_cartesia_tts(socket)).synthesize("Hello")
        assert socket.closed

    async def test_connect_failure(self) -> None:
        async def refuse():
            raise OSError("refused")

        client = SimpleNamespace(tts=SimpleNamespace(websocket=refuse))
        with pytest.raises(TransportError, match="TTS connection error"):
            await CartesiaTTS("key", client=client).synthesize("Hello")
