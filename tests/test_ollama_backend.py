"""Tests for OllamaBackend. HTTP is mocked at the httpx boundary with respx."""

import asyncio
import base64
import json

import httpx
import pytest
import respx

from inference_gateway.backends.ollama_backend import OllamaBackend, is_vision_model_name
from inference_gateway.config import BackendKind
from inference_gateway.errors import (
    ConfigurationError,
    ConnectionFailed,
    InferenceError,
    InvalidResponse,
    NotConnected,
    RateLimitExceeded,
    RequestFailed,
    ServerUnavailable,
    VisionNotSupported,
)
from inference_gateway.state import ConnectionStatus
from tests.conftest import MOCK_CHAT_RESPONSE, MOCK_REPLY, MOCK_TAGS_RESPONSE, OLLAMA_URL


def ndjson(*records) -> bytes:
    return "\n".join(json.dumps(r) for r in records).encode() + b"\n"


def chat_chunks(*parts, done=True):
    records = [{"message": {"role": "assistant", "content": p}, "done": False} for p in parts]
    if done:
        records.append({"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"})
    return ndjson(*records)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def ollama_mock():
    with respx.mock(base_url=OLLAMA_URL, assert_all_called=False) as mock:
        yield mock


@pytest.fixture
async def backend(ollama_config, fake_sleep):
    backend = OllamaBackend(ollama_config, sleep=fake_sleep)
    yield backend
    await backend.close()


@pytest.fixture
async def connected(backend, ollama_mock):
    ollama_mock.get("/api/tags").mock(return_value=httpx.Response(200, json=MOCK_TAGS_RESPONSE))
    await backend.test_connection()
    return backend


# ─────────────────────────────────────────────────────────────────────
# test_connection()
# ─────────────────────────────────────────────────────────────────────

class TestConnection:

    async def test_tags_ok_connects(self, backend, ollama_mock):
        ollama_mock.get("/api/tags").mock(return_value=httpx.Response(200, json=MOCK_TAGS_RESPONSE))

        assert await backend.test_connection() is True
        assert backend.is_connected
        assert backend.last_error is None
        assert backend.available_models == ["llama3.2:latest", "llava:7b"]

    async def test_retries_transient_failure(self, backend, ollama_mock, sleeps):
        ollama_mock.get("/api/tags").mock(side_effect=[
            httpx.ConnectError("refused"),
            httpx.Response(200, json=MOCK_TAGS_RESPONSE),
        ])

        await backend.test_connection()
        assert backend.is_connected
        assert sleeps == [0.5]

    async def test_unreachable_server_goes_to_error(self, backend, ollama_mock, sleeps):
        route = ollama_mock.get("/api/tags").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(ServerUnavailable):
            await backend.test_connection()

        assert route.call_count == 3
        assert sleeps == [0.5, 1.0]
        assert backend.connection_status is ConnectionStatus.ERROR
        assert isinstance(backend.last_error, ServerUnavailable)

    def test_zero_attempts_rejected(self, ollama_config):
        with pytest.raises(ConfigurationError):
            OllamaBackend(ollama_config.replace(max_retries=0))

    async def test_single_attempt_is_not_retried(self, ollama_config, fake_sleep, ollama_mock, sleeps):
        route = ollama_mock.get("/api/tags").mock(side_effect=httpx.ConnectError("refused"))
        backend = OllamaBackend(ollama_config.replace(max_retries=1), sleep=fake_sleep)

        try:
            with pytest.raises(ServerUnavailable):
                await backend.test_connection()
        finally:
            await backend.close()

        assert route.call_count == 1
        assert sleeps == []

    async def test_non_2xx_is_connection_failed(self, backend, ollama_mock):
        ollama_mock.get("/api/tags").mock(return_value=httpx.Response(503))

        with pytest.raises(ConnectionFailed) as exc_info:
            await backend.test_connection()

        assert exc_info.value.status_code == 503
        assert backend.connection_status is ConnectionStatus.ERROR

    async def test_body_without_models_still_connects(self, backend, ollama_mock):
        ollama_mock.get("/api/tags").mock(return_value=httpx.Response(200, text="ok"))
        await backend.test_connection()
        assert backend.is_connected
        assert backend.available_models == []

    async def test_cancelled_check_ends_disconnected(self, ollama_config, ollama_mock):
        sleeping = asyncio.Event()

        async def hanging_sleep(delay):
            sleeping.set()
            await asyncio.Event().wait()

        backend = OllamaBackend(ollama_config, sleep=hanging_sleep)
        ollama_mock.get("/api/tags").mock(side_effect=httpx.ConnectError("refused"))

        task = asyncio.create_task(backend.test_connection())
        await sleeping.wait()
        assert backend.connection_status is ConnectionStatus.CONNECTING

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert backend.connection_status is ConnectionStatus.DISCONNECTED
        await backend.close()

    async def test_listener_sees_transitions(self, backend, ollama_mock):
        seen = []
        backend.add_listener(lambda s: seen.append(s.status))
        ollama_mock.get("/api/tags").mock(return_value=httpx.Response(200, json=MOCK_TAGS_RESPONSE))

        await backend.test_connection()
        assert seen == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]


# ─────────────────────────────────────────────────────────────────────
# send_message()
# ─────────────────────────────────────────────────────────────────────

class TestSendMessage:

    async def test_requires_connection(self, backend, ollama_mock):
        route = ollama_mock.post("/api/chat")
        with pytest.raises(NotConnected):
            await backend.send_message("hi")
        assert not route.called

    async def test_returns_content_and_usage(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(return_value=httpx.Response(200, json=MOCK_CHAT_RESPONSE))

        response = await connected.send_message("What is my average heart rate?", "HR: 72bpm avg")

        assert response.content == MOCK_REPLY
        assert response.token_count == 42
        assert response.response_time == pytest.approx(1.5)
        assert response.metadata["model"] == "llama3.2"
        assert response.metadata["total_tokens"] == 42
        assert response.metadata["done_reason"] == "stop"

    async def test_payload_carries_context_and_options(self, connected, ollama_mock):
        route = ollama_mock.post("/api/chat").mock(return_value=httpx.Response(200, json=MOCK_CHAT_RESPONSE))

        await connected.send_message("What is my average heart rate?", "HR: 72bpm avg")

        payload = json.loads(route.calls.last.request.content)
        assert payload["model"] == "llama3.2"
        assert payload["stream"] is False
        assert payload["options"] == {"temperature": 0.1, "num_predict": 2048}
        system, user = payload["messages"]
        assert system["role"] == "system"
        assert "HR: 72bpm avg" in system["content"]
        assert user == {"role": "user", "content": "What is my average heart rate?"}

    async def test_missing_usage_gives_no_token_count(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(return_value=httpx.Response(
            200, json={"message": {"content": "hi"}, "done": True},
        ))
        response = await connected.send_message("hi")
        assert response.token_count is None
        assert "total_tokens" not in response.metadata

    async def test_server_error_keeps_status(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(return_value=httpx.Response(500, text="boom"))

        with pytest.raises(RequestFailed) as exc_info:
            await connected.send_message("hi")

        assert exc_info.value.status_code == 500
        assert connected.connection_status is ConnectionStatus.CONNECTED
        assert isinstance(connected.last_error, RequestFailed)

    async def test_rate_limit(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(return_value=httpx.Response(429))
        with pytest.raises(RateLimitExceeded):
            await connected.send_message("hi")

    async def test_malformed_body_is_invalid_response(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(return_value=httpx.Response(200, json={"done": True}))
        with pytest.raises(InvalidResponse):
            await connected.send_message("hi")
        assert connected.is_connected

    async def test_transient_chat_failure_is_retried(self, connected, ollama_mock, sleeps):
        ollama_mock.post("/api/chat").mock(side_effect=[
            httpx.ReadTimeout("slow"),
            httpx.Response(200, json=MOCK_CHAT_RESPONSE),
        ])
        response = await connected.send_message("hi")
        assert response.content == MOCK_REPLY
        assert sleeps == [0.5]


# ─────────────────────────────────────────────────────────────────────
# send_message_streaming()
# ─────────────────────────────────────────────────────────────────────

class TestStreaming:

    async def test_requires_connection(self, backend):
        stream = backend.send_message_streaming("hi")
        with pytest.raises(NotConnected):
            await stream.collect()

    async def test_yields_fragments_in_order(self, connected, ollama_mock):
        route = ollama_mock.post("/api/chat").mock(
            return_value=httpx.Response(200, content=chat_chunks("Your ", "heart ", "rate"))
        )

        fragments = []
        async with connected.send_message_streaming("hi", "HR: 72bpm") as stream:
            async for fragment in stream:
                fragments.append(fragment)

        assert fragments == ["Your ", "heart ", "rate"]
        assert json.loads(route.calls.last.request.content)["stream"] is True

    async def test_error_record_raises(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(return_value=httpx.Response(
            200, content=ndjson({"message": {"content": "Hi"}, "done": False}, {"error": "model crashed"}),
        ))

        stream = connected.send_message_streaming("hi")
        with pytest.raises(InferenceError):
            await stream.collect()
        assert isinstance(connected.last_error, InferenceError)
        assert connected.is_connected

    async def test_truncated_stream_is_invalid(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(
            return_value=httpx.Response(200, content=chat_chunks("Hi", done=False))
        )
        with pytest.raises(InvalidResponse):
            await connected.send_message_streaming("hi").collect()

    async def test_http_error_status(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(return_value=httpx.Response(500))
        with pytest.raises(RequestFailed):
            await connected.send_message_streaming("hi").collect()
        assert connected.is_connected

    async def test_early_close_stops_stream(self, connected, ollama_mock):
        ollama_mock.post("/api/chat").mock(
            return_value=httpx.Response(200, content=chat_chunks(*[f"t{i} " for i in range(50)]))
        )

        stream = connected.send_message_streaming("hi")
        async for fragment in stream:
            assert fragment == "t0 "
            break
        await stream.aclose()

        assert stream.closed
        assert connected.is_connected


# ─────────────────────────────────────────────────────────────────────
# analyze_image() / capabilities / models
# ─────────────────────────────────────────────────────────────────────

class TestVisionAndModels:

    def test_vision_name_markers(self):
        assert is_vision_model_name("llava:7b")
        assert is_vision_model_name("qwen2.5-VL")
        assert not is_vision_model_name("llama3.2")

    async def test_non_vision_model_rejected_without_state_change(self, backend, ollama_mock):
        route = ollama_mock.post("/api/chat")
        with pytest.raises(VisionNotSupported):
            await backend.analyze_image(b"\x89PNG", "What is this?")
        assert not route.called
        assert backend.connection_status is ConnectionStatus.DISCONNECTED
        assert backend.last_error is None

    async def test_vision_model_sends_base64_image(self, ollama_config, fake_sleep, ollama_mock):
        ollama_mock.get("/api/tags").mock(return_value=httpx.Response(200, json=MOCK_TAGS_RESPONSE))
        route = ollama_mock.post("/api/chat").mock(return_value=httpx.Response(200, json=MOCK_CHAT_RESPONSE))

        async with OllamaBackend(ollama_config.replace(model="llava:7b"), sleep=fake_sleep) as backend:
            await backend.test_connection()
            response = await backend.analyze_image(b"\x89PNG", "Read this lab report", "HR: 72bpm")

        user = json.loads(route.calls.last.request.content)["messages"][-1]
        assert user["images"] == [base64.b64encode(b"\x89PNG").decode("ascii")]
        assert "Read this lab report" in user["content"]
        assert response.metadata["is_vision_analysis"] is True

    async def test_capabilities_from_tags(self, connected):
        capabilities = await connected.get_capabilities()
        assert capabilities.supported_models == ["llama3.2:latest", "llava:7b"]
        assert capabilities.supports_streaming
        assert capabilities.supports_images
        assert capabilities.max_tokens == 8192

    async def test_capabilities_before_connect(self, backend):
        capabilities = await backend.get_capabilities()
        assert capabilities.supported_models == ["llama3.2"]
        assert not capabilities.supports_images

    async def test_list_models(self, connected, ollama_mock):
        ollama_mock.get("/api/tags").mock(return_value=httpx.Response(
            200, json={"models": [{"name": "mistral:7b"}]},
        ))
        assert await connected.list_models() == ["mistral:7b"]

    async def test_pull_model(self, connected, ollama_mock):
        route = ollama_mock.post("/api/pull").mock(return_value=httpx.Response(
            200, content=ndjson({"status": "pulling manifest"}, {"status": "success"}),
        ))
        assert await connected.pull_model("mistral:7b") is True
        assert json.loads(route.calls.last.request.content) == {"name": "mistral:7b"}
        assert "mistral:7b" in connected.available_models

    async def test_pull_model_registry_error(self, connected, ollama_mock):
        ollama_mock.post("/api/pull").mock(return_value=httpx.Response(
            200, content=ndjson({"error": "pull model manifest: file does not exist"}),
        ))
        with pytest.raises(InferenceError):
            await connected.pull_model("nope")

    async def test_pull_model_requires_connection(self, backend, ollama_mock):
        route = ollama_mock.post("/api/pull").mock(return_value=httpx.Response(200))
        with pytest.raises(NotConnected):
            await backend.pull_model("mistral:7b")
        assert not route.called


# ─────────────────────────────────────────────────────────────────────
# update_configuration() / close()
# ─────────────────────────────────────────────────────────────────────

class TestReconfiguration:

    async def test_same_config_is_noop(self, connected):
        await connected.update_configuration(connected.config)
        assert connected.is_connected

    async def test_generation_change_keeps_connection(self, connected, ollama_mock):
        route = ollama_mock.post("/api/chat").mock(return_value=httpx.Response(200, json=MOCK_CHAT_RESPONSE))

        await connected.update_configuration(connected.config.replace(temperature=0.7))
        assert connected.is_connected

        await connected.send_message("hi")
        assert json.loads(route.calls.last.request.content)["options"]["temperature"] == 0.7

    async def test_endpoint_change_disconnects(self, connected):
        await connected.update_configuration(connected.config.replace(hostname="other.test"))
        assert connected.connection_status is ConnectionStatus.DISCONNECTED
        assert connected.base_url == "http://other.test:11434"

    async def test_kind_change_rejected(self, connected):
        with pytest.raises(ConfigurationError):
            await connected.update_configuration(connected.config.replace(kind=BackendKind.ON_DEVICE))
        assert connected.is_connected

    async def test_close_disconnects(self, connected):
        await connected.close()
        assert connected.connection_status is ConnectionStatus.DISCONNECTED
