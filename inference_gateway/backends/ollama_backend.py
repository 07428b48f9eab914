"""
Ollama backend implementation.
"""

import asyncio
import base64
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from loguru import logger

from .base import Capabilities, InferenceBackend, Response
from ..config import BackendKind, GatewayConfig
from ..errors import (
    ConfigurationError,
    ConnectionFailed,
    InferenceError,
    InvalidResponse,
    NotConnected,
    VisionNotSupported,
    map_status,
    map_transport_error,
)
from ..prompts import build_remote_system_prompt, build_vision_prompt, format_messages
from ..retry import execute_with_retry
from ..streaming import TextStream

DEFAULT_MODEL = "llama3.2"
USER_AGENT = "inference-gateway/1.0"
VISION_MARKERS = ("llava", "vision", "-vl", "moondream")


def is_vision_model_name(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in VISION_MARKERS)


class OllamaBackend(InferenceBackend):
    """
    Backend implementation for an Ollama server.

    Every request requires a successful ``test_connection`` first. Chat and
    liveness calls go through the retry executor; model list and pull are
    one-shot. A failed chat request records ``last_error`` but leaves the
    connection status alone: only ``test_connection`` flips connectivity.
    """

    kind = BackendKind.OLLAMA

    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(config.validate())
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        self._available_models: List[str] = []

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def model(self) -> str:
        return self.config.model or DEFAULT_MODEL

    @property
    def available_models(self) -> List[str]:
        return list(self._available_models)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.config.timeout),
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
        return self._client

    async def _with_retry(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await execute_with_retry(
            operation,
            max_attempts=self.config.max_retries,
            base_delay=self.config.retry_delay,
            sleep=self._sleep,
        )

    def _build_payload(self, messages: List[Dict[str, Any]], stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }

    async def test_connection(self) -> bool:
        """Check liveness via GET /api/tags; any 2xx is success."""
        client = self._get_client()
        self._state.to_connecting()

        try:
            response = await self._with_retry(lambda: client.get("/api/tags"))
        except asyncio.CancelledError:
            self._state.to_disconnected()
            raise
        except Exception as e:
            error = map_transport_error(e)
            logger.warning(f"Failed to connect to Ollama at {self.base_url}: {error}")
            self._state.to_error(error)
            raise error from e

        if not response.is_success:
            error = ConnectionFailed(response.status_code)
            logger.warning(f"Failed to connect to Ollama: {response.status_code}")
            self._state.to_error(error)
            raise error

        try:
            self._available_models = [m["name"] for m in response.json().get("models", [])]
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.debug("Liveness response carried no model list")
            self._available_models = []

        self._state.to_connected()
        logger.info(f"Connected to Ollama at {self.base_url}")
        logger.info(f"Available models: {self._available_models}")
        return True

    async def _chat(self, payload: Dict[str, Any]) -> Response:
        if not self.is_connected:
            raise NotConnected()

        client = self._get_client()
        start_time = time.monotonic()

        try:
            response = await self._with_retry(lambda: client.post("/api/chat", json=payload))
        except Exception as e:
            raise self._fail(map_transport_error(e)) from e

        elapsed_time = time.monotonic() - start_time

        if not response.is_success:
            logger.error(f"Ollama chat failed: HTTP {response.status_code}: {response.text}")
            raise self._fail(map_status(response.status_code))

        try:
            data = response.json()
            content = data["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            raise self._fail(InvalidResponse()) from e

        return self._to_response(data, content, elapsed_time)

    def _to_response(self, data: Dict[str, Any], content: str, elapsed_time: float) -> Response:
        prompt_tokens = data.get("prompt_eval_count")
        eval_tokens = data.get("eval_count")
        if prompt_tokens is None and eval_tokens is None:
            token_count = None
        else:
            token_count = (prompt_tokens or 0) + (eval_tokens or 0)

        total_duration = data.get("total_duration")
        response_time = total_duration / 1e9 if total_duration else elapsed_time

        metadata: Dict[str, Any] = {
            "model": data.get("model", self.model),
            "processing_time": response_time,
        }
        if token_count is not None:
            metadata["total_tokens"] = token_count
        for key in ("prompt_eval_count", "eval_count", "load_duration", "done_reason"):
            if key in data:
                metadata[key] = data[key]

        return Response(
            content=content,
            response_time=response_time,
            token_count=token_count,
            metadata=metadata,
        )

    async def send_message(self, message: str, context: str = "") -> Response:
        messages = format_messages(build_remote_system_prompt(context), message)
        return await self._chat(self._build_payload(messages, stream=False))

    def send_message_streaming(self, message: str, context: str = "") -> TextStream:
        if not self.is_connected:
            return TextStream.failed(NotConnected())

        messages = format_messages(build_remote_system_prompt(context), message)
        payload = self._build_payload(messages, stream=True)
        return TextStream(lambda: self._stream_chat(payload))

    async def _stream_chat(self, payload: Dict[str, Any]):
        client = self._get_client()
        request = client.build_request("POST", "/api/chat", json=payload)

        try:
            response = await self._with_retry(lambda: client.send(request, stream=True))
        except Exception as e:
            raise self._fail(map_transport_error(e)) from e

        try:
            if not response.is_success:
                raise self._fail(map_status(response.status_code))

            async for line in response.aiter_lines():
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    raise self._fail(InvalidResponse()) from e

                if "error" in data:
                    raise self._fail(InferenceError(str(data["error"])))

                content = data.get("message", {}).get("content", "")
                if content:
                    yield content

                if data.get("done"):
                    logger.debug(f"Ollama stream finished: {data.get('done_reason', 'stop')}")
                    return

            raise self._fail(InvalidResponse("Stream ended before generation completed"))

        except httpx.HTTPError as e:
            raise self._fail(map_transport_error(e)) from e
        finally:
            await response.aclose()

    async def analyze_image(self, image: bytes, prompt: str, context: str = "") -> Response:
        if not is_vision_model_name(self.model):
            raise VisionNotSupported()

        system_prompt = build_remote_system_prompt("")
        messages = format_messages(system_prompt, build_vision_prompt(prompt, context))
        messages[-1]["images"] = [base64.b64encode(image).decode("ascii")]

        response = await self._chat(self._build_payload(messages, stream=False))
        metadata = dict(response.metadata)
        metadata["is_vision_analysis"] = True
        return Response(
            content=response.content,
            response_time=response.response_time,
            token_count=response.token_count,
            metadata=metadata,
        )

    async def get_capabilities(self) -> Capabilities:
        models = self.available_models or [self.model]
        return Capabilities(
            supported_models=models,
            max_tokens=self.config.context_window,
            supports_streaming=True,
            supports_images=any(is_vision_model_name(m) for m in models),
            supports_documents=False,
        )

    async def list_models(self) -> List[str]:
        """List models installed on the server (one-shot, not retried)."""
        if not self.is_connected:
            raise NotConnected()

        try:
            response = await self._get_client().get("/api/tags")
        except httpx.HTTPError as e:
            raise self._fail(map_transport_error(e)) from e

        if not response.is_success:
            raise self._fail(map_status(response.status_code))

        try:
            self._available_models = [m["name"] for m in response.json().get("models", [])]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise self._fail(InvalidResponse()) from e
        return self.available_models

    async def pull_model(self, model: str) -> bool:
        """Pull a model from the Ollama registry (one-shot, not retried)."""
        if not self.is_connected:
            raise NotConnected()

        logger.info(f"Pulling model: {model}")
        client = self._get_client()

        try:
            async with client.stream("POST", "/api/pull", json={"name": model}) as response:
                if not response.is_success:
                    raise self._fail(map_status(response.status_code))

                async for line in response.aiter_lines():
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue

                    if "error" in data:
                        raise self._fail(InferenceError(str(data["error"])))

                    status = data.get("status", "")
                    if "pulling" in status.lower():
                        logger.debug(f"Pull status: {status}")
                    if status == "success":
                        logger.info(f"Successfully pulled: {model}")
                        if model not in self._available_models:
                            self._available_models.append(model)
                        return True
        except httpx.HTTPError as e:
            raise self._fail(map_transport_error(e)) from e

        return False

    async def update_configuration(self, config: GatewayConfig) -> None:
        if config == self.config:
            return

        config.validate()
        if config.kind is not self.kind:
            raise ConfigurationError("Switching backend kind requires the gateway factory")

        endpoint_changed = not config.same_endpoint(self.config)
        self.config = config

        if endpoint_changed:
            # In-flight requests on the old client are not awaited
            await self._close_client()
            self._available_models = []
            self._state.to_disconnected()
            logger.info(f"Ollama endpoint changed to {self.base_url}; connection must be re-tested")

    async def _close_client(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def close(self) -> None:
        await self._close_client()
        self._state.to_disconnected()
        logger.info("Disconnected from Ollama")
