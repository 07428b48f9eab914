"""
On-device backend: local GGUF models behind the gateway contract.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

from loguru import logger

from .base import Capabilities, InferenceBackend, Response
from .runtime import ModelHandle, ModelRuntime
from .store import ModelStore
from ..catalog import CatalogEntry, ModelCatalog
from ..config import BackendKind, GatewayConfig
from ..errors import (
    ConfigurationError,
    ContextTooLong,
    GatewayError,
    ModelLoadFailed,
    ModelNotDownloaded,
    ServerUnavailable,
    VisionNotSupported,
)
from ..prompts import (
    HEALTH_CHECK_PROMPT,
    VISION_SYSTEM_PROMPT,
    build_on_device_system_prompt,
    build_vision_prompt,
)
from ..streaming import TextStream
from ..utils import estimate_tokens

DEFAULT_CONTEXT_TOKENS = 8192
HEALTH_CHECK_MAX_TOKENS = 8


class OnDeviceBackend(InferenceBackend):
    """
    Backend for models running in-process.

    Load, unload and connection-state transitions are serialised by one
    lifecycle lock, so at most one ModelHandle is resident at any time and a
    replacement always releases the previous handle first. Generations run
    outside the lock; a handle being unloaded waits for them (see
    ModelHandle). Load and generation failures are never retried.
    """

    kind = BackendKind.ON_DEVICE

    def __init__(
        self,
        config: GatewayConfig,
        runtime: ModelRuntime,
        store: ModelStore,
        catalog: ModelCatalog,
        auto_load: bool = True,
    ):
        super().__init__(config.validate())
        self.runtime = runtime
        self.store = store
        self.catalog = catalog
        self._handle: Optional[ModelHandle] = None
        self._release: Optional[asyncio.Future] = None
        self._lifecycle_lock = asyncio.Lock()
        self._startup: Optional[asyncio.Task] = None

        if auto_load:
            self._schedule_initial_load()

    def _schedule_initial_load(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; model will load on first use")
            return
        self._startup = loop.create_task(self._initialize_if_needed())

    async def wait_ready(self):
        """Wait for the background load started at construction, if any."""
        if self._startup is not None:
            await self._startup

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def current_model(self) -> Optional[CatalogEntry]:
        return self._handle.entry if self._handle else None

    # Lifecycle

    async def _initialize_if_needed(self):
        async with self._lifecycle_lock:
            await self._initialize_locked()

    async def _initialize_locked(self):
        """Automatic load; ends connected, error or disconnected. Never raises GatewayError."""
        if not self.config.enabled:
            self._state.to_disconnected()
            return

        entry = self.catalog.lookup(self.config.model)
        if entry is None or not self.store.is_downloaded(entry.id, self.config.quantization):
            self._state.to_disconnected()
            return

        try:
            await self._load_locked(entry)
        except GatewayError as e:
            logger.warning(f"Automatic model load failed: {e}")

    async def _load_locked(self, entry: CatalogEntry) -> ModelHandle:
        quantization = self.config.quantization
        if self._handle is not None:
            if self._handle.matches(entry.id, quantization):
                return self._handle
            await self._unload_locked()
        await self._await_release()

        self._state.to_connecting()
        path = self.store.model_path(entry, quantization)

        try:
            handle = await self.runtime.load(path, entry, quantization)
        except asyncio.CancelledError:
            self._state.to_disconnected()
            raise
        except GatewayError as e:
            self._state.to_error(e)
            raise
        except Exception as e:
            error = ModelLoadFailed(str(e))
            self._state.to_error(error)
            raise error from e

        self._handle = handle
        self._state.to_connected()
        return handle

    async def _unload_locked(self):
        handle, self._handle = self._handle, None
        if handle is not None:
            # Runs to completion even if this caller is cancelled
            self._release = asyncio.ensure_future(handle.close())
        await self._await_release()

    async def _await_release(self):
        release = self._release
        if release is None:
            return
        try:
            await asyncio.shield(release)
        finally:
            if release.done():
                self._release = None

    async def load(self) -> ModelHandle:
        """Load the configured model, replacing any other resident model."""
        entry = self._check_ready()
        async with self._lifecycle_lock:
            return await self._load_locked(entry)

    async def unload(self):
        async with self._lifecycle_lock:
            await self._unload_locked()
            self._state.to_disconnected()

    def _check_ready(self) -> CatalogEntry:
        try:
            if not self.config.enabled:
                raise ConfigurationError("On-device inference is disabled")
            entry = self.catalog.require(self.config.model)
            if not self.store.is_downloaded(entry.id, self.config.quantization):
                raise ModelNotDownloaded()
        except GatewayError as e:
            self._state.to_error(e)
            raise
        return entry

    # Contract

    async def test_connection(self) -> bool:
        entry = self._check_ready()

        async with self._lifecycle_lock:
            handle = await self._load_locked(entry)
            try:
                await handle.generate(
                    HEALTH_CHECK_PROMPT, HEALTH_CHECK_MAX_TOKENS, self.config.temperature
                )
            except GatewayError as e:
                logger.error(f"Model test failed: {e}")
                error = ServerUnavailable()
                self._state.to_error(error)
                raise error from e

            self._state.to_connected()
        return True

    async def _ensure_handle(self) -> ModelHandle:
        if not self.config.enabled:
            raise ConfigurationError("On-device inference is disabled")

        handle = self._handle
        if handle is not None and not handle.is_closing:
            return handle

        logger.info("No model resident; attempting to load before generating")
        await self.test_connection()
        handle = self._handle
        if handle is None:
            raise ModelNotDownloaded()
        return handle

    def _check_context(self, prompt: str):
        tokens = estimate_tokens(prompt, self.config.chars_per_token)
        if tokens > self.config.context_window:
            raise self._fail(ContextTooLong(tokens, self.config.context_window))

    def _metadata(self, handle: ModelHandle) -> Dict[str, Any]:
        return {
            "model": handle.entry.id,
            "display_name": handle.entry.display_name,
            "quantization": handle.quantization.value,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    def _build_prompt(self, handle: ModelHandle, message: str, context: str) -> str:
        system_prompt = build_on_device_system_prompt(context)
        return handle.entry.template.format(system_prompt, message)

    async def send_message(self, message: str, context: str = "") -> Response:
        handle = await self._ensure_handle()
        prompt = self._build_prompt(handle, message, context)
        self._check_context(prompt)

        logger.info(f"Generating response with model: {handle.entry.display_name}")
        start_time = time.monotonic()
        try:
            text = await handle.generate(prompt, self.config.max_tokens, self.config.temperature)
        except GatewayError as e:
            raise self._fail(e)

        return Response(
            content=text,
            response_time=time.monotonic() - start_time,
            token_count=estimate_tokens(text, self.config.chars_per_token),
            metadata=self._metadata(handle),
        )

    def send_message_streaming(self, message: str, context: str = "") -> TextStream:
        if not self.config.enabled:
            return TextStream.failed(ConfigurationError("On-device inference is disabled"))
        return TextStream(lambda: self._stream(message, context))

    async def _stream(self, message: str, context: str):
        handle = await self._ensure_handle()
        prompt = self._build_prompt(handle, message, context)
        self._check_context(prompt)

        logger.info(f"Starting streaming generation with model: {handle.entry.display_name}")
        chunks = handle.stream(prompt, self.config.max_tokens, self.config.temperature)
        try:
            async for chunk in chunks:
                yield chunk
        except GatewayError as e:
            raise self._fail(e)
        finally:
            await chunks.aclose()
        logger.info("Streaming generation completed")

    async def analyze_image(self, image: bytes, prompt: str, context: str = "") -> Response:
        if not self.config.enabled:
            raise ConfigurationError("On-device inference is disabled")

        entry = self.current_model or self.catalog.require(self.config.model)
        if not entry.is_vision_model:
            raise VisionNotSupported()

        handle = await self._ensure_handle()
        if not handle.entry.is_vision_model:
            raise VisionNotSupported()

        full_prompt = handle.entry.template.format(
            VISION_SYSTEM_PROMPT, build_vision_prompt(prompt, context)
        )
        self._check_context(full_prompt)

        logger.info(f"Analyzing image with vision model: {handle.entry.display_name}")
        start_time = time.monotonic()
        try:
            text = await handle.generate_with_image(
                image, full_prompt, self.config.max_tokens, self.config.temperature
            )
        except VisionNotSupported:
            raise
        except GatewayError as e:
            raise self._fail(e)

        metadata = self._metadata(handle)
        metadata["is_vision_analysis"] = True
        return Response(
            content=text,
            response_time=time.monotonic() - start_time,
            token_count=estimate_tokens(text, self.config.chars_per_token),
            metadata=metadata,
        )

    async def get_capabilities(self) -> Capabilities:
        names: List[str] = []
        for downloaded in self.store.downloaded_models():
            entry = self.catalog.lookup(downloaded.model_id)
            if entry is not None and entry.display_name not in names:
                names.append(entry.display_name)

        current = self.current_model or self.catalog.lookup(self.config.model)
        supports_vision = current.is_vision_model if current else False

        return Capabilities(
            supported_models=names or self.catalog.display_names(),
            max_tokens=current.context_window if current else DEFAULT_CONTEXT_TOKENS,
            supports_streaming=True,
            supports_images=supports_vision,
            supports_documents=supports_vision,
        )

    async def update_configuration(self, config: GatewayConfig) -> None:
        """
        Apply a new descriptor.

        Generation parameters take effect on the next request. A different
        model or quantization unloads the resident handle, then re-runs the
        automatic load before returning.
        """
        if config == self.config:
            return

        config.validate()
        if config.kind is not self.kind:
            raise ConfigurationError("Switching backend kind requires the gateway factory")

        async with self._lifecycle_lock:
            self.config = config
            handle = self._handle

            if not config.enabled:
                await self._unload_locked()
                self._state.to_disconnected()
                return

            if handle is not None and handle.matches(config.model, config.quantization):
                return

            if handle is not None:
                logger.info(
                    f"Configuration changed to {config.model} ({config.quantization.value}); "
                    "reloading model"
                )
                await self._unload_locked()
            await self._initialize_locked()

    async def close(self) -> None:
        if self._startup is not None and not self._startup.done():
            self._startup.cancel()
            try:
                await self._startup
            except asyncio.CancelledError:
                pass

        async with self._lifecycle_lock:
            await self._unload_locked()
            self._state.to_disconnected()
