"""
Gateway factory: the single construction point for backends.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

import httpx
from loguru import logger

from .base import InferenceBackend
from .ollama_backend import OllamaBackend
from .ondevice_backend import OnDeviceBackend
from .runtime import LlamaCppRuntime, ModelRuntime
from .store import ModelStore
from ..catalog import ModelCatalog
from ..config import BackendKind, GatewayConfig
from ..errors import ConfigurationError


class GatewayFactory:
    """
    Builds the backend described by a GatewayConfig.

    The model runtime is owned by the factory and shared by every on-device
    backend it creates. Model stores are kept one per models directory.
    """

    def __init__(
        self,
        runtime: Optional[ModelRuntime] = None,
        store: Optional[ModelStore] = None,
        catalog: Optional[ModelCatalog] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.catalog = catalog or ModelCatalog.default()
        self.runtime = runtime
        self._stores: Dict[Path, ModelStore] = {}
        if store is not None:
            self._stores[store.models_dir] = store
        self.http_transport = http_transport
        self.sleep = sleep

    def _builders(self) -> Dict[BackendKind, Callable[[GatewayConfig], InferenceBackend]]:
        return {
            BackendKind.OLLAMA: self._create_ollama,
            BackendKind.ON_DEVICE: self._create_on_device,
        }

    def create(self, config: GatewayConfig) -> InferenceBackend:
        """Validate ``config`` and construct the matching backend."""
        config.validate()
        builder = self._builders().get(config.kind)
        if builder is None:
            raise ConfigurationError(f"Unknown backend kind: {config.kind}")

        backend = builder(config)
        logger.info(f"Created backend: {backend!r}")
        return backend

    def _create_ollama(self, config: GatewayConfig) -> OllamaBackend:
        return OllamaBackend(config, transport=self.http_transport, sleep=self.sleep)

    def _create_on_device(self, config: GatewayConfig) -> OnDeviceBackend:
        if self.runtime is None:
            self.runtime = LlamaCppRuntime()
        return OnDeviceBackend(config, self.runtime, self.store_for(config.models_dir), self.catalog)

    def store_for(self, models_dir: Path) -> ModelStore:
        models_dir = Path(models_dir)
        store = self._stores.get(models_dir)
        if store is None:
            store = ModelStore(models_dir, self.catalog)
            self._stores[models_dir] = store
        return store


class Gateway:
    """
    Holds the one active backend for a session.

    ``reconfigure`` keeps the backend when the kind is unchanged and lets it
    apply the descriptor itself. A kind switch or a new models directory
    closes the old backend (its model handle released) before the new one
    is built.
    """

    def __init__(self, factory: GatewayFactory, config: GatewayConfig):
        self.factory = factory
        self.backend: InferenceBackend = factory.create(config)
        self._lock = asyncio.Lock()

    @property
    def config(self) -> GatewayConfig:
        return self.backend.config

    async def reconfigure(self, config: GatewayConfig) -> InferenceBackend:
        async with self._lock:
            config.validate()
            if config.kind is self.backend.kind and not self._needs_rebuild(config):
                await self.backend.update_configuration(config)
                return self.backend

            logger.info(f"Rebuilding backend: {self.backend.kind.value} -> {config.kind.value}")
            await self.backend.close()
            self.backend = self.factory.create(config)
            return self.backend

    def _needs_rebuild(self, config: GatewayConfig) -> bool:
        # A different models directory means a different store
        return config.kind is BackendKind.ON_DEVICE and config.models_dir != self.backend.config.models_dir

    async def close(self):
        await self.backend.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
