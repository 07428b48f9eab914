"""Tests for GatewayFactory and Gateway."""

import httpx
import pytest
import respx

from inference_gateway.backends.manager import Gateway, GatewayFactory
from inference_gateway.backends.ollama_backend import OllamaBackend
from inference_gateway.backends.ondevice_backend import OnDeviceBackend
from inference_gateway.config import BackendKind
from inference_gateway.errors import ConfigurationError
from inference_gateway.state import ConnectionStatus
from tests.conftest import MOCK_TAGS_RESPONSE, OLLAMA_URL, mark_downloaded


@pytest.fixture
def factory(runtime, store, catalog, fake_sleep):
    return GatewayFactory(runtime=runtime, store=store, catalog=catalog, sleep=fake_sleep)


class TestGatewayFactory:

    def test_creates_ollama(self, factory, ollama_config):
        backend = factory.create(ollama_config)
        assert isinstance(backend, OllamaBackend)
        assert backend.connection_status is ConnectionStatus.DISCONNECTED

    async def test_creates_on_device_with_shared_runtime(self, factory, on_device_config, runtime, store):
        backend = factory.create(on_device_config)
        assert isinstance(backend, OnDeviceBackend)
        assert backend.runtime is runtime
        assert backend.store is store
        await backend.close()

    async def test_store_follows_models_dir(self, factory, on_device_config, store, tmp_path):
        other_dir = tmp_path / "other"
        first = factory.create(on_device_config)
        second = factory.create(on_device_config.replace(models_dir=other_dir))
        again = factory.create(on_device_config.replace(models_dir=other_dir))

        assert first.store is store
        assert second.store is not store
        assert second.store.models_dir == other_dir
        assert again.store is second.store
        for backend in (first, second, again):
            await backend.close()

    def test_invalid_config_rejected(self, factory, ollama_config):
        with pytest.raises(ConfigurationError):
            factory.create(ollama_config.replace(port=0))

    def test_default_factory_uses_default_catalog(self):
        assert "medgemma-4b" in GatewayFactory().catalog


class TestGateway:

    async def test_same_kind_reconfigures_in_place(self, factory, ollama_config):
        gateway = Gateway(factory, ollama_config)
        backend = gateway.backend

        result = await gateway.reconfigure(ollama_config.replace(temperature=0.9))

        assert result is backend
        assert gateway.config.temperature == 0.9
        await gateway.close()

    @respx.mock
    async def test_switching_kind_closes_old_backend(self, factory, ollama_config, on_device_config, runtime, store):
        respx.get(f"{OLLAMA_URL}/api/tags").mock(return_value=httpx.Response(200, json=MOCK_TAGS_RESPONSE))
        mark_downloaded(store, "m1")

        async with Gateway(factory, ollama_config) as gateway:
            remote = gateway.backend
            await remote.test_connection()

            local = await gateway.reconfigure(on_device_config)
            await local.wait_ready()

            assert remote.connection_status is ConnectionStatus.DISCONNECTED
            assert local.kind is BackendKind.ON_DEVICE
            assert local.is_connected

            back = await gateway.reconfigure(ollama_config)
            assert isinstance(back, OllamaBackend)
            assert runtime.live == 0

        assert runtime.max_live == 1

    async def test_new_models_dir_rebuilds_backend(self, factory, on_device_config, runtime, store, tmp_path):
        other_dir = tmp_path / "other"
        mark_downloaded(store, "m1")
        mark_downloaded(factory.store_for(other_dir), "m1")

        async with Gateway(factory, on_device_config) as gateway:
            first = gateway.backend
            await first.wait_ready()

            second = await gateway.reconfigure(on_device_config.replace(models_dir=other_dir))
            await second.wait_ready()

            assert second is not first
            assert first.connection_status is ConnectionStatus.DISCONNECTED
            assert second.store.models_dir == other_dir
            assert second.is_connected
            assert runtime.live == 1

        assert runtime.max_live == 1
