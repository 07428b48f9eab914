"""Shared test fixtures for inference-gateway tests."""

import threading
from typing import List, Optional, Tuple

import pytest

from inference_gateway.backends.runtime import GenerationEngine, ModelHandle, ModelRuntime
from inference_gateway.backends.store import ModelStore
from inference_gateway.catalog import CatalogEntry, ModelCatalog, PromptTemplate
from inference_gateway.config import BackendKind, GatewayConfig, Quantization


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

OLLAMA_URL = "http://ollama.test:11434"

MOCK_REPLY = "Your average heart rate is 72 bpm."
MOCK_CHUNKS = ["Your ", "average ", "heart rate ", "is 72 bpm."]

MOCK_TAGS_RESPONSE = {
    "models": [
        {"name": "llama3.2:latest"},
        {"name": "llava:7b"},
    ]
}

MOCK_CHAT_RESPONSE = {
    "model": "llama3.2",
    "message": {"role": "assistant", "content": MOCK_REPLY},
    "done": True,
    "done_reason": "stop",
    "total_duration": 1_500_000_000,
    "load_duration": 100_000_000,
    "prompt_eval_count": 12,
    "eval_count": 30,
}

TEST_ENTRIES = [
    CatalogEntry(
        id="m1",
        name="model-one",
        display_name="Model One",
        repo="example/model-one-GGUF",
        parameters="1B",
        context_window=4096,
        template=PromptTemplate.CHATML,
    ),
    CatalogEntry(
        id="m2",
        name="model-two",
        display_name="Model Two",
        repo="example/model-two-GGUF",
        parameters="2B",
        context_window=8192,
        template=PromptTemplate.GEMMA,
    ),
    CatalogEntry(
        id="v1",
        name="vision-one",
        display_name="Vision One",
        repo="example/vision-one-GGUF",
        parameters="4B",
        context_window=8192,
        template=PromptTemplate.QWEN,
        is_vision_model=True,
    ),
]


# ─────────────────────────────────────────────────────────────────────
# FAKE RUNTIME
# ─────────────────────────────────────────────────────────────────────

class FakeEngine(GenerationEngine):
    """Scripted engine. ``gate`` blocks generation until set."""

    def __init__(self, runtime: "FakeRuntime", entry: CatalogEntry):
        self.runtime = runtime
        self.entry = entry
        self.prompts: List[str] = []
        self.started = threading.Event()
        self.released = False

    def _wait_gate(self):
        self.started.set()
        if self.runtime.gate is not None:
            self.runtime.gate.wait(timeout=5)

    def complete(self, prompt, max_tokens, temperature, stop):
        self.prompts.append(prompt)
        self._wait_gate()
        if self.runtime.generation_error is not None:
            raise self.runtime.generation_error
        return self.runtime.reply

    def complete_stream(self, prompt, max_tokens, temperature, stop):
        self.prompts.append(prompt)
        self._wait_gate()
        for chunk in self.runtime.chunks:
            yield chunk

    def complete_with_image(self, image, prompt, max_tokens, temperature, stop):
        self.prompts.append(prompt)
        return f"Image of {len(image)} bytes analyzed"

    def release(self):
        self.released = True
        self.runtime.live -= 1
        self.runtime.events.append(("release", self.entry.id))


class FakeRuntime(ModelRuntime):
    """Counts resident handles so tests can check that at most one exists."""

    def __init__(self):
        super().__init__()
        self.reply = MOCK_REPLY
        self.chunks = list(MOCK_CHUNKS)
        self.gate: Optional[threading.Event] = None
        self.generation_error: Optional[Exception] = None
        self.load_error: Optional[Exception] = None
        self.live = 0
        self.max_live = 0
        self.load_count = 0
        self.events: List[Tuple[str, str]] = []
        self.engines: List[FakeEngine] = []

    async def _load(self, path, entry, quantization):
        self.load_count += 1
        if self.load_error is not None:
            raise self.load_error

        self.live += 1
        self.max_live = max(self.max_live, self.live)
        self.events.append(("load", entry.id))
        engine = FakeEngine(self, entry)
        self.engines.append(engine)
        return ModelHandle(entry, quantization, engine)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def catalog():
    return ModelCatalog(TEST_ENTRIES)


@pytest.fixture
def store(tmp_path, catalog):
    return ModelStore(tmp_path, catalog, check_storage=False)


@pytest.fixture
def runtime():
    return FakeRuntime()


def mark_downloaded(store: ModelStore, model_id: str, quantization=Quantization.Q4_K_M):
    path = store.model_path(store.catalog.require(model_id), quantization)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"GGUF")
    return path


@pytest.fixture
def on_device_config(tmp_path):
    return GatewayConfig(
        kind=BackendKind.ON_DEVICE,
        model="m1",
        quantization=Quantization.Q4_K_M,
        models_dir=tmp_path,
    )


@pytest.fixture
def ollama_config():
    return GatewayConfig(
        kind=BackendKind.OLLAMA,
        hostname="ollama.test",
        port=11434,
        model="llama3.2",
        max_retries=3,
        retry_delay=0.5,
    )


@pytest.fixture
def sleeps():
    """Records requested backoff delays instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)
    return _sleep
