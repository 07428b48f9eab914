"""
On-device model runtime and model handles.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Iterator, List, Optional

from loguru import logger

from ..catalog import CatalogEntry
from ..config import Quantization
from ..errors import (
    GatewayError,
    InferenceError,
    InvalidResponse,
    ModelLoadFailed,
    ModelLoadInProgress,
    ModelNotDownloaded,
    NotConnected,
    VisionNotSupported,
)

MIN_MODEL_FILE_SIZE = 500_000_000
MAX_MODEL_FILE_SIZE = 5_000_000_000
CHECKSUM_BUFFER_SIZE = 1024 * 1024

_END = object()


class GenerationEngine(ABC):
    """Blocking inference calls on one loaded model. Run from worker threads."""

    @abstractmethod
    def complete(self, prompt: str, max_tokens: int, temperature: float, stop: List[str]) -> str:
        pass

    @abstractmethod
    def complete_stream(
        self, prompt: str, max_tokens: int, temperature: float, stop: List[str]
    ) -> Iterator[str]:
        pass

    def complete_with_image(
        self, image: bytes, prompt: str, max_tokens: int, temperature: float, stop: List[str]
    ) -> str:
        raise VisionNotSupported()

    @abstractmethod
    def release(self) -> None:
        """Free the native model. Called exactly once."""
        pass


class ModelHandle:
    """
    One resident model + quantization pair.

    In-flight policy: ``close()`` stops admitting new generations, waits for
    the running ones to finish (an open stream counts until it is closed),
    then frees the native model exactly once. Generations attempted after
    ``close()`` has started fail with NotConnected.
    """

    def __init__(self, entry: CatalogEntry, quantization: Quantization, engine: GenerationEngine):
        self.entry = entry
        self.quantization = quantization
        self._engine = engine
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing = False
        self._closed = False

    @property
    def model_id(self) -> str:
        return self.entry.id

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def matches(self, model_id: Optional[str], quantization: Quantization) -> bool:
        return self.entry.id == model_id and self.quantization == quantization

    def _acquire(self):
        self._in_flight += 1
        self._idle.clear()

    def _release(self):
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()

    def _hold_until(self, future: asyncio.Future, cleanup: Optional[Callable[[], None]] = None):
        # Worker threads cannot be interrupted; stay busy until they return
        self._acquire()

        def _done(f: asyncio.Future):
            if not f.cancelled() and f.exception() is not None:
                logger.debug(f"Abandoned generation finished with: {f.exception()}")
            if cleanup is not None:
                cleanup()
            self._release()

        future.add_done_callback(_done)

    @asynccontextmanager
    async def _use(self):
        if self._closing:
            raise NotConnected("Model is being unloaded")
        self._acquire()
        try:
            yield
        finally:
            self._release()

    async def _run_blocking(self, fn, *args):
        future = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            self._hold_until(future)
            raise

    async def generate(self, prompt: str, max_tokens: int, temperature: float) -> str:
        async with self._use():
            try:
                text = await self._run_blocking(
                    self._engine.complete, prompt, max_tokens, temperature, self.entry.template.stop_tokens
                )
            except GatewayError:
                raise
            except Exception as e:
                logger.error(f"Generation failed: {e}")
                raise InferenceError(str(e)) from e

        text = (text or "").strip()
        if not text:
            raise InvalidResponse("Received invalid response from model.")
        return text

    async def generate_with_image(
        self, image: bytes, prompt: str, max_tokens: int, temperature: float
    ) -> str:
        if not self.entry.is_vision_model:
            raise VisionNotSupported()

        async with self._use():
            try:
                text = await self._run_blocking(
                    self._engine.complete_with_image,
                    image, prompt, max_tokens, temperature, self.entry.template.stop_tokens,
                )
            except GatewayError:
                raise
            except Exception as e:
                logger.error(f"Image analysis failed: {e}")
                raise InferenceError(str(e)) from e

        text = (text or "").strip()
        if not text:
            raise InvalidResponse("Received invalid response from model.")
        return text

    async def stream(self, prompt: str, max_tokens: int, temperature: float) -> AsyncIterator[str]:
        async with self._use():
            iterator = self._engine.complete_stream(
                prompt, max_tokens, temperature, self.entry.template.stop_tokens
            )
            pending: Optional[asyncio.Future] = None
            try:
                while True:
                    pending = asyncio.ensure_future(asyncio.to_thread(next, iterator, _END))
                    chunk = await asyncio.shield(pending)
                    if chunk is _END:
                        return
                    if chunk:
                        yield chunk
            except GatewayError:
                raise
            except Exception as e:
                logger.error(f"Streaming generation failed: {e}")
                raise InferenceError(str(e)) from e
            finally:
                if pending is not None and not pending.done():
                    self._hold_until(pending, cleanup=lambda: _close_iterator(iterator))
                else:
                    _close_iterator(iterator)

    async def close(self):
        """Wait for in-flight generations, then free the model."""
        if self._closed:
            return
        self._closing = True
        await self._idle.wait()
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self._engine.release)
        logger.info(f"Model unloaded: {self.entry.display_name} ({self.quantization.value})")

    def __repr__(self) -> str:
        return f"ModelHandle({self.entry.id}, {self.quantization.value}, in_flight={self._in_flight})"


def _close_iterator(iterator: Iterator[str]):
    close = getattr(iterator, "close", None)
    if close is not None:
        close()


class ModelRuntime(ABC):
    """Turns downloaded model files into handles. Never keeps handles itself."""

    def __init__(self):
        self._loading = False

    @property
    def is_loading(self) -> bool:
        return self._loading

    async def load(self, path: Path, entry: CatalogEntry, quantization: Quantization) -> ModelHandle:
        if self._loading:
            logger.warning("Model loading already in progress")
            raise ModelLoadInProgress()

        self._loading = True
        try:
            logger.info(f"Loading model: {entry.display_name} ({quantization.value}) from {path}")
            handle = await self._load(path, entry, quantization)
        except GatewayError:
            raise
        except Exception as e:
            logger.error(f"Failed to load model: {e}")
            raise ModelLoadFailed(str(e)) from e
        finally:
            self._loading = False

        logger.info(f"Successfully loaded model: {entry.display_name}")
        return handle

    @abstractmethod
    async def _load(self, path: Path, entry: CatalogEntry, quantization: Quantization) -> ModelHandle:
        pass


class LlamaCppEngine(GenerationEngine):
    """Generation on a ``llama_cpp.Llama`` instance."""

    def __init__(self, llama):
        self._llama = llama

    def complete(self, prompt, max_tokens, temperature, stop):
        output = self._llama(prompt, max_tokens=max_tokens, temperature=temperature, stop=stop)
        return output["choices"][0]["text"]

    def complete_stream(self, prompt, max_tokens, temperature, stop):
        for chunk in self._llama(
            prompt, max_tokens=max_tokens, temperature=temperature, stop=stop, stream=True
        ):
            yield chunk["choices"][0]["text"]

    # No multimodal projector is loaded, so complete_with_image keeps the
    # base behavior and raises VisionNotSupported.

    def release(self):
        close = getattr(self._llama, "close", None)
        if close is not None:
            close()
        self._llama = None


class LlamaCppRuntime(ModelRuntime):
    """
    Loads GGUF files with llama-cpp-python.

    Files outside the expected size range, or whose SHA-256 does not match
    the catalog, are rejected before loading.
    """

    def __init__(
        self,
        n_gpu_layers: int = -1,
        n_threads: Optional[int] = None,
        verify_checksums: bool = True,
    ):
        super().__init__()
        self.n_gpu_layers = n_gpu_layers
        self.n_threads = n_threads
        self.verify_checksums = verify_checksums

    async def _load(self, path: Path, entry: CatalogEntry, quantization: Quantization) -> ModelHandle:
        await asyncio.to_thread(self._validate_file, path, entry, quantization)

        task = asyncio.ensure_future(asyncio.to_thread(self._load_llama, path, entry))
        try:
            llama = await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_discard_loaded)
            raise

        return ModelHandle(entry, quantization, LlamaCppEngine(llama))

    def _validate_file(self, path: Path, entry: CatalogEntry, quantization: Quantization):
        if not path.exists():
            raise ModelNotDownloaded()

        size = path.stat().st_size
        if size > MAX_MODEL_FILE_SIZE:
            raise ModelLoadFailed(f"Model too large ({size / 1e9:.1f} GB). Maximum supported size is 5 GB.")
        if size < MIN_MODEL_FILE_SIZE:
            raise ModelLoadFailed(f"Model file appears corrupted (size: {size} bytes)")

        expected = entry.checksum(quantization)
        if not self.verify_checksums or not expected:
            logger.info("No checksum available for validation (model will load without verification)")
            return

        logger.info(f"Validating checksum for {entry.display_name} ({quantization.value})")
        actual = sha256_file(path)
        if actual != expected:
            logger.error(f"Checksum mismatch! Expected: {expected}, Got: {actual}")
            raise ModelLoadFailed("Model file checksum validation failed. Please delete and redownload.")
        logger.info("Checksum validation passed")

    def _load_llama(self, path: Path, entry: CatalogEntry):
        try:
            from llama_cpp import Llama
        except ImportError as e:
            raise ModelLoadFailed("llama-cpp-python is not installed") from e

        kwargs = {
            "model_path": str(path),
            "n_ctx": entry.context_window,
            "n_gpu_layers": self.n_gpu_layers,
            "verbose": False,
        }
        if self.n_threads:
            kwargs["n_threads"] = self.n_threads
        return Llama(**kwargs)


def _discard_loaded(task: asyncio.Future):
    if task.cancelled() or task.exception() is not None:
        return
    logger.info("Discarding model loaded after its caller was cancelled")
    LlamaCppEngine(task.result()).release()


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(CHECKSUM_BUFFER_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()
