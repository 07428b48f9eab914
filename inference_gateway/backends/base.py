"""
Abstract base class for inference backends.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, List, Mapping, Optional

from loguru import logger

from ..config import BackendKind, GatewayConfig
from ..errors import GatewayError, UnknownError
from ..state import ConnectionSnapshot, ConnectionState, ConnectionStatus, Listener
from ..streaming import TextStream


@dataclass(frozen=True)
class Response:
    """Result of one non-streaming request."""
    content: str
    response_time: float
    token_count: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class Capabilities:
    """What the active backend currently supports."""
    supported_models: List[str]
    max_tokens: int
    supports_streaming: bool
    supports_images: bool
    supports_documents: bool
    supported_languages: List[str] = field(default_factory=lambda: ["en"])


class InferenceBackend(ABC):
    """
    Common contract for every inference backend.

    Implementations own their connection state; callers read it through
    ``is_connected``, ``connection_status``, ``last_error`` or ``snapshot()``
    and may subscribe with ``add_listener``.
    """

    kind: BackendKind

    def __init__(self, config: GatewayConfig):
        self.config = config
        self._state = ConnectionState()

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._state.last_error

    def snapshot(self) -> ConnectionSnapshot:
        return self._state.snapshot

    def add_listener(self, listener: Listener):
        self._state.add_listener(listener)

    def remove_listener(self, listener: Listener):
        self._state.remove_listener(listener)

    @abstractmethod
    async def test_connection(self) -> bool:
        """Validate readiness and update the connection state."""
        pass

    @abstractmethod
    async def send_message(self, message: str, context: str = "") -> Response:
        """Send one chat turn with ``context`` injected into the system prompt."""
        pass

    @abstractmethod
    def send_message_streaming(self, message: str, context: str = "") -> TextStream:
        """Same as send_message but yields fragments as they are produced."""
        pass

    @abstractmethod
    async def analyze_image(self, image: bytes, prompt: str, context: str = "") -> Response:
        """Analyze an image; only valid for vision-capable models."""
        pass

    @abstractmethod
    async def get_capabilities(self) -> Capabilities:
        """Pure read of what the backend supports."""
        pass

    @abstractmethod
    async def update_configuration(self, config: GatewayConfig) -> None:
        """Apply a new descriptor; a no-op when nothing changed."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the HTTP client or model handle."""
        pass

    def _fail(self, error: BaseException) -> GatewayError:
        """Record a per-request failure without touching connectivity."""
        if not isinstance(error, GatewayError):
            error = UnknownError(error)
        self._state.record_failure(error)
        logger.error(f"{self.__class__.__name__} request failed: {error}")
        return error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind.value}, status={self.connection_status.value})"
