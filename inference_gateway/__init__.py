"""
Inference Gateway - one request/response contract over remote and on-device LLMs

Chat completion, streaming chat, image analysis and capability discovery
against either an Ollama server or a local GGUF model, with connection
state tracking, retries and live reconfiguration.
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .config import BackendKind, GatewayConfig, Quantization, config_from_dict, load_config
from .catalog import CatalogEntry, ModelCatalog, PromptTemplate
from .state import ConnectionSnapshot, ConnectionState, ConnectionStatus
from .retry import execute_with_retry, is_transient
from .streaming import TextStream
from .errors import GatewayError

# Backend imports
from .backends import (
    Capabilities,
    InferenceBackend,
    Response,
    Gateway,
    GatewayFactory,
    OllamaBackend,
    OnDeviceBackend,
    LlamaCppRuntime,
    ModelHandle,
    ModelRuntime,
    ModelStore,
)

__all__ = [
    # Configuration
    "BackendKind",
    "GatewayConfig",
    "Quantization",
    "config_from_dict",
    "load_config",

    # Catalog
    "CatalogEntry",
    "ModelCatalog",
    "PromptTemplate",

    # State
    "ConnectionSnapshot",
    "ConnectionState",
    "ConnectionStatus",

    # Retry / streaming / errors
    "execute_with_retry",
    "is_transient",
    "TextStream",
    "GatewayError",

    # Backends
    "Capabilities",
    "InferenceBackend",
    "Response",
    "Gateway",
    "GatewayFactory",
    "OllamaBackend",
    "OnDeviceBackend",
    "LlamaCppRuntime",
    "ModelHandle",
    "ModelRuntime",
    "ModelStore",
]
