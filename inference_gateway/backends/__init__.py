"""
Backend implementations for the inference gateway.
"""

from .base import Capabilities, InferenceBackend, Response
from .manager import Gateway, GatewayFactory
from .ollama_backend import OllamaBackend
from .ondevice_backend import OnDeviceBackend
from .runtime import GenerationEngine, LlamaCppRuntime, ModelHandle, ModelRuntime
from .store import DownloadedModel, ModelStore

__all__ = [
    "Capabilities",
    "InferenceBackend",
    "Response",
    "Gateway",
    "GatewayFactory",
    "OllamaBackend",
    "OnDeviceBackend",
    "GenerationEngine",
    "LlamaCppRuntime",
    "ModelHandle",
    "ModelRuntime",
    "DownloadedModel",
    "ModelStore",
]
