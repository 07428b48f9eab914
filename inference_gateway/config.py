"""
Configuration descriptor for the inference gateway.
"""

import os
from dataclasses import dataclass, field, fields, replace as dc_replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from loguru import logger

from .errors import ConfigurationError


class BackendKind(Enum):
    """Supported backend kinds."""
    OLLAMA = "ollama"
    ON_DEVICE = "on_device"


class Quantization(Enum):
    """Quantization levels for on-device GGUF models."""
    Q4_K_M = "Q4_K_M"    # ~2.0-2.5 GB
    Q5_K_M = "Q5_K_M"    # ~2.5-3.0 GB
    Q8_0 = "Q8_0"        # ~3.5-4.0 GB

    @property
    def estimated_size(self) -> int:
        return {
            Quantization.Q4_K_M: 2_500_000_000,
            Quantization.Q5_K_M: 3_000_000_000,
            Quantization.Q8_0: 4_000_000_000,
        }[self]


DEFAULT_MODELS_DIR = Path.home() / ".cache" / "inference-gateway" / "models"


@dataclass(frozen=True)
class GatewayConfig:
    """
    Immutable snapshot of everything a backend needs at construction.

    Reconfiguration never mutates a descriptor: use ``replace`` to get a
    new one and hand it to ``update_configuration``.
    """
    kind: BackendKind = BackendKind.OLLAMA
    enabled: bool = True
    hostname: str = "localhost"
    port: int = 11434
    model: Optional[str] = None
    quantization: Quantization = Quantization.Q4_K_M
    temperature: float = 0.1
    max_tokens: int = 2048
    context_window: int = 8192
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    chars_per_token: float = 3.5
    api_key: Optional[str] = field(default=None, repr=False)
    models_dir: Path = DEFAULT_MODELS_DIR

    @property
    def base_url(self) -> str:
        return f"http://{self.hostname}:{self.port}"

    def validate(self) -> "GatewayConfig":
        """Raise ConfigurationError if any value is out of range."""
        if not isinstance(self.kind, BackendKind):
            raise ConfigurationError(f"Unknown backend kind: {self.kind!r}")
        if not isinstance(self.quantization, Quantization):
            raise ConfigurationError(f"Unknown quantization: {self.quantization!r}")
        if self.kind is BackendKind.OLLAMA and not self.hostname:
            raise ConfigurationError("Hostname is required for the remote backend")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Port out of range: {self.port}")
        if self.timeout <= 0:
            raise ConfigurationError("Timeout must be positive")
        if self.max_retries < 1:
            raise ConfigurationError("Max retries counts attempts and must be at least 1")
        if self.retry_delay < 0:
            raise ConfigurationError("Retry delay cannot be negative")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(f"Temperature out of range: {self.temperature}")
        if self.max_tokens <= 0 or self.context_window <= 0:
            raise ConfigurationError("Token limits must be positive")
        if self.chars_per_token <= 0:
            raise ConfigurationError("Characters per token must be positive")
        return self

    def replace(self, **changes) -> "GatewayConfig":
        return dc_replace(self, **changes)

    def same_model(self, other: "GatewayConfig") -> bool:
        return self.model == other.model and self.quantization == other.quantization

    def same_endpoint(self, other: "GatewayConfig") -> bool:
        return (
            self.hostname == other.hostname
            and self.port == other.port
            and self.timeout == other.timeout
        )


_ENV_OVERRIDES = {
    "GATEWAY_HOST": "hostname",
    "GATEWAY_PORT": "port",
    "GATEWAY_MODEL": "model",
}


def config_from_dict(data: Mapping[str, Any]) -> GatewayConfig:
    """Build a validated descriptor from a plain mapping."""
    known = {f.name for f in fields(GatewayConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = dict(data)
    try:
        if "kind" in values:
            values["kind"] = BackendKind(values["kind"])
        if "quantization" in values:
            values["quantization"] = Quantization(values["quantization"])
        if "models_dir" in values:
            values["models_dir"] = Path(values["models_dir"]).expanduser()
        for name in ("port", "max_tokens", "context_window", "max_retries"):
            if name in values:
                values[name] = int(values[name])
        for name in ("temperature", "timeout", "retry_delay", "chars_per_token"):
            if name in values:
                values[name] = float(values[name])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e

    return GatewayConfig(**values).validate()


def load_config(path: Union[str, Path] = "config.yaml") -> GatewayConfig:
    """Load the ``gateway`` section of a YAML file, then apply env overrides."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"{config_path} not found")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    section = raw.get("gateway", {})
    if not isinstance(section, dict):
        raise ConfigurationError("'gateway' section must be a mapping")

    section = dict(section)
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            logger.debug(f"Overriding {key} from {env_name}")
            section[key] = value

    return config_from_dict(section)
