"""
Catalog of on-device models and their prompt templates.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .config import Quantization
from .errors import ModelNotFound


class PromptTemplate(Enum):
    """Chat formats understood by the supported GGUF models."""
    GEMMA = "gemma"
    QWEN = "qwen"
    MISTRAL = "mistral"
    LLAMA = "llama"
    CHATML = "chatml"

    def format(self, system: str, user: str) -> str:
        """Merge a system turn and a user turn into one raw prompt."""
        if self is PromptTemplate.GEMMA:
            return (
                f"<start_of_turn>system\n{system}<end_of_turn>\n"
                f"<start_of_turn>user\n{user}<end_of_turn>\n"
                "<start_of_turn>model"
            )
        if self is PromptTemplate.MISTRAL:
            return f"[INST] {system}\n{user} [/INST]"
        if self is PromptTemplate.LLAMA:
            return (
                "<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n"
                f"{system}<|eot_id|><|start_header_id|>user<|end_header_id|>\n"
                f"{user}<|eot_id|><|start_header_id|>assistant<|end_header_id|>"
            )
        # QWEN and CHATML share the ChatML markup
        return (
            f"<|im_start|>system\n{system}<|im_end|>\n"
            f"<|im_start|>user\n{user}<|im_end|>\n"
            "<|im_start|>assistant"
        )

    @property
    def stop_tokens(self) -> List[str]:
        return {
            PromptTemplate.GEMMA: ["<end_of_turn>"],
            PromptTemplate.QWEN: ["<|im_end|>"],
            PromptTemplate.CHATML: ["<|im_end|>"],
            PromptTemplate.LLAMA: ["<|eot_id|>"],
            PromptTemplate.MISTRAL: [],
        }[self]


class Specialization(Enum):
    MEDICAL = "medical"
    VISION = "vision"
    GENERAL = "general"
    REASONING = "reasoning"


@dataclass(frozen=True)
class CatalogEntry:
    """A downloadable on-device model."""
    id: str
    name: str
    display_name: str
    repo: str
    parameters: str
    context_window: int
    template: PromptTemplate
    quantizations: Tuple[Quantization, ...] = tuple(Quantization)
    default_quantization: Quantization = Quantization.Q4_K_M
    specialization: Specialization = Specialization.GENERAL
    is_vision_model: bool = False
    description: str = ""
    checksums: Dict[str, str] = field(default_factory=dict, hash=False)

    def filename(self, quantization: Quantization) -> str:
        return f"{self.name}-{quantization.value}.gguf"

    def download_url(self, quantization: Quantization) -> str:
        return f"https://huggingface.co/{self.repo}/resolve/main/{self.filename(quantization)}"

    def checksum(self, quantization: Quantization) -> Optional[str]:
        return self.checksums.get(quantization.value)


DEFAULT_ENTRIES: List[CatalogEntry] = [
    CatalogEntry(
        id="medgemma-4b",
        name="medgemma-4b-it",
        display_name="MedGemma 4B",
        repo="unsloth/medgemma-4b-it-GGUF",
        parameters="4B",
        context_window=8192,
        template=PromptTemplate.GEMMA,
        specialization=Specialization.MEDICAL,
        description="Gemma-based model tuned on medical literature and clinical notes.",
    ),
    CatalogEntry(
        id="qwen3-vl-4b",
        name="qwen3-vl-4b-instruct",
        display_name="Qwen3-VL 4B",
        repo="unsloth/Qwen3-VL-4B-Instruct-GGUF",
        parameters="4B",
        context_window=32768,
        template=PromptTemplate.QWEN,
        specialization=Specialization.VISION,
        # Vision projector is not shipped with the GGUF yet
        is_vision_model=False,
        description="Vision-language model with a 32K context window.",
    ),
]


class ModelCatalog:
    """Read-only lookup of catalog entries by id."""

    def __init__(self, entries: Iterable[CatalogEntry]):
        self._entries: Dict[str, CatalogEntry] = {e.id: e for e in entries}

    @classmethod
    def default(cls) -> "ModelCatalog":
        return cls(DEFAULT_ENTRIES)

    @property
    def entries(self) -> List[CatalogEntry]:
        return list(self._entries.values())

    def lookup(self, model_id: Optional[str]) -> Optional[CatalogEntry]:
        if model_id is None:
            return None
        return self._entries.get(model_id)

    def require(self, model_id: Optional[str]) -> CatalogEntry:
        entry = self.lookup(model_id)
        if entry is None:
            raise ModelNotFound(str(model_id))
        return entry

    def display_names(self) -> List[str]:
        return [e.display_name for e in self._entries.values()]

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
