"""Model catalog and routing decision types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple, Union


@dataclass(frozen=True)
class ModelInfo:
    """Metadata about a model the relay can route to."""

    id: str
    name: str
    description: str
    context_window: Union[int, str]
    max_tokens: Union[int, str]
    provider: str
    tags: Tuple[str, ...] = field(default_factory=tuple)
    use_case: str = ""

    def to_model_dict(self) -> Dict[str, Any]:
        """Convert to model dictionary for API response."""
        return {
            "id": self.id,
            "object": "model",
            "owned_by": self.provider,
            "name": self.name,
            "description": self.description,
            "context_window": self.context_window,
            "max_tokens": self.max_tokens,
            "tags": list(self.tags),
            "use_case": self.use_case,
        }


MODEL_CATALOG: Tuple[ModelInfo, ...] = (
    ModelInfo(
        id="auto",
        name="Auto",
        description="Selects the best model for each request",
        context_window="Variable",
        max_tokens="Variable",
        provider="AI",
        tags=("smart", "adaptive"),
        use_case="Let the relay choose the best model",
    ),
    ModelInfo(
        id="llama-3.3-70b-versatile",
        name="Llama 3.3 70B",
        description="High capability with excellent reasoning",
        context_window=128000,
        max_tokens=32768,
        provider="Groq",
        tags=("powerful", "reasoning"),
        use_case="Complex reasoning, coding",
    ),
    ModelInfo(
        id="llama-3.1-8b-instant",
        name="Llama 3.1 8B",
        description="Fast and efficient for most everyday tasks",
        context_window=128000,
        max_tokens=8192,
        provider="Groq",
        tags=("fast", "general-purpose"),
        use_case="General chat, quick responses",
    ),
    ModelInfo(
        id="llama-3.2-11b-vision-preview",
        name="Llama 3.2 Vision",
        description="Understand and analyze images",
        context_window=128000,
        max_tokens=8192,
        provider="Groq",
        tags=("vision", "multimodal"),
        use_case="Image analysis, OCR",
    ),
    ModelInfo(
        id="qwen/qwen3-32b",
        name="Qwen 3 32B",
        description="Next-gen reasoning model (Preview)",
        context_window=131072,
        max_tokens=40960,
        provider="Groq",
        tags=("reasoning", "new"),
        use_case="Advanced logic, coding, math",
    ),
    ModelInfo(
        id="openai/gpt-oss-120b",
        name="OpenAI GPT-OSS 120B",
        description="Flagship open-weight model with 128k context",
        context_window=131072,
        max_tokens=65536,
        provider="OpenAI",
        tags=("flagship", "research"),
        use_case="Deep research, long-form writing",
    ),
    ModelInfo(
        id="openai/gpt-oss-20b",
        name="OpenAI GPT-OSS 20B",
        description="Efficient open-weight model",
        context_window=131072,
        max_tokens=32768,
        provider="OpenAI",
        tags=("research", "efficient"),
        use_case="General tasks, writing",
    ),
    ModelInfo(
        id="groq/compound",
        name="Groq Compound",
        description="Agentic system with web search & tools",
        context_window=131072,
        max_tokens=8192,
        provider="Groq",
        tags=("agentic", "tools"),
        use_case="Real-time data, tool use",
    ),
    ModelInfo(
        id="groq/compound-mini",
        name="Groq Compound Mini",
        description="Efficient agentic system",
        context_window=131072,
        max_tokens=8192,
        provider="Groq",
        tags=("agentic", "efficient", "mini"),
        use_case="Fast tool use, simple tasks",
    ),
)

MODEL_CATEGORIES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Smart Selection", ("auto",)),
    ("Deep Reasoning", ("qwen/qwen3-32b",)),
    ("Agentic & Research", ("groq/compound", "groq/compound-mini", "openai/gpt-oss-120b", "openai/gpt-oss-20b")),
    ("Powerful Versatile", ("llama-3.3-70b-versatile",)),
    ("Multimodal", ("llama-3.2-11b-vision-preview",)),
    ("Fast & Efficient", ("llama-3.1-8b-instant",)),
)


def catalog_response() -> Dict[str, Any]:
    """Catalog in OpenAI list shape plus UI categories."""
    return {
        "object": "list",
        "data": [m.to_model_dict() for m in MODEL_CATALOG],
        "categories": [{"name": name, "models": list(ids)} for name, ids in MODEL_CATEGORIES],
    }


class RouteReason(str, Enum):
    """Why the router picked a model."""

    EXPLICIT = "explicit"
    MULTIMODAL_OVERRIDE = "multimodal-override"
    DECOMMISSIONED_FALLBACK = "decommissioned-fallback"
    HEURISTIC_AUTO = "heuristic-auto"
    LENGTH_DEFAULT = "length-default"


@dataclass(frozen=True)
class ModelSelection:
    """Outcome of routing a single request."""

    requested_id: str
    routed_id: str
    reason: RouteReason

    def as_log_fields(self) -> List[str]:
        return [
            f"requested={self.requested_id or '-'}",
            f"routed={self.routed_id}",
            f"reason={self.reason.value}",
        ]
