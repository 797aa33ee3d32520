"""Configuration management for the chat relay service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Tuple


# Accepted LOG_LEVEL values; DISABLE turns logging off.
LOG_LEVELS: Tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "WARN", "ERROR", "CRITICAL", "DISABLE")


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_list(name: str) -> List[str]:
    """Parse comma-separated environment variable into an ordered list."""
    v = os.getenv(name, "")
    return [x.strip() for x in v.split(",") if x.strip() and x.strip().lower() != "empty"]


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Groq (OpenAI-compatible) upstream
    groq_base_url: str
    groq_api_key: str
    user_agent: str
    https_proxy: str
    http_proxy: str

    # Timeouts
    request_timeout_s: float
    stream_idle_timeout_s: float

    # Relay behaviour
    upstream_streaming: bool
    default_temperature: float
    max_tokens_cap: int

    # Image generation
    pollinations_base_url: str
    pollinations_api_key: str

    # Server settings
    port: int
    log_level: str
    max_request_bytes: int
    log_path: str
    log_color: bool

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            groq_base_url=_env_str("GROQ_BASE_URL", "https://api.groq.com/openai/v1").rstrip("/"),
            groq_api_key=os.getenv("GROQ_API_KEY", ""),
            user_agent=_env_str("USER_AGENT", "chat-relay/1.0.0"),
            https_proxy=_env_str("HTTPS_PROXY", ""),
            http_proxy=_env_str("HTTP_PROXY", ""),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            stream_idle_timeout_s=_env_float("STREAM_IDLE_TIMEOUT_S", 30.0),
            upstream_streaming=_env_bool("UPSTREAM_STREAMING", True),
            default_temperature=_env_float("DEFAULT_TEMPERATURE", 0.7),
            max_tokens_cap=_env_int("MAX_TOKENS_CAP", 4096),
            pollinations_base_url=_env_str("POLLINATIONS_BASE_URL", "https://gen.pollinations.ai/image").rstrip("/"),
            pollinations_api_key=_env_str("POLLINATIONS_API_KEY", ""),
            port=_env_int("PORT", 3000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 50_000_000),  # images travel as data URIs
            log_path=_env_str("LOG_PATH", "/var/log/chat-relay/chat-relay.log"),
            log_color=_env_bool("LOG_COLOR", True),
        )

    def validate(self, require_api_key: bool = True) -> None:
        """Validate configuration."""
        if require_api_key and not self.groq_api_key:
            raise ValueError("GROQ_API_KEY is required")
        if not self.groq_base_url:
            raise ValueError("GROQ_BASE_URL must be non-empty")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.stream_idle_timeout_s <= 0:
            raise ValueError("STREAM_IDLE_TIMEOUT_S must be > 0")
        if self.max_tokens_cap <= 0:
            raise ValueError("MAX_TOKENS_CAP must be > 0")
        if not 0.0 <= self.default_temperature <= 2.0:
            raise ValueError("DEFAULT_TEMPERATURE must be within 0..2")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


@dataclass(frozen=True)
class DecommissionRule:
    """Replace any requested model whose id contains `fragment`."""

    fragment: str
    replacement: str

    def matches(self, model_id: str) -> bool:
        return bool(self.fragment) and self.fragment.lower() in model_id.lower()


DEFAULT_MODEL = "llama-3.3-70b-versatile"
VISION_MODEL = "llama-3.2-11b-vision-preview"
LONG_CONTEXT_MODEL = "openai/gpt-oss-120b"
REASONING_MODEL = "qwen/qwen3-32b"
FAST_MODEL = "llama-3.1-8b-instant"

RETIRED_MODEL_FRAGMENTS: Tuple[str, ...] = ("mixtral", "gemma-7b", "llama3-")
KNOWN_MODEL_NAMESPACES: Tuple[str, ...] = ("qwen", "openai", "groq")

CODING_KEYWORDS: Tuple[str, ...] = (
    "code", "program", "debug", "function", "class", "api", "javascript", "python",
    "java", "cpp", "rust", "go", "sql", "html", "css", "react", "node", "express",
    "algorithm", "git", "github", "bug", "error", "exception", "variable", "async",
    "await", "database", "docker", "kubernetes", "testing", "optimization", "refactor",
    "design pattern", "architecture", "microservices", "json", "xml", "yaml", "csv",
    "regex",
)
MATH_KEYWORDS: Tuple[str, ...] = (
    "math", "calculate", "equation", "formula", "algebra", "calculus", "geometry",
    "statistics", "probability", "matrix", "vector", "solve", "theorem", "proof",
    "graph", "data analysis", "machine learning", "neural network", "tensorflow",
    "pytorch", "pandas", "numpy",
)
WRITING_KEYWORDS: Tuple[str, ...] = (
    "write", "essay", "article", "blog", "story", "fiction", "novel", "poem",
    "grammar", "spelling", "edit", "proofread", "draft", "outline", "creative",
    "literature", "thesis", "dissertation", "academic", "translate", "language",
)
LONG_CONTEXT_KEYWORDS: Tuple[str, ...] = (
    "document", "analyze", "summary", "extract", "find in", "search through",
    "large file", "entire text", "full content",
)


def _parse_retired_rules(entries: List[str], default_model: str) -> Tuple[DecommissionRule, ...]:
    """Parse `fragment[=replacement]` entries, keeping their order."""
    rules: List[DecommissionRule] = []
    for entry in entries:
        fragment, sep, replacement = entry.partition("=")
        fragment = fragment.strip()
        if not fragment:
            continue
        rules.append(DecommissionRule(fragment, replacement.strip() if sep and replacement.strip() else default_model))
    return tuple(rules)


@dataclass(frozen=True)
class RoutingConfig:
    """Immutable routing table consumed by the model router."""

    default_model: str = DEFAULT_MODEL
    vision_model: str = VISION_MODEL
    long_context_model: str = LONG_CONTEXT_MODEL
    reasoning_model: str = REASONING_MODEL
    fast_model: str = FAST_MODEL
    versatile_model: str = DEFAULT_MODEL
    auto_sentinel: str = "auto"

    retired_rules: Tuple[DecommissionRule, ...] = tuple(
        DecommissionRule(f, DEFAULT_MODEL) for f in RETIRED_MODEL_FRAGMENTS
    )
    known_namespaces: Tuple[str, ...] = KNOWN_MODEL_NAMESPACES

    coding_keywords: Tuple[str, ...] = CODING_KEYWORDS
    math_keywords: Tuple[str, ...] = MATH_KEYWORDS
    writing_keywords: Tuple[str, ...] = WRITING_KEYWORDS
    long_context_keywords: Tuple[str, ...] = LONG_CONTEXT_KEYWORDS

    # Strictly greater than this many characters counts as long context.
    long_context_chars: int = 8000
    # Strictly fewer than this many characters counts as a short query.
    short_query_chars: int = 200

    @property
    def targets(self) -> Tuple[str, ...]:
        """All distinct model ids the router can produce on its own."""
        seen: List[str] = []
        candidates = [
            self.default_model,
            self.vision_model,
            self.long_context_model,
            self.reasoning_model,
            self.fast_model,
            self.versatile_model,
        ] + [r.replacement for r in self.retired_rules]
        for mid in candidates:
            if mid not in seen:
                seen.append(mid)
        return tuple(seen)

    @classmethod
    def from_env(cls) -> RoutingConfig:
        """Load routing overrides from environment variables."""
        default_model = _env_str("DEFAULT_MODEL", DEFAULT_MODEL).strip() or DEFAULT_MODEL
        retired = _csv_list("RETIRED_MODELS") or list(RETIRED_MODEL_FRAGMENTS)
        namespaces = _csv_list("KNOWN_MODEL_NAMESPACES") or list(KNOWN_MODEL_NAMESPACES)
        return cls(
            default_model=default_model,
            vision_model=_env_str("VISION_MODEL", VISION_MODEL).strip() or VISION_MODEL,
            long_context_model=_env_str("LONG_CONTEXT_MODEL", LONG_CONTEXT_MODEL).strip() or LONG_CONTEXT_MODEL,
            reasoning_model=_env_str("REASONING_MODEL", REASONING_MODEL).strip() or REASONING_MODEL,
            fast_model=_env_str("FAST_MODEL", FAST_MODEL).strip() or FAST_MODEL,
            versatile_model=_env_str("VERSATILE_MODEL", default_model).strip() or default_model,
            retired_rules=_parse_retired_rules(retired, default_model),
            known_namespaces=tuple(ns.lower().rstrip("/") for ns in namespaces),
            long_context_chars=_env_int("LONG_CONTEXT_CHARS", 8000),
            short_query_chars=_env_int("SHORT_QUERY_CHARS", 200),
        )

    def validate(self) -> None:
        """Validate routing configuration."""
        for name in ("default_model", "vision_model", "long_context_model",
                     "reasoning_model", "fast_model", "versatile_model"):
            if not getattr(self, name):
                raise ValueError(f"{name.upper()} must be non-empty")
        if self.long_context_chars <= 0:
            raise ValueError("LONG_CONTEXT_CHARS must be > 0")
        if self.short_query_chars <= 0:
            raise ValueError("SHORT_QUERY_CHARS must be > 0")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()


def load_routing_config() -> RoutingConfig:
    """Load routing configuration from environment."""
    return RoutingConfig.from_env()
