"""Startup helpers: .env loading and effective configuration dump."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig, RoutingConfig
from logger import mask_secret

log = logging.getLogger("chat_relay")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig, routing: RoutingConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== Chat relay startup config ===")
    log.info("GROQ_BASE_URL=%s", config.groq_base_url)
    log.info(
        "GROQ_API_KEY_set=%s value=%s len=%s",
        bool(config.groq_api_key),
        mask_secret(config.groq_api_key),
        len(config.groq_api_key or ""),
    )
    log.info("HTTPS_PROXY=%s HTTP_PROXY=%s", config.https_proxy or "-", config.http_proxy or "-")
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("STREAM_IDLE_TIMEOUT_S=%s", config.stream_idle_timeout_s)
    log.info("UPSTREAM_STREAMING=%s", config.upstream_streaming)
    log.info("DEFAULT_TEMPERATURE=%s MAX_TOKENS_CAP=%s", config.default_temperature, config.max_tokens_cap)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("POLLINATIONS_API_KEY_set=%s", bool(config.pollinations_api_key))
    log.info("LOG_LEVEL=%s LOG_PATH=%s LOG_COLOR=%s", config.log_level, config.log_path, config.log_color)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("--- routing ---")
    log.info("DEFAULT_MODEL=%s", routing.default_model)
    log.info("VISION_MODEL=%s", routing.vision_model)
    log.info("LONG_CONTEXT_MODEL=%s", routing.long_context_model)
    log.info("REASONING_MODEL=%s", routing.reasoning_model)
    log.info("FAST_MODEL=%s", routing.fast_model)
    log.info("VERSATILE_MODEL=%s", routing.versatile_model)
    log.info(
        "RETIRED_MODELS=%s",
        [f"{r.fragment}->{r.replacement}" for r in routing.retired_rules],
    )
    log.info("KNOWN_MODEL_NAMESPACES=%s", list(routing.known_namespaces))
    log.info(
        "LONG_CONTEXT_CHARS=%s SHORT_QUERY_CHARS=%s",
        routing.long_context_chars,
        routing.short_query_chars,
    )
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("================================")
