"""Upstream (Groq, OpenAI-compatible) chat completion API communication."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import AppConfig
from normalizer import ChatMessage

log = logging.getLogger("chat_relay")


class UpstreamError(Exception):
    """The provider rejected the request or the connection failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 2.0


def clamp_temperature(value: Any, default: float = 0.7) -> float:
    """Numeric (or numeric string) temperature bounded to 0..2, else the default."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        t = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(t):
        return default
    return min(max(t, TEMPERATURE_MIN), TEMPERATURE_MAX)


def clamp_max_tokens(value: Any, cap: int = 4096) -> int:
    """Positive integer max_tokens no larger than `cap`; invalid values become `cap`."""
    if isinstance(value, bool) or value is None:
        return cap
    try:
        n = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return cap
    if n <= 0:
        return cap
    return min(n, cap)


def error_message_from_body(text: str, status_code: Optional[int] = None) -> str:
    """Best-effort human-readable message from a provider error body."""
    prefix = f"Upstream error {status_code}" if status_code is not None else "Upstream error"
    detail = ""
    try:
        obj = json.loads(text) if text else None
    except ValueError:
        obj = None
    if isinstance(obj, dict):
        err = obj.get("error")
        if isinstance(err, dict):
            detail = str(err.get("message") or "")
        elif isinstance(err, str):
            detail = err
    if not detail:
        detail = (text or "").strip()[:500]
    return f"{prefix}: {detail}" if detail else prefix


def completion_text(payload: Any) -> str:
    """Text of the first choice of a non-streaming completion object."""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


class UpstreamClient:
    """Handle communication with the Groq OpenAI-compatible API."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.groq_api_key}",
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    def get_proxy_url(self) -> str | None:
        """
        Get proxy URL for httpx AsyncClient.

        Returns HTTPS proxy if set (preferred for HTTPS API calls),
        otherwise HTTP proxy if set, or None if no proxy configured.
        """
        if self._config.https_proxy:
            return self._config.https_proxy
        if self._config.http_proxy:
            return self._config.http_proxy
        return None

    def new_client(self, *, streaming: bool = True) -> httpx.AsyncClient:
        """
        Per-request HTTP client.

        Streaming clients get no read timeout; the relay bounds the wait for
        response headers and the gap between upstream lines itself.
        """
        connect_timeout = min(30.0, float(self._config.request_timeout_s))
        read_timeout = None if streaming else float(self._config.request_timeout_s)
        return httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=connect_timeout,
                write=connect_timeout,
                pool=connect_timeout,
                read=read_timeout,
            ),
            proxy=self.get_proxy_url(),
        )

    @staticmethod
    def build_payload(
        messages: Sequence[ChatMessage],
        model_id: str,
        *,
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> Dict[str, Any]:
        return {
            "model": model_id,
            "messages": [m.to_dict() for m in messages],
            "stream": stream,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    async def chat_completion(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
    ) -> httpx.Response:
        """
        Send a chat completion request.

        For streaming requests the response body is left unread; the caller
        owns it and must close it.
        """
        stream = bool(payload.get("stream", False))
        model_id = payload.get("model")

        t0 = time.time()
        req = client.build_request(
            "POST",
            f"{self._config.groq_base_url}/chat/completions",
            headers=self.get_headers(),
            json=payload,
        )
        resp = await client.send(req, stream=stream)
        dt = (time.time() - t0) * 1000
        log.info("Upstream chat model=%s stream=%s status=%s ms=%.1f", model_id, stream, resp.status_code, dt)

        if resp.status_code != 200:
            log.warning(
                "Upstream chat error model=%s status=%s content-type=%s",
                model_id,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
        return resp

    async def list_models(self, client: httpx.AsyncClient) -> List[str]:
        """Ids of the models the provider currently offers."""
        t0 = time.time()
        r = await client.get(f"{self._config.groq_base_url}/models", headers=self.get_headers())
        dt = (time.time() - t0) * 1000
        if r.status_code != 200:
            log.error("Upstream /models failed status=%s ms=%.1f body=%s", r.status_code, dt, r.text[:500])
            raise UpstreamError(error_message_from_body(r.text, r.status_code), r.status_code)

        items = (r.json() or {}).get("data") or []
        ids = [str(it.get("id")) for it in items if isinstance(it, dict) and it.get("id")]
        log.info("Fetched models: count=%d ms=%.1f", len(ids), dt)
        return ids

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        if not isinstance(raw, (bytes, bytearray)):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
