"""
Chat relay service (FastAPI) -> Groq OpenAI-compatible API as upstream.

Per chat request:
  normalize client messages -> route to a concrete model -> relay the
  completion back, either as Server-Sent Events or as one JSON body.

Virtual model:
  id="auto" lets the router pick a model from the latest user query.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import platform
import random
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Dict, Optional
from urllib.parse import quote, urlencode

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import load_config, load_routing_config
from logger import setup_logging
from models import ModelSelection, catalog_response
from normalizer import ChatMessage, normalize_messages
from router import ModelRouter
from sse_handler import SSERelay
from upstream import (
    UpstreamClient,
    UpstreamError,
    clamp_max_tokens,
    clamp_temperature,
    completion_text,
    error_message_from_body,
)
from utils import dump_config, load_env_files

# Load .env before reading configuration
load_env_files()

# Load configuration
config = load_config()
config.validate(require_api_key=False)
routing = load_routing_config()
routing.validate()

# Setup logging
log = setup_logging(config)
dump_config(config, routing)

router = ModelRouter(routing)
upstream_client = UpstreamClient(config)
relay = SSERelay(
    upstream_client,
    idle_timeout_s=config.stream_idle_timeout_s,
    request_timeout_s=config.request_timeout_s,
    upstream_streaming=config.upstream_streaming,
)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

# Env keys reported (by name only) from /api/health.
HEALTH_ENV_KEYS = ("GROQ_API_KEY", "GROQ_BASE_URL", "POLLINATIONS_API_KEY", "PORT", "LOG_LEVEL")

# Client-facing image model ids that the image backend knows under another name.
IMAGE_MODEL_ALIASES = {"bytedance-seed/seedream-4.5": "seedream"}

_FALSE_STRINGS = {"0", "false", "no", "n", "off"}


async def check_upstream_models(*, timeout_s: Optional[float] = None) -> None:
    """Warn about routing targets the upstream no longer offers."""
    if not config.groq_api_key:
        log.warning("GROQ_API_KEY not set, cannot check upstream models at startup")
        return

    try:
        timeout = config.request_timeout_s if timeout_s is None else timeout_s
        async with httpx.AsyncClient(timeout=timeout, proxy=upstream_client.get_proxy_url()) as client:
            offered = set(await upstream_client.list_models(client))
    except Exception as e:
        log.warning("Failed to list upstream models at startup: %s", e)
        return

    missing = [mid for mid in routing.targets if mid not in offered]
    log.info("=== ROUTING TARGETS ===")
    for mid in routing.targets:
        log.info("%s %s", "ok     " if mid in offered else "MISSING", mid)
    log.info("=======================")
    if missing:
        log.warning("Routing targets not offered upstream (decommissioned?): %s", ", ".join(missing))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan context manager for FastAPI application.

    The startup check runs in the background and never blocks readiness.
    """
    startup_task: Optional[asyncio.Task[None]] = None
    with contextlib.suppress(Exception):
        if config.groq_api_key:
            startup_task = asyncio.create_task(
                check_upstream_models(timeout_s=min(5.0, config.request_timeout_s)),
                name="chat_relay.check_upstream_models",
            )

    yield

    if startup_task is not None:
        startup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await startup_task


app = FastAPI(
    title="chat-relay-service",
    version="1.0.0",
    lifespan=lifespan,
)

# Browser chat UI is served from another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or (request.headers.get("x-trace-id") or "").strip()
        or uuid.uuid4().hex
    )


async def _read_json_object(request: Request) -> Dict[str, Any]:
    """Parse the request body as a JSON object, enforcing the size limit."""
    # Basic request size guard (images arrive inline, but not unbounded).
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid Content-Length header: {cl!r}",
            )
        if n < 0:
            raise HTTPException(
                status_code=400,
                detail="Invalid Content-Length: must be non-negative",
            )
        if n > config.max_request_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request too large: {n} bytes (max {config.max_request_bytes})",
            )

    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body: expected object")
    return body


def wants_stream(value: Any) -> bool:
    """Client `stream` flag; streaming unless explicitly turned off."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def _routing_headers(req_id: str, selection: ModelSelection) -> Dict[str, str]:
    return {
        "X-Request-Id": req_id,
        "X-Routed-Model": selection.routed_id,
        "X-Route-Reason": selection.reason.value,
    }


def _completion_hook(req_id: str, selection: ModelSelection) -> Callable[[str], None]:
    """Receives the assembled assistant text once a stream finishes cleanly."""

    def on_complete(text: str) -> None:
        log.info(
            "Assistant reply ready req_id=%s model=%s chars=%d",
            req_id,
            selection.routed_id,
            len(text),
        )

    return on_complete


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/health")
async def api_health() -> Dict[str, Any]:
    """Diagnostics: which relevant settings are present (never their values)."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "env_keys_detected": [k for k in HEALTH_ENV_KEYS if os.getenv(k)],
        "env": {
            "hasGroqKey": bool(config.groq_api_key),
            "hasPollinationsKey": bool(config.pollinations_api_key),
        },
        "python_version": platform.python_version(),
    }


@app.get("/api/test-ai")
async def api_test_ai() -> Response:
    """Tiny non-streaming completion against the fast model."""
    if not config.groq_api_key:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "GROQ_API_KEY environment variable required"},
        )

    log.info("Testing upstream connection model=%s", routing.fast_model)
    payload = UpstreamClient.build_payload(
        [ChatMessage(role="user", content="Say 'Connection successful' if you can read this.")],
        routing.fast_model,
        temperature=config.default_temperature,
        max_tokens=20,
        stream=False,
    )
    try:
        async with upstream_client.new_client(streaming=False) as client:
            resp = await upstream_client.chat_completion(client, payload)
            if resp.status_code != 200:
                raise UpstreamError(error_message_from_body(resp.text, resp.status_code), resp.status_code)
            data = resp.json()
    except (UpstreamError, httpx.HTTPError, ValueError) as e:
        log.error("Upstream test failed: %s", e)
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    return JSONResponse(
        content={
            "success": True,
            "response": completion_text(data),
            "model": (data.get("model") if isinstance(data, dict) else None) or routing.fast_model,
        }
    )


@app.get("/v1/models")
async def v1_models() -> Dict[str, Any]:
    """List the selectable models and their UI categories."""
    return catalog_response()


def build_image_url(prompt: str, model: str = "flux", enhance: Any = True, seed: Optional[int] = None) -> str:
    """Image-generation URL for the configured Pollinations endpoint."""
    if seed is None:
        seed = random.randint(0, 2_147_483_646)
    enhance_s = str(enhance).lower() if isinstance(enhance, bool) else str(enhance)
    params = {
        "model": IMAGE_MODEL_ALIASES.get(model, model),
        "seed": str(seed),
        "enhance": enhance_s,
        "nologo": "true",
    }
    if config.pollinations_api_key:
        params["key"] = config.pollinations_api_key
    return f"{config.pollinations_base_url}/{quote(prompt, safe='')}?{urlencode(params)}"


@app.post("/api/generate-image")
async def api_generate_image(request: Request) -> Dict[str, str]:
    body = await _read_json_object(request)
    prompt = body.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise HTTPException(status_code=400, detail="Prompt is required")

    model = body.get("model") or "flux"
    enhance = body.get("enhance", True)
    url = build_image_url(prompt, str(model), enhance)
    log.info("Image URL built model=%s prompt_chars=%d", model, len(prompt))
    return {"imageUrl": url}


@app.post("/chat")
@app.post("/api/chat")
async def chat(request: Request) -> Response:
    """Handle chat requests (SSE by default, JSON when `stream` is false)."""
    if not config.groq_api_key:
        raise HTTPException(
            status_code=500, detail="GROQ_API_KEY environment variable required"
        )

    body = await _read_json_object(request)
    raw_messages = body.get("messages")
    if not isinstance(raw_messages, list):
        raise HTTPException(
            status_code=400,
            detail="Messages are required and must be an array.",
        )

    req_id = _request_id(request)
    client_ip = request.client.host if request.client else "unknown"
    stream = wants_stream(body.get("stream"))
    log.info(
        "Incoming chat req_id=%s from=%s request_model=%r messages=%d stream=%s",
        req_id,
        client_ip,
        body.get("model"),
        len(raw_messages),
        stream,
    )

    messages = normalize_messages(raw_messages)
    selection = router.route(messages, body.get("model"))
    log.info("Routed req_id=%s %s", req_id, " ".join(selection.as_log_fields()))

    payload = UpstreamClient.build_payload(
        messages,
        selection.routed_id,
        temperature=clamp_temperature(body.get("temperature"), config.default_temperature),
        max_tokens=clamp_max_tokens(body.get("max_tokens"), config.max_tokens_cap),
        stream=stream,
    )
    headers = _routing_headers(req_id, selection)

    if not stream:
        try:
            async with upstream_client.new_client(streaming=False) as client:
                text = await relay.complete(client, payload, req_id=req_id)
        except UpstreamError as e:
            log.warning("Chat failed req_id=%s model=%s err=%s", req_id, selection.routed_id, e.message)
            return JSONResponse(status_code=502, content={"error": e.message}, headers=headers)
        except Exception as e:
            log.exception("Chat crashed req_id=%s model=%s", req_id, selection.routed_id)
            return JSONResponse(status_code=500, content={"error": str(e) or type(e).__name__}, headers=headers)
        return JSONResponse(content={"content": text}, headers=headers)

    client = upstream_client.new_client(streaming=True)

    async def gen() -> AsyncGenerator[bytes, None]:
        try:
            events = relay.stream(
                client,
                payload,
                req_id=req_id,
                is_disconnected=request.is_disconnected,
                on_complete=_completion_hook(req_id, selection),
            )
            async with contextlib.aclosing(events):
                async for event in events:
                    yield event.to_bytes()
        finally:
            with contextlib.suppress(Exception):
                await client.aclose()

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **headers},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
