"""Server-Sent Events (SSE) handling: upstream parsing and the client-facing relay."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from upstream import UpstreamClient, UpstreamError, completion_text, error_message_from_body

log = logging.getLogger("chat_relay")

SSEEventLines = List[str]


@dataclass(frozen=True)
class StreamEvent:
    """
    One frame sent to the client.

    Exactly one of the three shapes is set: a content fragment, the done
    marker, or an error message.
    """

    content: Optional[str] = None
    done: bool = False
    error: Optional[str] = None

    @classmethod
    def fragment(cls, text: str) -> StreamEvent:
        return cls(content=text)

    @classmethod
    def finished(cls) -> StreamEvent:
        return cls(done=True)

    @classmethod
    def failure(cls, message: str) -> StreamEvent:
        return cls(error=message)

    @property
    def terminal(self) -> bool:
        return self.done or self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"error": self.error}
        if self.done:
            return {"done": True}
        return {"content": self.content or ""}

    def to_bytes(self) -> bytes:
        """Encode as an SSE data frame (`data: <json>\\n\\n`)."""
        body = json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))
        return f"data: {body}\n\n".encode("utf-8")


def sse_event_data_text(lines: SSEEventLines) -> str:
    """
    Join all `data:` lines in an SSE event into a single payload.

    Multiple data lines are concatenated with '\\n'.
    """
    parts: List[str] = []
    for ln in lines:
        if ln.startswith("data:"):
            parts.append(ln[len("data:"):].lstrip())
    return "\n".join(parts)


def is_done_data_line(line: str) -> bool:
    """
    Accept: "data:[DONE]" / "data: [DONE]" / "data:    [DONE]" (tolerate whitespace)
    """
    if not line.startswith("data:"):
        return False
    return line[len("data:"):].strip() == "[DONE]"


async def read_next_sse_event(
    aiter: AsyncIterator[str],
    *,
    timeout_s: float | None = None,
) -> SSEEventLines | None:
    """
    Read one SSE event (blank-line delimited) from an async line iterator.

    Returns:
    - list[str]: event lines excluding the terminating blank line (may be empty for keepalive)
    - None: EOF (no more data)

    Raises asyncio.TimeoutError when no line arrives within `timeout_s`.
    """
    lines: SSEEventLines = []
    while True:
        try:
            if timeout_s is None:
                raw = await aiter.__anext__()
            else:
                raw = await asyncio.wait_for(aiter.__anext__(), timeout=timeout_s)
        except StopAsyncIteration:
            if lines:
                return lines
            return None

        line = raw.rstrip("\r\n")
        if line == "":
            return lines
        lines.append(line)


def extract_content_fragments(obj: Any) -> List[str]:
    """Extract non-empty text fragments from a streaming chunk object."""
    out: List[str] = []
    if not isinstance(obj, dict):
        return out

    for ch in (obj.get("choices") or []):
        if not isinstance(ch, dict):
            continue
        d = ch.get("delta") or ch.get("message") or {}
        if isinstance(d, dict):
            c = d.get("content")
            if isinstance(c, str) and c:
                out.append(c)
    return out


def _is_json_response(resp: httpx.Response) -> bool:
    ctype = resp.headers.get("content-type", "")
    return isinstance(ctype, str) and "application/json" in ctype.lower()


class SSERelay:
    """
    Relay one upstream completion to one client.

    `stream()` yields zero or more content events in upstream arrival order and
    then exactly one terminal event (done or error). Each fragment is handed to
    the consumer before the next upstream line is requested.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        *,
        idle_timeout_s: float,
        request_timeout_s: float | None = None,
        upstream_streaming: bool = True,
    ) -> None:
        self._upstream = upstream
        self._idle_timeout_s = idle_timeout_s
        # Whole-body budget for non-streaming calls; defaults to the idle bound.
        self._request_timeout_s = request_timeout_s or idle_timeout_s
        self._upstream_streaming = upstream_streaming

    async def _open(
        self,
        client: httpx.AsyncClient,
        body: Dict[str, Any],
        timeout_s: float,
        phase: str,
    ) -> httpx.Response:
        """Send the upstream request, bounding the wait for its response."""
        try:
            return await asyncio.wait_for(self._upstream.chat_completion(client, body), timeout=timeout_s)
        except asyncio.TimeoutError:
            raise UpstreamError(f"Upstream stream stalled (no {phase} for {timeout_s:.1f}s)")

    async def complete(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        *,
        req_id: str,
    ) -> str:
        """Single non-streaming completion; returns the full text."""
        body = dict(payload)
        body["stream"] = False
        try:
            resp = await self._open(client, body, self._request_timeout_s, "response")
            if resp.status_code != 200:
                snippet = await self._upstream.read_error_snippet(resp)
                raise UpstreamError(error_message_from_body(snippet, resp.status_code), resp.status_code)
            data = resp.json()
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream connection error: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Upstream returned invalid JSON: {e}") from e

        if isinstance(data, dict) and data.get("error"):
            raise UpstreamError(error_message_from_body(json.dumps(data)))
        text = completion_text(data)
        log.info("Buffered completion req_id=%s model=%s chars=%d", req_id, body.get("model"), len(text))
        return text

    async def stream(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        *,
        req_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        on_complete: Callable[[str], Any] | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        model_id = payload.get("model")
        parts: List[str] = []
        resp: httpx.Response | None = None
        try:
            if not self._upstream_streaming:
                text = await self.complete(client, payload, req_id=req_id)
                if text:
                    parts.append(text)
                    yield StreamEvent.fragment(text)
            else:
                body = dict(payload)
                body["stream"] = True
                resp = await self._open(client, body, self._idle_timeout_s, "response headers")
                if resp.status_code != 200:
                    snippet = await self._upstream.read_error_snippet(resp)
                    raise UpstreamError(error_message_from_body(snippet, resp.status_code), resp.status_code)

                if _is_json_response(resp):
                    # Upstream buffered the whole completion: one fragment.
                    data = json.loads(await resp.aread())
                    if isinstance(data, dict) and data.get("error"):
                        raise UpstreamError(error_message_from_body(json.dumps(data)))
                    text = completion_text(data)
                    log.info("Upstream answered without streaming req_id=%s model=%s", req_id, model_id)
                    if text:
                        parts.append(text)
                        yield StreamEvent.fragment(text)
                else:
                    aiter = resp.aiter_lines()
                    while True:
                        if is_disconnected is not None and await is_disconnected():
                            log.info(
                                "Client disconnected req_id=%s model=%s after %d fragment(s); releasing upstream",
                                req_id,
                                model_id,
                                len(parts),
                            )
                            return

                        try:
                            event_lines = await read_next_sse_event(aiter, timeout_s=self._idle_timeout_s)
                        except asyncio.TimeoutError:
                            raise UpstreamError(
                                f"Upstream stream stalled (no data for {self._idle_timeout_s:.1f}s)"
                            )

                        if event_lines is None:
                            break
                        if any(is_done_data_line(ln) for ln in event_lines):
                            break
                        data_txt = sse_event_data_text(event_lines)
                        if not data_txt:
                            continue

                        try:
                            obj = json.loads(data_txt)
                        except ValueError:
                            log.debug("Skipping non-JSON upstream data req_id=%s data=%r", req_id, data_txt[:200])
                            continue
                        if isinstance(obj, dict) and obj.get("error"):
                            raise UpstreamError(error_message_from_body(data_txt))

                        for frag in extract_content_fragments(obj):
                            parts.append(frag)
                            yield StreamEvent.fragment(frag)

            text = "".join(parts)
            log.info("Relay finished req_id=%s model=%s fragments=%d chars=%d", req_id, model_id, len(parts), len(text))
            if on_complete is not None:
                try:
                    on_complete(text)
                except Exception:
                    log.exception("Completion hook failed req_id=%s", req_id)
            yield StreamEvent.finished()
        except asyncio.CancelledError:
            log.info("Relay cancelled req_id=%s model=%s; releasing upstream", req_id, model_id)
            raise
        except UpstreamError as e:
            log.warning("Relay upstream failure req_id=%s model=%s err=%s", req_id, model_id, e.message)
            yield StreamEvent.failure(e.message)
        except httpx.HTTPError as e:
            log.warning("Relay transport failure req_id=%s model=%s err=%r", req_id, model_id, e)
            yield StreamEvent.failure(f"Upstream connection error: {type(e).__name__}: {e}")
        except Exception as e:
            log.exception("Relay crashed req_id=%s model=%s", req_id, model_id)
            yield StreamEvent.failure(str(e) or type(e).__name__)
        finally:
            if resp is not None:
                with contextlib.suppress(Exception):
                    await resp.aclose()
