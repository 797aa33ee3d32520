"""
Tests for SSE (Server-Sent Events) handler module.

Tests cover:
- SSE line parsing helpers
- Client frame encoding
- Relay event ordering and the single terminal event
- Upstream failures, idle timeout and client disconnect
- Buffered fallbacks
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from sse_handler import (
    SSERelay,
    StreamEvent,
    extract_content_fragments,
    is_done_data_line,
    read_next_sse_event,
    sse_event_data_text,
)
from upstream import UpstreamClient, UpstreamError


def _chunk(text):
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]})


def _sse_response(lines, status_code=200, content_type="text/event-stream"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = {"content-type": content_type}

    async def aiter_lines():
        for line in lines:
            yield line

    resp.aiter_lines = aiter_lines
    resp.aclose = AsyncMock()
    return resp


def _upstream(resp=None, **kwargs):
    upstream = MagicMock(spec=UpstreamClient)
    upstream.chat_completion = AsyncMock(return_value=resp, **kwargs)
    upstream.read_error_snippet = AsyncMock(return_value="")
    return upstream


async def _collect(relay, **kwargs):
    payload = {"model": "llama-3.1-8b-instant", "messages": [], "stream": True}
    return [ev async for ev in relay.stream(MagicMock(), payload, req_id="test", **kwargs)]


# ============================================================================
# Helper Functions Tests
# ============================================================================

class TestSSEHelpers:
    """Test SSE helper functions."""

    def test_is_done_data_line(self):
        assert is_done_data_line("data:[DONE]") is True
        assert is_done_data_line("data: [DONE]") is True
        assert is_done_data_line("data:  [DONE]  ") is True
        assert is_done_data_line("data: [DONE] extra") is False
        assert is_done_data_line("data: something") is False
        assert is_done_data_line("not data") is False

    def test_sse_event_data_text_joins_lines(self):
        lines = ["event: message", "data: {\"a\":", "data: 1}", ": comment"]
        assert sse_event_data_text(lines) == '{"a":\n1}'

    def test_extract_content_fragments(self):
        obj = {"choices": [{"delta": {"content": "Hi"}}, {"delta": {"content": ""}}, {"delta": {"role": "assistant"}}]}
        assert extract_content_fragments(obj) == ["Hi"]
        assert extract_content_fragments({"choices": [{"message": {"content": "full"}}]}) == ["full"]
        assert extract_content_fragments([]) == []

    @pytest.mark.asyncio
    async def test_read_next_sse_event(self):
        async def lines():
            for ln in ["data: a", "", ": keepalive", "", "data: b"]:
                yield ln

        it = lines()
        assert await read_next_sse_event(it) == ["data: a"]
        assert await read_next_sse_event(it) == [": keepalive"]
        assert await read_next_sse_event(it) == ["data: b"]
        assert await read_next_sse_event(it) is None

    @pytest.mark.asyncio
    async def test_read_next_sse_event_timeout(self):
        async def stalled():
            await asyncio.sleep(1)
            yield "data: late"

        with pytest.raises(asyncio.TimeoutError):
            await read_next_sse_event(stalled(), timeout_s=0.01)


class TestStreamEvent:
    """Test client frame encoding."""

    def test_frames(self):
        assert StreamEvent.fragment("Hel").to_bytes() == b'data: {"content":"Hel"}\n\n'
        assert StreamEvent.finished().to_bytes() == b'data: {"done":true}\n\n'
        assert StreamEvent.failure("boom").to_bytes() == b'data: {"error":"boom"}\n\n'

    def test_non_ascii_is_sent_verbatim(self):
        assert StreamEvent.fragment("héllo").to_bytes() == 'data: {"content":"héllo"}\n\n'.encode("utf-8")

    def test_terminal(self):
        assert StreamEvent.finished().terminal is True
        assert StreamEvent.failure("x").terminal is True
        assert StreamEvent.fragment("x").terminal is False


# ============================================================================
# Relay Tests
# ============================================================================

class TestSSERelay:
    """Test the streaming relay."""

    @pytest.mark.asyncio
    async def test_fragments_in_order_then_done(self):
        resp = _sse_response([_chunk("Hel"), "", _chunk("lo"), "", "data: [DONE]", ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        events = await _collect(relay)

        assert [e.to_bytes() for e in events] == [
            b'data: {"content":"Hel"}\n\n',
            b'data: {"content":"lo"}\n\n',
            b'data: {"done":true}\n\n',
        ]
        resp.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_zero_fragments_still_done(self):
        resp = _sse_response(["data: [DONE]", ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        assert await _collect(relay) == [StreamEvent.finished()]

    @pytest.mark.asyncio
    async def test_eof_without_done_marker(self):
        resp = _sse_response([_chunk("a"), ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        assert await _collect(relay) == [StreamEvent.fragment("a"), StreamEvent.finished()]

    @pytest.mark.asyncio
    async def test_keepalives_and_non_json_are_skipped(self):
        resp = _sse_response([": ping", "", "data: not-json", "", _chunk("ok"), "", "data: [DONE]", ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        assert await _collect(relay) == [StreamEvent.fragment("ok"), StreamEvent.finished()]

    @pytest.mark.asyncio
    async def test_upstream_http_error(self):
        resp = _sse_response([], status_code=400)
        upstream = _upstream(resp)
        upstream.read_error_snippet = AsyncMock(
            return_value='{"error": {"message": "The model `mixtral-8x7b-32768` has been decommissioned"}}'
        )
        relay = SSERelay(upstream, idle_timeout_s=1.0)

        events = await _collect(relay)

        assert len(events) == 1
        assert events[0].error == "Upstream error 400: The model `mixtral-8x7b-32768` has been decommissioned"
        resp.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mid_stream_error_payload(self):
        resp = _sse_response([_chunk("Hel"), "", 'data: {"error": {"message": "rate limited"}}', "", _chunk("lo"), ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        events = await _collect(relay)

        assert events[0] == StreamEvent.fragment("Hel")
        assert events[1].error == "Upstream error: rate limited"
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_transport_error(self):
        relay = SSERelay(_upstream(side_effect=httpx.ConnectError("refused")), idle_timeout_s=1.0)

        events = await _collect(relay)

        assert len(events) == 1
        assert events[0].error == "Upstream connection error: ConnectError: refused"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_terminal_event(self):
        relay = SSERelay(_upstream(side_effect=RuntimeError("kaboom")), idle_timeout_s=1.0)

        assert await _collect(relay) == [StreamEvent.failure("kaboom")]

    @pytest.mark.asyncio
    async def test_idle_timeout(self):
        resp = MagicMock()
        resp.status_code = 200
        resp.headers = {"content-type": "text/event-stream"}

        async def aiter_lines():
            yield _chunk("Hel")
            yield ""
            await asyncio.sleep(1)
            yield _chunk("lo")

        resp.aiter_lines = aiter_lines
        resp.aclose = AsyncMock()
        relay = SSERelay(_upstream(resp), idle_timeout_s=0.05)

        events = await _collect(relay)

        assert events[0] == StreamEvent.fragment("Hel")
        assert len(events) == 2
        assert "stalled" in events[1].error
        resp.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("upstream_streaming", [True, False])
    async def test_upstream_never_answering_ends_with_error(self, upstream_streaming):
        async def never_answers(client, body):
            await asyncio.sleep(3600)

        upstream = _upstream()
        upstream.chat_completion = AsyncMock(side_effect=never_answers)
        relay = SSERelay(upstream, idle_timeout_s=0.05, upstream_streaming=upstream_streaming)

        events = await asyncio.wait_for(_collect(relay), timeout=1.0)

        assert len(events) == 1
        assert "stalled" in events[0].error

    @pytest.mark.asyncio
    async def test_buffered_call_uses_request_timeout(self):
        async def slow_answer(client, body):
            await asyncio.sleep(0.1)
            resp = MagicMock()
            resp.status_code = 200
            resp.json.return_value = {"choices": [{"message": {"content": "done thinking"}}]}
            return resp

        upstream = _upstream()
        upstream.chat_completion = AsyncMock(side_effect=slow_answer)
        relay = SSERelay(upstream, idle_timeout_s=0.05, request_timeout_s=1.0, upstream_streaming=False)

        events = await asyncio.wait_for(_collect(relay), timeout=2.0)

        assert events == [StreamEvent.fragment("done thinking"), StreamEvent.finished()]

    @pytest.mark.asyncio
    async def test_client_disconnect_stops_and_releases_upstream(self):
        resp = _sse_response([_chunk("Hel"), "", _chunk("lo"), "", "data: [DONE]", ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)
        is_disconnected = AsyncMock(side_effect=[False, True])
        on_complete = MagicMock()

        events = await _collect(relay, is_disconnected=is_disconnected, on_complete=on_complete)

        assert events == [StreamEvent.fragment("Hel")]
        resp.aclose.assert_awaited_once()
        on_complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_consumer_closing_early_releases_upstream(self):
        resp = _sse_response([_chunk("Hel"), "", _chunk("lo"), "", "data: [DONE]", ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        gen = relay.stream(MagicMock(), {"model": "m", "messages": []}, req_id="test")
        first = await gen.__anext__()
        await gen.aclose()

        assert first == StreamEvent.fragment("Hel")
        resp.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_completion_hook_receives_assembled_text(self):
        resp = _sse_response([_chunk("Hel"), "", _chunk("lo"), "", "data: [DONE]", ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)
        on_complete = MagicMock()

        await _collect(relay, on_complete=on_complete)

        on_complete.assert_called_once_with("Hello")

    @pytest.mark.asyncio
    async def test_completion_hook_failure_does_not_break_stream(self):
        resp = _sse_response([_chunk("x"), "", "data: [DONE]", ""])
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        events = await _collect(relay, on_complete=MagicMock(side_effect=OSError("disk full")))

        assert events == [StreamEvent.fragment("x"), StreamEvent.finished()]

    @pytest.mark.asyncio
    async def test_buffered_json_answer_is_one_fragment(self):
        resp = _sse_response([], content_type="application/json")
        resp.aread = AsyncMock(return_value=b'{"choices": [{"message": {"content": "whole answer"}}]}')
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        events = await _collect(relay)

        assert events == [StreamEvent.fragment("whole answer"), StreamEvent.finished()]

    @pytest.mark.asyncio
    async def test_upstream_streaming_disabled(self):
        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = {"choices": [{"message": {"content": "buffered"}}]}
        upstream = _upstream(resp)
        relay = SSERelay(upstream, idle_timeout_s=1.0, upstream_streaming=False)

        events = await _collect(relay)

        assert events == [StreamEvent.fragment("buffered"), StreamEvent.finished()]
        sent_payload = upstream.chat_completion.call_args.args[1]
        assert sent_payload["stream"] is False


class TestSSERelayComplete:
    """Test the non-streaming path."""

    @pytest.mark.asyncio
    async def test_complete_returns_text(self):
        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = {"choices": [{"message": {"content": "hi there"}}]}
        relay = SSERelay(_upstream(resp), idle_timeout_s=1.0)

        text = await relay.complete(MagicMock(), {"model": "m", "messages": [], "stream": True}, req_id="t")

        assert text == "hi there"

    @pytest.mark.asyncio
    async def test_complete_raises_upstream_error(self):
        resp = MagicMock()
        resp.status_code = 429
        upstream = _upstream(resp)
        upstream.read_error_snippet = AsyncMock(return_value='{"error": {"message": "slow down"}}')
        relay = SSERelay(upstream, idle_timeout_s=1.0)

        with pytest.raises(UpstreamError) as exc_info:
            await relay.complete(MagicMock(), {"model": "m", "messages": []}, req_id="t")

        assert exc_info.value.status_code == 429
        assert exc_info.value.message == "Upstream error 429: slow down"

    @pytest.mark.asyncio
    async def test_complete_times_out(self):
        async def never_answers(client, body):
            await asyncio.sleep(3600)

        upstream = _upstream()
        upstream.chat_completion = AsyncMock(side_effect=never_answers)
        relay = SSERelay(upstream, idle_timeout_s=1.0, request_timeout_s=0.05)

        with pytest.raises(UpstreamError, match="stalled"):
            await asyncio.wait_for(relay.complete(MagicMock(), {"model": "m", "messages": []}, req_id="t"), 1.0)
