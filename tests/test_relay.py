"""Tests for the upstream call and response relay."""

import json

import httpx
import pytest
from fastapi.responses import StreamingResponse

from errors import UpstreamCallFailure
from relay import UpstreamRelay, UsageSniffer, extract_usage, usage_counts
from state import StateStore

UPSTREAM_URL = "https://upstream.test/v1/chat/completions"

PAYLOAD = {
    "model": "m1",
    "messages": [{"role": "user", "content": "hi"}],
    "temperature": 0.7,
    "max_tokens": 0,
    "stream": False,
}

COMPLETION = {
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hello"}}],
    "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
}


def make_relay(handler, store: StateStore) -> UpstreamRelay:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstreamRelay(client, store, upstream_url=UPSTREAM_URL, request_timeout=5.0)


class ChunkedUpstreamStream(httpx.AsyncByteStream):
    """Upstream body that yields chunks one by one, optionally failing afterwards."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


async def read_streaming_body(response: StreamingResponse) -> bytes:
    body = b""
    async for chunk in response.body_iterator:
        body += chunk if isinstance(chunk, bytes) else chunk.encode()
    return body


class TestBufferedRelay:
    """Tests for non-streaming relay."""

    @pytest.mark.asyncio
    async def test_usage_is_counted_and_body_forwarded(self) -> None:
        """Test usage increments the counters and the body is returned untouched."""
        raw = json.dumps(COMPLETION, indent=1).encode()
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, content=raw)

        store = StateStore()
        relay = make_relay(handler, store)

        response = await relay.forward(PAYLOAD, "nvapi-test")

        assert response.status_code == 200
        assert response.body == raw
        assert response.media_type == "application/json"
        assert seen["auth"] == "Bearer nvapi-test"
        assert seen["payload"] == PAYLOAD

        stats = store.read().stats
        assert stats["messageCount"] == 1
        assert stats["promptTokens"] == 10
        assert stats["completionTokens"] == 5
        assert stats["totalTokens"] == 15
        assert stats["lastRequestTime"]

    @pytest.mark.asyncio
    async def test_error_status_is_relayed_and_counted(self) -> None:
        """Test a non-2xx upstream answer is forwarded, not treated as a failure."""
        raw = b'{"error": "rate limited"}'
        store = StateStore()
        relay = make_relay(lambda request: httpx.Response(429, content=raw), store)

        response = await relay.forward(PAYLOAD, "k")

        assert response.status_code == 429
        assert response.body == raw
        stats = store.read().stats
        assert stats["messageCount"] == 1
        assert stats["errorCount"] == 0

    @pytest.mark.asyncio
    async def test_unparseable_body_still_forwarded(self) -> None:
        """Test a body that is not JSON is returned as-is without usage."""
        store = StateStore()
        relay = make_relay(lambda request: httpx.Response(502, content=b"Bad Gateway"), store)

        response = await relay.forward(PAYLOAD, "k")

        assert response.status_code == 502
        assert response.body == b"Bad Gateway"
        assert store.read().stats["totalTokens"] == 0


class TestStreamingRelay:
    """Tests for streaming relay."""

    @pytest.mark.asyncio
    async def test_bytes_are_forwarded(self) -> None:
        """Test the SSE body reaches the caller byte for byte."""
        sse = (
            b'data: {"choices":[{"delta":{"content":"hel"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
            b"data: [DONE]\n\n"
        )
        store = StateStore()
        relay = make_relay(
            lambda request: httpx.Response(
                200, content=sse, headers={"content-type": "text/event-stream"}
            ),
            store,
        )

        response = await relay.forward({**PAYLOAD, "stream": True}, "k")

        assert isinstance(response, StreamingResponse)
        assert response.status_code == 200
        assert response.media_type == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache"
        assert await read_streaming_body(response) == sse
        assert store.read().stats["messageCount"] == 1

    @pytest.mark.asyncio
    async def test_usage_chunk_is_counted_once(self) -> None:
        """Test a usage block in the stream is applied at the end."""
        sse = (
            b'data: {"choices":[{"delta":{"content":"hi"}}],"usage":null}\n\n'
            b'data: {"choices":[],"usage":{"prompt_tokens":7,"completion_tokens":3,'
            b'"total_tokens":10}}\n\n'
            b"data: [DONE]\n\n"
        )
        store = StateStore()
        relay = make_relay(lambda request: httpx.Response(200, content=sse), store)

        response = await relay.forward({**PAYLOAD, "stream": True}, "k")
        await read_streaming_body(response)

        stats = store.read().stats
        assert stats["promptTokens"] == 7
        assert stats["completionTokens"] == 3
        assert stats["totalTokens"] == 10

    @pytest.mark.asyncio
    async def test_caller_disconnect_closes_upstream(self) -> None:
        """Test abandoning the stream after one chunk releases the upstream response."""
        upstream = ChunkedUpstreamStream(
            [b'data: {"choices":[]}\n\n', b'data: {"choices":[]}\n\n', b"data: [DONE]\n\n"]
        )
        store = StateStore()
        relay = make_relay(lambda request: httpx.Response(200, stream=upstream), store)

        response = await relay.forward({**PAYLOAD, "stream": True}, "k")
        body = response.body_iterator
        first = await body.__anext__()
        await body.aclose()

        assert first == b'data: {"choices":[]}\n\n'
        assert upstream.closed is True
        assert store.read().stats["messageCount"] == 1

    @pytest.mark.asyncio
    async def test_upstream_error_mid_stream(self) -> None:
        """Test bytes sent before an upstream read error reach the caller and the stream ends quietly."""
        partial = b'data: {"choices":[{"delta":{"content":"hel"}}]}\n\n'
        upstream = ChunkedUpstreamStream([partial], error=httpx.ReadError("connection reset"))
        store = StateStore()
        relay = make_relay(lambda request: httpx.Response(200, stream=upstream), store)

        response = await relay.forward({**PAYLOAD, "stream": True}, "k")

        assert await read_streaming_body(response) == partial
        assert upstream.closed is True
        stats = store.read().stats
        assert stats["messageCount"] == 1
        assert stats["totalTokens"] == 0


class TestUpstreamFailure:
    """Tests for failures to get any upstream response."""

    @pytest.mark.asyncio
    async def test_connect_error_is_recorded(self) -> None:
        """Test a network failure is logged and raised, and the request is not counted."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        store = StateStore()
        relay = make_relay(handler, store)

        with pytest.raises(UpstreamCallFailure) as exc_info:
            await relay.forward(PAYLOAD, "k")

        envelope = exc_info.value.to_envelope()
        assert envelope["error"]["type"] == "api_error"
        assert envelope["error"]["code"] == 500
        assert "connection refused" in envelope["error"]["message"]

        stats = store.read().stats
        assert stats["messageCount"] == 0
        assert stats["errorCount"] == 1
        assert stats["errorLog"][0]["code"] == 500
        assert "connection refused" in stats["errorLog"][0]["message"]

    @pytest.mark.asyncio
    async def test_timeout_is_recorded(self) -> None:
        """Test an upstream timeout surfaces as an upstream failure."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        store = StateStore()
        relay = make_relay(handler, store)

        with pytest.raises(UpstreamCallFailure):
            await relay.forward(PAYLOAD, "k")

        assert store.read().stats["errorCount"] == 1


class TestUsageHelpers:
    """Tests for usage extraction helpers."""

    def test_usage_counts_ignores_bad_values(self) -> None:
        assert usage_counts({"prompt_tokens": 4, "completion_tokens": "x"}) == (4, 0, 0)
        assert usage_counts({"total_tokens": 9.0, "prompt_tokens": True}) == (0, 0, 9)

    def test_extract_usage(self) -> None:
        assert extract_usage(json.dumps(COMPLETION).encode()) == COMPLETION["usage"]
        assert extract_usage(b'{"choices": []}') is None
        assert extract_usage(b'{"usage": 3}') is None
        assert extract_usage(b"not json") is None

    def test_sniffer_handles_split_lines(self) -> None:
        """Test a usage event split across chunks is still found."""
        sniffer = UsageSniffer()
        event = b'data: {"usage":{"prompt_tokens":1,"completion_tokens":2,"total_tokens":3}}\n\n'

        sniffer.feed(event[:20])
        assert sniffer.usage is None
        sniffer.feed(event[20:])

        assert sniffer.usage == {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}
