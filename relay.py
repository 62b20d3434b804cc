"""
Outbound call to the upstream API and relay of its response to the caller.

Streaming requests are forwarded byte-for-byte as they arrive. Buffered
requests are read in full, their ``usage`` block is added to the
statistics, and the upstream status and body are returned unchanged.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any, NoReturn

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse

from errors import UPSTREAM_ERROR_CODE, UpstreamCallFailure
from state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_URL = "https://integrate.api.nvidia.com/v1/chat/completions"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Lines longer than this are not inspected for usage
MAX_SNIFF_LINE_BYTES = 1024 * 1024


def create_upstream_client(
    request_timeout: float = 120.0,
    connect_timeout: float = 30.0,
    verify_tls: bool = True,
) -> httpx.AsyncClient:
    """Create the shared httpx client used for upstream calls."""
    timeout = httpx.Timeout(timeout=request_timeout, connect=connect_timeout)
    limits = httpx.Limits(max_connections=100, max_keepalive_connections=20)
    if not verify_tls:
        logger.warning("TLS certificate verification for the upstream API is DISABLED")
    return httpx.AsyncClient(timeout=timeout, limits=limits, verify=verify_tls)


def usage_counts(usage: dict[str, Any]) -> tuple[int, int, int]:
    """Return (prompt, completion, total) token counts, 0 for missing fields."""

    def count(key: str) -> int:
        value = usage.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        return int(value)

    return count("prompt_tokens"), count("completion_tokens"), count("total_tokens")


def extract_usage(body: bytes) -> dict[str, Any] | None:
    """Pull the ``usage`` object out of a buffered JSON response, if any."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    usage = data.get("usage")
    return usage if isinstance(usage, dict) else None


class UsageSniffer:
    """
    Watches forwarded SSE bytes for ``usage`` objects.

    Only observes; the bytes handed to the caller are never modified.
    Keeps the last usage object seen, which is the cumulative one for
    OpenAI-compatible streams.
    """

    def __init__(self) -> None:
        self._pending = b""
        self.usage: dict[str, Any] | None = None

    def feed(self, chunk: bytes) -> None:
        self._pending += chunk
        *lines, self._pending = self._pending.split(b"\n")
        if len(self._pending) > MAX_SNIFF_LINE_BYTES:
            self._pending = b""
        for line in lines:
            self._inspect(line)

    def close(self) -> None:
        if self._pending:
            self._inspect(self._pending)
            self._pending = b""

    def _inspect(self, line: bytes) -> None:
        line = line.strip()
        if not line.startswith(b"data:"):
            return
        data = line[5:].strip()
        if b'"usage"' not in data:
            return
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return
        if isinstance(event, dict) and isinstance(event.get("usage"), dict):
            self.usage = event["usage"]


class UpstreamRelay:
    """Sends translated requests upstream and relays the responses."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: StateStore,
        upstream_url: str = DEFAULT_UPSTREAM_URL,
        request_timeout: float = 120.0,
    ):
        self.client = client
        self.store = store
        self.upstream_url = upstream_url
        self.request_timeout = request_timeout

    async def forward(self, payload: dict[str, Any], api_key: str) -> Response:
        """
        Call the upstream API with ``payload`` and relay the result.

        The request is counted as soon as a response object is received,
        whatever its status code.

        Raises:
            UpstreamCallFailure: If no response could be obtained
        """
        request = self.client.build_request(
            "POST",
            self.upstream_url,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
        )

        try:
            upstream = await asyncio.wait_for(
                self.client.send(request, stream=True), timeout=self.request_timeout
            )
        except asyncio.TimeoutError as e:
            await self._fail("Upstream request timed out", e)
        except httpx.HTTPError as e:
            await self._fail(str(e) or e.__class__.__name__, e)

        await self.store.record_request()

        if payload.get("stream"):
            logger.debug(f"Streaming upstream response (status {upstream.status_code})")
            return StreamingResponse(
                self._stream_body(upstream),
                status_code=upstream.status_code,
                media_type="text/event-stream",
                headers=STREAM_HEADERS,
            )

        return await self._buffered_response(upstream)

    async def _fail(self, message: str, cause: BaseException) -> NoReturn:
        await self.store.record_error(message, UPSTREAM_ERROR_CODE)
        raise UpstreamCallFailure(message) from cause

    async def _stream_body(self, upstream: httpx.Response) -> AsyncGenerator[bytes, None]:
        """Yield upstream bytes as they arrive; close upstream when done or abandoned."""
        sniffer = UsageSniffer()
        try:
            async for chunk in upstream.aiter_bytes():
                sniffer.feed(chunk)
                yield chunk
        except httpx.HTTPError as e:
            logger.warning(f"Upstream stream ended with error: {e}")
        finally:
            await upstream.aclose()

        sniffer.close()
        if sniffer.usage is not None:
            await self.store.add_usage(*usage_counts(sniffer.usage))

    async def _buffered_response(self, upstream: httpx.Response) -> Response:
        try:
            body = await asyncio.wait_for(upstream.aread(), timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            await self._fail("Upstream response timed out", e)
        except httpx.HTTPError as e:
            await self._fail(str(e) or e.__class__.__name__, e)
        finally:
            await upstream.aclose()

        usage = extract_usage(body)
        if usage is not None:
            await self.store.add_usage(*usage_counts(usage))
        else:
            logger.debug("Upstream response carried no usage block")

        return Response(
            content=body,
            status_code=upstream.status_code,
            media_type="application/json",
        )
