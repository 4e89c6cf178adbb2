"""Forwarding of authorized requests to the upstream service."""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from .config import TimeoutConfig, UpstreamConfig
from .paths import has_dot_segments

log = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# httpx decodes the body, so the upstream framing headers no longer apply.
_RESPONSE_SKIP = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}
_REQUEST_SKIP = HOP_BY_HOP_HEADERS | {"host", "content-length"}


def upstream_target(request: Request) -> str:
    """Path and query exactly as the client sent them, still percent-encoded."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        target = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        target = quote(request.scope["path"])
    query = request.scope.get("query_string", b"")
    if query:
        target = f"{target}?{query.decode('latin-1')}"
    return target


def _filter_headers(items: Iterable[Tuple[str, str]], skip) -> List[Tuple[str, str]]:
    return [(key, value) for key, value in items if key.lower() not in skip]


class UpstreamProxy:
    """One pooled httpx client towards ``upstream.base_url``.

    A proxy replaced by a reload is closed with :meth:`aclose`, which waits
    for the requests still running on it.
    """

    def __init__(
        self,
        upstream: UpstreamConfig,
        timeouts: TimeoutConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.upstream = upstream
        self.timeouts = timeouts
        self._client = httpx.AsyncClient(
            base_url=upstream.base_url,
            headers=dict(upstream.extra_headers),
            timeout=httpx.Timeout(timeouts.default_read_s, connect=timeouts.default_connect_s),
            transport=transport,
            follow_redirects=False,
        )
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def forward(self, request: Request) -> Response:
        if has_dot_segments(request.url.path):
            return PlainTextResponse("Bad Request", status_code=400)
        target = upstream_target(request)
        body = await request.body()
        headers = _filter_headers(request.headers.items(), _REQUEST_SKIP)

        self._inflight += 1
        self._idle.clear()
        try:
            upstream_response = await self._client.request(
                request.method, target, headers=headers, content=body
            )
        except httpx.TimeoutException as exc:
            log.warning("Upstream timeout for %s %s: %s", request.method, target, exc)
            return PlainTextResponse("Gateway Timeout", status_code=504)
        except httpx.TransportError as exc:
            log.warning("Upstream unreachable for %s %s: %s", request.method, target, exc)
            return PlainTextResponse("Bad Gateway", status_code=502)
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

        response = Response(content=upstream_response.content, status_code=upstream_response.status_code)
        for key, value in _filter_headers(upstream_response.headers.multi_items(), _RESPONSE_SKIP):
            response.headers.append(key, value)
        return response

    async def aclose(self, drain_timeout: Optional[float] = None) -> None:
        if drain_timeout is None:
            drain_timeout = self.timeouts.default_connect_s + self.timeouts.default_read_s
        try:
            await asyncio.wait_for(self._idle.wait(), drain_timeout)
        except asyncio.TimeoutError:
            log.warning("Closing upstream client with %d requests still running", self._inflight)
        await self._client.aclose()


__all__ = ["HOP_BY_HOP_HEADERS", "UpstreamProxy", "upstream_target"]
