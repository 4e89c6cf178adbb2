import asyncio

import httpx
import pytest
from starlette.requests import Request

from ipgate.config import TimeoutConfig, UpstreamConfig
from ipgate.proxy import UpstreamProxy, upstream_target


def make_request(path, raw_path, query=b"", method="GET"):
    scope = {
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("gate.example", 80),
        "path": path,
        "raw_path": raw_path,
        "query_string": query,
        "headers": [(b"host", b"gate.example")],
        "client": ("1.2.3.1", 5555),
    }

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


def make_proxy(handler):
    return UpstreamProxy(
        UpstreamConfig(base_url="http://backend.internal/api"),
        TimeoutConfig(),
        transport=httpx.MockTransport(handler),
    )


def test_upstream_target_keeps_client_encoding():
    request = make_request("/a/b/c", b"/a%2Fb/c", query=b"q=%3F&x=1")
    assert upstream_target(request) == "/a%2Fb/c?q=%3F&x=1"


def test_upstream_target_drops_query_from_raw_path():
    request = make_request("/items", b"/items?x=1", query=b"x=1")
    assert upstream_target(request) == "/items?x=1"


def test_upstream_target_without_raw_path_quotes_decoded_path():
    request = make_request("/a b", None)
    assert upstream_target(request) == "/a%20b"


@pytest.mark.asyncio
async def test_encoded_separators_reach_upstream_unchanged():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    proxy = make_proxy(handler)
    response = await proxy.forward(make_request("/a/b", b"/a%2Fb", query=b"q=%3F"))
    await proxy.aclose()

    assert response.status_code == 200
    assert b"/api/a%2Fb" in seen[0].url.raw_path
    assert seen[0].url.params["q"] == "?"


@pytest.mark.asyncio
async def test_dot_segments_are_refused():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    proxy = make_proxy(handler)
    response = await proxy.forward(make_request("/public/../private", b"/public/%2e%2e/private"))
    await proxy.aclose()

    assert response.status_code == 400
    assert seen == []


@pytest.mark.asyncio
async def test_aclose_waits_for_running_requests():
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(request):
        entered.set()
        await release.wait()
        return httpx.Response(200, content=b"done")

    proxy = make_proxy(handler)
    pending = asyncio.create_task(proxy.forward(make_request("/slow", b"/slow")))
    await entered.wait()

    closing = asyncio.create_task(proxy.aclose())
    await asyncio.sleep(0)
    assert not proxy.is_closed

    release.set()
    response = await pending
    await closing
    assert response.status_code == 200
    assert response.body == b"done"
    assert proxy.is_closed


@pytest.mark.asyncio
async def test_aclose_gives_up_after_drain_timeout():
    entered = asyncio.Event()

    async def handler(request):
        entered.set()
        await asyncio.sleep(3600)

    proxy = make_proxy(handler)
    pending = asyncio.create_task(proxy.forward(make_request("/stuck", b"/stuck")))
    await entered.wait()
    await proxy.aclose(drain_timeout=0.01)
    assert proxy.is_closed
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
