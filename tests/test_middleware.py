import logging

import httpx
import pytest
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from ipgate.middleware.allowlist import IPAllowlistMiddleware, create_policy
from ipgate.reject import NotFoundRejector


def make_app(policy=None, **kwargs) -> FastAPI:
    app = FastAPI()
    app.add_middleware(IPAllowlistMiddleware, policy=policy, **kwargs)

    @app.get("/")
    async def index():
        return PlainTextResponse("hello")

    @app.get("/healthz")
    async def healthz():
        return PlainTextResponse("ok")

    @app.get("/public/{rest:path}")
    async def public(rest: str):
        return PlainTextResponse(f"public {rest}")

    return app


def client_for(app: FastAPI, peer=("20.20.20.20", 1234)) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, client=peer)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


@pytest.mark.asyncio
async def test_authorized_peer_reaches_app():
    app = make_app(create_policy("test", ["20.20.20.20"]))
    async with client_for(app, ("20.20.20.20", 1234)) as client:
        response = await client.get("/")
    assert response.status_code == 200
    assert response.text == "hello"


@pytest.mark.asyncio
async def test_unauthorized_peer_is_forbidden():
    app = make_app(create_policy("test", ["20.20.20.20"]))
    async with client_for(app, ("20.20.20.21", 1234)) as client:
        response = await client.get("/")
    assert response.status_code == 403
    assert response.text == "Forbidden"


@pytest.mark.asyncio
async def test_ipv6_peer_in_range():
    app = make_app(create_policy("test", ["2a03:4000:6:d080::/64"]))
    async with client_for(app, ("2a03:4000:6:d080::42", 443)) as client:
        assert (await client.get("/")).status_code == 200
    async with client_for(app, ("4242::1", 443)) as client:
        assert (await client.get("/")).status_code == 403


@pytest.mark.asyncio
async def test_unparsable_peer_is_rejected():
    app = make_app(create_policy("test", ["0.0.0.0/0"]))
    async with client_for(app, ("testclient", 50000)) as client:
        response = await client.get("/")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_custom_rejector_and_policy_exemption():
    policy = create_policy("test", ["10.0.0.0/8"], rejector=NotFoundRejector(), exempt_paths=("/healthz",))
    app = make_app(policy)
    async with client_for(app, ("192.0.2.1", 1234)) as client:
        assert (await client.get("/")).status_code == 404
        assert (await client.get("/healthz")).status_code == 200


@pytest.mark.asyncio
async def test_middleware_level_exemption():
    app = make_app(create_policy("test", ["10.0.0.0/8"]), exempt_paths=("/healthz",))
    async with client_for(app, ("192.0.2.1", 1234)) as client:
        assert (await client.get("/healthz")).status_code == 200
        assert (await client.get("/")).status_code == 403


class SwappableRuntime:
    def __init__(self, policy):
        self.current = policy

    def policy(self):
        return self.current


@pytest.mark.asyncio
async def test_policy_from_runtime_follows_swaps():
    app = make_app()
    runtime = SwappableRuntime(create_policy("first", ["20.20.20.20"]))
    app.state.runtime = runtime
    async with client_for(app, ("20.20.20.20", 1234)) as client:
        assert (await client.get("/")).status_code == 200
        runtime.current = create_policy("second", ["30.30.30.30"])
        assert (await client.get("/")).status_code == 403


@pytest.mark.asyncio
async def test_missing_policy_fails_closed():
    app = make_app()
    async with client_for(app) as client:
        response = await client.get("/")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_decisions_are_logged_with_middleware_name(caplog):
    logger = logging.getLogger("tests.allowlist")
    app = make_app(create_policy("office", ["20.20.20.20"]), logger=logger)
    with caplog.at_level(logging.DEBUG, logger="tests.allowlist"):
        async with client_for(app, ("20.20.20.21", 1234)) as client:
            await client.get("/")
    messages = [record.getMessage() for record in caplog.records]
    assert any(
        message.startswith("[office/IPAllowLister] Rejecting IP 20.20.20.21") for message in messages
    )


async def raw_get(app, path: str, raw_path: bytes, peer=("9.9.9.9", 1234)) -> int:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": raw_path,
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"gate.example")],
        "client": peer,
        "server": ("gate.example", 80),
    }
    messages = []
    received = False

    async def receive():
        nonlocal received
        if received:
            return {"type": "http.disconnect"}
        received = True
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        messages.append(message)

    await app(scope, receive, send)
    return messages[0]["status"]


@pytest.mark.asyncio
async def test_exemption_covers_whole_segments_only():
    app = make_app(create_policy("test", ["10.0.0.0/8"], exempt_paths=("/public",)))
    async with client_for(app, ("192.0.2.1", 1234)) as client:
        assert (await client.get("/public/report")).status_code == 200
        assert (await client.get("/publicity")).status_code == 403


@pytest.mark.asyncio
async def test_dot_segments_do_not_inherit_exemption():
    app = make_app(create_policy("test", ["1.2.3.4/24"], exempt_paths=("/public",)))
    assert await raw_get(app, "/public/../private", b"/public/%2e%2e/private") == 403
    assert await raw_get(app, "/public/./report", b"/public/./report") == 403
    assert await raw_get(app, "/public/../private", b"/public/..%2Fprivate") == 403


@pytest.mark.asyncio
async def test_middleware_exemption_ignores_dot_segments():
    app = make_app(create_policy("test", ["1.2.3.4/24"]), exempt_paths=("/healthz",))
    assert await raw_get(app, "/healthz/../", b"/healthz/%2e%2e/") == 403


def test_logger_adapter_reused_for_same_policy():
    policy = create_policy("test", ["20.20.20.20"])
    middleware = IPAllowlistMiddleware(make_app(), policy=policy)
    first = middleware._logger_for(policy)
    assert middleware._logger_for(policy) is first
    assert middleware._logger_for(create_policy("other", ["20.20.20.20"])) is not first
