"""ASGI application factory."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

import httpx
from fastapi import FastAPI

from .api import admin as admin_router
from .api import upstream as upstream_router
from .config import resolve_config_dir
from .log import configure_logging
from .middleware.allowlist import IPAllowlistMiddleware
from .runtime import GatewayRuntime
from .signals import install_signal_handlers


def create_app(
    config_dir: Union[str, os.PathLike, None] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the gateway.

    ``transport`` replaces the network transport of the upstream client and
    exists for tests.
    """
    runtime = GatewayRuntime(resolve_config_dir(config_dir), transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.initialize()
        daemon = runtime.config_bundle.daemon
        configure_logging(daemon.logging)
        install_signal_handlers(runtime, daemon.reload.enable_sighup)
        try:
            yield
        finally:
            await runtime.shutdown()

    app = FastAPI(
        title="mini-ipgate",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # Admin routes carry their own access check
    app.add_middleware(IPAllowlistMiddleware, exempt_paths=(admin_router.ADMIN_PREFIX,))
    app.include_router(admin_router.router)
    app.include_router(upstream_router.router)
    return app


__all__ = ["create_app"]
