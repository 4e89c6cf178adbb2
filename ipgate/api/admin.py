"""
    Admin endpoints.

    Those endpoints are reachable from loopback, from the Unix domain socket and
    from the networks listed in ``admin.networks``. They report the active
    allowlist, reload the configuration (as SIGHUP) and terminate the daemon
    (as SIGTERM). They are exempt from the client allowlist itself.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ..addr import client_address
from ..config import ConfigError
from ..ipacl import InvalidAddressError
from ..runtime import GatewayRuntime

ADMIN_PREFIX = "/admin/"

router = APIRouter(prefix="/admin")


async def get_runtime(request: Request) -> GatewayRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Gateway not ready")
    return runtime


def _require_admin_access(request: Request, runtime: GatewayRuntime) -> None:
    """
        Require that the peer is loopback, one of the admin networks or
        connected through the unix domain socket.
    """
    try:
        bundle = runtime.config_bundle
        checker = runtime.admin_checker()
    except ConfigError as exc:
        raise HTTPException(status_code=503, detail="Gateway not ready") from exc

    if request.client is None:
        if bundle.daemon.listen.unix_socket:
            return
        raise HTTPException(status_code=403, detail="Forbidden")

    try:
        allowed = checker.contains(client_address(request))
    except InvalidAddressError:
        allowed = False
    if not allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


@router.get("/status")
async def admin_status(request: Request, runtime: GatewayRuntime = Depends(get_runtime)):
    """
        Describe the active allowlist.
    """
    _require_admin_access(request, runtime)
    policy = runtime.policy()
    if policy is None:
        raise HTTPException(status_code=503, detail="Gateway not ready")
    bundle = runtime.config_bundle
    payload = {
        "name": policy.name,
        "source_range": [str(network_range) for network_range in policy.checker.ranges],
        "exempt_paths": list(policy.exempt_paths),
        "reject": policy.rejector.strategy,
        "upstream": bundle.daemon.upstream.base_url,
    }
    return JSONResponse(payload)


@router.post("/reload")
async def admin_reload(request: Request, runtime: GatewayRuntime = Depends(get_runtime)):
    """
        Reloads the server - this re-reads configuration files (!)
        This is equal to SIGHUP. On failure the previous allowlist stays active.
    """
    _require_admin_access(request, runtime)
    try:
        await runtime.reload()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=f"Reload failed: {exc}") from exc
    return JSONResponse({"status": "reloaded"})


@router.post("/shutdown")
async def admin_shutdown(request: Request, runtime: GatewayRuntime = Depends(get_runtime)):
    """
        Terminate our server like SIGTERM
    """
    _require_admin_access(request, runtime)
    server = getattr(request.app.state, "server", None)
    if server is None:
        raise HTTPException(status_code=503, detail="Shutdown controller unavailable")
    if hasattr(server, "should_exit"):
        server.should_exit = True
    return JSONResponse({"status": "shutting_down"})


__all__ = ["ADMIN_PREFIX", "router"]
