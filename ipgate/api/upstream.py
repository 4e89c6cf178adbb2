"""Catch-all route forwarding allowed requests upstream."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from ..paths import under_prefix
from .admin import ADMIN_PREFIX, get_runtime

router = APIRouter()

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def forward(request: Request, path: str) -> Response:
    # Unknown admin paths must not leak upstream, they bypass the allowlist.
    if under_prefix(request.url.path, ADMIN_PREFIX):
        raise HTTPException(status_code=404, detail="Not Found")
    runtime = await get_runtime(request)
    return await runtime.proxy().forward(request)


__all__ = ["router"]
