from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

# We use starlette since FastAPI is built on starlette and so it's always
# already installed

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import ASGIApp

from ..addr import client_address
from ..ipacl import AuthorizationError, Checker
from ..log import MiddlewareLogger, middleware_logger
from ..paths import has_dot_segments, under_prefix
from ..reject import ForbiddenRejector, Rejector

TYPE_NAME = "IPAllowLister"

log = logging.getLogger(__name__)


def _exempt(path: str, prefixes: Tuple[str, ...]) -> bool:
    # "/public/../private" must be checked like "/private"
    if not prefixes or has_dot_segments(path):
        return False
    return any(under_prefix(path, prefix) for prefix in prefixes)


@dataclass(frozen=True, slots=True)
class AllowlistPolicy:
    """Everything the middleware needs to decide on one request."""

    name: str
    checker: Checker
    rejector: Rejector
    exempt_paths: Tuple[str, ...] = ()

    def is_exempt(self, path: str) -> bool:
        return _exempt(path, self.exempt_paths)


class IPAllowlistMiddleware(BaseHTTPMiddleware):
    """Rejects requests whose peer address is outside the trusted ranges.

    With an explicit ``policy`` the middleware is self-contained. Without one
    it asks ``request.app.state.runtime.policy()`` on every request, so a
    reloaded policy takes effect on the next request. ``exempt_paths`` are
    skipped in addition to the policy's own exemptions.
    """

    def __init__(
        self,
        app: ASGIApp,
        policy: Optional[AllowlistPolicy] = None,
        logger: Optional[logging.Logger] = None,
        exempt_paths: Tuple[str, ...] = (),
    ):
        super().__init__(app)
        self._policy = policy
        self._logger = logger
        self._exempt_paths = tuple(exempt_paths)
        self._adapter: Optional[Tuple[AllowlistPolicy, MiddlewareLogger]] = None

    def _current_policy(self, request: Request) -> Optional[AllowlistPolicy]:
        if self._policy is not None:
            return self._policy
        runtime = getattr(request.app.state, "runtime", None)
        if runtime is None:
            return None
        return runtime.policy()

    def _logger_for(self, policy: AllowlistPolicy) -> MiddlewareLogger:
        # Rebuilt only when a reload installed another policy
        if self._adapter is None or self._adapter[0] is not policy:
            self._adapter = (policy, middleware_logger(policy.name, TYPE_NAME, self._logger))
        return self._adapter[1]

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        path = request.url.path
        if _exempt(path, self._exempt_paths):
            return await call_next(request)

        policy = self._current_policy(request)
        if policy is None:
            log.warning("No allowlist policy loaded; refusing request")
            return PlainTextResponse("Service Unavailable", status_code=503)

        if policy.is_exempt(path):
            return await call_next(request)

        logger = self._logger_for(policy)
        client_ip = client_address(request)
        try:
            policy.checker.authorize(client_ip)
        except AuthorizationError as exc:
            logger.debug("Rejecting IP %s: %s", client_ip, exc)
            return policy.rejector.reject(request)

        logger.debug("Accepting IP %s", client_ip)
        return await call_next(request)


def create_policy(
    name: str,
    source_range,
    rejector: Optional[Rejector] = None,
    exempt_paths: Tuple[str, ...] = (),
) -> AllowlistPolicy:
    """Build a policy straight from range strings, for embedding in other apps."""
    return AllowlistPolicy(
        name=name,
        checker=Checker.from_specs(source_range),
        rejector=rejector or ForbiddenRejector(),
        exempt_paths=tuple(exempt_paths),
    )


__all__ = ["AllowlistPolicy", "IPAllowlistMiddleware", "TYPE_NAME", "create_policy"]
