"""Responses sent to rejected clients."""
from __future__ import annotations

import re
from http import HTTPStatus

from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response

from .config import RejectConfig


def _status_response(status_code: int) -> Response:
    return PlainTextResponse(HTTPStatus(status_code).phrase, status_code=status_code)


class Rejector:
    """Builds the response for a request that failed the allowlist."""

    strategy = "base"

    def reject(self, request: Request) -> Response:
        raise NotImplementedError


class ForbiddenRejector(Rejector):
    strategy = "forbidden"

    def reject(self, request: Request) -> Response:
        return _status_response(403)


class NotFoundRejector(Rejector):
    """Hide the protected resource instead of admitting it exists."""

    strategy = "not_found"

    def reject(self, request: Request) -> Response:
        return _status_response(404)


class RedirectRejector(Rejector):
    """Redirect to a rewritten URL when the request URL matches ``regex``.

    Requests whose URL does not match get a plain 404.
    """

    strategy = "redirect"

    def __init__(self, regex: str, replacement: str, permanent: bool = False):
        self._pattern = re.compile(regex)
        self._replacement = replacement
        self._status_code = 301 if permanent else 302

    def reject(self, request: Request) -> Response:
        url = str(request.url)
        if not self._pattern.search(url):
            return _status_response(404)
        location = self._pattern.sub(self._replacement, url)
        return RedirectResponse(location, status_code=self._status_code)


def create_rejector(config: RejectConfig) -> Rejector:
    if config.strategy == "forbidden":
        return ForbiddenRejector()
    if config.strategy == "not_found":
        return NotFoundRejector()
    if config.strategy == "redirect":
        if config.redirect is None:
            raise ValueError("redirect strategy requires redirect settings")
        redirect = config.redirect
        return RedirectRejector(redirect.regex, redirect.replacement, redirect.permanent)
    raise ValueError(f"Unknown reject strategy: {config.strategy}")


__all__ = [
    "ForbiddenRejector",
    "NotFoundRejector",
    "RedirectRejector",
    "Rejector",
    "create_rejector",
]
