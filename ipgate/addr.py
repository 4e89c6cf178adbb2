"""Client address extraction."""
from __future__ import annotations

from typing import Tuple

from starlette.requests import Request


def split_host_port(value: str) -> Tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into its parts.

    Raises ``ValueError`` when ``value`` carries no port or is ambiguous
    (an unbracketed IPv6 literal).
    """
    if value.startswith("["):
        end = value.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {value!r}")
        host = value[1:end]
        rest = value[end + 1 :]
        if not rest.startswith(":"):
            raise ValueError(f"missing port in address {value!r}")
        port = rest[1:]
    else:
        if ":" not in value:
            raise ValueError(f"missing port in address {value!r}")
        host, port = value.rsplit(":", 1)
        if ":" in host:
            raise ValueError(f"too many colons in address {value!r}")
    if "[" in host or "]" in host or "[" in port or "]" in port:
        raise ValueError(f"unexpected bracket in address {value!r}")
    return host, port


def strip_port(value: str) -> str:
    """Return the host part of ``value``, or ``value`` itself if it has no port."""
    try:
        host, _ = split_host_port(value)
    except ValueError:
        return value
    return host


def client_address(request: Request) -> str:
    """Bare peer address of ``request``; empty when the transport has none."""
    client = request.client
    if client is None or not client.host:
        return ""
    return strip_port(client.host)


__all__ = ["client_address", "split_host_port", "strip_port"]
