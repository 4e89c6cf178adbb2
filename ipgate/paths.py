"""Request path checks shared by the allowlist and the proxy."""
from __future__ import annotations


def has_dot_segments(path: str) -> bool:
    """True if the decoded ``path`` contains a ``.`` or ``..`` segment."""
    return any(segment in (".", "..") for segment in path.split("/"))


def under_prefix(path: str, prefix: str) -> bool:
    """Whole-segment prefix match: ``/public`` covers ``/public/x`` but not ``/publicity``."""
    base = prefix.rstrip("/")
    return path == base or path.startswith(base + "/")


__all__ = ["has_dot_segments", "under_prefix"]
