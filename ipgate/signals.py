"""SIGHUP triggered configuration reload.

SIGTERM and SIGINT stay with uvicorn, which stops serving and runs the
application's shutdown hook.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Set

from .config import ConfigError
from .runtime import GatewayRuntime

log = logging.getLogger(__name__)

# The loop only keeps weak references to tasks
_pending: Set[asyncio.Task] = set()


async def reload_on_signal(runtime: GatewayRuntime) -> bool:
    try:
        await runtime.reload()
    except ConfigError as exc:
        log.error("Configuration reload failed, keeping active allowlist: %s", exc)
        return False
    return True


def handle_sighup(runtime: GatewayRuntime) -> asyncio.Task:
    log.info("SIGHUP received; reloading configuration")
    task = asyncio.get_running_loop().create_task(reload_on_signal(runtime))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


def install_signal_handlers(runtime: GatewayRuntime, enable_reload: bool) -> None:
    if not enable_reload or not hasattr(signal, "SIGHUP"):
        return
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGHUP, handle_sighup, runtime)
    except NotImplementedError:  # pragma: no cover - loops without signal support
        log.warning("SIGHUP reload unavailable on this event loop")


__all__ = ["handle_sighup", "install_signal_handlers", "reload_on_signal"]
