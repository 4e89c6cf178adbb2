"""Runtime wiring for the gateway."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Set

import httpx

from .config import AdminConfig, AllowlistConfig, ConfigBundle, ConfigError, load_config_bundle
from .ipacl import Checker
from .middleware.allowlist import AllowlistPolicy
from .proxy import UpstreamProxy
from .reject import create_rejector

log = logging.getLogger(__name__)

LOOPBACK_RANGES = ("127.0.0.1", "::1")


def build_policy(config: AllowlistConfig) -> AllowlistPolicy:
    return AllowlistPolicy(
        name=config.name,
        checker=Checker(config.ranges),
        rejector=create_rejector(config.reject),
        exempt_paths=tuple(config.exempt_paths),
    )


def build_admin_checker(config: AdminConfig) -> Checker:
    return Checker.from_specs([*LOOPBACK_RANGES, *config.networks])


class GatewayRuntime:
    """Holds the active policy and upstream client.

    Readers call :meth:`policy` without locking; :meth:`reload` builds every
    new component first and only then replaces the references, so a failing
    configuration never disturbs the running one. A replaced upstream client
    is closed in the background once its running requests are done.
    """

    def __init__(self, config_dir: Path, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config_dir = config_dir
        self._transport = transport
        self._bundle: Optional[ConfigBundle] = None
        self._policy: Optional[AllowlistPolicy] = None
        self._admin_checker: Optional[Checker] = None
        self._proxy: Optional[UpstreamProxy] = None
        self._retiring: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def config_bundle(self) -> ConfigBundle:
        if self._bundle is None:
            raise ConfigError("Configuration not loaded")
        return self._bundle

    async def initialize(self) -> None:
        async with self._lock:
            self._apply_bundle(load_config_bundle(self._config_dir))

    async def reload(self) -> None:
        async with self._lock:
            log.info("Configuration reload requested")
            self._apply_bundle(load_config_bundle(self._config_dir))

    async def shutdown(self) -> None:
        async with self._lock:
            proxy, self._proxy = self._proxy, None
            self._policy = None
            self._admin_checker = None
            self._bundle = None
            if proxy is not None:
                await proxy.aclose()
            if self._retiring:
                await asyncio.gather(*self._retiring)

    def _retire(self, proxy: UpstreamProxy) -> None:
        task = asyncio.create_task(proxy.aclose())
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    def _apply_bundle(self, bundle: ConfigBundle) -> None:
        policy = build_policy(bundle.allowlist)
        admin_checker = build_admin_checker(bundle.daemon.admin)

        old_proxy = self._proxy
        daemon = bundle.daemon
        if (
            old_proxy is not None
            and old_proxy.upstream == daemon.upstream
            and old_proxy.timeouts == daemon.timeouts
        ):
            proxy = old_proxy
        else:
            proxy = UpstreamProxy(daemon.upstream, daemon.timeouts, transport=self._transport)

        self._policy = policy
        self._admin_checker = admin_checker
        self._proxy = proxy
        self._bundle = bundle

        if old_proxy is not None and old_proxy is not proxy:
            self._retire(old_proxy)
        log.info(
            "Allowlist '%s' active with %d trusted ranges, upstream %s",
            policy.name,
            len(policy.checker.ranges),
            daemon.upstream.base_url,
        )

    def policy(self) -> Optional[AllowlistPolicy]:
        return self._policy

    def admin_checker(self) -> Checker:
        if self._admin_checker is None:
            raise ConfigError("Configuration not loaded")
        return self._admin_checker

    def proxy(self) -> UpstreamProxy:
        if self._proxy is None:
            raise RuntimeError("Upstream proxy not initialized")
        return self._proxy


__all__ = ["GatewayRuntime", "LOOPBACK_RANGES", "build_admin_checker", "build_policy"]
