"""Configuration files of mini-ipgate.

A configuration directory holds two JSON documents:

``daemon.json``
    listener, admin networks, logging, SIGHUP handling, upstream timeouts
    and the upstream itself.
``allowlist.json``
    the trusted source ranges, paths exempt from the check and the way
    rejected clients are answered.

Every problem found while reading them is reported as :class:`ConfigError`
naming the offending field, so callers only ever have to handle that one
exception.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union

from .ipacl import IPAclError, RangeSet

log = logging.getLogger(__name__)

REJECT_STRATEGIES = ("forbidden", "not_found", "redirect")
DEFAULT_SOCKET_PATH = "/var/ipgate/ipgate.sock"
DEFAULT_PORT = 8080
CONFIG_DIR_ENV = "MINIIPGATE_CONFIG_DIR"


class ConfigError(RuntimeError):
    """Configuration error exception

    Raised whenever a configuration file cannot be read or holds an invalid
    value.
    """


@dataclass(slots=True)
class ListenConfig:
    """Where the gateway accepts connections.

    Without ``host_v4`` and ``host_v6`` the gateway listens on ``unix_socket``."""

    host_v4: Optional[str] = None
    host_v6: Optional[str] = None
    port: Optional[int] = None
    unix_socket: Optional[str] = None


@dataclass(slots=True)
class AdminConfig:
    """Networks allowed to use ``/admin/`` besides loopback."""

    networks: List[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    access_log: bool = True
    file: Optional[str] = None


@dataclass(slots=True)
class ReloadConfig:
    enable_sighup: bool = True


@dataclass(slots=True)
class TimeoutConfig:
    default_connect_s: float = 10.0
    default_read_s: float = 60.0


@dataclass(slots=True)
class UpstreamConfig:
    base_url: str
    extra_headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DaemonConfig:
    listen: ListenConfig
    admin: AdminConfig
    logging: LoggingConfig
    reload: ReloadConfig
    timeouts: TimeoutConfig
    upstream: UpstreamConfig


@dataclass(slots=True)
class RedirectConfig:
    regex: str
    replacement: str
    permanent: bool = False


@dataclass(slots=True)
class RejectConfig:
    strategy: str = "forbidden"
    redirect: Optional[RedirectConfig] = None


@dataclass(slots=True)
class AllowlistConfig:
    name: str
    ranges: RangeSet
    exempt_paths: List[str] = field(default_factory=list)
    reject: RejectConfig = field(default_factory=RejectConfig)


@dataclass(slots=True)
class ConfigBundle:
    daemon: DaemonConfig
    allowlist: AllowlistConfig


def resolve_config_dir(config_dir: Union[str, os.PathLike, None] = None) -> Path:
    """Explicit directory, else ``$MINIIPGATE_CONFIG_DIR``, else ``./config``."""
    if config_dir:
        return Path(config_dir)
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir)
    return Path.cwd() / "config"


def _read_json(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file missing: {path}") from exc
    except UnicodeDecodeError as exc:
        raise ConfigError(f"{path} is not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Unable to read {path}: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc


def _section(data: Mapping[str, Any], key: str, required: bool = False) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        if required:
            raise ConfigError(f"Missing section '{key}'")
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected an object for '{key}'")
    return value


def _list(value: Any, ctx: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"Expected a list for {ctx}")
    return value


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _bool(value: Any, default: bool, ctx: str) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{ctx} must be true or false, got {value!r}")
    return value


def _port(value: Any, ctx: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{ctx} must be an integer, got {value!r}")
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{ctx} must be an integer, got {value!r}") from exc
    if not 0 < port < 65536:
        raise ConfigError(f"{ctx} out of range: {port}")
    return port


def _seconds(value: Any, default: float, ctx: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{ctx} must be a number of seconds, got {value!r}")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{ctx} must be a number of seconds, got {value!r}") from exc
    if not seconds > 0:
        raise ConfigError(f"{ctx} must be positive, got {value!r}")
    return seconds


def _ranges(specs: List[Any], ctx: str) -> RangeSet:
    try:
        return RangeSet.build(specs)
    except IPAclError as exc:
        raise ConfigError(f"{ctx}: {exc}") from exc


def _reject(raw: Mapping[str, Any]) -> RejectConfig:
    strategy = str(raw.get("strategy", "forbidden")).lower()
    if strategy not in REJECT_STRATEGIES:
        raise ConfigError(
            f"Unknown reject.strategy '{strategy}' (expected one of {', '.join(REJECT_STRATEGIES)})"
        )
    if strategy != "redirect":
        return RejectConfig(strategy=strategy)

    redirect = _section(raw, "redirect")
    if not redirect:
        raise ConfigError("reject.strategy 'redirect' requires a reject.redirect section")
    for key in ("regex", "replacement"):
        if key not in redirect:
            raise ConfigError(f"Missing field '{key}' in reject.redirect")
    regex = str(redirect["regex"])
    try:
        re.compile(regex)
    except re.error as exc:
        raise ConfigError(f"Invalid reject.redirect.regex {regex!r}: {exc}") from exc
    return RejectConfig(
        strategy=strategy,
        redirect=RedirectConfig(
            regex=regex,
            replacement=str(redirect["replacement"]),
            permanent=_bool(redirect.get("permanent"), False, "reject.redirect.permanent"),
        ),
    )


def load_allowlist_config(path: Path) -> AllowlistConfig:
    data = _read_json(path)
    if not isinstance(data, Mapping):
        raise ConfigError("allowlist.json must contain an object")

    source_range = _list(data.get("source_range"), "source_range")
    if not source_range:
        raise ConfigError("source_range is empty, allowlist not created")

    exempt_paths = [str(item) for item in _list(data.get("exempt_paths"), "exempt_paths")]
    for prefix in exempt_paths:
        if not prefix.startswith("/"):
            raise ConfigError(f"exempt_paths entry {prefix!r} must start with '/'")

    return AllowlistConfig(
        name=str(data.get("name", "ipgate")),
        ranges=_ranges(source_range, "source_range"),
        exempt_paths=exempt_paths,
        reject=_reject(_section(data, "reject")),
    )


def _listen(raw: Mapping[str, Any]) -> ListenConfig:
    listen = ListenConfig(
        host_v4=_optional_str(raw.get("host_v4")),
        host_v6=_optional_str(raw.get("host_v6")),
        unix_socket=_optional_str(raw.get("unix_socket")),
    )
    has_host = bool(listen.host_v4 or listen.host_v6)
    if raw.get("port") is not None:
        listen.port = _port(raw["port"], "listen.port")
    elif has_host:
        listen.port = DEFAULT_PORT
    if listen.unix_socket is None and not has_host:
        listen.unix_socket = DEFAULT_SOCKET_PATH
    return listen


def _upstream(raw: Mapping[str, Any]) -> UpstreamConfig:
    if "base_url" not in raw:
        raise ConfigError("Missing field 'base_url' in upstream")
    base_url = str(raw["base_url"])
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"upstream.base_url must be an http(s) URL, got {base_url!r}")
    headers = _section(raw, "extra_headers")
    return UpstreamConfig(
        base_url=base_url.rstrip("/"),
        extra_headers={str(key): str(value) for key, value in headers.items()},
    )


def load_daemon_config(path: Path) -> DaemonConfig:
    data = _read_json(path)
    if not isinstance(data, Mapping):
        raise ConfigError("daemon.json must contain an object")

    networks = [str(item) for item in _list(_section(data, "admin").get("networks"), "admin.networks")]
    if networks:
        _ranges(networks, "admin.networks")

    logging_raw = _section(data, "logging")
    timeouts_raw = _section(data, "timeouts")
    return DaemonConfig(
        listen=_listen(_section(data, "listen", required=True)),
        admin=AdminConfig(networks=networks),
        logging=LoggingConfig(
            level=str(logging_raw.get("level", "INFO")),
            access_log=_bool(logging_raw.get("access_log"), True, "logging.access_log"),
            file=_optional_str(logging_raw.get("file")),
        ),
        reload=ReloadConfig(
            enable_sighup=_bool(_section(data, "reload").get("enable_sighup"), True, "reload.enable_sighup"),
        ),
        timeouts=TimeoutConfig(
            default_connect_s=_seconds(timeouts_raw.get("default_connect_s"), 10.0, "timeouts.default_connect_s"),
            default_read_s=_seconds(timeouts_raw.get("default_read_s"), 60.0, "timeouts.default_read_s"),
        ),
        upstream=_upstream(_section(data, "upstream", required=True)),
    )


def load_config_bundle(config_dir: Path) -> ConfigBundle:
    """Read both files; nothing is returned unless both are valid."""
    log.debug("Loading configuration from %s", config_dir)
    return ConfigBundle(
        daemon=load_daemon_config(config_dir / "daemon.json"),
        allowlist=load_allowlist_config(config_dir / "allowlist.json"),
    )


__all__ = [
    "AdminConfig",
    "AllowlistConfig",
    "ConfigBundle",
    "ConfigError",
    "DaemonConfig",
    "ListenConfig",
    "LoggingConfig",
    "RedirectConfig",
    "RejectConfig",
    "ReloadConfig",
    "TimeoutConfig",
    "UpstreamConfig",
    "load_allowlist_config",
    "load_config_bundle",
    "load_daemon_config",
    "resolve_config_dir",
]
