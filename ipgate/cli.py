"""Command line interface: run the gateway, control it, test addresses offline."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import NoReturn, Optional, Sequence, Tuple

import httpx
import uvicorn
from daemonize import Daemonize

from .addr import strip_port
from .app import create_app
from .config import (
    DEFAULT_PORT,
    ConfigError,
    DaemonConfig,
    load_allowlist_config,
    load_daemon_config,
    resolve_config_dir,
)
from .ipacl import AuthorizationError, Checker, IPAclError, parse_address

PIDFILE_NAME = "mini-ipgate.pid"

ListenTarget = Tuple[Optional[str], Optional[int], Optional[str]]


def _fail(message: str, code: int = 1) -> NoReturn:
    print(f"[error] {message}", file=sys.stderr)
    sys.exit(code)


def _listen_target(args: argparse.Namespace, daemon: DaemonConfig) -> ListenTarget:
    """``(host, port, None)`` for TCP or ``(None, None, path)`` for a Unix socket."""
    if args.unix_socket:
        if args.host or args.port is not None:
            raise ValueError("Cannot combine --unix-socket with --host/--port overrides")
        return None, None, args.unix_socket

    listen = daemon.listen
    host = args.host or listen.host_v6 or listen.host_v4
    if host is None and args.port is None:
        return None, None, listen.unix_socket
    port = args.port if args.port is not None else listen.port
    return host or "127.0.0.1", port or DEFAULT_PORT, None


def _serve(cfg_dir: Path, target: ListenTarget, log_level: str) -> None:
    host, port, uds = target
    if uds:
        Path(uds).unlink(missing_ok=True)
    app = create_app(cfg_dir)
    config = uvicorn.Config(app, host=host or "127.0.0.1", port=port or DEFAULT_PORT, uds=uds, log_level=log_level)
    server = uvicorn.Server(config)
    app.state.server = server
    server.run()


def _describe(target: ListenTarget) -> str:
    host, port, uds = target
    return f"unix:{uds}" if uds else f"http://{host}:{port}"


def _load_daemon(args: argparse.Namespace) -> Tuple[Path, DaemonConfig]:
    cfg_dir = resolve_config_dir(args.config_dir)
    try:
        return cfg_dir, load_daemon_config(cfg_dir / "daemon.json")
    except ConfigError as exc:
        _fail(str(exc))


def _command_start(args: argparse.Namespace) -> None:
    cfg_dir, daemon = _load_daemon(args)
    try:
        # Refuse to start on a broken allowlist instead of failing in the lifespan hook
        load_allowlist_config(cfg_dir / "allowlist.json")
    except ConfigError as exc:
        _fail(str(exc))
    try:
        target = _listen_target(args, daemon)
    except ValueError as exc:
        _fail(str(exc), code=2)

    log_level = daemon.logging.level.lower()
    if args.foreground:
        print(f"mini-ipgate starting in foreground on {_describe(target)}")
        _serve(cfg_dir, target, log_level)
        return

    cfg_dir = cfg_dir.resolve()
    pid_path = cfg_dir / PIDFILE_NAME
    print(f"mini-ipgate starting in background on {_describe(target)} (pidfile {pid_path})")
    # Daemonize locks the pidfile and refuses to run twice
    daemon_process = Daemonize(
        app="mini-ipgate",
        pid=str(pid_path),
        action=lambda: _serve(cfg_dir, target, log_level),
        chdir=str(cfg_dir),
    )
    daemon_process.start()


def _admin_url(daemon: DaemonConfig) -> Tuple[str, Optional[str]]:
    """Base URL of the admin routes plus the Unix socket to reach them through."""
    listen = daemon.listen
    if listen.host_v4:
        host = "127.0.0.1" if listen.host_v4 == "0.0.0.0" else listen.host_v4
        return f"http://{host}:{listen.port}", None
    if listen.host_v6:
        host = "::1" if listen.host_v6 == "::" else listen.host_v6
        return f"http://[{host}]:{listen.port}", None
    return "http://unix", listen.unix_socket


def _post_admin(url: str, timeout: float, uds: Optional[str]) -> None:
    transport = httpx.HTTPTransport(uds=uds) if uds else None
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            response = client.post(url)
    except httpx.HTTPError as exc:
        _fail(f"Admin request failed: {exc}")

    if response.status_code >= 400:
        _fail(f"Admin endpoint returned {response.status_code}: {response.text}")
    try:
        print(response.json()["status"])
    except (ValueError, KeyError, TypeError):
        print(f"Request succeeded ({response.status_code})")


def _admin_command(action: str):
    def command(args: argparse.Namespace) -> None:
        if args.admin_url and args.unix_socket:
            _fail("Cannot combine --admin-url with --unix-socket", code=2)
        if args.admin_url:
            base_url, uds = args.admin_url, None
        elif args.unix_socket:
            base_url, uds = "http://unix", args.unix_socket
        else:
            base_url, uds = _admin_url(_load_daemon(args)[1])
        _post_admin(f"{base_url.rstrip('/')}/admin/{action}", args.timeout, uds)

    return command


def _checker_for(args: argparse.Namespace) -> Checker:
    if args.range:
        try:
            return Checker.from_specs(args.range)
        except IPAclError as exc:
            _fail(str(exc))
    cfg_dir = resolve_config_dir(args.config_dir)
    try:
        return Checker(load_allowlist_config(cfg_dir / "allowlist.json").ranges)
    except ConfigError as exc:
        _fail(str(exc))


def _command_check(args: argparse.Namespace) -> None:
    """Evaluate addresses offline; exit 0 only if every one is authorized."""
    checker = _checker_for(args)
    all_allowed = True
    for raw in args.addresses:
        address = strip_port(raw)
        try:
            checker.authorize(address)
        except AuthorizationError as exc:
            print(f"reject {raw}: {exc}")
            all_allowed = False
            continue
        if args.verbose:
            print(f"allow {raw} (matched {checker.ranges.match(parse_address(address))})")
        else:
            print(f"allow {raw}")
    sys.exit(0 if all_allowed else 1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mini-ipgate", description="Client IP allowlisting gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start the gateway")
    start.add_argument("--config-dir", help="Directory containing configuration files")
    start.add_argument("--host", help="Override listen host")
    start.add_argument("--port", type=int, help="Override listen port")
    start.add_argument("--unix-socket", help="Override Unix domain socket path")
    start.add_argument("--foreground", action="store_true", help="Do not daemonize")
    start.set_defaults(func=_command_start)

    for name, help_text, action in (
        ("reload", "Reload the configuration of a running gateway", "reload"),
        ("stop", "Request a graceful shutdown", "shutdown"),
    ):
        admin = subparsers.add_parser(name, help=help_text)
        admin.add_argument("--config-dir", help="Directory containing configuration files")
        admin.add_argument("--admin-url", help="Override admin base URL (e.g. http://127.0.0.1:8080)")
        admin.add_argument("--unix-socket", help="Unix domain socket of the gateway")
        admin.add_argument("--timeout", type=float, default=5.0, help="HTTP timeout in seconds")
        admin.set_defaults(func=_admin_command(action))

    check = subparsers.add_parser("check", help="Check addresses against the allowlist")
    check.add_argument("addresses", nargs="+", help="Addresses to check, optionally with :port")
    check.add_argument("--config-dir", help="Directory containing configuration files")
    check.add_argument(
        "--range",
        action="append",
        default=[],
        help="Trusted address or CIDR to use instead of allowlist.json (repeatable)",
    )
    check.add_argument("-v", "--verbose", action="store_true", help="Show the matching range")
    check.set_defaults(func=_command_check)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
