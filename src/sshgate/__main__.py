"""sshgate CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from sshgate.config import SSHConfig, SSHGateConfig, load_config
from sshgate.errors import ConfigError, SSHProxyError


def _resolve_config(args) -> SSHGateConfig:
    config = load_config(args.config)
    allow = getattr(args, "allow", None)
    if allow:
        # Re-validate: plain attribute assignment would bypass the entry checks.
        try:
            config.ssh = SSHConfig.model_validate(
                {**config.ssh.model_dump(), "allowed_keys": allow}
            )
        except ValidationError as exc:
            raise ConfigError(f"invalid --allow: {exc}") from exc
        if not config.ssh.allowed_keys:
            raise ConfigError("--allow given but every entry is blank")
    return config


async def _serve(args) -> None:
    from sshgate.audit import KeyAuditLogger
    from sshgate.proxy import SSHAgentProxy

    config = _resolve_config(args)
    upstream = args.upstream or os.environ.get("SSH_AUTH_SOCK", "")

    audit = None
    audit_dir = args.audit_dir or config.proxy.resolved_audit_dir()
    if audit_dir is not None:
        audit = KeyAuditLogger(Path(audit_dir))
        await audit.start()

    use_tcp = args.tcp or config.proxy.resolved_use_tcp()
    if use_tcp:
        proxy = SSHAgentProxy.tcp(upstream, config.ssh.allowed_keys, audit=audit)
    else:
        proxy = SSHAgentProxy.unix(
            upstream,
            config.ssh.allowed_keys,
            sockets_dir=config.proxy.resolved_sockets_dir(),
            audit=audit,
        )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async with proxy:
        if proxy.use_tcp:
            print(f"SSH_PROXY_PORT={proxy.tcp_port}", flush=True)
        else:
            print(f"SSH_AUTH_SOCK={proxy.socket_path}", flush=True)
        await stop_event.wait()


async def _list_keys(args) -> int:
    from sshgate.keyfilter import fingerprint_sha256, is_key_allowed
    from sshgate.proxy import request_identities

    config = _resolve_config(args)
    upstream = args.upstream or os.environ.get("SSH_AUTH_SOCK", "")
    if not upstream:
        print("Error: SSH_AUTH_SOCK not set", file=sys.stderr)
        return 1

    identities = await request_identities(upstream)
    if not identities:
        print("The agent has no identities.")
        return 0
    for identity in identities:
        allowed = is_key_allowed(identity.comment, identity.blob, config.ssh.allowed_keys)
        print(
            f"{'allow' if allowed else 'deny':5}  "
            f"{fingerprint_sha256(identity.blob)}  {identity.comment}"
        )
    return 0


def _cleanup(args) -> int:
    from sshgate.cleanup import cleanup_orphaned_dirs

    sockets_dir = args.sockets_dir or load_config(args.config).proxy.resolved_sockets_dir()
    removed = cleanup_orphaned_dirs(sockets_dir)
    print(f"Removed {len(removed)} orphaned proxy director{'y' if len(removed) == 1 else 'ies'}")
    return 0


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="sshgate",
        description="sshgate: filtering SSH agent proxy for sandboxed agent containers",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML config file (default: none, environment only)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # sshgate serve
    serve_parser = subparsers.add_parser("serve", help="Run a filtering proxy until interrupted")
    serve_parser.add_argument(
        "--allow",
        action="append",
        default=[],
        metavar="FILTER",
        help="Allow keys whose comment contains FILTER, or SHA256:/MD5: fingerprint (repeatable)",
    )
    serve_parser.add_argument(
        "--upstream",
        help="Upstream agent socket (default: $SSH_AUTH_SOCK)",
    )
    serve_parser.add_argument(
        "--tcp",
        action="store_true",
        help="Listen on 0.0.0.0:<ephemeral> instead of a Unix socket",
    )
    serve_parser.add_argument(
        "--audit-dir",
        type=Path,
        help="Write a hash-chained audit log of key decisions here",
    )

    # sshgate keys
    keys_parser = subparsers.add_parser(
        "keys", help="List upstream keys and whether the allow-list admits them"
    )
    keys_parser.add_argument("--allow", action="append", default=[], metavar="FILTER")
    keys_parser.add_argument("--upstream", help="Upstream agent socket (default: $SSH_AUTH_SOCK)")

    # sshgate cleanup
    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Remove proxy socket directories left by dead processes"
    )
    cleanup_parser.add_argument(
        "--sockets-dir",
        type=Path,
        help="Sockets area to scan (default: $ADDT_HOME/sockets)",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        if args.command == "serve":
            asyncio.run(_serve(args))
            return
        if args.command == "keys":
            sys.exit(asyncio.run(_list_keys(args)))
        if args.command == "cleanup":
            sys.exit(_cleanup(args))
    except SSHProxyError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
