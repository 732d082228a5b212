"""Turn SSH settings into container mounts and environment.

This is the seam the container provider consumes. Modes:

- ``off`` (or ``forward_keys: false``): nothing is forwarded.
- ``agent``: the host agent socket is bind-mounted as-is (no filtering).
- ``keys``: the SSH directory is mounted read-only.
- ``proxy``: an SSHAgentProxy is started and its socket (or TCP port, on
  VM-based runtimes) is handed to the container instead of the real agent.

``agent`` and ``proxy`` also mount a scrubbed copy of the SSH directory
holding only ``config``, ``known_hosts`` and ``*.pub``, so private key files
never enter the container.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sshgate.proxy import SSHAgentProxy

if TYPE_CHECKING:
    from sshgate.audit import KeyAuditLogger
    from sshgate.config import SSHGateConfig

logger = logging.getLogger(__name__)

CONTAINER_AGENT_SOCKET = "/ssh-agent"
DEFAULT_GATEWAY_HOST = "host.docker.internal"
_SAFE_SSH_FILES = ("config", "known_hosts")


@dataclass
class Mount:
    host: str
    container: str
    read_only: bool = False

    def as_volume(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.host}:{self.container}{suffix}"


@dataclass
class SSHForwarding:
    """What the container needs for SSH, plus the resources backing it."""

    mode: str
    mounts: list[Mount] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    proxy: SSHAgentProxy | None = None
    temp_dirs: list[Path] = field(default_factory=list)

    def docker_args(self) -> list[str]:
        args: list[str] = []
        for mount in self.mounts:
            args += ["-v", mount.as_volume()]
        for key, value in self.env.items():
            args += ["-e", f"{key}={value}"]
        return args

    async def close(self) -> None:
        """Stop the proxy (if any) and remove scrubbed SSH copies."""
        if self.proxy is not None:
            await self.proxy.stop()
        for tmp in self.temp_dirs:
            shutil.rmtree(tmp, ignore_errors=True)
        self.temp_dirs.clear()


def _safe_ssh_dir(ssh_dir: Path) -> Path | None:
    """Copy config, known_hosts and public keys into a fresh temp dir."""
    if not ssh_dir.is_dir():
        return None
    tmp_dir = Path(tempfile.mkdtemp(prefix="ssh-safe-"))
    try:
        for name in _SAFE_SSH_FILES:
            src = ssh_dir / name
            if src.is_file():
                shutil.copy2(src, tmp_dir / name)
        for pub in ssh_dir.glob("*.pub"):
            if pub.is_file():
                shutil.copy2(pub, tmp_dir / pub.name)
    except OSError:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise
    return tmp_dir


def _container_ssh_dir(username: str) -> str:
    return f"/home/{username}/.ssh"


def _add_safe_files(result: SSHForwarding, ssh_dir: Path, username: str) -> None:
    safe_dir = _safe_ssh_dir(ssh_dir)
    if safe_dir is None:
        return
    result.temp_dirs.append(safe_dir)
    result.mounts.append(Mount(str(safe_dir), _container_ssh_dir(username), read_only=True))


async def plan_ssh_forwarding(
    config: SSHGateConfig,
    upstream_socket: str | None = None,
    *,
    username: str = "addt",
    gateway_host: str = DEFAULT_GATEWAY_HOST,
    audit: KeyAuditLogger | None = None,
) -> SSHForwarding:
    """Build the SSH forwarding for one container run.

    *upstream_socket* defaults to ``$SSH_AUTH_SOCK``. In ``proxy`` mode the
    returned SSHForwarding owns a running proxy; call ``close()`` when the
    container exits.
    """
    ssh = config.ssh
    mode = ssh.forward_mode if ssh.forward_keys else "off"
    result = SSHForwarding(mode=mode)
    if mode == "off":
        return result

    ssh_dir = ssh.ssh_dir()
    if mode == "keys":
        if ssh_dir.is_dir():
            result.mounts.append(Mount(str(ssh_dir), _container_ssh_dir(username), read_only=True))
        return result

    upstream_socket = upstream_socket or os.environ.get("SSH_AUTH_SOCK", "")
    if not upstream_socket:
        logger.warning("SSH_AUTH_SOCK not set, cannot forward SSH agent (mode=%s)", mode)
        return result

    if mode == "agent":
        result.mounts.append(Mount(upstream_socket, CONTAINER_AGENT_SOCKET))
        result.env["SSH_AUTH_SOCK"] = CONTAINER_AGENT_SOCKET
        _add_safe_files(result, ssh_dir, username)
        return result

    if config.proxy.resolved_use_tcp():
        proxy = SSHAgentProxy.tcp(upstream_socket, ssh.allowed_keys, audit=audit)
    else:
        proxy = SSHAgentProxy.unix(
            upstream_socket,
            ssh.allowed_keys,
            sockets_dir=config.proxy.resolved_sockets_dir(),
            audit=audit,
        )
    try:
        await proxy.start()
    except Exception:
        await proxy.stop()
        raise
    result.proxy = proxy

    try:
        if proxy.use_tcp:
            # The container entrypoint relays this port to a local agent socket.
            result.env["ADDT_SSH_PROXY_HOST"] = gateway_host
            result.env["ADDT_SSH_PROXY_PORT"] = str(proxy.tcp_port)
        else:
            result.mounts.append(Mount(str(proxy.socket_path), CONTAINER_AGENT_SOCKET))
            result.env["SSH_AUTH_SOCK"] = CONTAINER_AGENT_SOCKET
        _add_safe_files(result, ssh_dir, username)
    except Exception:
        await result.close()
        raise

    if ssh.allowed_keys:
        logger.info("SSH proxy active: only keys matching %s are accessible", ssh.allowed_keys)
    else:
        logger.info("SSH proxy active: all keys accessible")
    return result
