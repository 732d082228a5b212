"""Tests for container SSH forwarding plans."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from sshgate.config import ProxySettings, SSHConfig, SSHGateConfig
from sshgate.forwarding import CONTAINER_AGENT_SOCKET, Mount, SSHForwarding, plan_ssh_forwarding

from conftest import FakeAgent


def _config(ssh_dir: Path, sockets_dir: Path | None = None, use_tcp: bool = False, **ssh) -> SSHGateConfig:
    return SSHGateConfig(
        ssh=SSHConfig(dir=str(ssh_dir), **ssh),
        proxy=ProxySettings(sockets_dir=str(sockets_dir or ""), use_tcp=use_tcp),
    )


def _safe_mount(result: SSHForwarding) -> Mount:
    [mount] = [m for m in result.mounts if m.container == "/home/addt/.ssh"]
    return mount


class TestMount:
    def test_as_volume(self):
        assert Mount("/a", "/b").as_volume() == "/a:/b"
        assert Mount("/a", "/b", read_only=True).as_volume() == "/a:/b:ro"

    def test_docker_args(self):
        result = SSHForwarding(
            mode="agent",
            mounts=[Mount("/host.sock", "/ssh-agent")],
            env={"SSH_AUTH_SOCK": "/ssh-agent"},
        )
        assert result.docker_args() == [
            "-v",
            "/host.sock:/ssh-agent",
            "-e",
            "SSH_AUTH_SOCK=/ssh-agent",
        ]


class TestPlanSSHForwarding:
    @pytest.mark.asyncio
    async def test_off_mode(self, ssh_dir: Path):
        result = await plan_ssh_forwarding(_config(ssh_dir, forward_mode="off"), "/x.sock")
        assert result.mode == "off"
        assert result.mounts == []
        assert result.env == {}

    @pytest.mark.asyncio
    async def test_forward_keys_disabled(self, ssh_dir: Path):
        result = await plan_ssh_forwarding(_config(ssh_dir, forward_keys=False), "/x.sock")
        assert result.mode == "off"
        assert result.proxy is None
        assert result.docker_args() == []

    @pytest.mark.asyncio
    async def test_keys_mode_mounts_ssh_dir(self, ssh_dir: Path):
        result = await plan_ssh_forwarding(_config(ssh_dir, forward_mode="keys"))
        assert result.mounts == [Mount(str(ssh_dir), "/home/addt/.ssh", read_only=True)]
        assert result.env == {}

    @pytest.mark.asyncio
    async def test_keys_mode_custom_user(self, ssh_dir: Path):
        result = await plan_ssh_forwarding(_config(ssh_dir, forward_mode="keys"), username="dev")
        assert result.mounts[0].container == "/home/dev/.ssh"

    @pytest.mark.asyncio
    async def test_no_agent_socket(self, ssh_dir: Path, monkeypatch):
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
        result = await plan_ssh_forwarding(_config(ssh_dir, forward_mode="agent"))
        assert result.mounts == []
        assert result.proxy is None

    @pytest.mark.asyncio
    async def test_agent_mode_uses_env_socket(self, ssh_dir: Path, monkeypatch):
        monkeypatch.setenv("SSH_AUTH_SOCK", "/run/host-agent.sock")
        result = await plan_ssh_forwarding(_config(ssh_dir, forward_mode="agent"))
        try:
            assert Mount("/run/host-agent.sock", CONTAINER_AGENT_SOCKET) in result.mounts
            assert result.env == {"SSH_AUTH_SOCK": CONTAINER_AGENT_SOCKET}
            safe = Path(_safe_mount(result).host)
            assert sorted(p.name for p in safe.iterdir()) == [
                "config",
                "id_ed25519.pub",
                "known_hosts",
            ]
        finally:
            await result.close()
        assert not safe.exists()

    @pytest.mark.asyncio
    async def test_missing_ssh_dir_skips_safe_files(self, tmp_path: Path):
        result = await plan_ssh_forwarding(
            _config(tmp_path / "nope", forward_mode="agent"), "/run/agent.sock"
        )
        assert [m.container for m in result.mounts] == [CONTAINER_AGENT_SOCKET]
        assert result.temp_dirs == []

    @pytest.mark.asyncio
    async def test_proxy_mode_unix(self, ssh_dir: Path, fake_agent: FakeAgent, sockets_dir: Path):
        config = _config(ssh_dir, sockets_dir, allowed_keys=["laptop"])
        result = await plan_ssh_forwarding(config, fake_agent.path)
        proxy = result.proxy
        try:
            assert result.mode == "proxy"
            assert proxy is not None and proxy.is_running
            assert proxy.allowed_keys == ("laptop",)
            assert Mount(str(proxy.socket_path), CONTAINER_AGENT_SOCKET) in result.mounts
            assert result.env == {"SSH_AUTH_SOCK": CONTAINER_AGENT_SOCKET}
            assert proxy.socket_path.parent.parent == sockets_dir
            _safe_mount(result)
        finally:
            await result.close()
        assert not proxy.is_running
        assert not proxy.socket_path.parent.exists()

    @pytest.mark.asyncio
    async def test_proxy_mode_tcp(self, ssh_dir: Path, fake_agent: FakeAgent):
        config = _config(ssh_dir, use_tcp=True, allowed_keys=["laptop"])
        result = await plan_ssh_forwarding(config, fake_agent.path, gateway_host="10.0.2.2")
        try:
            assert result.proxy.use_tcp
            assert result.env == {
                "ADDT_SSH_PROXY_HOST": "10.0.2.2",
                "ADDT_SSH_PROXY_PORT": str(result.proxy.tcp_port),
            }
            assert all(m.container != CONTAINER_AGENT_SOCKET for m in result.mounts)
        finally:
            await result.close()

    @pytest.mark.asyncio
    async def test_copy_failure_after_start_releases_proxy(
        self, ssh_dir: Path, fake_agent: FakeAgent, sockets_dir: Path, tmp_path: Path, monkeypatch
    ):
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        monkeypatch.setattr(tempfile, "tempdir", str(scratch))

        def _fail_copy(src, dst, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("sshgate.forwarding.shutil.copy2", _fail_copy)
        with pytest.raises(OSError, match="disk full"):
            await plan_ssh_forwarding(_config(ssh_dir, sockets_dir), fake_agent.path)
        # Proxy directory and scrubbed copy are both gone.
        assert list(sockets_dir.iterdir()) == []
        assert list(scratch.iterdir()) == []

    @pytest.mark.asyncio
    async def test_close_is_repeatable(self, ssh_dir: Path, fake_agent: FakeAgent, sockets_dir: Path):
        result = await plan_ssh_forwarding(_config(ssh_dir, sockets_dir), fake_agent.path)
        await result.close()
        await result.close()
        assert result.temp_dirs == []
