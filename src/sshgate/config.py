"""Configuration loading for sshgate.

Reads an optional YAML file and applies ``ADDT_*`` environment overrides.
Pydantic models validate the result; validation failures surface as
``ConfigError``. Precedence beyond "file, then environment" belongs to the
launcher that embeds this package.

Example ``config.yaml``::

    ssh:
      forward_keys: true
      forward_mode: proxy
      allowed_keys: [github, "SHA256:uNiVztksCsDhcc0u9e8BujQXVUpKZIDTMczCvj3tD2s"]
    proxy:
      sockets_dir: ~/.addt/sockets
      audit_dir: ~/.addt/audit
"""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from sshgate.cleanup import default_sockets_dir
from sshgate.errors import ConfigError
from sshgate.keyfilter import match_all_entries

logger = logging.getLogger(__name__)

ForwardMode = Literal["proxy", "agent", "keys", "off"]

_TRUE_VALUES = ("1", "true", "yes", "on")


class SSHConfig(BaseModel):
    """SSH forwarding settings consumed by the forwarding planner."""

    forward_keys: bool = True
    # Only "proxy" routes through SSHAgentProxy.
    forward_mode: ForwardMode = "proxy"
    allowed_keys: list[str] = Field(default_factory=list)
    dir: str = "~/.ssh"

    @field_validator("allowed_keys", mode="before")
    @classmethod
    def _split_comma_string(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return v.split(",")
        return v

    @field_validator("allowed_keys")
    @classmethod
    def _normalise_entries(cls, v: list[str]) -> list[str]:
        """Strip whitespace, drop empty entries, reject bare fingerprint prefixes.

        An empty entry would be a substring of every comment and silently
        disable filtering.
        """
        entries = [e.strip() for e in v if e.strip()]
        bad = match_all_entries(entries)
        if bad:
            raise ValueError(f"fingerprint entry without digest: {bad[0]!r}")
        return entries

    @property
    def filtering_enabled(self) -> bool:
        return bool(self.allowed_keys)

    def ssh_dir(self) -> Path:
        return Path(self.dir).expanduser()


class ProxySettings(BaseModel):
    """Where the proxy puts its sockets and audit trail."""

    sockets_dir: str = ""  # empty = $ADDT_HOME/sockets
    audit_dir: str = ""  # empty = no audit log
    # None = auto: TCP on macOS, where VM-based runtimes cannot reach host sockets.
    use_tcp: bool | None = None

    def resolved_sockets_dir(self) -> Path:
        if self.sockets_dir:
            return Path(self.sockets_dir).expanduser()
        return default_sockets_dir()

    def resolved_audit_dir(self) -> Path | None:
        return Path(self.audit_dir).expanduser() if self.audit_dir else None

    def resolved_use_tcp(self) -> bool:
        if self.use_tcp is not None:
            return self.use_tcp
        return platform.system() == "Darwin"


class SSHGateConfig(BaseModel):
    """Top-level configuration (matches config.yaml)."""

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    proxy: ProxySettings = Field(default_factory=ProxySettings)


# ── Loader ───────────────────────────────────────────────────────────────────


def _apply_env_overrides(raw: dict[str, Any]) -> None:
    ssh_raw = raw.setdefault("ssh", {})
    if not isinstance(ssh_raw, dict):
        raise ConfigError("'ssh' section must be a mapping")

    forward_keys = os.environ.get("ADDT_SSH_FORWARD_KEYS")
    if forward_keys is not None:
        ssh_raw["forward_keys"] = forward_keys.strip().lower() in _TRUE_VALUES

    forward_mode = os.environ.get("ADDT_SSH_FORWARD_MODE")
    if forward_mode:
        ssh_raw["forward_mode"] = forward_mode.strip().lower()

    allowed_keys = os.environ.get("ADDT_SSH_ALLOWED_KEYS")
    if allowed_keys is not None:
        ssh_raw["allowed_keys"] = allowed_keys

    ssh_dir = os.environ.get("ADDT_SSH_DIR")
    if ssh_dir:
        ssh_raw["dir"] = ssh_dir


def load_config(config_path: Path | None = None) -> SSHGateConfig:
    """Load configuration from *config_path* (optional) plus the environment.

    Raises:
        ConfigError: the file is unreadable, not YAML, or fails validation.
    """
    raw: dict[str, Any] = {}
    if config_path is not None and config_path.exists():
        try:
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read {config_path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path}: top level must be a mapping")
        raw = loaded
    elif config_path is not None:
        logger.debug("Config file %s not found, using defaults", config_path)

    _apply_env_overrides(raw)

    try:
        config = SSHGateConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    logger.info(
        "Loaded sshgate config: mode=%s allowed_keys=%d",
        config.ssh.forward_mode,
        len(config.ssh.allowed_keys),
    )
    return config
