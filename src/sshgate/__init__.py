"""Filtering SSH agent proxy for sandboxed coding-agent containers.

Gives a container an SSH agent socket that exposes only an allow-listed
subset of the host agent's keys:

- Agent wire protocol codec (framing, identity lists, sign requests)
- Allow-list matching on key comment or SHA256/MD5 fingerprint
- Per-connection duplex relay that rewrites identity listings and refuses
  sign requests for filtered keys without forwarding them
- Unix-socket or TCP listener with owner-only socket directory
- Hash-chained audit log of key decisions
- Orphaned socket-directory cleanup
- Container mount/env planning for proxy, agent and keys modes

Filtering only switches on when at least one allow-list entry is set.
"""

from .audit import KeyAuditLogger
from .cleanup import cleanup_orphaned_dirs, write_pid_file
from .config import ProxySettings, SSHConfig, SSHGateConfig, load_config
from .errors import (
    AgentIOError,
    ConfigError,
    ProtocolError,
    SSHProxyError,
    TransportError,
)
from .forwarding import SSHForwarding, plan_ssh_forwarding
from .keyfilter import filter_identities, fingerprint_md5, fingerprint_sha256, is_key_allowed
from .protocol import Identity, build_identities_response, parse_identities
from .proxy import AgentSession, SSHAgentProxy, request_identities

__all__ = [
    "AgentIOError",
    "AgentSession",
    "ConfigError",
    "Identity",
    "KeyAuditLogger",
    "ProtocolError",
    "ProxySettings",
    "SSHAgentProxy",
    "SSHConfig",
    "SSHForwarding",
    "SSHGateConfig",
    "SSHProxyError",
    "TransportError",
    "build_identities_response",
    "cleanup_orphaned_dirs",
    "filter_identities",
    "fingerprint_md5",
    "fingerprint_sha256",
    "is_key_allowed",
    "load_config",
    "parse_identities",
    "plan_ssh_forwarding",
    "request_identities",
    "write_pid_file",
]
