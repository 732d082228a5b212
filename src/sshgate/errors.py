"""Exception hierarchy for the SSH agent proxy."""

from __future__ import annotations


class SSHProxyError(Exception):
    """Base class for every error raised by sshgate."""


class ConfigError(SSHProxyError):
    """Invalid or missing configuration (e.g. no upstream agent socket)."""


class TransportError(SSHProxyError):
    """Bind, listen or dial failure. Never retried."""


class AgentIOError(TransportError):
    """Short read, EOF or write failure on an established agent stream."""


class ProtocolError(SSHProxyError):
    """Oversized or malformed agent frame. Ends only the offending connection."""
