"""SSH agent wire protocol codec.

Only the subset of draft-miller-ssh-agent the filtering proxy needs:

    uint32    length          (big-endian, excludes itself)
    byte      message type
    byte[n]   contents

Identity listing (SSH_AGENT_IDENTITIES_ANSWER)::

    byte      12
    uint32    nkeys
    nkeys × { string key_blob, string comment }

Sign request (SSH_AGENTC_SIGN_REQUEST)::

    byte      13
    string    key_blob
    string    data
    uint32    flags

Every frame is decoded once into one of the message classes below and the
raw payload travels with it, so anything the proxy does not rewrite is
forwarded byte-for-byte.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass

from sshgate.errors import AgentIOError, ProtocolError

logger = logging.getLogger(__name__)

SSH_AGENT_FAILURE = 5
SSH_AGENTC_REQUEST_IDENTITIES = 11
SSH_AGENT_IDENTITIES_ANSWER = 12
SSH_AGENTC_SIGN_REQUEST = 13
SSH_AGENT_SIGN_RESPONSE = 14

# Frames above this are refused before the body is read.
MAX_MESSAGE_SIZE = 256 * 1024

FAILURE_MESSAGE = bytes([SSH_AGENT_FAILURE])
REQUEST_IDENTITIES_MESSAGE = bytes([SSH_AGENTC_REQUEST_IDENTITIES])

_UINT32 = struct.Struct(">I")


@dataclass(frozen=True)
class Identity:
    """One public key held by the agent. ``blob`` is public material only."""

    blob: bytes
    comment: str

    def __repr__(self) -> str:
        return f"Identity(comment={self.comment!r}, blob=<{len(self.blob)} bytes>)"


# ── Decoded message kinds ────────────────────────────────────────────────────


@dataclass(frozen=True)
class AgentMessage:
    """A decoded frame. ``raw`` is the exact payload read off the wire."""

    raw: bytes

    @property
    def msg_type(self) -> int:
        return self.raw[0]


@dataclass(frozen=True)
class RequestIdentities(AgentMessage):
    pass


@dataclass(frozen=True)
class IdentitiesAnswer(AgentMessage):
    identities: tuple[Identity, ...] = ()


@dataclass(frozen=True)
class SignRequest(AgentMessage):
    # None when the payload is too short to carry a complete key blob.
    blob: bytes | None = None


@dataclass(frozen=True)
class SignResponse(AgentMessage):
    pass


@dataclass(frozen=True)
class Failure(AgentMessage):
    pass


@dataclass(frozen=True)
class Other(AgentMessage):
    pass


def decode_message(payload: bytes) -> AgentMessage:
    """Classify a non-empty frame payload by its type byte."""
    if not payload:
        raise ProtocolError("empty agent message")
    msg_type = payload[0]
    if msg_type == SSH_AGENTC_REQUEST_IDENTITIES:
        return RequestIdentities(payload)
    if msg_type == SSH_AGENT_IDENTITIES_ANSWER:
        return IdentitiesAnswer(payload, tuple(parse_identities(payload)))
    if msg_type == SSH_AGENTC_SIGN_REQUEST:
        return SignRequest(payload, check_sign_request(payload))
    if msg_type == SSH_AGENT_SIGN_RESPONSE:
        return SignResponse(payload)
    if msg_type == SSH_AGENT_FAILURE:
        return Failure(payload)
    return Other(payload)


# ── Framing ──────────────────────────────────────────────────────────────────


async def read_message(reader: asyncio.StreamReader) -> bytes:
    """Read one length-prefixed frame and return its payload.

    Raises:
        ProtocolError: declared length exceeds MAX_MESSAGE_SIZE.
        AgentIOError: the stream ended or failed mid-frame.
    """
    try:
        header = await reader.readexactly(4)
    except asyncio.IncompleteReadError as exc:
        raise AgentIOError(f"connection closed after {len(exc.partial)} header bytes") from exc
    except (ConnectionError, OSError) as exc:
        raise AgentIOError(f"read failed: {exc}") from exc

    (length,) = _UINT32.unpack(header)
    if length > MAX_MESSAGE_SIZE:
        raise ProtocolError(f"message too large: {length}")

    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise AgentIOError(
            f"short read: expected {length} bytes, got {len(exc.partial)}"
        ) from exc
    except (ConnectionError, OSError) as exc:
        raise AgentIOError(f"read failed: {exc}") from exc


async def write_message(writer: asyncio.StreamWriter, payload: bytes) -> None:
    """Write one frame: length prefix, then payload.

    Both writes are queued before the first await, so two tasks sharing a
    writer can never interleave their frames.
    """
    if writer.is_closing():
        raise AgentIOError("write on closed connection")
    try:
        writer.write(_UINT32.pack(len(payload)))
        writer.write(payload)
        await writer.drain()
    except (ConnectionError, OSError, RuntimeError) as exc:
        raise AgentIOError(f"write failed: {exc}") from exc


# ── Identity lists ───────────────────────────────────────────────────────────


def encode_string(data: bytes) -> bytes:
    """Encode an SSH wire ``string`` (uint32 length + bytes)."""
    return _UINT32.pack(len(data)) + data


def read_string(data: bytes, offset: int) -> tuple[bytes, int] | None:
    """Decode an SSH wire ``string`` at *offset*.

    Returns (value, next_offset), or None if the buffer is too short.
    """
    if len(data) < offset + 4:
        return None
    (length,) = _UINT32.unpack_from(data, offset)
    start = offset + 4
    end = start + length
    if len(data) < end:
        return None
    return data[start:end], end


def parse_identities(payload: bytes) -> list[Identity]:
    """Parse an IDENTITIES_ANSWER payload (type byte included).

    Stops at the first length inconsistency and returns whatever parsed
    cleanly before it. Never raises on malformed input.
    """
    if len(payload) < 5:
        return []

    (count,) = _UINT32.unpack_from(payload, 1)
    offset = 5
    identities: list[Identity] = []
    for _ in range(count):
        blob_field = read_string(payload, offset)
        if blob_field is None:
            break
        blob, offset = blob_field

        comment_field = read_string(payload, offset)
        if comment_field is None:
            break
        comment_bytes, offset = comment_field

        identities.append(Identity(blob, comment_bytes.decode("utf-8", "surrogateescape")))

    if len(identities) < count:
        logger.debug("Truncated identities answer: %d of %d parsed", len(identities), count)
    return identities


def build_identities_response(identities: list[Identity] | tuple[Identity, ...]) -> bytes:
    """Encode an IDENTITIES_ANSWER payload, preserving order."""
    parts = [bytes([SSH_AGENT_IDENTITIES_ANSWER]), _UINT32.pack(len(identities))]
    for identity in identities:
        parts.append(encode_string(identity.blob))
        parts.append(encode_string(identity.comment.encode("utf-8", "surrogateescape")))
    return b"".join(parts)


# ── Sign requests ────────────────────────────────────────────────────────────


def check_sign_request(payload: bytes) -> bytes | None:
    """Return the key blob a SIGN_REQUEST targets.

    Only the leading ``(type, string key_blob)`` is parsed; the data to be
    signed and the flags are left alone.
    """
    parsed = read_string(payload, 1)
    if parsed is None:
        return None
    return parsed[0]


def build_sign_request(blob: bytes, data: bytes, flags: int = 0) -> bytes:
    """Encode a SIGN_REQUEST payload."""
    return (
        bytes([SSH_AGENTC_SIGN_REQUEST])
        + encode_string(blob)
        + encode_string(data)
        + _UINT32.pack(flags)
    )
