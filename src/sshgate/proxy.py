"""Filtering SSH agent proxy.

Sits between the host's ``SSH_AUTH_SOCK`` and a container. The container
sees a normal agent socket, but:

1. IDENTITIES_ANSWER replies from upstream are rewritten to contain only
   the keys the allow-list admits, so other keys are not even enumerable.
2. SIGN_REQUESTs for any key not admitted are answered with
   SSH_AGENT_FAILURE by the proxy itself and never reach upstream.
3. Every other message passes through byte-for-byte.

Two transports:

- Unix socket inside a fresh 0700 ``ssh-proxy-*`` directory (bind-mounted
  into the container).
- TCP on ``0.0.0.0:<ephemeral>`` for VM-based runtimes (macOS) where the
  container reaches the host through a gateway address and cannot mount
  host sockets.

Lifecycle::

    proxy = SSHAgentProxy.unix(os.environ["SSH_AUTH_SOCK"], ["github"])
    await proxy.start()   # binds, warms the key cache, starts accept loop
    ...
    await proxy.stop()    # closes listener, removes the socket directory

``stop()`` does not cut live sessions; they end when their peers hang up.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import socket
import tempfile
import threading
from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from sshgate.cleanup import PROXY_DIR_PREFIX, default_sockets_dir, write_pid_file
from sshgate.errors import (
    AgentIOError,
    ConfigError,
    ProtocolError,
    SSHProxyError,
    TransportError,
)
from sshgate.keyfilter import is_key_allowed, match_all_entries
from sshgate.protocol import (
    FAILURE_MESSAGE,
    REQUEST_IDENTITIES_MESSAGE,
    IdentitiesAnswer,
    Identity,
    SignRequest,
    build_identities_response,
    decode_message,
    read_message,
    write_message,
)

if TYPE_CHECKING:
    from sshgate.audit import KeyAuditLogger

logger = logging.getLogger(__name__)

SOCKET_NAME = "agent.sock"
# Bounds the cache warm-up round-trip so a wedged agent cannot stall start().
PREPOPULATE_TIMEOUT = 5.0
_ACCEPT_RETRY_DELAY = 0.05


async def request_identities(
    upstream_socket: str, timeout: float = PREPOPULATE_TIMEOUT
) -> list[Identity]:
    """One REQUEST_IDENTITIES round-trip on a fresh upstream connection.

    Raises:
        TransportError: the upstream agent cannot be reached or timed out.
        ProtocolError: the reply was not an IDENTITIES_ANSWER.
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(upstream_socket), timeout
        )
    except (OSError, asyncio.TimeoutError) as exc:
        raise TransportError(f"cannot connect to upstream agent {upstream_socket}: {exc}") from exc

    try:
        await write_message(writer, REQUEST_IDENTITIES_MESSAGE)
        payload = await asyncio.wait_for(read_message(reader), timeout)
    except asyncio.TimeoutError as exc:
        raise TransportError("upstream agent did not answer REQUEST_IDENTITIES") from exc
    finally:
        await _close_writer(writer)

    msg = decode_message(payload) if payload else None
    if not isinstance(msg, IdentitiesAnswer):
        raise ProtocolError("unexpected response to REQUEST_IDENTITIES")
    return list(msg.identities)


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    if writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class SSHAgentProxy:
    """Filtering SSH agent proxy bound to one upstream agent socket.

    The blob caches and the running flag are the only shared mutable state;
    they sit behind one lock that is never held across I/O.
    """

    def __init__(
        self,
        upstream_socket: str,
        allowed_keys: Sequence[str] | None = None,
        *,
        use_tcp: bool = False,
        sockets_dir: Path | None = None,
        tcp_host: str = "0.0.0.0",
        audit: KeyAuditLogger | None = None,
    ) -> None:
        if not upstream_socket:
            raise ConfigError("upstream SSH_AUTH_SOCK not set")
        allowed_keys = tuple(allowed_keys or ())
        too_broad = match_all_entries(allowed_keys)
        if too_broad:
            raise ConfigError(f"allow-list entry {too_broad[0]!r} would match every key")

        self._upstream_socket = upstream_socket
        self._allowed_keys: tuple[str, ...] = allowed_keys
        self._use_tcp = use_tcp
        self._tcp_host = tcp_host
        self._tcp_port = 0
        self._audit = audit

        # Plain lock: only ever held for dict/flag updates, never across an await.
        self._lock = threading.Lock()
        self._running = False
        self._closed = False
        self._allowed_blobs: dict[bytes, bool] = {}
        self._blob_comments: dict[bytes, str] = {}

        self._listener: socket.socket | None = None
        self._accept_task: asyncio.Task | None = None
        self._sessions: set[asyncio.Task] = set()

        self._socket_dir: Path | None = None
        self._socket_path: Path | None = None
        if not use_tcp:
            self._socket_dir = self._make_socket_dir(sockets_dir or default_sockets_dir())
            self._socket_path = self._socket_dir / SOCKET_NAME

    @classmethod
    def unix(
        cls,
        upstream_socket: str,
        allowed_keys: Sequence[str] | None = None,
        *,
        sockets_dir: Path | None = None,
        audit: KeyAuditLogger | None = None,
    ) -> SSHAgentProxy:
        return cls(upstream_socket, allowed_keys, sockets_dir=sockets_dir, audit=audit)

    @classmethod
    def tcp(
        cls,
        upstream_socket: str,
        allowed_keys: Sequence[str] | None = None,
        *,
        host: str = "0.0.0.0",
        audit: KeyAuditLogger | None = None,
    ) -> SSHAgentProxy:
        return cls(upstream_socket, allowed_keys, use_tcp=True, tcp_host=host, audit=audit)

    @staticmethod
    def _make_socket_dir(sockets_dir: Path) -> Path:
        try:
            sockets_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            tmp_dir = Path(tempfile.mkdtemp(prefix=PROXY_DIR_PREFIX, dir=sockets_dir))
        except OSError as exc:
            raise TransportError(f"failed to create socket dir under {sockets_dir}: {exc}") from exc
        try:
            os.chmod(tmp_dir, 0o700)
            write_pid_file(tmp_dir)
        except OSError as exc:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise TransportError(f"failed to prepare socket dir {tmp_dir}: {exc}") from exc
        return tmp_dir

    # ── Properties ───────────────────────────────────────────────────────────

    @property
    def upstream_socket(self) -> str:
        return self._upstream_socket

    @property
    def allowed_keys(self) -> tuple[str, ...]:
        return self._allowed_keys

    @property
    def socket_path(self) -> Path | None:
        """Unix socket to mount into the container (None in TCP mode)."""
        return self._socket_path

    @property
    def tcp_port(self) -> int:
        """Bound TCP port; 0 until started or in Unix mode."""
        return self._tcp_port

    @property
    def use_tcp(self) -> bool:
        return self._use_tcp

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Bind the transport, warm the key cache and start accepting.

        A no-op if already running. Failing to warm the cache is logged and
        otherwise ignored: the first live IDENTITIES_ANSWER fills it.

        Raises:
            TransportError: the listener could not be bound.
        """
        with self._lock:
            if self._running:
                return
            if self._closed:
                raise TransportError("proxy has been stopped; create a new one")
            listener = self._listener = self._bind()
            self._running = True

        try:
            await self._populate_allowed_blobs()
        except SSHProxyError as exc:
            logger.warning("Could not pre-filter SSH keys: %s", exc)

        with self._lock:
            if not self._running:
                # stop() ran during the warm-up and already closed the listener.
                logger.debug("SSH proxy stopped before accepting connections")
                return
            self._accept_task = asyncio.create_task(
                self._accept_loop(listener), name="ssh-proxy-accept"
            )
        if self._use_tcp:
            logger.info("SSH proxy listening on %s:%d", self._tcp_host, self._tcp_port)
        else:
            logger.info("SSH proxy listening on %s", self._socket_path)

    async def stop(self) -> None:
        """Close the listener and remove the socket directory. Idempotent."""
        with self._lock:
            was_running = self._running
            self._running = False
            self._closed = True
            listener, self._listener = self._listener, None

        if self._accept_task and not self._accept_task.done():
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
        self._accept_task = None

        if listener is not None:
            listener.close()
        if self._socket_dir is not None and self._socket_dir.exists():
            shutil.rmtree(self._socket_dir, ignore_errors=True)

        if was_running:
            logger.info("SSH proxy stopped (%d session(s) draining)", len(self._sessions))

    async def __aenter__(self) -> SSHAgentProxy:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _bind(self) -> socket.socket:
        if self._use_tcp:
            # Not loopback: containers arrive via the runtime's gateway address.
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self._tcp_host, 0))
                sock.listen()
            except OSError as exc:
                sock.close()
                raise TransportError(f"failed to listen on TCP: {exc}") from exc
            self._tcp_port = sock.getsockname()[1]
        else:
            path = str(self._socket_path)
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.bind(path)
                # Owner-only; the 0700 parent already blocks other users.
                os.chmod(path, 0o600)
                sock.listen()
            except OSError as exc:
                sock.close()
                raise TransportError(f"failed to listen on proxy socket {path}: {exc}") from exc
        sock.setblocking(False)
        return sock

    # ── Accept loop ──────────────────────────────────────────────────────────

    async def _accept_loop(self, listener: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                conn, _ = await loop.sock_accept(listener)
            except OSError as exc:
                with self._lock:
                    running = self._running
                if not running:
                    return
                logger.debug("SSH proxy accept error (continuing): %s", exc)
                await asyncio.sleep(_ACCEPT_RETRY_DELAY)
                continue

            task = asyncio.create_task(self._handle_client(conn))
            self._sessions.add(task)
            task.add_done_callback(self._sessions.discard)

    async def _handle_client(self, conn: socket.socket) -> None:
        try:
            if self._use_tcp:
                reader, writer = await asyncio.open_connection(sock=conn)
            else:
                reader, writer = await asyncio.open_unix_connection(sock=conn)
        except OSError as exc:
            logger.debug("SSH proxy could not wrap client socket: %s", exc)
            conn.close()
            return
        await AgentSession(self, reader, writer).run()

    # ── Filtering state ──────────────────────────────────────────────────────

    async def _populate_allowed_blobs(self) -> None:
        identities = await request_identities(self._upstream_socket)
        await self.observe_identities(identities)

    async def observe_identities(self, identities: Sequence[Identity]) -> list[Identity]:
        """Record the decision for every identity and return the allowed ones.

        Denied blobs are cached too, so a later sign request for one can be
        reported with its comment.
        """
        decisions = [
            (identity, is_key_allowed(identity.comment, identity.blob, self._allowed_keys))
            for identity in identities
        ]
        with self._lock:
            for identity, allowed in decisions:
                self._blob_comments[identity.blob] = identity.comment
                self._allowed_blobs[identity.blob] = allowed

        for identity, allowed in decisions:
            logger.debug(
                "SSH key %r %s", identity.comment, "allowed" if allowed else "filtered"
            )
            if self._audit is not None:
                await self._audit.log_key_access(identity.comment, identity.blob, allowed)

        return [identity for identity, allowed in decisions if allowed]

    async def filter_identities(self, msg: IdentitiesAnswer) -> bytes:
        """Rewrite an IDENTITIES_ANSWER to contain only allowed keys."""
        allowed = await self.observe_identities(msg.identities)
        return build_identities_response(allowed)

    def check_sign_request(self, blob: bytes | None) -> tuple[bool, str]:
        """Return (allowed, comment) for a sign request targeting *blob*.

        With an empty allow-list every request is allowed. Otherwise only
        blobs seen as allowed in a listing are; unknown or unparseable blobs
        are denied.
        """
        if blob is None:
            return not self._allowed_keys, "unknown"
        with self._lock:
            comment = self._blob_comments.get(blob) or "unknown"
            cached = self._allowed_blobs.get(blob)
        if not self._allowed_keys:
            return True, comment
        return bool(cached), comment

    def snapshot(self) -> dict[bytes, tuple[str, bool]]:
        """Copy of the cache: blob -> (comment, allowed)."""
        with self._lock:
            return {
                blob: (self._blob_comments.get(blob, ""), allowed)
                for blob, allowed in self._allowed_blobs.items()
            }

    async def audit_sign(self, comment: str, blob: bytes | None, allowed: bool, reason: str) -> None:
        if self._audit is not None:
            await self._audit.log_sign(comment, blob, allowed, reason)


class AgentSession:
    """One client connection relayed to its own upstream connection.

    Two pumps run concurrently, one per direction. When either one's read
    fails both streams are closed, which ends the other pump.

    Replies reach the client in request order. ``_reply_slots`` holds one
    entry per outstanding request: None while the upstream reply is pending,
    or the FAILURE the proxy produced itself for a denied sign request. A
    local FAILURE is only written once every upstream reply ahead of it has
    been delivered.
    """

    def __init__(
        self,
        proxy: SSHAgentProxy,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> None:
        self._proxy = proxy
        self._client_reader = client_reader
        self._client_writer = client_writer
        self._upstream_writer: asyncio.StreamWriter | None = None
        self._reply_slots: deque[bytes | None] = deque()

    async def run(self) -> None:
        try:
            upstream_reader, upstream_writer = await asyncio.open_unix_connection(
                self._proxy.upstream_socket
            )
        except OSError as exc:
            logger.warning("SSH proxy cannot reach upstream agent: %s", exc)
            await _close_writer(self._client_writer)
            return

        self._upstream_writer = upstream_writer
        try:
            await asyncio.gather(
                self._pump_client_to_upstream(upstream_writer),
                self._pump_upstream_to_client(upstream_reader),
            )
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        await _close_writer(self._client_writer)
        if self._upstream_writer is not None:
            await _close_writer(self._upstream_writer)

    async def _reply_locally(self, payload: bytes) -> None:
        if self._reply_slots:
            # The head is a pending upstream reply; wait behind it.
            self._reply_slots.append(payload)
            return
        await write_message(self._client_writer, payload)

    async def _deliver_upstream_reply(self, payload: bytes) -> None:
        if self._reply_slots:
            self._reply_slots.popleft()
        # popleft and the frame writes run without a suspension in between.
        await write_message(self._client_writer, payload)
        while self._reply_slots and self._reply_slots[0] is not None:
            await write_message(self._client_writer, self._reply_slots.popleft())

    async def _pump_client_to_upstream(self, upstream_writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                payload = await read_message(self._client_reader)
                if not payload:
                    continue
                msg = decode_message(payload)

                if isinstance(msg, SignRequest):
                    allowed, comment = self._proxy.check_sign_request(msg.blob)
                    if not allowed:
                        logger.warning("SSH sign denied for key %r: not in allowed list", comment)
                        await self._proxy.audit_sign(
                            comment, msg.blob, False, "key not in allowed list"
                        )
                        await self._reply_locally(FAILURE_MESSAGE)
                        continue
                    logger.info("SSH sign allowed for key %r", comment)
                    await self._proxy.audit_sign(comment, msg.blob, True, "")

                self._reply_slots.append(None)
                await write_message(upstream_writer, msg.raw)
        except (AgentIOError, ProtocolError) as exc:
            logger.debug("client->upstream pump ended: %s", exc)
        finally:
            await self._shutdown()

    async def _pump_upstream_to_client(self, upstream_reader: asyncio.StreamReader) -> None:
        try:
            while True:
                payload = await read_message(upstream_reader)
                if not payload:
                    continue
                msg = decode_message(payload)

                if isinstance(msg, IdentitiesAnswer):
                    payload = await self._proxy.filter_identities(msg)

                await self._deliver_upstream_reply(payload)
        except (AgentIOError, ProtocolError) as exc:
            logger.debug("upstream->client pump ended: %s", exc)
        finally:
            await self._shutdown()
