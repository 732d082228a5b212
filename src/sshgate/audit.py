"""Hash-chained append-only audit log for SSH key decisions.

Every record carries the SHA-256 of its own canonical JSON and the hash of
the record before it, so editing or dropping a line breaks verification.

Record format (one JSON object per line, newline-delimited):
    {
        "seq": <int>,            // 1-based, consecutive within a file
        "ts": "<iso8601>",       // UTC timestamp
        "event": "key_listed" | "sign",
        "comment": "<str>",      // key comment, truncated
        "fingerprint": "<str>",  // SHA256:... of the public blob, or ""
        "allowed": <bool>,
        "reason": "<str>",
        "prev_hash": "<hex>",
        "hash": "<hex>"          // SHA-256 of the record without "hash"
    }

Key blobs are never written; the fingerprint is a one-way digest of public
material.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from sshgate.keyfilter import fingerprint_sha256

logger = logging.getLogger(__name__)

AuditEvent = Literal["key_listed", "sign"]

_COMMENT_MAX = 256
_GENESIS = "0" * 64


def _sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def _truncate(text: str, max_len: int = _COMMENT_MAX) -> str:
    if len(text) > max_len:
        return text[:max_len] + "…[truncated]"
    return text


def _record_hash(record: dict[str, Any]) -> str:
    body = {k: v for k, v in record.items() if k != "hash"}
    return _sha256_hex(json.dumps(body, sort_keys=True))


def _read_records(log_file: Path) -> Iterator[tuple[int, dict[str, Any]]]:
    """Yield (line number, record) for every non-blank line."""
    with open(log_file) as fh:
        for lineno, line in enumerate(fh, 1):
            if line.strip():
                yield lineno, json.loads(line)


def _check_link(record: dict[str, Any], prev_hash: str, seq: int) -> str | None:
    """Return what is wrong with *record* as the successor of *prev_hash*."""
    if record.get("hash") != _record_hash(record):
        return "hash mismatch"
    if record.get("prev_hash") != prev_hash:
        return "chain broken"
    if record.get("seq") != seq:
        return f"sequence gap (expected {seq}, got {record.get('seq')})"
    return None


class KeyAuditLogger:
    """Append-only, hash-chained audit log of allow/deny decisions.

    Writes are serialised with an asyncio.Lock. One file per UTC day.
    """

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir
        self._lock = asyncio.Lock()
        self._seq = 0
        self._prev_hash = _GENESIS

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def _log_file(self) -> Path:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._log_dir / f"ssh-audit-{date_str}.ndjson"

    async def start(self) -> None:
        """Create the log directory and continue the chain in today's file."""
        self._log_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        log_file = self._log_file()
        if not log_file.exists():
            return

        last: dict[str, Any] | None = None
        try:
            for _, record in _read_records(log_file):
                last = record
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Audit log %s unreadable (%s), new records open a fresh chain", log_file, exc)
            return
        if last is not None:
            self._seq = last.get("seq", 0)
            self._prev_hash = last.get("hash", _GENESIS)

    async def _append(
        self,
        event: AuditEvent,
        comment: str,
        blob: bytes | None,
        allowed: bool,
        reason: str,
    ) -> None:
        async with self._lock:
            record: dict[str, Any] = {
                "seq": self._seq + 1,
                "ts": datetime.now(timezone.utc).isoformat(),
                "event": event,
                "comment": _truncate(comment),
                "fingerprint": fingerprint_sha256(blob) if blob else "",
                "allowed": allowed,
                "reason": reason,
                "prev_hash": self._prev_hash,
            }
            record["hash"] = _record_hash(record)
            self._seq = record["seq"]
            self._prev_hash = record["hash"]

            try:
                with open(self._log_file(), "a") as fh:
                    fh.write(json.dumps(record, sort_keys=True) + "\n")
            except OSError:
                logger.error("Failed to write audit record (%s, %r)", event, comment)

    async def log_key_access(self, comment: str, blob: bytes | None, allowed: bool) -> None:
        """Record whether an identity was exposed in a listing."""
        await self._append(
            "key_listed",
            comment,
            blob,
            allowed,
            "" if allowed else "key not in allowed list",
        )

    async def log_sign(
        self, comment: str, blob: bytes | None, allowed: bool, reason: str = ""
    ) -> None:
        """Record a sign request decision."""
        await self._append("sign", comment, blob, allowed, reason)

    def verify_chain(self, log_file: Path | None = None) -> tuple[bool, str]:
        """Walk a log file and check every hash link.

        Returns (ok, message); the message names the first bad line.
        """
        log_file = log_file or self._log_file()
        if not log_file.exists():
            return True, "no log file"

        prev_hash, count = _GENESIS, 0
        try:
            for lineno, record in _read_records(log_file):
                problem = _check_link(record, prev_hash, count + 1)
                if problem:
                    return False, f"line {lineno}: {problem}"
                prev_hash, count = record["hash"], count + 1
        except (OSError, json.JSONDecodeError) as exc:
            return False, f"read error: {exc}"
        return True, f"chain intact ({count} entries)"
