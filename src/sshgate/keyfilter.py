"""Allow-list decisions for SSH agent identities.

An allow-list entry matches an identity when either:

- it is a case-insensitive substring of the key comment (``"laptop"``
  matches ``"me@Laptop-2024"``), or
- it starts with ``SHA256:`` / ``MD5:`` and is a prefix of the key's
  OpenSSH fingerprint (``ssh-add -l`` / ``ssh-add -l -E md5`` format).

An empty allow-list allows every key: filtering only switches on once the
user names at least one key.
"""

from __future__ import annotations

import base64
import hashlib
from collections.abc import Iterable, Sequence

from sshgate.protocol import Identity

SHA256_PREFIX = "SHA256:"
MD5_PREFIX = "MD5:"


def fingerprint_sha256(blob: bytes) -> str:
    """OpenSSH SHA-256 fingerprint: ``SHA256:`` + unpadded base64."""
    digest = hashlib.sha256(blob).digest()
    return SHA256_PREFIX + base64.b64encode(digest).decode("ascii").rstrip("=")


def fingerprint_md5(blob: bytes) -> str:
    """OpenSSH legacy fingerprint: ``MD5:`` + colon-separated hex."""
    digest = hashlib.md5(blob, usedforsecurity=False).hexdigest()
    return MD5_PREFIX + ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def is_fingerprint_entry(entry: str) -> bool:
    return entry.startswith(SHA256_PREFIX) or entry.upper().startswith(MD5_PREFIX)


def match_all_entries(allow_list: Iterable[str]) -> list[str]:
    """Entries that would admit every key: blank ones and bare fingerprint prefixes.

    A blank entry is a substring of every comment, and ``SHA256:`` alone is a
    prefix of every fingerprint.
    """
    return [
        entry
        for entry in allow_list
        if not entry.strip() or entry.strip().upper() in (SHA256_PREFIX.upper(), MD5_PREFIX)
    ]


def _matches_fingerprint(entry: str, blob: bytes) -> bool:
    if entry.startswith(SHA256_PREFIX):
        # base64 is case-sensitive
        return fingerprint_sha256(blob).startswith(entry)
    return fingerprint_md5(blob).lower().startswith(entry.lower())


def is_key_allowed(comment: str, blob: bytes, allow_list: Sequence[str]) -> bool:
    """Decide whether one identity may be listed and used for signing."""
    if not allow_list:
        return True

    lowered = comment.lower()
    for entry in allow_list:
        if is_fingerprint_entry(entry):
            if _matches_fingerprint(entry, blob):
                return True
            continue
        if entry.lower() in lowered:
            return True
    return False


def filter_identities(identities: Iterable[Identity], allow_list: Sequence[str]) -> list[Identity]:
    """Order-preserving subsequence of *identities* that the allow-list admits."""
    return [i for i in identities if is_key_allowed(i.comment, i.blob, allow_list)]
