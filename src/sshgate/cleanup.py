"""PID markers and orphan cleanup for proxy socket directories.

Each Unix-mode proxy lives in its own ``ssh-proxy-*`` directory under the
sockets area and drops a ``pid`` file there. A directory whose owning
process is gone was left behind by a crash or SIGKILL and can be removed.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from pathlib import Path

logger = logging.getLogger(__name__)

PID_FILE_NAME = "pid"
PROXY_DIR_PREFIX = "ssh-proxy-"


def default_sockets_dir() -> Path:
    """``$ADDT_HOME/sockets``, falling back to ``~/.addt/sockets``."""
    home = os.environ.get("ADDT_HOME")
    base = Path(home).expanduser() if home else Path.home() / ".addt"
    return base / "sockets"


def write_pid_file(directory: Path) -> Path:
    """Write the current PID into *directory* (owner read/write only)."""
    pid_path = directory / PID_FILE_NAME
    fd = os.open(pid_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(f"{os.getpid()}\n")
    return pid_path


def read_pid_file(directory: Path) -> int | None:
    try:
        return int((directory / PID_FILE_NAME).read_text().strip())
    except (OSError, ValueError):
        return None


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def cleanup_orphaned_dirs(
    sockets_dir: Path | None = None, min_age_seconds: float = 5.0
) -> list[Path]:
    """Remove proxy directories whose owning process no longer exists.

    Directories without a readable PID file are treated as orphaned once
    they are older than *min_age_seconds* (a proxy being constructed has not
    written its marker yet). Returns the removed paths.
    """
    sockets_dir = sockets_dir or default_sockets_dir()
    if not sockets_dir.is_dir():
        return []

    now = time.time()
    removed: list[Path] = []
    for entry in sorted(sockets_dir.iterdir()):
        if not entry.is_dir() or not entry.name.startswith(PROXY_DIR_PREFIX):
            continue
        pid = read_pid_file(entry)
        if pid is not None and process_alive(pid):
            continue
        if pid is None:
            try:
                if now - entry.stat().st_mtime < min_age_seconds:
                    continue
            except OSError:
                continue
        shutil.rmtree(entry, ignore_errors=True)
        removed.append(entry)
        logger.info("Removed orphaned proxy dir %s (pid=%s)", entry, pid)
    return removed
