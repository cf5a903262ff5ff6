from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any

from cleave.constants import (
    LOCK_ACQUIRE_ATTEMPTS,
    LOCK_FILE_NAME,
    LOCK_RECLAIM_FILE_NAME,
    LOCK_UNREADABLE_GRACE_SECONDS,
)
from cleave.models import LockHeldError
from cleave.utils import _utc_now


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    try:
        raw = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return {}
    if raw.isdigit():
        return {"pid": int(raw)}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _lock_pid(payload: dict[str, Any]) -> int | None:
    try:
        pid = int(payload.get("pid"))
    except (TypeError, ValueError):
        return None
    return pid if pid > 0 else None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _holder_alive(lock_path: Path) -> bool:
    holder = _lock_pid(_read_lock_payload(lock_path))
    if holder is not None:
        return _pid_alive(holder)
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return False
    return age < LOCK_UNREADABLE_GRACE_SECONDS


def _write_lock_payload_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    rendered = json.dumps(payload, indent=2) + "\n"
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(rendered)


class FileLock:
    """PID-aware exclusive lock over one state folder.

    ``acquire()`` creates the lock file with ``O_EXCL``. When a lock already
    exists, its holder is inspected while holding a second exclusive reclaim
    file, so only one contender at a time can remove a lock left by a dead
    process. ``release()`` only removes a lock that still names this process.
    """

    def __init__(self, relay_dir: Path, *, pid: int | None = None, command: str = "") -> None:
        self.path = relay_dir / LOCK_FILE_NAME
        self.reclaim_path = relay_dir / LOCK_RECLAIM_FILE_NAME
        self.pid = pid if pid is not None else os.getpid()
        self.command = command

    def holder_pid(self) -> int | None:
        if not self.path.exists():
            return None
        return _lock_pid(_read_lock_payload(self.path))

    def _reclaim_stale(self) -> bool:
        """Remove a lock whose holder is gone; returns True when a retry may succeed."""
        try:
            _write_lock_payload_exclusive(self.reclaim_path, {"pid": self.pid, "started_at": _utc_now()})
        except FileExistsError:
            if _holder_alive(self.reclaim_path):
                return False
            self.reclaim_path.unlink(missing_ok=True)
            return True
        try:
            if _holder_alive(self.path):
                return False
            self.path.unlink(missing_ok=True)
            return True
        finally:
            self.reclaim_path.unlink(missing_ok=True)

    def acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"pid": self.pid, "started_at": _utc_now(), "command": self.command}
        for _ in range(LOCK_ACQUIRE_ATTEMPTS):
            try:
                _write_lock_payload_exclusive(self.path, payload)
            except FileExistsError:
                if not self._reclaim_stale():
                    return False
                continue
            return True
        return False

    def release(self) -> bool:
        if self.holder_pid() != self.pid:
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True

    def __enter__(self) -> "FileLock":
        if not self.acquire():
            raise LockHeldError(
                f"another cleave run (pid={self.holder_pid()}) holds the lock at {self.path}"
            )
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.release()
