"""File-based locks enforcing the single-writer precondition.

The engine assumes it is the only mutator of SSH, firewall and certificate
state on the host. Mutating CLI commands therefore hold an exclusive
``flock`` on ``<runtime_dir>/hardenctl.lock`` for their whole duration.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

HOST_LOCK_NAME = "hardenctl"


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Metadata describing a held lock."""

    name: str
    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockManager:
    """Acquire named exclusive locks under *runtime_dir*."""

    runtime_dir: Path
    default_timeout: float = 30.0
    poll_interval: float = 0.05

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.strip().replace("/", "-")
        if not safe:
            raise ValueError("Lock name must be a non-empty string.")
        return self.runtime_dir / f"{safe}.lock"

    def host_lock(self, *, timeout: float | None = None) -> AbstractContextManager[LockHandle]:
        """Hold the host-wide mutation lock."""
        return self.lock(HOST_LOCK_NAME, timeout=timeout)

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Acquire the lock *name*, waiting up to *timeout* seconds."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        effective_timeout = self.default_timeout if timeout is None else timeout
        start = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for lock "
                            f"{path}; another hardenctl run may be in progress."
                        ) from exc
                    time.sleep(self.poll_interval)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["HOST_LOCK_NAME", "LockHandle", "LockManager", "LockTimeoutError"]
