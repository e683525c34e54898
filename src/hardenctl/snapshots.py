"""Capture and restore the byte content of live configuration.

Each subsystem has at most one live snapshot at a time. The store keeps it in
memory and also writes a copy under ``<state_dir>/snapshots/`` so an operator
with console access can put the previous configuration back by hand if the
automated restore itself fails.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from .errors import FatalLockoutRisk


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be captured or restored."""


class ConfigTarget(Protocol):
    """Byte-level view of a piece of configuration."""

    subsystem: str

    def read(self) -> bytes | None:
        """Return the current content, ``None`` when absent."""

    def write(self, content: bytes | None) -> None:
        """Replace the content; ``None`` removes it."""


@dataclass(slots=True)
class FileTarget:
    """A configuration file replaced atomically."""

    subsystem: str
    path: Path
    mode: int = 0o644

    def read(self) -> bytes | None:
        """Return the file bytes or ``None`` when it does not exist."""
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def write(self, content: bytes | None) -> None:
        """Write *content* via a temporary file and ``os.replace``."""
        if content is None:
            self.path.unlink(missing_ok=True)
            return
        mode = self.path.stat().st_mode & 0o7777 if self.path.exists() else self.mode
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.chmod(mode)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Verbatim content of a subsystem's configuration at capture time."""

    subsystem: str
    content: bytes | None
    captured_at: datetime

    @property
    def existed(self) -> bool:
        return self.content is not None


@dataclass(slots=True)
class SnapshotLease:
    """Tracks what happened to the live configuration while a snapshot is held."""

    snapshot: ConfigSnapshot
    live_written: bool = False
    committed: bool = False
    abandoned: bool = False

    def mark_live(self) -> None:
        """Record that staged content was written to the live target."""
        self.live_written = True

    def mark_restored(self) -> None:
        """Record that the snapshot content is live again."""
        self.live_written = False

    def commit(self) -> None:
        """Record that the new configuration is accepted."""
        self.committed = True

    def abandon(self) -> None:
        """Keep the snapshot (and its on-disk copy) for manual recovery."""
        self.abandoned = True


@dataclass(frozen=True)
class SavedSnapshot:
    """A recovery copy found under the snapshots directory."""

    snapshot: ConfigSnapshot
    path: Path | None = None
    mode: int | None = None

    @property
    def subsystem(self) -> str:
        return self.snapshot.subsystem

    def to_dict(self) -> dict[str, object]:
        return {
            "subsystem": self.subsystem,
            "captured_at": self.snapshot.captured_at.isoformat(),
            "existed": self.snapshot.existed,
            "path": str(self.path) if self.path is not None else None,
            "mode": oct(self.mode) if self.mode is not None else None,
        }


@dataclass(slots=True)
class SnapshotStore:
    """Hold one live snapshot per subsystem and restore it verbatim."""

    root: Path | None = None
    clock: Callable[[], datetime] = lambda: datetime.now(UTC)
    _live: dict[str, ConfigSnapshot] = field(default_factory=dict, init=False, repr=False)

    def live(self, subsystem: str) -> ConfigSnapshot | None:
        """Return the live snapshot for *subsystem*, if any."""
        return self._live.get(subsystem)

    def capture(self, target: ConfigTarget) -> ConfigSnapshot:
        """Snapshot *target*; refuse when the subsystem already has one.

        A copy left on disk by an earlier run (a rollback that failed) blocks
        the capture until it is restored or cleared, so the known-good content
        is never overwritten by whatever is live now.
        """
        if target.subsystem in self._live:
            raise SnapshotError(
                f"A snapshot for {target.subsystem} is already held; "
                "finish or recover the previous transition first."
            )
        self.require_clean(target.subsystem)
        snapshot = ConfigSnapshot(target.subsystem, target.read(), self.clock())
        self._persist(snapshot, target)
        self._live[target.subsystem] = snapshot
        return snapshot

    def require_clean(self, subsystem: str) -> None:
        """Raise :class:`FatalLockoutRisk` while a recovery copy of *subsystem* exists."""
        if self.root is None:
            return
        content_path, meta_path = self._copy_paths(subsystem)
        if not (content_path.exists() or meta_path.exists()):
            return
        raise FatalLockoutRisk(
            f"A recovery copy of the {subsystem} configuration from an earlier failed "
            f"rollback is still in {self.root}; refusing to change {subsystem}.",
            remediation=(
                f"Check the live {subsystem} configuration from the console, then run "
                f"'hardenctl snapshots restore {subsystem}' to put the saved copy back "
                f"or 'hardenctl snapshots clear {subsystem}' to keep the live one."
            ),
        )

    def restore(self, snapshot: ConfigSnapshot, target: ConfigTarget) -> None:
        """Write the snapshot content back and confirm it reads back identically."""
        target.write(snapshot.content)
        if target.read() != snapshot.content:
            raise SnapshotError(
                f"Restored {snapshot.subsystem} configuration does not match its snapshot."
            )

    def discard(self, snapshot: ConfigSnapshot) -> None:
        """Release *snapshot* and delete its on-disk copy."""
        self.clear(snapshot.subsystem)

    def clear(self, subsystem: str) -> None:
        """Forget *subsystem*'s snapshot, in memory and on disk."""
        self._live.pop(subsystem, None)
        if self.root is None:
            return
        for path in self._copy_paths(subsystem):
            path.unlink(missing_ok=True)

    # Recovery copies left behind by earlier runs.
    def saved(self) -> list[SavedSnapshot]:
        """Return every recovery copy under the snapshots directory."""
        if self.root is None or not self.root.is_dir():
            return []
        names = {path.stem for path in self.root.glob("*.json")}
        names.update(path.stem for path in self.root.glob("*.snapshot"))
        return [self.load(name) for name in sorted(names)]

    def load(self, subsystem: str) -> SavedSnapshot:
        """Read the recovery copy of *subsystem*; raise :class:`SnapshotError` if absent."""
        if self.root is None:
            raise SnapshotError("Snapshots are not persisted; there is nothing to recover.")
        content_path, meta_path = self._copy_paths(subsystem)
        if not (content_path.exists() or meta_path.exists()):
            raise SnapshotError(f"No recovery copy of {subsystem} in {self.root}.")
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            meta = {"existed": content_path.exists()}
        except ValueError as exc:
            raise SnapshotError(f"Snapshot metadata {meta_path} is not valid JSON: {exc}") from exc
        content: bytes | None = None
        if meta.get("existed", True):
            try:
                content = content_path.read_bytes()
            except FileNotFoundError as exc:
                raise SnapshotError(f"No recovery copy of {subsystem} in {self.root}.") from exc
        captured = meta.get("captured_at")
        snapshot = ConfigSnapshot(
            subsystem,
            content,
            datetime.fromisoformat(captured) if captured else self.clock(),
        )
        path = meta.get("path")
        mode = meta.get("mode")
        return SavedSnapshot(
            snapshot,
            path=Path(path) if path else None,
            mode=int(mode, 8) if mode else None,
        )

    def recover(self, subsystem: str, target: ConfigTarget) -> SavedSnapshot:
        """Write the recovery copy of *subsystem* back to *target* and clear it."""
        saved = self.load(subsystem)
        self.restore(saved.snapshot, target)
        self.clear(subsystem)
        return saved

    @contextmanager
    def guard(
        self,
        target: ConfigTarget,
        *,
        reactivate: Callable[[], None] | None = None,
    ) -> Iterator[SnapshotLease]:
        """Hold a snapshot of *target* for the duration of the block.

        On exit the snapshot is discarded. If staged content was written live
        and never committed (an error or interrupt escaped the block) the
        snapshot is restored first and *reactivate* is called; when that fails
        the lease is abandoned and :class:`FatalLockoutRisk` is raised. An
        abandoned lease is left in place untouched.
        """
        snapshot = self.capture(target)
        lease = SnapshotLease(snapshot)
        try:
            yield lease
        finally:
            if not lease.abandoned:
                if lease.live_written and not lease.committed:
                    try:
                        self.restore(snapshot, target)
                        lease.mark_restored()
                        if reactivate is not None:
                            reactivate()
                    except Exception as exc:
                        lease.abandon()
                        raise FatalLockoutRisk(
                            f"Restoring {snapshot.subsystem} after an interrupted change "
                            f"failed: {exc}"
                        ) from exc
                self.discard(snapshot)

    # ------------------------------------------------------------------
    def _copy_paths(self, subsystem: str) -> tuple[Path, Path]:
        assert self.root is not None
        safe = subsystem.replace("/", "-")
        return self.root / f"{safe}.snapshot", self.root / f"{safe}.json"

    def _persist(self, snapshot: ConfigSnapshot, target: ConfigTarget) -> None:
        if self.root is None:
            return
        self.root.mkdir(parents=True, exist_ok=True, mode=0o700)
        content_path, meta_path = self._copy_paths(snapshot.subsystem)
        if snapshot.content is not None:
            _write_private(content_path, snapshot.content)
        meta: dict[str, object] = {
            "subsystem": snapshot.subsystem,
            "captured_at": snapshot.captured_at.isoformat(),
            "existed": snapshot.existed,
        }
        if isinstance(target, FileTarget):
            meta["path"] = str(target.path)
            mode = target.path.stat().st_mode & 0o7777 if snapshot.existed else target.mode
            meta["mode"] = oct(mode)
        _write_private(meta_path, (json.dumps(meta, indent=2) + "\n").encode("utf-8"))


def _write_private(path: Path, data: bytes) -> None:
    # mode 0600 from creation on
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


__all__ = [
    "ConfigSnapshot",
    "ConfigTarget",
    "FileTarget",
    "SavedSnapshot",
    "SnapshotError",
    "SnapshotLease",
    "SnapshotStore",
]
