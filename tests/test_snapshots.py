"""Tests for snapshot capture, persistence and restore."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from hardenctl.errors import FatalLockoutRisk
from hardenctl.snapshots import FileTarget, SnapshotError, SnapshotStore


def test_restore_is_byte_exact(tmp_path: Path) -> None:
    """Whitespace, comments and trailing bytes come back unchanged."""
    path = tmp_path / "sshd_config"
    original = b"# header\n\tPort 22  \r\nUseDNS no"
    path.write_bytes(original)
    target = FileTarget("ssh", path)
    store = SnapshotStore()

    snapshot = store.capture(target)
    target.write(b"Port 2222\n")
    store.restore(snapshot, target)

    assert path.read_bytes() == original


def test_restore_of_absent_file_removes_it(tmp_path: Path) -> None:
    path = tmp_path / "jail.local"
    target = FileTarget("fail2ban", path)
    store = SnapshotStore()

    snapshot = store.capture(target)
    target.write(b"[sshd]\n")
    store.restore(snapshot, target)

    assert not snapshot.existed
    assert not path.exists()


def test_write_preserves_existing_mode(tmp_path: Path) -> None:
    path = tmp_path / "sudoers"
    path.write_bytes(b"old\n")
    path.chmod(0o440)

    FileTarget("sudoers", path, mode=0o644).write(b"new\n")

    assert path.read_bytes() == b"new\n"
    assert (path.stat().st_mode & 0o777) == 0o440


def test_one_live_snapshot_per_subsystem(tmp_path: Path) -> None:
    store = SnapshotStore()
    target = FileTarget("ssh", tmp_path / "sshd_config")

    store.capture(target)
    with pytest.raises(SnapshotError):
        store.capture(target)


def test_capture_persists_copy_for_manual_recovery(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    root = tmp_path / "snapshots"
    store = SnapshotStore(root)

    snapshot = store.capture(FileTarget("ssh", path))

    copy = root / "ssh.snapshot"
    assert copy.read_bytes() == b"Port 22\n"
    assert (copy.stat().st_mode & 0o777) == 0o600
    meta = json.loads((root / "ssh.json").read_text(encoding="utf-8"))
    assert meta["subsystem"] == "ssh"
    assert meta["existed"] is True
    assert meta["path"] == str(path)
    assert ((root / "ssh.json").stat().st_mode & 0o777) == 0o600

    store.discard(snapshot)
    assert not copy.exists()
    assert store.live("ssh") is None


def test_guard_restores_uncommitted_live_write(tmp_path: Path) -> None:
    """An exception after the live write puts the snapshot back."""
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    target = FileTarget("ssh", path)
    store = SnapshotStore(tmp_path / "snapshots")
    reactivated: list[bool] = []

    with pytest.raises(KeyboardInterrupt):
        with store.guard(target, reactivate=lambda: reactivated.append(True)) as lease:
            lease.mark_live()
            target.write(b"Port 2222\n")
            raise KeyboardInterrupt

    assert path.read_bytes() == b"Port 22\n"
    assert reactivated == [True]
    assert store.live("ssh") is None


def test_guard_keeps_committed_content(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    target = FileTarget("ssh", path)
    store = SnapshotStore()

    with store.guard(target) as lease:
        lease.mark_live()
        target.write(b"Port 2222\n")
        lease.commit()

    assert path.read_bytes() == b"Port 2222\n"
    assert store.live("ssh") is None


def test_abandoned_lease_is_left_in_place(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    root = tmp_path / "snapshots"
    store = SnapshotStore(root)

    with store.guard(FileTarget("ssh", path)) as lease:
        lease.abandon()

    assert store.live("ssh") is not None
    assert (root / "ssh.snapshot").exists()


def _abandon(root: Path, target: FileTarget) -> None:
    """Leave a recovery copy behind the way a failed rollback does."""
    with SnapshotStore(root).guard(target) as lease:
        lease.abandon()


def test_leftover_copy_blocks_the_next_capture(tmp_path: Path) -> None:
    """A later run never overwrites the known-good copy with broken live content."""
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    root = tmp_path / "snapshots"
    target = FileTarget("ssh", path)
    _abandon(root, target)
    path.write_bytes(b"Port 9999 broken\n")

    with pytest.raises(FatalLockoutRisk) as excinfo:
        SnapshotStore(root).capture(target)

    assert "hardenctl snapshots restore ssh" in excinfo.value.remediation
    assert (root / "ssh.snapshot").read_bytes() == b"Port 22\n"


def test_leftover_metadata_of_absent_file_blocks_capture(tmp_path: Path) -> None:
    path = tmp_path / "jail.local"
    root = tmp_path / "snapshots"
    target = FileTarget("fail2ban", path)
    _abandon(root, target)
    path.write_bytes(b"[sshd]\n")

    with pytest.raises(FatalLockoutRisk):
        SnapshotStore(root).capture(target)

    assert not (root / "fail2ban.snapshot").exists()
    assert json.loads((root / "fail2ban.json").read_text(encoding="utf-8"))["existed"] is False


def test_recover_writes_copy_back_and_clears_it(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    path.chmod(0o600)
    root = tmp_path / "snapshots"
    _abandon(root, FileTarget("ssh", path))
    path.write_bytes(b"Port 9999 broken\n")
    store = SnapshotStore(root)

    (saved,) = store.saved()
    assert saved.subsystem == "ssh"
    assert saved.path == path
    assert saved.mode == 0o600

    store.recover("ssh", FileTarget("ssh", saved.path))

    assert path.read_bytes() == b"Port 22\n"
    assert store.saved() == []
    store.capture(FileTarget("ssh", path))


def test_recover_of_absent_file_removes_it(tmp_path: Path) -> None:
    path = tmp_path / "jail.local"
    root = tmp_path / "snapshots"
    _abandon(root, FileTarget("fail2ban", path))
    path.write_bytes(b"[sshd]\n")

    SnapshotStore(root).recover("fail2ban", FileTarget("fail2ban", path))

    assert not path.exists()
    assert list(root.iterdir()) == []


def test_clear_keeps_live_content(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    root = tmp_path / "snapshots"
    _abandon(root, FileTarget("ssh", path))
    path.write_bytes(b"Port 2222\n")
    store = SnapshotStore(root)

    store.clear("ssh")

    assert path.read_bytes() == b"Port 2222\n"
    assert store.capture(FileTarget("ssh", path)).content == b"Port 2222\n"


def test_recover_without_copy_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(SnapshotError):
        SnapshotStore(tmp_path / "snapshots").recover(
            "ssh", FileTarget("ssh", tmp_path / "sshd_config")
        )


def test_failed_reactivation_in_guard_keeps_copy(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_bytes(b"Port 22\n")
    target = FileTarget("ssh", path)
    root = tmp_path / "snapshots"
    store = SnapshotStore(root)

    def reactivate() -> None:
        raise OSError("restart failed")

    with pytest.raises(FatalLockoutRisk):
        with store.guard(target, reactivate=reactivate) as lease:
            lease.mark_live()
            target.write(b"Port 2222\n")
            raise KeyboardInterrupt

    assert path.read_bytes() == b"Port 22\n"
    assert (root / "ssh.snapshot").read_bytes() == b"Port 22\n"
