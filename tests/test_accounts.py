"""Tests for administrator and tunnel account provisioning."""
from __future__ import annotations

import os

import pytest

from conftest import Host, Reply
from hardenctl.accounts import (
    AccountManager,
    AccountRole,
    generate_password,
    validate_username,
    with_random_suffix,
)
from hardenctl.errors import ValidationError


def _manager(host: Host) -> AccountManager:
    return AccountManager(
        host.executor,  # type: ignore[arg-type]
        host.controller,
        host.config.accounts,
    )


def test_ensure_admin_creates_user_with_sudo(host: Host) -> None:
    host.executor.on("id", "-u", "alice", reply=Reply(1, stderr="no such user"))
    manager = _manager(host)

    result = manager.ensure_admin("alice", "correct-horse")

    assert result.created and result.password_set
    assert result.role is AccountRole.ADMIN
    assert host.executor.argvs("useradd") == [("useradd", "-m", "-s", "/bin/bash", "alice")]
    assert host.executor.argvs("usermod") == [("usermod", "-aG", "sudo", "alice")]
    (chpasswd,) = [call for call in host.executor.calls if call.argv == ("chpasswd",)]
    assert chpasswd.input == "alice:correct-horse\n"
    assert len(host.executor.argvs("visudo", "-cf")) == 1

    sudoers = host.config.accounts.sudoers_dir / "alice"
    assert sudoers.read_text(encoding="utf-8") == "alice ALL=(ALL) NOPASSWD: ALL\n"
    assert (sudoers.stat().st_mode & 0o777) == 0o440
    assert result.to_dict()["steps"] == ["useradd", "group:sudo", "password", "sudoers"]


def test_existing_admin_is_not_recreated(host: Host) -> None:
    result = _manager(host).ensure_admin("alice")

    assert not result.created
    assert not result.password_set
    assert host.executor.argvs("useradd") == []
    assert host.executor.argvs("chpasswd") == []


def test_rejected_sudoers_rule_is_never_installed(host: Host) -> None:
    host.executor.on("visudo", reply=Reply(1, stderr="parse error in sudoers"))

    with pytest.raises(ValidationError) as excinfo:
        _manager(host).grant_sudo("alice")

    assert "parse error" in excinfo.value.message
    assert not (host.config.accounts.sudoers_dir / "alice").exists()


def test_short_password_is_rejected_before_chpasswd(host: Host) -> None:
    with pytest.raises(ValidationError):
        _manager(host).ensure_admin("alice", "short")

    assert host.executor.argvs("chpasswd") == []


def test_tunnel_user_gets_restricted_path(host: Host) -> None:
    host.executor.on("id", "-u", "tunnel_ab12c", reply=Reply(1))

    result = _manager(host).ensure_tunnel_user("tunnel_ab12c", "tunnel-secret")

    assert result.role is AccountRole.TUNNEL
    assert host.executor.argvs("useradd") == [
        ("useradd", "-m", "-s", "/bin/rbash", "tunnel_ab12c")
    ]
    home = host.config.accounts.home_root / "tunnel_ab12c"
    assert os.readlink(home / "bin" / "ssh") == "/usr/bin/ssh"
    assert (home / ".bashrc").read_text(encoding="utf-8") == "PATH=$HOME/bin\nexport PATH\n"
    assert ("chown", "-R", "tunnel_ab12c:tunnel_ab12c", str(home)) in host.executor.argvs("chown")


def test_existing_tunnel_user_gets_restricted_shell(host: Host) -> None:
    _manager(host).ensure_tunnel_user("tunnel_ab12c")
    _manager(host).ensure_tunnel_user("tunnel_ab12c")

    assert host.executor.argvs("usermod") == [
        ("usermod", "-s", "/bin/rbash", "tunnel_ab12c"),
        ("usermod", "-s", "/bin/rbash", "tunnel_ab12c"),
    ]


@pytest.mark.parametrize("name", ["ab", "root", "bad-name", "x" * 33, "with space"])
def test_invalid_usernames(name: str) -> None:
    with pytest.raises(ValidationError):
        validate_username(name)


def test_password_helpers() -> None:
    password = generate_password()
    name = with_random_suffix("tunnel_")

    assert len(password) == 20 and password.isalnum()
    assert name.startswith("tunnel_") and len(name) == 12
    assert validate_username(name) == name
