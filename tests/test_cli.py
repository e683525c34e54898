"""Tests for the hardenctl command line interface."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from conftest import SSHD_CONFIG, FakeExecutor, FakeUfw, Reply, config_overrides
from hardenctl import __version__
from hardenctl.cli import app
from hardenctl.locking import LockManager
from hardenctl.ssh import SshdConfig

runner = CliRunner()


@dataclass
class CliHost:
    root: Path
    env: dict[str, str]
    executor: FakeExecutor
    ufw: FakeUfw

    @property
    def operations(self) -> list[dict[str, object]]:
        path = self.root / "logs" / "operations.jsonl"
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _text(output: str) -> str:
    """Collapse the console's line wrapping so messages can be matched whole."""
    return " ".join(output.split())


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


@pytest.fixture
def cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> CliHost:
    """Config file under ``tmp_path`` and a fake executor behind every command."""
    config_path = tmp_path / "hardenctl.yml"
    config_path.write_text(yaml.safe_dump(config_overrides(tmp_path)), encoding="utf-8")
    sshd_path = tmp_path / "etc" / "ssh" / "sshd_config"
    sshd_path.parent.mkdir(parents=True)
    sshd_path.write_text(SSHD_CONFIG, encoding="utf-8")

    executor = FakeExecutor()
    ufw = FakeUfw(rules={"22/tcp": "SSH"})
    executor.on("ufw", reply=ufw)
    executor.on("systemctl", "is-active", "ssh", reply=Reply(stdout="active\n"))
    executor.on("systemctl", "is-active", "ssh.socket", reply=Reply(3, stdout="inactive\n"))
    executor.on("systemctl", "is-enabled", "ssh.socket", reply=Reply(1, stdout="disabled\n"))
    monkeypatch.setattr("hardenctl.cli.CommandExecutor", lambda **_kwargs: executor)
    monkeypatch.setattr(
        "hardenctl.network.PortScanner.reachable", lambda _self, _host, _port: True
    )
    return CliHost(tmp_path, {"HARDENCTL_CONFIG_FILE": str(config_path)}, executor, ufw)


def test_version_option() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"hardenctl {__version__}" in result.stdout


def test_config_show_json(cli: CliHost) -> None:
    result = runner.invoke(app, ["config", "show", "--json"], env=cli.env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["ssh"]["config_path"] == str(cli.root / "etc" / "ssh" / "sshd_config")
    assert payload["services"]["startup"] == {"attempts": 2, "interval": 1.0}


def test_config_show_table(cli: CliHost) -> None:
    result = runner.invoke(app, ["config", "show"], env=cli.env)

    assert result.exit_code == 0
    assert "Key" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    config_path = tmp_path / "hardenctl.yml"
    config_path.write_text("bogus: 1\n", encoding="utf-8")

    result = runner.invoke(
        app, ["config", "show"], env={"HARDENCTL_CONFIG_FILE": str(config_path)}
    )

    assert result.exit_code == 1
    assert "bogus" in _text(result.stdout)


def test_firewall_list_json(cli: CliHost) -> None:
    result = runner.invoke(app, ["firewall", "list", "--json"], env=cli.env)

    assert result.exit_code == 0, result.stdout
    assert json.loads(result.stdout) == {
        "enabled": True,
        "rules": [{"port": 22, "protocol": "tcp", "comment": "SSH"}],
    }


def test_firewall_allow_records_operation(cli: CliHost) -> None:
    result = runner.invoke(
        app, ["firewall", "allow", "8443/tcp", "--comment", "web"], env=cli.env
    )

    assert result.exit_code == 0, result.stdout
    assert cli.ufw.rules == {"22/tcp": "SSH", "8443/tcp": "web"}
    record = cli.operations[-1]
    assert record["command"] == "firewall allow"
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["changed"] == 1  # type: ignore[index]
    step_ids = [step["id"] for step in record["steps"]]  # type: ignore[union-attr]
    assert "firewall.snapshot" in step_ids


def test_firewall_revoke_ssh_port_is_refused(cli: CliHost) -> None:
    result = runner.invoke(app, ["firewall", "revoke", "22/tcp"], env=cli.env)

    assert result.exit_code == 1
    assert "block SSH" in _text(result.stdout)
    assert cli.ufw.rules == {"22/tcp": "SSH"}
    record = cli.operations[-1]
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["rc"] == 1  # type: ignore[index]
    assert record["result"]["context"]["kind"] == "validation"  # type: ignore[index]


def test_firewall_invalid_spec(cli: CliHost) -> None:
    result = runner.invoke(app, ["firewall", "allow", "https"], env=cli.env)

    assert result.exit_code == 1
    assert cli.executor.argvs("ufw", "allow") == []


def test_lock_contention_exits_cleanly(cli: CliHost) -> None:
    locks = LockManager(cli.root / "run")

    with locks.host_lock():
        result = runner.invoke(
            app, ["--lock-timeout", "0.1", "firewall", "allow", "8443/tcp"], env=cli.env
        )

    assert result.exit_code == 1
    assert "another hardenctl run" in _text(result.stdout)
    assert "8443/tcp" not in cli.ufw.rules


def test_ssh_apply_moves_port(cli: CliHost) -> None:
    result = runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes", "--json"], env=cli.env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["status"] == "committed"
    assert payload["old_ports"] == [22]
    sshd = (cli.root / "etc" / "ssh" / "sshd_config").read_text(encoding="utf-8")
    assert "Port 2222" in sshd
    assert "Port 22\n" not in sshd
    assert cli.ufw.rules == {"2222/tcp": "SSH"}
    assert cli.operations[-1]["result"]["status"] == "success"  # type: ignore[index]


def test_ssh_apply_rejected_config_exits_1(cli: CliHost) -> None:
    cli.executor.on("sshd", "-t", reply=Reply(255, stderr="Bad configuration option"))

    result = runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes"], env=cli.env)

    assert result.exit_code == 1
    assert "sshd rejected" in _text(result.stdout)
    assert cli.ufw.rules == {"22/tcp": "SSH"}


def test_ssh_apply_lockout_exits_2(cli: CliHost) -> None:
    cli.executor.on("systemctl", "restart", "ssh", reply=Reply(1, stderr="failed"))

    result = runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes"], env=cli.env)

    assert result.exit_code == 2
    assert "console" in _text(result.stdout)
    assert (cli.root / "state" / "snapshots" / "ssh.snapshot").exists()


def test_ssh_apply_failed_retire_exits_1(cli: CliHost, monkeypatch: pytest.MonkeyPatch) -> None:
    sshd_path = cli.root / "etc" / "ssh" / "sshd_config"

    def answers_while_dual(_self: object, _host: str, port: int) -> bool:
        ports = SshdConfig.parse(sshd_path.read_bytes()).ports()
        return len(ports) == 2 and port in ports

    monkeypatch.setattr("hardenctl.network.PortScanner.reachable", answers_while_dual)

    result = runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes"], env=cli.env)

    assert result.exit_code == 1
    assert SshdConfig.parse(sshd_path.read_bytes()).ports() == [22, 2222]
    record = cli.operations[-1]
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["context"]["kind"] == "liveness"  # type: ignore[index]


def test_lockout_copy_blocks_changes_until_restored(cli: CliHost) -> None:
    """After a failed rollback the saved copy is kept until an operator restores it."""
    sshd_path = cli.root / "etc" / "ssh" / "sshd_config"
    saved = cli.root / "state" / "snapshots" / "ssh.snapshot"
    cli.executor.on("systemctl", "restart", "ssh", reply=Reply(1, stderr="failed"))
    runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes"], env=cli.env)
    sshd_path.write_text("Port 9999\n", encoding="utf-8")
    cli.executor.on("systemctl", "restart", "ssh", reply=Reply())

    blocked = runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes"], env=cli.env)

    assert blocked.exit_code == 2
    assert "hardenctl snapshots restore ssh" in _text(blocked.stdout)
    assert saved.read_text(encoding="utf-8") == SSHD_CONFIG

    restored = runner.invoke(app, ["snapshots", "restore", "ssh"], env=cli.env)

    assert restored.exit_code == 0, restored.stdout
    assert sshd_path.read_text(encoding="utf-8") == SSHD_CONFIG
    assert not saved.exists()
    assert cli.operations[-1]["command"] == "snapshots restore"

    again = runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes"], env=cli.env)
    assert again.exit_code == 0, again.stdout


def test_snapshots_list_and_clear(cli: CliHost) -> None:
    cli.executor.on("systemctl", "restart", "ssh", reply=Reply(1, stderr="failed"))
    runner.invoke(app, ["ssh", "apply", "--port", "2222", "--yes"], env=cli.env)

    listed = runner.invoke(app, ["snapshots", "list", "--json"], env=cli.env)

    assert listed.exit_code == 0, listed.stdout
    (entry,) = json.loads(listed.stdout)["snapshots"]
    assert entry["subsystem"] == "ssh"
    assert entry["path"] == str(cli.root / "etc" / "ssh" / "sshd_config")

    cleared = runner.invoke(app, ["snapshots", "clear", "ssh"], env=cli.env)

    assert cleared.exit_code == 0, cleared.stdout
    after = runner.invoke(app, ["snapshots", "list", "--json"], env=cli.env)
    assert json.loads(after.stdout) == {"snapshots": []}
    missing = runner.invoke(app, ["snapshots", "restore", "ssh"], env=cli.env)
    assert missing.exit_code == 1


def test_users_add_admin(cli: CliHost) -> None:
    cli.executor.on("id", "-u", "alice", reply=Reply(1))

    result = runner.invoke(
        app, ["users", "add", "alice", "--admin", "--password", "correct-horse"], env=cli.env
    )

    assert result.exit_code == 0, result.stdout
    assert "Created admin account alice" in _text(result.stdout)
    assert (cli.root / "etc" / "sudoers.d" / "alice").exists()
    assert cli.operations[-1]["args"] == {  # type: ignore[index]
        "username": "alice",
        "admin": True,
        "password_set": True,
    }


def test_services_plan_skips_wss_without_certificate(cli: CliHost) -> None:
    result = runner.invoke(
        app,
        [
            "services",
            "plan",
            "--domain",
            "vpn.example.com",
            "--password",
            "brook-secret",
            "--socks5-user",
            "user_ab12c",
            "--server-ip",
            "1.2.3.4",
            "--json",
        ],
        env=cli.env,
    )

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert [item["name"] for item in payload["services"]] == ["vpn", "socks5"]
    assert payload["profiles"] == ["vpn", "socks5"]
    assert payload["skipped"][0]["name"] == "wss"
    assert payload["skipped"][0]["reason"] == "missing certificate"


def test_services_plan_password_from_environment(cli: CliHost) -> None:
    env = {**cli.env, "BROOK_PASSWORD": "short"}

    result = runner.invoke(app, ["services", "plan", "-s", "vpn"], env=env)

    assert result.exit_code == 1
    assert "at least 6 characters" in _text(result.stdout)


def test_services_up_starts_vpn(cli: CliHost) -> None:
    result = runner.invoke(
        app,
        ["services", "up", "-s", "vpn", "--password", "brook-secret", "--json"],
        env=cli.env,
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["started"] is True
    assert cli.ufw.rules["7799/tcp"] == "Brook VPN"
    (up,) = cli.executor.argvs("docker", "compose")
    assert up[-2:] == ("up", "-d")


def test_wait_dns_timeout_exits_1(cli: CliHost) -> None:
    cli.executor.on("dig", reply=Reply(stdout="5.6.7.8\n"))

    result = runner.invoke(
        app,
        ["wait", "dns", "vpn.example.com", "--expected", "1.2.3.4", "--json"],
        env=cli.env,
    )

    assert result.exit_code == 1
    payload = _extract_json(result.stdout)
    assert payload["status"] == "timed-out"
    assert payload["observation"]["value"] == "5.6.7.8"


def test_wait_port_open_is_satisfied(cli: CliHost) -> None:
    result = runner.invoke(app, ["wait", "port-open", "127.0.0.1:22"], env=cli.env)

    assert result.exit_code == 0
    assert "satisfied" in _text(result.stdout)


def test_wait_rejects_unknown_kind(cli: CliHost) -> None:
    result = runner.invoke(app, ["wait", "socket", "x"], env=cli.env)

    assert result.exit_code == 1
    assert "Unknown condition kind" in _text(result.stdout)


def test_cert_verify_missing_certificate(cli: CliHost) -> None:
    result = runner.invoke(app, ["cert", "verify", "vpn.example.com", "--json"], env=cli.env)

    assert result.exit_code == 1
    payload = _extract_json(result.stdout)
    assert payload["status"] == "error"
    assert cli.operations[-1]["result"]["status"] == "error"  # type: ignore[index]


def test_cert_issue_dns_mismatch_exits_1(cli: CliHost) -> None:
    cli.executor.on("dig", reply=Reply(stdout="5.6.7.8\n"))

    result = runner.invoke(
        app,
        [
            "cert",
            "issue",
            "vpn.example.com",
            "--email",
            "ops@example.com",
            "--address",
            "1.2.3.4",
        ],
        env=cli.env,
    )

    assert result.exit_code == 1
    assert "resolves to 5.6.7.8" in _text(result.stdout)
    assert cli.executor.argvs("certbot") == []
