"""SSH daemon reconfiguration with a dual-port overlap window.

Changing the SSH port is the one change that can cut the operator off. The
manager therefore never swaps ports in one step: it first opens the new port
in the firewall, then runs sshd on *both* ports and proves both answer, asks
for confirmation that the new path works, and only then retires the old port
from sshd and from the firewall.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .accounts import USERNAME_RE
from .config import SSHConfig
from .errors import CommandError, HardenctlError, ValidationError
from .executor import CommandExecutor
from .firewall import FirewallManager, FirewallRule
from .logging import OperationScope
from .readiness import ReadinessCondition
from .snapshots import FileTarget
from .templates import TemplateEngine
from .transition import MutationPlan, MutationStep, TransitionController, TransitionResult

DEFAULT_PORT = 22

# Insertion order for keys absent from the file.
OWNED_KEYS = (
    "Port",
    "PermitRootLogin",
    "PasswordAuthentication",
    "PubkeyAuthentication",
    "PermitEmptyPasswords",
    "AllowTcpForwarding",
    "AllowStreamLocalForwarding",
    "GatewayPorts",
    "PermitTunnel",
    "X11Forwarding",
    "ClientAliveInterval",
    "MaxAuthTries",
    "LoginGraceTime",
    "AllowUsers",
)


def _yes(flag: bool) -> str:
    return "yes" if flag else "no"


@dataclass(frozen=True)
class SshSettings:
    """Desired values for the sshd keys hardenctl owns."""

    port: int
    allow_users: tuple[str, ...] = ()
    permit_root_login: bool = False
    password_authentication: bool = True
    pubkey_authentication: bool = True
    tunneling: bool = True
    x11_forwarding: bool = False
    client_alive_interval: int = 300
    max_auth_tries: int = 4
    login_grace_time: int = 60

    def check(self) -> None:
        """Raise :class:`ValidationError` for values sshd would refuse."""
        if not 1 <= self.port <= 65535:
            raise ValidationError(f"SSH port {self.port} is outside 1-65535.")
        for user in self.allow_users:
            if not USERNAME_RE.match(user):
                raise ValidationError(
                    f"Invalid AllowUsers entry {user!r}; use 3-32 letters, digits or underscores."
                )
        if not self.permit_root_login and self.allow_users and set(self.allow_users) <= {"root"}:
            raise ValidationError(
                "Root login is disabled but root is the only allowed user.",
                remediation="Add a non-root administrator to AllowUsers.",
            )

    def directives(self) -> dict[str, list[str]]:
        """Return owned keys (except ``Port``) mapped to their values.

        ``AllowUsers`` is only included when users were given, so an existing
        list is never wiped.
        """
        tunnel = _yes(self.tunneling)
        values = {
            "PermitRootLogin": [_yes(self.permit_root_login)],
            "PasswordAuthentication": [_yes(self.password_authentication)],
            "PubkeyAuthentication": [_yes(self.pubkey_authentication)],
            "PermitEmptyPasswords": ["no"],
            "AllowTcpForwarding": [tunnel],
            "AllowStreamLocalForwarding": [tunnel],
            "GatewayPorts": [tunnel],
            "PermitTunnel": [tunnel],
            "X11Forwarding": [_yes(self.x11_forwarding)],
            "ClientAliveInterval": [str(self.client_alive_interval)],
            "MaxAuthTries": [str(self.max_auth_tries)],
            "LoginGraceTime": [str(self.login_grace_time)],
        }
        if self.allow_users:
            values["AllowUsers"] = [" ".join(self.allow_users)]
        return values


def _keyword(line: str) -> str | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    token = re.split(r"[\s=]+", stripped, maxsplit=1)[0]
    return token.lower() or None


def _value(line: str) -> str:
    parts = re.split(r"[\s=]+", line.strip(), maxsplit=1)
    return parts[1].strip() if len(parts) > 1 else ""


class SshdConfig:
    """Line-preserving editor for ``sshd_config``.

    Comments, unknown directives, ``Include`` lines and ``Match`` blocks are
    kept verbatim. Only the global section (before the first ``Match``) is
    edited.
    """

    def __init__(self, lines: Sequence[str]) -> None:
        self._lines = list(lines)

    @classmethod
    def parse(cls, content: bytes | str | None) -> SshdConfig:
        if content is None:
            return cls([])
        text = content.decode("utf-8") if isinstance(content, bytes) else content
        return cls(text.splitlines())

    def render(self) -> str:
        return "\n".join(self._lines) + "\n" if self._lines else ""

    def encode(self) -> bytes:
        return self.render().encode("utf-8")

    def _global_end(self) -> int:
        for index, line in enumerate(self._lines):
            if _keyword(line) == "match":
                return index
        return len(self._lines)

    def _insert_at(self) -> int:
        end = self._global_end()
        for index, line in enumerate(self._lines[:end]):
            if _keyword(line) == "include":
                return index
        return end

    def get(self, key: str) -> list[str]:
        """Return every global value of *key* (case-insensitive)."""
        wanted = key.lower()
        return [
            _value(line)
            for line in self._lines[: self._global_end()]
            if _keyword(line) == wanted
        ]

    def ports(self) -> list[int]:
        """Return the configured ports, defaulting to 22."""
        found: list[int] = []
        for value in self.get("Port"):
            if value.isdigit() and int(value) not in found:
                found.append(int(value))
        return found or [DEFAULT_PORT]

    def allowed_users(self) -> list[str]:
        users: list[str] = []
        for value in self.get("AllowUsers"):
            users.extend(value.split())
        return users

    def set(self, key: str, values: Sequence[str]) -> SshdConfig:
        """Return a copy where global *key* lines are replaced by *values*.

        The first existing occurrence is replaced in place and later ones are
        dropped; a key that is absent is inserted before the first ``Include``
        or ``Match`` line.
        """
        wanted = key.lower()
        end = self._global_end()
        new_lines = [f"{key} {value}" for value in values]
        result: list[str] = []
        placed = False
        for index, line in enumerate(self._lines):
            if index < end and _keyword(line) == wanted:
                if not placed:
                    result.extend(new_lines)
                    placed = True
                continue
            result.append(line)
        if not placed and new_lines:
            updated = SshdConfig(result)
            at = updated._insert_at()
            result[at:at] = new_lines
        return SshdConfig(result)

    def apply(self, settings: SshSettings, ports: Sequence[int]) -> SshdConfig:
        """Return a copy carrying *settings* and listening on *ports*."""
        config = self.set("Port", [str(port) for port in ports])
        directives = settings.directives()
        for key in OWNED_KEYS:
            if key in directives:
                config = config.set(key, directives[key])
        return config


@dataclass(slots=True)
class SshdSubsystem(FileTarget):
    """``sshd_config`` as a transition subsystem."""

    executor: CommandExecutor | None = None
    sshd_bin: str = "sshd"
    service: str = "ssh"
    socket_unit: str = "ssh.socket"

    def _exec(self) -> CommandExecutor:
        if self.executor is None:
            raise RuntimeError("SshdSubsystem requires a command executor.")
        return self.executor

    def validate(self, staged: bytes | None) -> None:
        """Check ports and users, then run ``sshd -t`` on the staged file."""
        if not staged:
            raise ValidationError("Refusing to install an empty sshd_config.")
        config = SshdConfig.parse(staged)
        for value in config.get("Port"):
            if not value.isdigit() or not 1 <= int(value) <= 65535:
                raise ValidationError(f"sshd_config has an invalid Port value {value!r}.")
        executor = self._exec()
        for user in config.allowed_users():
            name = user.split("@", 1)[0]
            if any(char in name for char in "*?"):
                continue
            if not executor.run(["id", "-u", name], timeout=10).ok:
                raise ValidationError(
                    f"AllowUsers lists {name}, which does not exist on this host.",
                    remediation=f"Create {name} first (hardenctl users add {name}).",
                )
        fd, tmp_name = tempfile.mkstemp(prefix="sshd_config.", suffix=".staged")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(staged)
            tmp_path.chmod(0o600)
            outcome = executor.run([self.sshd_bin, "-t", "-f", str(tmp_path)], timeout=30)
        finally:
            tmp_path.unlink(missing_ok=True)
        if not outcome.ok:
            raise ValidationError(
                f"sshd rejected the new configuration: "
                f"{outcome.stderr.strip() or outcome.stdout.strip() or 'no output'}"
            )

    def activate(self) -> None:
        """Disable socket activation so ``Port`` lines apply, then restart sshd."""
        executor = self._exec()
        if self.socket_unit:
            if executor.run(["systemctl", "is-active", self.socket_unit]).ok:
                executor.run(["systemctl", "stop", self.socket_unit], check=True)
            if executor.run(["systemctl", "is-enabled", self.socket_unit]).ok:
                executor.run(["systemctl", "disable", self.socket_unit], check=True)
        executor.run(["systemctl", "restart", self.service], check=True)

    def live_ports(self) -> list[int]:
        return SshdConfig.parse(self.read()).ports()


@dataclass(slots=True)
class SshChangeReport:
    """Outcome of :meth:`SshAccessManager.reconfigure`."""

    old_ports: list[int]
    new_port: int
    status: str = "pending"
    transitions: list[TransitionResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: HardenctlError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, object]:
        return {
            "old_ports": list(self.old_ports),
            "new_port": self.new_port,
            "status": self.status,
            "transitions": [item.to_dict() for item in self.transitions],
            "warnings": list(self.warnings),
            "error": self.error.to_dict() if self.error else None,
        }


ConfirmFunc = Callable[[int, Sequence[int]], bool]


@dataclass(slots=True)
class SshAccessManager:
    """Move sshd to new settings without ever closing the current path first."""

    subsystem: SshdSubsystem
    firewall: FirewallManager
    controller: TransitionController
    config: SSHConfig
    templates: TemplateEngine

    def reconfigure(
        self,
        settings: SshSettings,
        *,
        confirm: ConfirmFunc | None = None,
        op: OperationScope | None = None,
    ) -> SshChangeReport:
        """Apply *settings* through the dual-port window.

        *confirm* is asked whether the new port works once both ports are
        proven live; ``None`` accepts the automated probe as confirmation.
        """
        settings.check()
        self.controller.store.require_clean(self.subsystem.subsystem)
        old_ports = self.subsystem.live_ports()
        new_port = settings.port
        retired = [port for port in old_ports if port != new_port]
        report = SshChangeReport(old_ports=old_ports, new_port=new_port)

        new_rule = FirewallRule(new_port, "tcp", "SSH")
        opened = not self.firewall.list_rules().allows(new_port, "tcp")
        if opened:
            fw = self.firewall.allow([new_rule], op=op)
            report.transitions.append(fw)
            if not fw.committed:
                report.status = fw.status.value
                report.error = fw.error
                return report

        dual_ports = [*old_ports, new_port] if new_port not in old_ports else list(old_ports)
        dual = self.controller.apply(
            self.subsystem,
            self._plan(
                "sshd dual-port" if retired else "sshd settings",
                settings,
                dual_ports,
                liveness_ports=dual_ports,
                recovery_ports=old_ports,
            ),
            op=op,
        )
        report.transitions.append(dual)
        report.warnings.extend(dual.warnings)
        if not dual.committed:
            report.status = dual.status.value
            report.error = dual.error
            if opened:
                revoke = self.firewall.revoke([new_rule], op=op)
                report.transitions.append(revoke)
                if not revoke.committed:
                    report.warnings.append(
                        f"Could not close port {new_port} again: {revoke.error}"
                    )
            return report

        if not retired:
            report.status = "committed"
            return report

        if confirm is not None and not confirm(new_port, retired):
            report.status = "dual-path"
            report.warnings.append(
                f"New port {new_port} not confirmed; port(s) "
                f"{', '.join(str(port) for port in retired)} remain open. Re-run to retire them."
            )
            return report

        final = self.controller.apply(
            self.subsystem,
            self._plan(
                "sshd retire old port",
                settings,
                [new_port],
                liveness_ports=[new_port],
                recovery_ports=[new_port],
            ),
            op=op,
        )
        report.transitions.append(final)
        report.warnings.extend(final.warnings)
        if not final.committed:
            report.status = "dual-path"
            report.error = final.error
            report.warnings.append(
                f"Retiring port(s) {', '.join(str(p) for p in retired)} failed and was rolled "
                f"back: {final.error}"
            )
            return report

        revoke = self.firewall.revoke([FirewallRule(port, "tcp") for port in retired], op=op)
        report.transitions.append(revoke)
        if not revoke.committed:
            report.warnings.append(f"Old SSH port rule(s) left in the firewall: {revoke.error}")
        report.status = "committed"
        return report

    # ------------------------------------------------------------------
    def _plan(
        self,
        description: str,
        settings: SshSettings,
        ports: Sequence[int],
        *,
        liveness_ports: Sequence[int],
        recovery_ports: Sequence[int],
    ) -> MutationPlan:
        budget = self.config.liveness
        host = self.config.probe_host

        def stage(content: bytes | None) -> bytes | None:
            return SshdConfig.parse(content).apply(settings, ports).encode()

        def probes(port_list: Sequence[int]) -> tuple[ReadinessCondition, ...]:
            return (
                ReadinessCondition.process_running(
                    self.config.service, attempts=budget.attempts, interval=budget.interval
                ),
                *(
                    ReadinessCondition.port_open(
                        host, port, attempts=budget.attempts, interval=budget.interval
                    )
                    for port in port_list
                ),
            )

        steps = [MutationStep(f"set Port {' '.join(map(str, ports))} and owned keys", stage)]
        if self.config.fail2ban.enabled:
            steps.append(
                MutationStep(
                    "update fail2ban sshd jail",
                    lambda _committed: self._update_fail2ban(ports),
                    reversible=False,
                )
            )
        return MutationPlan(
            description,
            tuple(steps),
            liveness=probes(liveness_ports),
            recovery=probes(recovery_ports),
            liveness_timeout=self.config.liveness_timeout,
        )

    def _update_fail2ban(self, ports: Sequence[int]) -> None:
        jail = self.config.fail2ban
        changed = self.templates.render_to_path(
            "fail2ban/jail.local.j2",
            jail.jail_path,
            {
                "port": ",".join(str(port) for port in ports),
                "maxretry": jail.maxretry,
                "findtime": jail.findtime,
                "bantime": jail.bantime,
            },
            mode=0o644,
        )
        if changed and self.subsystem.executor is not None:
            result = self.subsystem.executor.run(["systemctl", "restart", "fail2ban"])
            if not result.ok:
                raise CommandError(result.describe(), argv=result.argv, exit_code=result.exit_code)


__all__ = [
    "OWNED_KEYS",
    "SshAccessManager",
    "SshChangeReport",
    "SshSettings",
    "SshdConfig",
    "SshdSubsystem",
]
