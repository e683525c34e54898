"""ufw integration expressed as a transition subsystem.

The firewall's state is modelled as ``{enabled, rules}`` where ``rules`` is
the list of simple allow rules keyed by ``(port, protocol)``. The subsystem
serialises that state to YAML so it can be snapshotted and restored like any
configuration file; writing a state applies the difference through ``ufw``.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

import yaml

from .errors import CommandError, ValidationError
from .executor import CommandExecutor
from .logging import OperationScope
from .transition import MutationPlan, MutationStep, TransitionController, TransitionResult

PROTOCOLS = ("tcp", "udp", "any")


@dataclass(frozen=True, order=True)
class FirewallRule:
    """Inbound allow rule for one port and protocol."""

    port: int
    protocol: str = "tcp"
    comment: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not 1 <= self.port <= 65535:
            raise ValidationError(f"Port {self.port} is outside 1-65535.")
        if self.protocol not in PROTOCOLS:
            raise ValidationError(
                f"Unsupported protocol {self.protocol!r}; expected one of {', '.join(PROTOCOLS)}."
            )

    @property
    def key(self) -> tuple[int, str]:
        return (self.port, self.protocol)

    @property
    def spec(self) -> str:
        """Return the ufw port spec (``22/tcp`` or ``1080``)."""
        return str(self.port) if self.protocol == "any" else f"{self.port}/{self.protocol}"

    def admits(self, port: int, protocol: str = "tcp") -> bool:
        """Return ``True`` when this rule lets *port*/*protocol* in."""
        return self.port == port and self.protocol in (protocol, "any")

    @classmethod
    def parse(cls, spec: str, comment: str = "") -> FirewallRule:
        """Parse ``"2222/tcp"`` or ``"1080"``."""
        port_text, _, protocol = spec.strip().partition("/")
        try:
            port = int(port_text)
        except ValueError as exc:
            raise ValidationError(f"Invalid port specification {spec!r}.") from exc
        return cls(port, protocol or "any", comment)

    def to_dict(self) -> dict[str, object]:
        return {"port": self.port, "protocol": self.protocol, "comment": self.comment}


@dataclass(frozen=True)
class FirewallState:
    """Snapshot-able view of the firewall."""

    enabled: bool
    rules: tuple[FirewallRule, ...]

    def allows(self, port: int, protocol: str = "tcp") -> bool:
        return any(rule.admits(port, protocol) for rule in self.rules)

    def with_rules(self, rules: Iterable[FirewallRule]) -> FirewallState:
        merged = {rule.key: rule for rule in self.rules}
        for rule in rules:
            merged[rule.key] = rule
        return FirewallState(self.enabled, tuple(sorted(merged.values())))

    def without_rules(self, rules: Iterable[FirewallRule]) -> FirewallState:
        drop = {rule.key for rule in rules}
        return FirewallState(
            self.enabled, tuple(rule for rule in self.rules if rule.key not in drop)
        )

    def encode(self) -> bytes:
        payload = {
            "enabled": self.enabled,
            "rules": [rule.to_dict() for rule in sorted(self.rules)],
        }
        return yaml.safe_dump(payload, sort_keys=False).encode("utf-8")

    @classmethod
    def decode(cls, content: bytes | None) -> FirewallState:
        if not content:
            return cls(False, ())
        data = yaml.safe_load(content.decode("utf-8")) or {}
        rules = tuple(
            FirewallRule(int(item["port"]), str(item["protocol"]), str(item.get("comment") or ""))
            for item in data.get("rules") or ()
        )
        return cls(bool(data.get("enabled")), tuple(sorted(rules)))


@dataclass(slots=True)
class UfwFirewall:
    """Thin wrapper around the ``ufw`` command."""

    executor: CommandExecutor
    ufw_bin: str = "ufw"
    default_incoming: str = "deny"
    default_outgoing: str = "allow"

    def _run(self, *args: str) -> str:
        result = self.executor.run([self.ufw_bin, *args])
        if not result.ok:
            raise CommandError(result.describe(), argv=result.argv, exit_code=result.exit_code)
        return result.stdout

    def enabled(self) -> bool:
        """Return ``True`` when ufw reports ``Status: active``."""
        output = self._run("status")
        return any(line.strip().lower() == "status: active" for line in output.splitlines())

    def rules(self) -> list[FirewallRule]:
        """Return the simple port allow rules from ``ufw show added``."""
        found: list[FirewallRule] = []
        for line in self._run("show", "added").splitlines():
            parts = line.split(maxsplit=3)
            if len(parts) < 3 or parts[0] != "ufw" or parts[1] != "allow":
                continue
            if not parts[2][:1].isdigit():
                continue
            comment = ""
            if len(parts) == 4 and parts[3].startswith("comment "):
                comment = parts[3][len("comment ") :].strip().strip("'\"")
            try:
                found.append(FirewallRule.parse(parts[2], comment))
            except ValidationError:
                continue
        return found

    def state(self) -> FirewallState:
        """Return the current :class:`FirewallState`."""
        return FirewallState(self.enabled(), tuple(sorted(self.rules())))

    def allow(self, rule: FirewallRule) -> None:
        args = ["allow", rule.spec]
        if rule.comment:
            args += ["comment", rule.comment]
        self._run(*args)

    def delete(self, rule: FirewallRule) -> None:
        self._run("delete", "allow", rule.spec)

    def enable(self) -> None:
        """Apply the default policies and enable ufw non-interactively."""
        self._run("default", self.default_incoming, "incoming")
        self._run("default", self.default_outgoing, "outgoing")
        self._run("--force", "enable")

    def disable(self) -> None:
        self._run("disable")


@dataclass(slots=True)
class FirewallSubsystem:
    """Transition target for the firewall rule set.

    ``protected_ports`` returns the ports sshd listens on right now; a staged
    state that is enabled but does not admit all of them is rejected so the
    firewall can never be the thing that locks the operator out.
    """

    firewall: UfwFirewall
    protected_ports: Callable[[], Iterable[int]] = lambda: ()
    subsystem: str = "firewall"

    def read(self) -> bytes | None:
        return self.firewall.state().encode()

    def write(self, content: bytes | None) -> None:
        """Apply the difference between the live state and *content*."""
        desired = FirewallState.decode(content)
        current = self.firewall.state()
        wanted = {rule.key: rule for rule in desired.rules}
        present = {rule.key: rule for rule in current.rules}
        for key, rule in present.items():
            if key not in wanted or wanted[key].comment != rule.comment:
                self.firewall.delete(rule)
        for key, rule in wanted.items():
            if key not in present or present[key].comment != rule.comment:
                self.firewall.allow(rule)
        if desired.enabled and not current.enabled:
            self.firewall.enable()
        elif current.enabled and not desired.enabled:
            self.firewall.disable()

    def validate(self, staged: bytes | None) -> None:
        state = FirewallState.decode(staged)
        if not state.enabled:
            return
        blocked = [port for port in self.protected_ports() if not state.allows(port, "tcp")]
        if blocked:
            joined = ", ".join(str(port) for port in blocked)
            raise ValidationError(
                f"Firewall change would block SSH on port(s) {joined}.",
                remediation="Allow the SSH port before enabling the firewall or removing rules.",
            )

    def activate(self) -> None:
        """ufw applies rule changes immediately; nothing to reload."""


@dataclass(slots=True)
class FirewallManager:
    """High-level firewall operations, each one a controlled transition."""

    subsystem: FirewallSubsystem
    controller: TransitionController

    def allow(
        self,
        rules: Sequence[FirewallRule],
        *,
        enable: bool = False,
        op: OperationScope | None = None,
    ) -> TransitionResult:
        """Add *rules* (and optionally enable the firewall)."""
        labels = ", ".join(rule.spec for rule in rules)

        def stage(content: bytes | None) -> bytes | None:
            state = FirewallState.decode(content).with_rules(rules)
            if enable:
                state = FirewallState(True, state.rules)
            return state.encode()

        plan = MutationPlan(f"allow {labels}", (MutationStep(f"allow {labels}", stage),))
        return self.controller.apply(self.subsystem, plan, op=op)

    def revoke(
        self,
        rules: Sequence[FirewallRule],
        *,
        op: OperationScope | None = None,
    ) -> TransitionResult:
        """Remove *rules*; rejected when that would block the SSH port."""
        labels = ", ".join(rule.spec for rule in rules)

        def stage(content: bytes | None) -> bytes | None:
            return FirewallState.decode(content).without_rules(rules).encode()

        plan = MutationPlan(f"revoke {labels}", (MutationStep(f"revoke {labels}", stage),))
        return self.controller.apply(self.subsystem, plan, op=op)

    def list_rules(self) -> FirewallState:
        return self.subsystem.firewall.state()

    @contextmanager
    def temporarily_open(
        self,
        rule: FirewallRule,
        *,
        op: OperationScope | None = None,
    ) -> Iterator[FirewallRule]:
        """Allow *rule* for the duration of the block and revoke it afterwards.

        A rule that was already present before the block is left in place.
        """
        preexisting = self.list_rules().allows(rule.port, rule.protocol)
        if not preexisting:
            self.allow([rule], op=op).raise_for_status()
        try:
            yield rule
        finally:
            if not preexisting:
                self.revoke([rule], op=op).raise_for_status()


__all__ = [
    "FirewallManager",
    "FirewallRule",
    "FirewallState",
    "FirewallSubsystem",
    "UfwFirewall",
]
