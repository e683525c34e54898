"""Readiness conditions and the bounded prober that waits on them.

A :class:`ReadinessCondition` is a stateless descriptor: what to observe, the
value that counts as ready, and the retry budget. The prober evaluates it,
sleeping ``interval`` seconds between attempts, and reports
:attr:`ReadinessStatus.TIMED_OUT` on exhaustion instead of raising so callers
decide whether a timeout is fatal.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import CommandError, ReadinessTimeout
from .executor import CommandExecutor
from .network import DnsResolver, PortScanner
from .tls import load_certificate


class ConditionKind(str, Enum):
    """Observable predicates supported by the prober."""

    PORT_OPEN = "port-open"
    PORT_FREE = "port-free"
    DNS_MATCHES = "dns-matches"
    FILE_EXISTS = "file-exists"
    PROCESS_RUNNING = "process-running"


@dataclass(frozen=True)
class ReadinessCondition:
    """Declarative (kind, target, expected, budget) readiness descriptor."""

    kind: ConditionKind
    target: str
    expected: str | None = None
    max_attempts: int = 1
    interval: float = 0.0
    reason: str = ""

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.interval < 0:
            raise ValueError("interval must not be negative.")

    @classmethod
    def port_open(
        cls,
        host: str,
        port: int,
        *,
        attempts: int = 1,
        interval: float = 0.0,
        reason: str | None = None,
    ) -> ReadinessCondition:
        """Ready when a TCP connection to *host*:*port* succeeds."""
        return cls(
            ConditionKind.PORT_OPEN,
            f"{host}:{port}",
            "open",
            attempts,
            interval,
            reason or f"port {port} not reachable on {host}",
        )

    @classmethod
    def port_free(
        cls,
        port: int,
        protocol: str = "tcp",
        *,
        attempts: int = 1,
        interval: float = 0.0,
        reason: str = "port in use",
    ) -> ReadinessCondition:
        """Ready when nothing listens on *port*/*protocol*."""
        return cls(
            ConditionKind.PORT_FREE, f"{port}/{protocol}", "free", attempts, interval, reason
        )

    @classmethod
    def dns_matches(
        cls,
        name: str,
        address: str,
        *,
        attempts: int = 1,
        interval: float = 0.0,
        reason: str | None = None,
    ) -> ReadinessCondition:
        """Ready when *name* resolves to exactly *address*."""
        return cls(
            ConditionKind.DNS_MATCHES,
            name,
            address,
            attempts,
            interval,
            reason or f"{name} does not resolve to {address}",
        )

    @classmethod
    def file_exists(
        cls,
        path: Path | str,
        *,
        certificate: bool = False,
        attempts: int = 1,
        interval: float = 0.0,
        reason: str | None = None,
    ) -> ReadinessCondition:
        """Ready when *path* exists (and parses as X.509 when *certificate*)."""
        return cls(
            ConditionKind.FILE_EXISTS,
            str(path),
            "certificate" if certificate else None,
            attempts,
            interval,
            reason or f"{path} missing",
        )

    @classmethod
    def process_running(
        cls,
        unit: str,
        *,
        attempts: int = 1,
        interval: float = 0.0,
        reason: str | None = None,
    ) -> ReadinessCondition:
        """Ready when ``systemctl is-active`` reports *unit* as active."""
        return cls(
            ConditionKind.PROCESS_RUNNING,
            unit,
            "active",
            attempts,
            interval,
            reason or f"{unit} is not running",
        )

    def describe(self) -> str:
        """Return a short label for logs and console output."""
        if self.expected and self.kind is not ConditionKind.FILE_EXISTS:
            return f"{self.kind.value} {self.target} ({self.expected})"
        return f"{self.kind.value} {self.target}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "target": self.target,
            "expected": self.expected,
            "max_attempts": self.max_attempts,
            "interval": self.interval,
            "reason": self.reason,
        }


class ObservationState(str, Enum):
    """Outcome of one evaluation."""

    MATCH = "match"
    MISMATCH = "mismatch"
    ABSENT = "absent"
    ERROR = "error"


@dataclass(frozen=True)
class Observation:
    """What the prober saw on a single attempt."""

    state: ObservationState
    value: str | None = None
    detail: str = ""

    @property
    def matched(self) -> bool:
        return self.state is ObservationState.MATCH


class ReadinessStatus(str, Enum):
    """Final status of a wait."""

    SATISFIED = "satisfied"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True)
class ReadinessResult:
    """Outcome of :meth:`ReadinessProber.wait`."""

    condition: ReadinessCondition
    status: ReadinessStatus
    attempts: int
    observation: Observation
    elapsed: float

    @property
    def satisfied(self) -> bool:
        """Return ``True`` when the condition was met."""
        return self.status is ReadinessStatus.SATISFIED

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "condition": self.condition.to_dict(),
            "status": self.status.value,
            "attempts": self.attempts,
            "observation": {
                "state": self.observation.state.value,
                "value": self.observation.value,
                "detail": self.observation.detail,
            },
            "elapsed": round(self.elapsed, 3),
        }


@dataclass(slots=True)
class ReadinessProber:
    """Evaluate :class:`ReadinessCondition` objects with bounded retries."""

    executor: CommandExecutor
    scanner: PortScanner
    resolver: DnsResolver
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    systemctl_bin: str = "systemctl"
    _observers: dict[ConditionKind, Callable[[ReadinessCondition], Observation]] = field(
        init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._observers = {
            ConditionKind.PORT_OPEN: self._observe_port_open,
            ConditionKind.PORT_FREE: self._observe_port_free,
            ConditionKind.DNS_MATCHES: self._observe_dns,
            ConditionKind.FILE_EXISTS: self._observe_file,
            ConditionKind.PROCESS_RUNNING: self._observe_process,
        }

    def check(self, condition: ReadinessCondition) -> Observation:
        """Evaluate *condition* once."""
        observer = self._observers[condition.kind]
        try:
            return observer(condition)
        except (CommandError, OSError, ValueError) as exc:
            return Observation(ObservationState.ERROR, detail=str(exc))

    def wait(
        self,
        condition: ReadinessCondition,
        *,
        timeout: float | None = None,
    ) -> ReadinessResult:
        """Poll *condition* until it holds, its budget runs out or *timeout* passes."""
        start = self.clock()
        deadline = start + timeout if timeout is not None else None
        attempts = 0
        observation = Observation(ObservationState.ABSENT, detail="not evaluated")
        while attempts < condition.max_attempts:
            attempts += 1
            observation = self.check(condition)
            if observation.matched:
                return ReadinessResult(
                    condition,
                    ReadinessStatus.SATISFIED,
                    attempts,
                    observation,
                    self.clock() - start,
                )
            if attempts >= condition.max_attempts:
                break
            delay = condition.interval
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            if delay > 0:
                self.sleep(delay)
        return ReadinessResult(
            condition,
            ReadinessStatus.TIMED_OUT,
            attempts,
            observation,
            self.clock() - start,
        )

    def require(
        self,
        condition: ReadinessCondition,
        *,
        timeout: float | None = None,
    ) -> ReadinessResult:
        """Like :meth:`wait` but raise :class:`ReadinessTimeout` when unmet."""
        result = self.wait(condition, timeout=timeout)
        if not result.satisfied:
            seen = result.observation.value or result.observation.state.value
            raise ReadinessTimeout(
                f"{condition.describe()} not satisfied after {result.attempts} attempt(s) "
                f"(last observed: {seen}).",
                remediation=f"Resolve the blocking condition ({condition.reason}) and re-run.",
            )
        return result

    # ------------------------------------------------------------------
    def _observe_port_open(self, condition: ReadinessCondition) -> Observation:
        host, _, port = condition.target.rpartition(":")
        if self.scanner.reachable(host or "127.0.0.1", int(port)):
            return Observation(ObservationState.MATCH, "open")
        return Observation(ObservationState.ABSENT, detail="connection refused or timed out")

    def _observe_port_free(self, condition: ReadinessCondition) -> Observation:
        port_text, _, protocol = condition.target.partition("/")
        port = int(port_text)
        protocol = protocol or "tcp"
        if not self.scanner.listening(port, protocol):
            return Observation(ObservationState.MATCH, "free")
        owner = self.scanner.owner(port, protocol)
        return Observation(
            ObservationState.MISMATCH,
            owner or "in use",
            detail=f"port {port}/{protocol} held by {owner or 'an unknown process'}",
        )

    def _observe_dns(self, condition: ReadinessCondition) -> Observation:
        answers = self.resolver.resolve_a(condition.target)
        if not answers:
            return Observation(
                ObservationState.ABSENT, detail=f"{condition.target} has no A record"
            )
        value = ", ".join(answers)
        if set(answers) == {condition.expected}:
            return Observation(ObservationState.MATCH, value)
        return Observation(
            ObservationState.MISMATCH,
            value,
            detail=f"{condition.target} resolves to {value}, expected {condition.expected}",
        )

    def _observe_file(self, condition: ReadinessCondition) -> Observation:
        path = Path(condition.target)
        if not path.is_file():
            return Observation(ObservationState.ABSENT, detail=f"{path} does not exist")
        if condition.expected == "certificate":
            try:
                load_certificate(path)
            except ValueError as exc:
                return Observation(
                    ObservationState.MISMATCH, detail=f"{path} is not a certificate: {exc}"
                )
        return Observation(ObservationState.MATCH, str(path))

    def _observe_process(self, condition: ReadinessCondition) -> Observation:
        result = self.executor.run([self.systemctl_bin, "is-active", condition.target], timeout=10)
        state = result.stdout.strip() or "unknown"
        if result.ok and state == condition.expected:
            return Observation(ObservationState.MATCH, state)
        return Observation(
            ObservationState.MISMATCH, state, detail=f"{condition.target} is {state}"
        )


__all__ = [
    "ConditionKind",
    "Observation",
    "ObservationState",
    "ReadinessCondition",
    "ReadinessProber",
    "ReadinessResult",
    "ReadinessStatus",
]
