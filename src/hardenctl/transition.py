"""Transition controller: snapshot, stage, validate, commit, verify, roll back.

A transition moves one subsystem (sshd, the firewall, a sudoers drop-in) from
its current configuration to a new one:

1. snapshot the live content (released on every exit path);
2. apply the plan's reversible steps to an in-memory copy and validate the
   staged result; a validation failure aborts with nothing written;
3. write the staged content live and activate it;
4. wait for every liveness condition;
5. on failure restore the snapshot, re-activate and wait for the recovery
   conditions. If the restored configuration does not come back the
   controller raises :class:`FatalLockoutRisk` and stops.
   An interrupt during steps 3-4 takes the same path and is re-raised once
   the previous configuration is confirmed.

Irreversible steps (side effects with no snapshot, e.g. restarting fail2ban)
run only after a successful commit.
"""
from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from .errors import (
    CommandError,
    FatalLockoutRisk,
    HardenctlError,
    LivenessError,
    ValidationError,
)
from .executor import CommandExecutor
from .logging import OperationScope
from .readiness import ReadinessCondition, ReadinessProber
from .snapshots import FileTarget, SnapshotStore

StepFunc = Callable[[bytes | None], bytes | None]


class Subsystem(Protocol):
    """A configuration target the controller can stage, validate and activate."""

    subsystem: str

    def read(self) -> bytes | None:
        """Return the live content."""

    def write(self, content: bytes | None) -> None:
        """Replace the live content."""

    def validate(self, staged: bytes | None) -> None:
        """Raise :class:`ValidationError` when *staged* must not go live."""

    def activate(self) -> None:
        """Make the live content take effect (reload or restart)."""


@dataclass(frozen=True)
class MutationStep:
    """One change applied to the staged content.

    ``apply`` receives the staged bytes and returns the new staged bytes. For
    irreversible steps it receives the committed bytes and its return value is
    ignored.
    """

    description: str
    apply: StepFunc
    validate: Callable[[bytes | None], None] | None = None
    reversible: bool = True


@dataclass(frozen=True)
class MutationPlan:
    """Ordered steps plus the conditions proving the result is live."""

    description: str
    steps: tuple[MutationStep, ...]
    liveness: tuple[ReadinessCondition, ...] = ()
    recovery: tuple[ReadinessCondition, ...] = ()
    liveness_timeout: float | None = None

    @property
    def reversible_steps(self) -> tuple[MutationStep, ...]:
        return tuple(step for step in self.steps if step.reversible)

    @property
    def irreversible_steps(self) -> tuple[MutationStep, ...]:
        return tuple(step for step in self.steps if not step.reversible)


class TransitionStatus(str, Enum):
    """Final state of a transition."""

    COMMITTED = "committed"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled-back"


@dataclass(slots=True)
class TransitionResult:
    """Outcome of :meth:`TransitionController.apply`."""

    subsystem: str
    status: TransitionStatus
    error: HardenctlError | None = None
    changed: bool = False
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        """Return ``True`` when the new configuration is live."""
        return self.status is TransitionStatus.COMMITTED

    def raise_for_status(self) -> None:
        """Raise the recorded error unless the transition committed."""
        if self.error is not None and not self.committed:
            raise self.error

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subsystem": self.subsystem,
            "status": self.status.value,
            "changed": self.changed,
            "error": self.error.to_dict() if self.error else None,
            "steps": list(self.steps),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class TransitionController:
    """Apply :class:`MutationPlan` objects under snapshot protection."""

    store: SnapshotStore
    prober: ReadinessProber
    clock: Callable[[], float] = time.monotonic

    def apply(
        self,
        subsystem: Subsystem,
        plan: MutationPlan,
        *,
        op: OperationScope | None = None,
    ) -> TransitionResult:
        """Run *plan* against *subsystem*.

        Returns a :class:`TransitionResult` with status ``COMMITTED``,
        ``ABORTED`` (validation failed, nothing written) or ``ROLLED_BACK``
        (liveness failed, previous configuration serving again). Raises
        :class:`FatalLockoutRisk` when the rollback itself fails.
        """
        name = subsystem.subsystem
        result = TransitionResult(name, TransitionStatus.ABORTED)

        def record(step: str, status: str, detail: object | None = None) -> None:
            result.steps.append(f"{step}:{status}")
            if op is not None:
                op.add_step(f"{name}.{step}", status=status, detail=detail)

        with self.store.guard(subsystem, reactivate=subsystem.activate) as lease:
            record("snapshot", "success", {"existed": lease.snapshot.existed})
            staged = lease.snapshot.content
            try:
                for step in plan.reversible_steps:
                    staged = step.apply(staged)
                    record("stage", "success", step.description)
                for step in plan.reversible_steps:
                    if step.validate is not None:
                        step.validate(staged)
                subsystem.validate(staged)
            except ValidationError as exc:
                record("validate", "failed", exc.message)
                result.error = exc
                return result
            record("validate", "success")

            if staged == lease.snapshot.content:
                lease.commit()
                record("commit", "skipped", "configuration unchanged")
                result.status = TransitionStatus.COMMITTED
                self._run_irreversible(plan, staged, result, record)
                return result

            lease.mark_live()
            failure: LivenessError | None
            interrupted: BaseException | None = None
            try:
                subsystem.write(staged)
                record("commit", "success")
                subsystem.activate()
                record("activate", "success")
                failure = self._await(plan.liveness, plan.liveness_timeout)
            except CommandError as exc:
                failure = LivenessError(f"Activating the new {name} configuration failed: {exc}")
            except OSError as exc:
                failure = LivenessError(f"Writing the new {name} configuration failed: {exc}")
            except BaseException as exc:
                # roll back before letting an interrupt (or a bug) escape
                interrupted = exc
                failure = LivenessError(
                    f"The {name} transition was interrupted before liveness was confirmed: "
                    f"{exc!r}"
                )

            if failure is None:
                lease.commit()
                record("liveness", "success")
                result.status = TransitionStatus.COMMITTED
                result.changed = True
                self._run_irreversible(plan, staged, result, record)
                return result

            record("liveness", "failed", failure.message)
            try:
                self.store.restore(lease.snapshot, subsystem)
                lease.mark_restored()
                record("restore", "success")
                subsystem.activate()
            except BaseException as exc:
                lease.abandon()
                record("restore", "failed", str(exc))
                raise FatalLockoutRisk(
                    f"Rolling back {name} failed after: {failure.message} ({exc})"
                ) from exc
            try:
                recovery_failure = self._await(plan.recovery, plan.liveness_timeout)
            except BaseException as exc:
                lease.abandon()
                record("recovery", "failed", repr(exc))
                raise FatalLockoutRisk(
                    f"Confirming the restored {name} configuration was interrupted: {exc!r}"
                ) from exc
            if recovery_failure is not None:
                lease.abandon()
                record("recovery", "failed", recovery_failure.message)
                raise FatalLockoutRisk(
                    f"The restored {name} configuration did not come back: "
                    f"{recovery_failure.message}"
                )
            record("recovery", "success")
            if interrupted is not None:
                raise interrupted
            result.status = TransitionStatus.ROLLED_BACK
            result.error = failure
            return result

    # ------------------------------------------------------------------
    def _await(
        self,
        conditions: Sequence[ReadinessCondition],
        timeout: float | None,
    ) -> LivenessError | None:
        deadline = self.clock() + timeout if timeout is not None else None
        for condition in conditions:
            remaining = None if deadline is None else max(deadline - self.clock(), 0.0)
            outcome = self.prober.wait(condition, timeout=remaining)
            if not outcome.satisfied:
                seen = outcome.observation.detail or outcome.observation.state.value
                return LivenessError(
                    f"{condition.describe()} not satisfied after {outcome.attempts} "
                    f"attempt(s): {seen}"
                )
        return None

    def _run_irreversible(
        self,
        plan: MutationPlan,
        committed: bytes | None,
        result: TransitionResult,
        record: Callable[..., None],
    ) -> None:
        for step in plan.irreversible_steps:
            try:
                step.apply(committed)
            except (HardenctlError, OSError) as exc:
                result.warnings.append(f"{step.description}: {exc}")
                record("post-commit", "warning", f"{step.description}: {exc}")
            else:
                record("post-commit", "success", step.description)


@dataclass(slots=True)
class FileSubsystem(FileTarget):
    """A plain configuration file with an optional validator command.

    ``validator`` is an argv where ``{path}`` is replaced by a temporary copy of
    the staged content, e.g. ``("visudo", "-cf", "{path}")``.
    """

    executor: CommandExecutor | None = None
    validator: tuple[str, ...] = ()
    activation: tuple[tuple[str, ...], ...] = ()

    def validate(self, staged: bytes | None) -> None:
        """Run the validator against *staged* written to a temporary file."""
        if staged is None or not self.validator or self.executor is None:
            return
        fd, tmp_name = tempfile.mkstemp(prefix=f"{self.path.name}.", suffix=".staged")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(staged)
            tmp_path.chmod(self.mode)
            argv = [part.replace("{path}", str(tmp_path)) for part in self.validator]
            outcome = self.executor.run(argv)
        finally:
            tmp_path.unlink(missing_ok=True)
        if not outcome.ok:
            raise ValidationError(
                f"{self.path} rejected by {self.validator[0]}: "
                f"{outcome.stderr.strip() or outcome.stdout.strip() or 'no output'}"
            )

    def activate(self) -> None:
        """Run each activation command, failing on the first error."""
        if self.executor is None:
            return
        for argv in self.activation:
            self.executor.run(argv, check=True)


__all__ = [
    "FileSubsystem",
    "MutationPlan",
    "MutationStep",
    "Subsystem",
    "TransitionController",
    "TransitionResult",
    "TransitionStatus",
]
