"""Tests for the snapshot/validate/commit/verify/rollback controller."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from conftest import FakeExecutor, Host, Reply
from hardenctl.errors import CommandError, FatalLockoutRisk, LivenessError, ValidationError
from hardenctl.readiness import ReadinessCondition, ReadinessProber
from hardenctl.transition import (
    FileSubsystem,
    MutationPlan,
    MutationStep,
    TransitionController,
    TransitionStatus,
)


@dataclass
class MemorySubsystem:
    """In-memory subsystem that is "up" unless its content is ``b"broken"``."""

    subsystem: str
    content: bytes | None
    marker: Path
    reject: bytes | None = None
    fail_activation: bool = False
    fail_reactivation: bool = False
    activations: int = 0
    writes: list[bytes | None] = field(default_factory=list)

    def read(self) -> bytes | None:
        return self.content

    def write(self, content: bytes | None) -> None:
        self.writes.append(content)
        self.content = content

    def validate(self, staged: bytes | None) -> None:
        if self.reject is not None and staged == self.reject:
            raise ValidationError("staged content rejected")

    def activate(self) -> None:
        self.activations += 1
        if self.fail_activation:
            raise CommandError("service restart failed")
        if self.fail_reactivation and self.activations > 1:
            raise CommandError("restart of restored config failed")
        if self.content == b"broken":
            self.marker.unlink(missing_ok=True)
        else:
            self.marker.write_text("up", encoding="utf-8")


def _subsystem(tmp_path: Path, **kwargs: object) -> MemorySubsystem:
    marker = tmp_path / "up"
    marker.write_text("up", encoding="utf-8")
    return MemorySubsystem("memory", b"old", marker, **kwargs)  # type: ignore[arg-type]


def _plan(new: bytes, marker: Path, *extra: MutationStep) -> MutationPlan:
    alive = (ReadinessCondition.file_exists(marker, attempts=2, interval=1.0),)
    return MutationPlan(
        "replace content",
        (MutationStep("replace", lambda _current: new), *extra),
        liveness=alive,
        recovery=alive,
    )


def test_successful_transition_commits(host: Host, tmp_path: Path) -> None:
    subsystem = _subsystem(tmp_path)

    result = host.controller.apply(subsystem, _plan(b"new", subsystem.marker))

    assert result.status is TransitionStatus.COMMITTED
    assert result.changed
    assert subsystem.content == b"new"
    assert subsystem.activations == 1
    assert result.steps[0] == "snapshot:success"
    assert "liveness:success" in result.steps
    assert host.store.live("memory") is None


def test_validation_failure_leaves_live_state_untouched(host: Host, tmp_path: Path) -> None:
    """No partial mutation: a rejected staged config is never written."""
    subsystem = _subsystem(tmp_path, reject=b"new")

    result = host.controller.apply(subsystem, _plan(b"new", subsystem.marker))

    assert result.status is TransitionStatus.ABORTED
    assert isinstance(result.error, ValidationError)
    assert subsystem.writes == []
    assert subsystem.activations == 0
    assert subsystem.content == b"old"


def test_step_validator_runs_on_staged_content(host: Host, tmp_path: Path) -> None:
    subsystem = _subsystem(tmp_path)

    def refuse(staged: bytes | None) -> None:
        raise ValidationError(f"refusing {staged!r}")

    plan = MutationPlan("guarded", (MutationStep("replace", lambda _c: b"new", validate=refuse),))
    result = host.controller.apply(subsystem, plan)

    assert result.status is TransitionStatus.ABORTED
    assert subsystem.writes == []


def test_unchanged_content_skips_activation(host: Host, tmp_path: Path) -> None:
    subsystem = _subsystem(tmp_path)

    result = host.controller.apply(subsystem, _plan(b"old", subsystem.marker))

    assert result.committed
    assert not result.changed
    assert subsystem.writes == []
    assert subsystem.activations == 0


def test_liveness_failure_rolls_back_to_snapshot(host: Host, tmp_path: Path) -> None:
    """Rollback converges: the previous content is live and verified again."""
    subsystem = _subsystem(tmp_path)

    result = host.controller.apply(subsystem, _plan(b"broken", subsystem.marker))

    assert result.status is TransitionStatus.ROLLED_BACK
    assert isinstance(result.error, LivenessError)
    assert subsystem.content == b"old"
    assert subsystem.writes == [b"broken", b"old"]
    assert subsystem.activations == 2
    assert subsystem.marker.exists()
    assert "recovery:success" in result.steps
    assert host.clock.sleeps == [1.0]
    with pytest.raises(LivenessError):
        result.raise_for_status()


def test_failed_rollback_is_fatal(host: Host, tmp_path: Path) -> None:
    """Activation failing both ways stops automation and keeps the snapshot."""
    subsystem = _subsystem(tmp_path, fail_activation=True)

    with pytest.raises(FatalLockoutRisk):
        host.controller.apply(subsystem, _plan(b"new", subsystem.marker))

    assert subsystem.content == b"old"
    assert host.store.live("memory") is not None
    assert (host.config.snapshot_dir / "memory.snapshot").read_bytes() == b"old"


def _interrupted_controller(host: Host) -> TransitionController:
    """Controller whose prober is interrupted the first time it waits."""

    def interrupt(_seconds: float) -> None:
        raise KeyboardInterrupt

    prober = ReadinessProber(
        host.executor,  # type: ignore[arg-type]
        host.scanner,  # type: ignore[arg-type]
        host.resolver,  # type: ignore[arg-type]
        sleep=interrupt,
        clock=host.clock,
    )
    return TransitionController(host.store, prober, clock=host.clock)


def test_interrupt_during_liveness_rolls_back_then_reraises(host: Host, tmp_path: Path) -> None:
    subsystem = _subsystem(tmp_path)

    with pytest.raises(KeyboardInterrupt):
        _interrupted_controller(host).apply(subsystem, _plan(b"broken", subsystem.marker))

    assert subsystem.content == b"old"
    assert subsystem.activations == 2
    assert subsystem.marker.exists()
    assert host.store.live("memory") is None
    assert not (host.config.snapshot_dir / "memory.snapshot").exists()


def test_interrupt_with_failed_reactivation_is_fatal(host: Host, tmp_path: Path) -> None:
    """The interrupt does not hide a restored config that will not start."""
    subsystem = _subsystem(tmp_path, fail_reactivation=True)

    with pytest.raises(FatalLockoutRisk) as excinfo:
        _interrupted_controller(host).apply(subsystem, _plan(b"broken", subsystem.marker))

    assert "interrupted" in excinfo.value.message
    assert subsystem.content == b"old"
    assert host.store.live("memory") is not None
    assert (host.config.snapshot_dir / "memory.snapshot").read_bytes() == b"old"


def test_recovery_not_confirmed_is_fatal(host: Host, tmp_path: Path) -> None:
    subsystem = _subsystem(tmp_path)
    never = ReadinessCondition.file_exists(tmp_path / "never", attempts=1)
    plan = MutationPlan(
        "replace",
        (MutationStep("replace", lambda _c: b"new"),),
        liveness=(never,),
        recovery=(never,),
    )

    with pytest.raises(FatalLockoutRisk):
        host.controller.apply(subsystem, plan)

    assert subsystem.content == b"old"


def test_irreversible_step_failure_is_a_warning(host: Host, tmp_path: Path) -> None:
    subsystem = _subsystem(tmp_path)
    seen: list[bytes | None] = []

    def restart(committed: bytes | None) -> bytes | None:
        seen.append(committed)
        raise CommandError("systemctl restart fail2ban failed")

    extra = MutationStep("restart fail2ban", restart, reversible=False)
    result = host.controller.apply(subsystem, _plan(b"new", subsystem.marker, extra))

    assert result.committed
    assert seen == [b"new"]
    assert result.warnings == ["restart fail2ban: systemctl restart fail2ban failed"]


def test_irreversible_steps_skipped_on_rollback(host: Host, tmp_path: Path) -> None:
    subsystem = _subsystem(tmp_path)
    seen: list[bytes | None] = []

    def record(committed: bytes | None) -> bytes | None:
        seen.append(committed)
        return committed

    extra = MutationStep("side effect", record, reversible=False)

    result = host.controller.apply(subsystem, _plan(b"broken", subsystem.marker, extra))

    assert result.status is TransitionStatus.ROLLED_BACK
    assert seen == []


def test_file_subsystem_validates_staged_copy(tmp_path: Path, host: Host) -> None:
    """The validator sees a temporary copy; the live file is only written on success."""
    executor = FakeExecutor()
    checked: list[bytes] = []

    def visudo(argv: tuple[str, ...]) -> Reply:
        checked.append(Path(argv[-1]).read_bytes())
        return Reply(1, stderr="syntax error near line 1")

    executor.on("visudo", reply=visudo)
    target = FileSubsystem(
        subsystem="sudoers-demo",
        path=tmp_path / "sudoers.d" / "demo",
        mode=0o440,
        executor=executor,  # type: ignore[arg-type]
        validator=("visudo", "-cf", "{path}"),
    )
    plan = MutationPlan("sudoers", (MutationStep("grant", lambda _c: b"demo ALL=(ALL) ALL\n"),))

    result = host.controller.apply(target, plan)

    assert result.status is TransitionStatus.ABORTED
    assert checked == [b"demo ALL=(ALL) ALL\n"]
    assert not target.path.exists()
