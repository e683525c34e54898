"""Structured operation logging for hardenctl commands.

Each CLI operation is written as one JSON document per line to
``<logs_dir>/operations.jsonl``. The logger never raises on I/O problems: if
the directory cannot be created or a write fails it disables itself so the
command it is observing can still complete.
"""
from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

OPERATIONS_LOG_NAME = "operations.jsonl"


def _iso_now() -> str:
    return datetime.now(UTC).isoformat()


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collect steps and the final result of a single operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start timing the operation."""
        self.id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _iso_now()
        self._start = time.perf_counter()
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None

    @property
    def finished(self) -> bool:
        """Return ``True`` once a result has been recorded."""
        return self._result is not None

    @property
    def steps(self) -> list[dict[str, object]]:
        """Return a copy of the recorded steps."""
        return list(self._steps)

    def add_step(self, step_id: str, *, status: str, detail: object | None = None) -> None:
        """Record an intermediate step."""
        entry: dict[str, object] = {"id": step_id, "status": status, "at": _iso_now()}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self._steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a completed operation that needs operator attention."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._finish(
            "error",
            message,
            changed=None,
            warnings=warnings,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def to_record(self) -> dict[str, Any]:
        """Return the JSON document written for this operation."""
        result = self._result or {"status": "incomplete", "message": "No result recorded."}
        return {
            "id": self.id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": _iso_now(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": list(self._steps),
            "result": result,
        }

    # ------------------------------------------------------------------
    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int | None,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        rc: int | None,
        context: Mapping[str, object] | None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self._result = result


class StructuredLogger:
    """Append operation records to a JSON-lines file."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unavailable."""
        self._log_dir = log_dir
        self._operations_log_path = log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if not scope.finished:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
