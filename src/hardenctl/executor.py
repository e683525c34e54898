"""Single choke point for running privileged host commands."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .errors import CommandError

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Outcome of one command invocation."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited successfully."""
        return self.exit_code == 0 and not self.timed_out

    def describe(self) -> str:
        """Return a one-line summary suitable for error messages."""
        message = self.stderr.strip() or self.stdout.strip() or "no output"
        if self.timed_out:
            return f"{' '.join(self.argv)} timed out"
        return f"{' '.join(self.argv)} failed (exit {self.exit_code}): {message}"


@dataclass(slots=True)
class CommandExecutor:
    """Run host commands through :func:`subprocess.run`.

    Every inspection and mutation of the host goes through :meth:`run`, which
    makes the executor the only seam tests need to replace.
    """

    default_timeout: float = 60.0

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = False,
    ) -> CommandResult:
        """Run *argv* and return its exit status and output.

        Timeouts yield exit code 124 and a missing binary yields 127 instead of
        raising; ``check=True`` converts any non-zero outcome into
        :class:`CommandError`.
        """
        args = tuple(str(part) for part in argv)
        effective_timeout = self.default_timeout if timeout is None else timeout
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        try:
            completed = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                input=input,
                env=merged_env,
                timeout=effective_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                argv=args,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                timed_out=True,
            )
        except FileNotFoundError as exc:
            result = CommandResult(
                argv=args,
                exit_code=NOT_FOUND_EXIT_CODE,
                stderr=f"{args[0]} not found: {exc}",
            )
        else:
            result = CommandResult(
                argv=args,
                exit_code=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )
        if check and not result.ok:
            raise CommandError(result.describe(), argv=args, exit_code=result.exit_code)
        return result


def _as_text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["CommandExecutor", "CommandResult", "NOT_FOUND_EXIT_CODE", "TIMEOUT_EXIT_CODE"]
