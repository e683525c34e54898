"""Login accounts: one sudo-capable administrator plus tunnel-only users."""
from __future__ import annotations

import os
import re
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum

from .config import AccountsConfig
from .errors import CommandError, ValidationError
from .executor import CommandExecutor
from .logging import OperationScope
from .transition import FileSubsystem, MutationPlan, MutationStep, TransitionController

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,32}$")
MIN_PASSWORD_LENGTH = 8
_ALPHABET = string.ascii_letters + string.digits


def validate_username(name: str) -> str:
    """Return *name* stripped, raising :class:`ValidationError` if unusable."""
    candidate = name.strip()
    if not USERNAME_RE.match(candidate):
        raise ValidationError(
            f"Invalid username {name!r}.",
            remediation="Use 3-32 characters: letters, digits and underscores only.",
        )
    if candidate == "root":
        raise ValidationError("Refusing to manage the root account.")
    return candidate


def generate_password(length: int = 20) -> str:
    """Return a random alphanumeric password."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def with_random_suffix(base: str, length: int = 5) -> str:
    """Append *length* random alphanumeric characters to *base*."""
    return base + "".join(secrets.choice(_ALPHABET) for _ in range(length))


class AccountRole(str, Enum):
    ADMIN = "admin"
    TUNNEL = "tunnel"


@dataclass(slots=True)
class AccountResult:
    """What :class:`AccountManager` did for one user."""

    username: str
    role: AccountRole
    created: bool
    password_set: bool
    steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "username": self.username,
            "role": self.role.value,
            "created": self.created,
            "password_set": self.password_set,
            "steps": list(self.steps),
        }


@dataclass(slots=True)
class AccountManager:
    """Create accounts with ``useradd``/``chpasswd`` and sudoers drop-ins."""

    executor: CommandExecutor
    controller: TransitionController
    config: AccountsConfig

    def exists(self, username: str) -> bool:
        return self.executor.run(["id", "-u", username], timeout=10).ok

    def ensure_admin(
        self,
        username: str,
        password: str | None = None,
        *,
        op: OperationScope | None = None,
    ) -> AccountResult:
        """Create or update the administrator with passwordless sudo."""
        username = validate_username(username)
        result = AccountResult(username, AccountRole.ADMIN, created=False, password_set=False)
        if not self.exists(username):
            self._run(["useradd", "-m", "-s", self.config.admin_shell, username])
            result.created = True
            result.steps.append("useradd")
        self._run(["usermod", "-aG", self.config.admin_group, username])
        result.steps.append(f"group:{self.config.admin_group}")
        if password is not None:
            self.set_password(username, password)
            result.password_set = True
            result.steps.append("password")
        self.grant_sudo(username, op=op)
        result.steps.append("sudoers")
        return result

    def ensure_tunnel_user(
        self,
        username: str,
        password: str | None = None,
    ) -> AccountResult:
        """Create or update a restricted-shell user that can only run ``ssh``."""
        username = validate_username(username)
        result = AccountResult(username, AccountRole.TUNNEL, created=False, password_set=False)
        if not self.exists(username):
            self._run(["useradd", "-m", "-s", self.config.restricted_shell, username])
            result.created = True
            result.steps.append("useradd")
        else:
            self._run(["usermod", "-s", self.config.restricted_shell, username])
        if password is not None:
            self.set_password(username, password)
            result.password_set = True
            result.steps.append("password")
        self._restrict_home(username)
        result.steps.append("restricted-path")
        return result

    def set_password(self, username: str, password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password for {username} must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        if ":" in password or "\n" in password:
            raise ValidationError("Passwords may not contain ':' or newlines.")
        self._run(["chpasswd"], input=f"{username}:{password}\n")

    def grant_sudo(self, username: str, *, op: OperationScope | None = None) -> None:
        """Install ``<sudoers_dir>/<user>`` after ``visudo -cf`` accepts it."""
        target = FileSubsystem(
            subsystem=f"sudoers-{username}",
            path=self.config.sudoers_dir / username,
            mode=0o440,
            executor=self.executor,
            validator=("visudo", "-cf", "{path}"),
        )
        rule = f"{username} ALL=(ALL) NOPASSWD: ALL\n".encode()
        plan = MutationPlan(
            f"sudoers drop-in for {username}",
            (MutationStep(f"grant {username} passwordless sudo", lambda _content: rule),),
        )
        self.controller.apply(target, plan, op=op).raise_for_status()

    # ------------------------------------------------------------------
    def _restrict_home(self, username: str) -> None:
        home = self.config.home_root / username
        bin_dir = home / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        link = bin_dir / "ssh"
        if link.is_symlink() or link.exists():
            link.unlink()
        os.symlink("/usr/bin/ssh", link)
        (home / ".bashrc").write_text("PATH=$HOME/bin\nexport PATH\n", encoding="utf-8")
        self._run(["chown", "-R", f"{username}:{username}", str(home)])
        home.chmod(0o755)

    def _run(self, argv: list[str], *, input: str | None = None) -> None:
        outcome = self.executor.run(argv, input=input)
        if not outcome.ok:
            # never echo chpasswd input
            raise CommandError(
                f"{argv[0]} failed (exit {outcome.exit_code}): "
                f"{outcome.stderr.strip() or 'no output'}",
                argv=argv,
                exit_code=outcome.exit_code,
            )


__all__ = [
    "AccountManager",
    "AccountResult",
    "AccountRole",
    "generate_password",
    "validate_username",
    "with_random_suffix",
]
