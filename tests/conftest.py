"""Shared fakes and fixtures for the hardenctl test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from hardenctl.config import AppConfig, load_config
from hardenctl.errors import CommandError
from hardenctl.executor import CommandResult
from hardenctl.firewall import FirewallManager, FirewallSubsystem, UfwFirewall
from hardenctl.readiness import ReadinessProber
from hardenctl.snapshots import SnapshotStore
from hardenctl.ssh import SshAccessManager, SshdConfig, SshdSubsystem
from hardenctl.templates import TemplateEngine
from hardenctl.transition import TransitionController


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


# ----------------------------------------------------------------------
# Command execution
# ----------------------------------------------------------------------
@dataclass
class Reply:
    """Scripted outcome for a faked command."""

    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


Handler = Reply | Callable[[tuple[str, ...]], Reply]


@dataclass
class Call:
    argv: tuple[str, ...]
    input: str | None
    env: Mapping[str, str] | None


class FakeExecutor:
    """Stand-in for :class:`CommandExecutor` answering by argv prefix.

    The most recently registered matching prefix wins; unmatched commands
    succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self._handlers: list[tuple[tuple[str, ...], Handler]] = []

    def on(self, *prefix: str, reply: Handler) -> None:
        self._handlers.append((tuple(prefix), reply))

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = False,
    ) -> CommandResult:
        args = tuple(str(part) for part in argv)
        self.calls.append(Call(args, input, dict(env) if env else None))
        reply = Reply()
        for prefix, handler in reversed(self._handlers):
            if args[: len(prefix)] == prefix:
                reply = handler(args) if callable(handler) else handler
                break
        result = CommandResult(args, reply.exit_code, reply.stdout, reply.stderr, reply.timed_out)
        if check and not result.ok:
            raise CommandError(result.describe(), argv=args, exit_code=result.exit_code)
        return result

    def argvs(self, *prefix: str) -> list[tuple[str, ...]]:
        """Return every recorded argv starting with *prefix*."""
        return [call.argv for call in self.calls if call.argv[: len(prefix)] == prefix]


class FakeUfw:
    """Stateful ``ufw`` emulation wired into a :class:`FakeExecutor`."""

    def __init__(self, *, enabled: bool = True, rules: Mapping[str, str] | None = None) -> None:
        self.enabled = enabled
        self.rules: dict[str, str] = dict(rules or {})
        self.fail_on: set[str] = set()

    def __call__(self, argv: tuple[str, ...]) -> Reply:
        args = list(argv[1:])
        if args and args[0] in self.fail_on:
            return Reply(1, stderr=f"ERROR: {args[0]} refused")
        if args == ["status"]:
            return Reply(stdout=f"Status: {'active' if self.enabled else 'inactive'}\n")
        if args == ["show", "added"]:
            lines = ["Added user rules (see 'ufw status' for running firewall):"]
            for spec, comment in self.rules.items():
                suffix = f" comment '{comment}'" if comment else ""
                lines.append(f"ufw allow {spec}{suffix}")
            return Reply(stdout="\n".join(lines) + "\n")
        if args[:1] == ["allow"]:
            comment = args[3] if len(args) > 3 and args[2] == "comment" else ""
            self.rules[args[1]] = comment
            return Reply(stdout="Rule added\n")
        if args[:2] == ["delete", "allow"]:
            self.rules.pop(args[2], None)
            return Reply(stdout="Rule deleted\n")
        if args[:2] == ["--force", "enable"]:
            self.enabled = True
            return Reply(stdout="Firewall is active and enabled on system startup\n")
        if args == ["disable"]:
            self.enabled = False
            return Reply(stdout="Firewall stopped and disabled on system startup\n")
        return Reply()


# ----------------------------------------------------------------------
# Network observation
# ----------------------------------------------------------------------
@dataclass
class FakeScanner:
    """Port table and reachability stand-in for :class:`PortScanner`."""

    bound: dict[tuple[int, str], str] = field(default_factory=dict)
    open_ports: set[int] = field(default_factory=set)
    probe: Callable[[int], bool] | None = None

    def listening(self, port: int, protocol: str = "tcp") -> bool:
        return (port, protocol) in self.bound

    def owner(self, port: int, protocol: str = "tcp") -> str | None:
        return self.bound.get((port, protocol))

    def reachable(self, host: str, port: int) -> bool:
        if self.probe is not None:
            return self.probe(port)
        return port in self.open_ports


@dataclass
class FakeResolver:
    answers: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def resolve_a(self, name: str) -> tuple[str, ...]:
        return self.answers.get(name, ())


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ----------------------------------------------------------------------
# Configuration and engine wiring
# ----------------------------------------------------------------------
SSHD_CONFIG = """\
# Managed by the distribution.
Include /etc/ssh/sshd_config.d/*.conf
Port 22
PermitRootLogin yes
PasswordAuthentication yes
Subsystem sftp /usr/lib/openssh/sftp-server

Match User backup
    PasswordAuthentication no
"""


def config_overrides(root: Path) -> dict[str, object]:
    """Return overrides that point every hardenctl path inside *root*."""
    return {
        "state_dir": str(root / "state"),
        "logs_dir": str(root / "logs"),
        "runtime_dir": str(root / "run"),
        "templates_dir": str(root / "templates"),
        "lock_timeout": 1.0,
        "ssh": {
            "config_path": str(root / "etc" / "ssh" / "sshd_config"),
            "liveness": {"attempts": 2, "interval": 1.0},
            "fail2ban": {"jail_path": str(root / "etc" / "fail2ban" / "jail.local")},
        },
        "accounts": {
            "sudoers_dir": str(root / "etc" / "sudoers.d"),
            "home_root": str(root / "home"),
        },
        "tls": {
            "live_dir": str(root / "letsencrypt" / "live"),
            "renewal": {"cron_file": str(root / "etc" / "cron.d" / "hardenctl-certbot")},
            "dns_propagation": {"attempts": 3, "interval": 1.0},
        },
        "discovery": {"sources": ["https://a.example", "https://b.example"], "quorum": 2},
        "services": {
            "project_dir": str(root / "services"),
            "startup": {"attempts": 2, "interval": 1.0},
        },
    }


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in ``tmp_path`` with no file or environment input."""
    return load_config(
        tmp_path / "missing.yml", env={}, overrides=config_overrides(tmp_path)
    )


@dataclass
class Host:
    """Engine components wired against fakes."""

    config: AppConfig
    executor: FakeExecutor
    ufw: FakeUfw
    scanner: FakeScanner
    resolver: FakeResolver
    clock: FakeClock
    prober: ReadinessProber
    store: SnapshotStore
    controller: TransitionController
    templates: TemplateEngine
    sshd: SshdSubsystem
    firewall: FirewallManager
    ssh: SshAccessManager

    @property
    def sshd_path(self) -> Path:
        return self.config.ssh.config_path

    def sshd_ports(self) -> list[int]:
        return SshdConfig.parse(self.sshd_path.read_bytes()).ports()


@pytest.fixture
def host(app_config: AppConfig) -> Host:
    """A simulated host: sshd on port 22, ufw active and allowing 22/tcp."""
    sshd_path = app_config.ssh.config_path
    sshd_path.parent.mkdir(parents=True, exist_ok=True)
    sshd_path.write_text(SSHD_CONFIG, encoding="utf-8")
    sshd_path.chmod(0o644)

    executor = FakeExecutor()
    ufw = FakeUfw(rules={"22/tcp": "SSH"})
    executor.on("ufw", reply=ufw)
    executor.on("systemctl", "is-active", "ssh", reply=Reply(stdout="active\n"))
    executor.on("systemctl", "is-active", "ssh.socket", reply=Reply(3, stdout="inactive\n"))
    executor.on("systemctl", "is-enabled", "ssh.socket", reply=Reply(1, stdout="disabled\n"))

    clock = FakeClock()
    resolver = FakeResolver()
    scanner = FakeScanner()
    # sshd answers on whatever the config file says it listens on.
    scanner.probe = lambda port: port in SshdConfig.parse(sshd_path.read_bytes()).ports()
    prober = ReadinessProber(
        executor,  # type: ignore[arg-type]
        scanner,  # type: ignore[arg-type]
        resolver,  # type: ignore[arg-type]
        sleep=clock.sleep,
        clock=clock,
    )
    store = SnapshotStore(app_config.snapshot_dir)
    controller = TransitionController(store, prober, clock=clock)
    templates = TemplateEngine.with_overrides(None)
    sshd = SshdSubsystem(
        subsystem="ssh",
        path=sshd_path,
        executor=executor,  # type: ignore[arg-type]
    )
    ufw_wrapper = UfwFirewall(executor)  # type: ignore[arg-type]
    firewall = FirewallManager(
        FirewallSubsystem(ufw_wrapper, protected_ports=sshd.live_ports), controller
    )
    ssh = SshAccessManager(sshd, firewall, controller, app_config.ssh, templates)
    return Host(
        config=app_config,
        executor=executor,
        ufw=ufw,
        scanner=scanner,
        resolver=resolver,
        clock=clock,
        prober=prober,
        store=store,
        controller=controller,
        templates=templates,
        sshd=sshd,
        firewall=firewall,
        ssh=ssh,
    )


# ----------------------------------------------------------------------
# Certificates
# ----------------------------------------------------------------------
CertificateFactory = Callable[..., tuple[Path, Path]]


def write_certificate(
    directory: Path,
    *,
    name: str = "example.com",
    days: int = 60,
    expired: bool = False,
) -> tuple[Path, Path]:
    """Write a self-signed ``fullchain.pem``/``privkey.pem`` pair into *directory*."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    not_before = now - timedelta(days=days + 2 if expired else 1)
    not_after = now - timedelta(days=1) if expired else now + timedelta(days=days)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / "fullchain.pem"
    key_path = directory / "privkey.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    key_path.chmod(0o600)
    return cert_path, key_path


@pytest.fixture
def certificate_factory() -> CertificateFactory:
    """Return :func:`write_certificate` for tests that mint their own material."""
    return write_certificate
