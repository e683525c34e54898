"""Container activation for planned services.

The activator is the only place that talks to the container runtime. It
removes stale containers, renders the compose project, opens the firewall for
the planned ports through a controlled transition and issues a single
``docker compose up -d`` carrying the plan's profiles.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import ServicesConfig
from .errors import CommandError, PlanningError, ValidationError
from .executor import CommandExecutor
from .firewall import FirewallManager, FirewallRule
from .logging import OperationScope
from .readiness import ReadinessCondition, ReadinessProber, ReadinessResult
from .services import (
    STALE_CONTAINERS,
    ActivationPlan,
    ServiceActivationPlanner,
    ServiceSpec,
    brook_catalog,
)
from .templates import TemplateEngine

MIN_PASSWORD_LENGTH = 6
ENV_FILE_NAME = ".env"
COMPOSE_FILE_NAME = "docker-compose.yml"


@dataclass(frozen=True)
class ServiceSettings:
    """Operator-supplied values shared by the Brook services."""

    password: str
    server_ip: str | None = None
    socks5_user: str | None = None
    domain: str | None = None

    def validate(self, selected: Sequence[str]) -> None:
        if len(self.password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"The service password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        if "socks5" in selected and not (self.socks5_user and self.server_ip):
            raise ValidationError(
                "socks5 needs both a username and the server's public IP.",
                remediation="Pass --socks5-user and --server-ip (or let setup discover the IP).",
            )
        if "wss" in selected and not self.domain:
            raise ValidationError(
                "wss needs a domain with an issued certificate.",
                remediation="Pass --domain, or drop wss from the selection.",
            )


@dataclass(slots=True)
class ActivationReport:
    """Outcome of :meth:`ServiceActivator.activate`."""

    plan: ActivationPlan
    started: bool = False
    readiness: list[ReadinessResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "plan": self.plan.to_dict(),
            "started": self.started,
            "readiness": [result.to_dict() for result in self.readiness],
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class ServiceActivator:
    """Start the planned subset of services through docker compose."""

    executor: CommandExecutor
    planner: ServiceActivationPlanner
    prober: ReadinessProber
    firewall: FirewallManager
    templates: TemplateEngine
    config: ServicesConfig
    cert_root: Path
    probe_host: str = "127.0.0.1"

    @property
    def env_path(self) -> Path:
        return self.config.project_dir / ENV_FILE_NAME

    @property
    def compose_path(self) -> Path:
        return self.config.project_dir / COMPOSE_FILE_NAME

    def resolve(self, selected: Sequence[str], domain: str | None) -> list[ServiceSpec]:
        """Map selected names to catalog entries, in selection order."""
        catalog = brook_catalog(self.config, cert_root=self.cert_root, domain=domain)
        specs: list[ServiceSpec] = []
        for name in selected:
            spec = catalog.get(name)
            if spec is None:
                known = ", ".join(sorted(catalog))
                raise PlanningError(f"Unknown service {name!r}. Available: {known}.")
            specs.append(spec)
        return specs

    def plan(self, selected: Sequence[str], settings: ServiceSettings) -> ActivationPlan:
        """Validate *settings* and return the plan without changing anything."""
        settings.validate(selected)
        return self.planner.plan(self.resolve(selected, settings.domain))

    def activate(
        self,
        selected: Sequence[str],
        settings: ServiceSettings,
        *,
        op: OperationScope | None = None,
    ) -> ActivationReport:
        """Tear down stale containers, then start every service that is ready."""
        settings.validate(selected)
        specs = self.resolve(selected, settings.domain)
        self.planner.check_ports(specs)

        self.teardown(op=op)
        plan = self.planner.plan(specs)
        report = ActivationReport(plan=plan)
        for entry in plan.skipped:
            report.warnings.append(f"{entry.name} skipped: {entry.reason} ({entry.detail})")
        if op is not None:
            op.add_step("services.plan", status="success", detail=plan.to_dict())
        if not plan.services:
            reasons = "; ".join(f"{entry.name}: {entry.reason}" for entry in plan.skipped)
            raise PlanningError(f"None of the selected services can start ({reasons}).")

        self._render(settings)
        if op is not None:
            op.add_step("services.render", status="success", detail=str(self.config.project_dir))

        rules = [
            FirewallRule(binding.port, binding.protocol, spec.description or spec.name)
            for spec in plan.services
            for binding in spec.ports
        ]
        self.firewall.allow(rules, op=op).raise_for_status()

        self._compose_up(plan.profiles)
        report.started = True
        if op is not None:
            op.add_step("services.up", status="success", detail=list(plan.profiles))

        budget = self.config.startup
        for spec in plan.services:
            for binding in spec.ports:
                if binding.protocol != "tcp":
                    continue
                condition = ReadinessCondition.port_open(
                    self.probe_host,
                    binding.port,
                    attempts=budget.attempts,
                    interval=budget.interval,
                )
                result = self.prober.wait(condition)
                report.readiness.append(result)
                if not result.satisfied:
                    report.warnings.append(
                        f"{spec.name} is not answering on {binding.label} yet; "
                        f"check `docker logs {spec.container}`."
                    )
        return report

    def deactivate(self, *, op: OperationScope | None = None) -> list[str]:
        """Remove the service containers; return the ones removed."""
        return self.teardown(op=op)

    def teardown(self, *, op: OperationScope | None = None) -> list[str]:
        """``docker rm -f`` every known container, ignoring ones that do not exist."""
        removed: list[str] = []
        for name in STALE_CONTAINERS:
            result = self.executor.run([self.config.docker_bin, "rm", "-f", name])
            if result.ok:
                if result.stdout.strip():
                    removed.append(name)
                continue
            if "no such container" in result.stderr.lower():
                continue
            raise CommandError(result.describe(), argv=result.argv, exit_code=result.exit_code)
        if op is not None:
            op.add_step("services.teardown", status="success", detail=removed)
        return removed

    # ------------------------------------------------------------------
    def _render(self, settings: ServiceSettings) -> None:
        self.config.project_dir.mkdir(parents=True, exist_ok=True)
        ssl_dir = self.cert_root / settings.domain if settings.domain else ""
        context: Mapping[str, object] = {
            "password": settings.password,
            "server_ip": settings.server_ip or "",
            "socks5_user": settings.socks5_user or "",
            "domain": settings.domain or "",
            "ssl_dir": str(ssl_dir),
            "ports": {
                "vpn": self.config.vpn_port,
                "socks5": self.config.socks5_port,
                "wss": self.config.wss_port,
            },
            "image": self.config.image,
        }
        self.templates.render_to_path("compose/env.j2", self.env_path, context, mode=0o600)
        self.templates.render_to_path(
            "compose/docker-compose.yml.j2", self.compose_path, context, mode=0o644
        )

    def _compose_up(self, profiles: Sequence[str]) -> None:
        argv = [
            self.config.docker_bin,
            "compose",
            "--project-directory",
            str(self.config.project_dir),
            "-f",
            str(self.compose_path),
            "up",
            "-d",
        ]
        self.executor.run(
            argv,
            timeout=600,
            env={"COMPOSE_PROFILES": ",".join(profiles)},
            check=True,
        )


__all__ = ["ActivationReport", "ServiceActivator", "ServiceSettings"]
