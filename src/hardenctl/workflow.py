"""End-to-end host setup: accounts, firewall, SSH, certificate, services.

Each stage only starts once the previous one is proven live. A failed
certificate is not fatal: the run continues and the services that need it
are skipped by the planner with a recorded reason.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from .accounts import AccountManager
from .activation import ServiceActivator, ServiceSettings
from .certificates import CertificateProvisioner
from .errors import HardenctlError, ProvisionError
from .exit_codes import ExitCode
from .firewall import FirewallManager, FirewallRule
from .logging import OperationScope
from .network import PublicAddressDiscovery
from .ssh import ConfirmFunc, SshAccessManager, SshSettings


@dataclass(frozen=True)
class SetupRequest:
    """Everything the operator chose for one setup run."""

    ssh: SshSettings
    admin: str
    admin_password: str | None = None
    tunnel_users: tuple[tuple[str, str | None], ...] = ()
    domain: str | None = None
    email: str | None = None
    address: str | None = None
    services: tuple[str, ...] = ()
    service_password: str | None = None
    socks5_user: str | None = None


@dataclass(slots=True)
class SetupReport:
    """Per-stage outcome of :meth:`HostSetup.run`."""

    stages: dict[str, object] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    error: HardenctlError | None = None

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode(self.error.exit_code) if self.error else ExitCode.OK

    def to_dict(self) -> dict[str, object]:
        return {
            "stages": dict(self.stages),
            "warnings": list(self.warnings),
            "error": self.error.to_dict() if self.error else None,
            "exit_code": int(self.exit_code),
        }


@dataclass(slots=True)
class HostSetup:
    """Sequence the engine's components the way the interactive setup does."""

    accounts: AccountManager
    firewall: FirewallManager
    ssh: SshAccessManager
    certificates: CertificateProvisioner
    activator: ServiceActivator
    discovery: PublicAddressDiscovery

    def run(
        self,
        request: SetupRequest,
        *,
        confirm: ConfirmFunc | None = None,
        op: OperationScope | None = None,
    ) -> SetupReport:
        """Run every stage; :class:`FatalLockoutRisk` propagates untouched."""
        report = SetupReport()
        try:
            self._accounts(request, report, op)
            self._firewall(report, op)
            if not self._ssh(request, report, confirm, op):
                return report
            domain = self._certificate(request, report, op)
            self._services(request, domain, report, op)
        except ProvisionError as exc:
            report.error = exc
        except HardenctlError as exc:
            if exc.exit_code != ExitCode.VALIDATION:
                raise
            report.error = exc
        return report

    # ------------------------------------------------------------------
    def _accounts(
        self,
        request: SetupRequest,
        report: SetupReport,
        op: OperationScope | None,
    ) -> None:
        admin = self.accounts.ensure_admin(request.admin, request.admin_password, op=op)
        users = [admin.to_dict()]
        for name, password in request.tunnel_users:
            users.append(self.accounts.ensure_tunnel_user(name, password).to_dict())
        report.stages["accounts"] = users

    def _firewall(self, report: SetupReport, op: OperationScope | None) -> None:
        current = self.ssh.subsystem.live_ports()
        result = self.firewall.allow(
            [FirewallRule(port, "tcp", "SSH") for port in current], enable=True, op=op
        )
        report.stages["firewall"] = result.to_dict()
        result.raise_for_status()

    def _ssh(
        self,
        request: SetupRequest,
        report: SetupReport,
        confirm: ConfirmFunc | None,
        op: OperationScope | None,
    ) -> bool:
        change = self.ssh.reconfigure(request.ssh, confirm=confirm, op=op)
        report.stages["ssh"] = change.to_dict()
        report.warnings.extend(change.warnings)
        if change.error is not None:
            report.error = change.error
            return False
        return True

    def _certificate(
        self,
        request: SetupRequest,
        report: SetupReport,
        op: OperationScope | None,
    ) -> str | None:
        if not request.domain:
            return None
        if not request.email:
            report.warnings.append("No contact email given; certificate issuance skipped.")
            return request.domain
        try:
            record = self.certificates.issue(
                request.domain, request.email, address=request.address, op=op
            )
        except ProvisionError as exc:
            report.stages["certificate"] = exc.to_dict()
            report.warnings.append(f"Certificate not issued: {exc.message} {exc.remediation}")
            return request.domain
        report.stages["certificate"] = record.to_dict()
        return record.domain

    def _services(
        self,
        request: SetupRequest,
        domain: str | None,
        report: SetupReport,
        op: OperationScope | None,
    ) -> None:
        if not request.services:
            return
        if request.service_password is None:
            report.warnings.append("No service password given; service activation skipped.")
            return
        selected: Sequence[str] = [
            name for name in request.services if name != "wss" or domain
        ]
        if len(selected) != len(request.services):
            report.warnings.append("wss skipped: no domain configured.")
        server_ip = request.address
        if "socks5" in selected and server_ip is None:
            server_ip = self.discovery.discover()
        settings = ServiceSettings(
            password=request.service_password,
            server_ip=server_ip,
            socks5_user=request.socks5_user,
            domain=domain,
        )
        activation = self.activator.activate(selected, settings, op=op)
        report.stages["services"] = activation.to_dict()
        report.warnings.extend(activation.warnings)


__all__ = ["HostSetup", "SetupReport", "SetupRequest"]
