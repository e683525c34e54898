"""Certificate issuance through certbot's standalone HTTP challenge.

Issuance walks ``UNVERIFIED -> DOMAIN_VERIFYING -> CHALLENGE_SERVING ->
ISSUED`` and lands in ``FAILED`` on any error. Each failure is raised as a
typed :class:`~hardenctl.errors.ProvisionError` and is never retried here;
the operator fixes the cause and runs the command again.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .config import TLSConfig
from .errors import (
    ChallengeRejected,
    ClientError,
    DnsMismatch,
    PortUnavailable,
    ProvisionError,
    ValidationError,
)
from .executor import CommandExecutor, CommandResult
from .firewall import FirewallManager, FirewallRule
from .logging import OperationScope
from .network import PortScanner, PublicAddressDiscovery
from .readiness import ObservationState, ReadinessCondition, ReadinessProber
from .templates import TemplateEngine
from .tls import TLSInspector, TLSValidationReport, TLSValidator, certificate_expiry

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))+$"
)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CHALLENGE_MARKERS = (
    "challenge failed",
    "some challenges have failed",
    "acme:error:unauthorized",
    "acme:error:connection",
    "acme:error:dns",
    "invalid response from",
    "timeout during connect",
)


class ProvisionState(str, Enum):
    UNVERIFIED = "unverified"
    DOMAIN_VERIFYING = "domain-verifying"
    CHALLENGE_SERVING = "challenge-serving"
    ISSUED = "issued"
    FAILED = "failed"


@dataclass(frozen=True)
class RenewalPolicy:
    """How and when the issued certificate is renewed."""

    schedule: str
    renew_before_days: int
    cron_file: Path

    def to_dict(self) -> dict[str, object]:
        return {
            "schedule": self.schedule,
            "renew_before_days": self.renew_before_days,
            "cron_file": str(self.cron_file),
        }


@dataclass(frozen=True)
class CertificateRecord:
    """An issued certificate as found under the live directory."""

    domain: str
    issued_at: datetime
    not_valid_after: datetime
    certificate: Path
    key: Path
    renewal: RenewalPolicy

    def to_dict(self) -> dict[str, object]:
        return {
            "domain": self.domain,
            "issued_at": self.issued_at.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
            "certificate": str(self.certificate),
            "key": str(self.key),
            "renewal": self.renewal.to_dict(),
        }


@dataclass(frozen=True)
class RenewalResult:
    """Outcome of :meth:`CertificateProvisioner.renew`."""

    domain: str
    renewed: bool
    days_remaining: int
    message: str

    def to_dict(self) -> dict[str, object]:
        return {
            "domain": self.domain,
            "renewed": self.renewed,
            "days_remaining": self.days_remaining,
            "message": self.message,
        }


def validate_domain(domain: str) -> str:
    candidate = domain.strip().lower().rstrip(".")
    if not _DOMAIN_RE.match(candidate):
        raise ValidationError(f"{domain!r} is not a valid domain name.")
    return candidate


def validate_email(email: str) -> str:
    candidate = email.strip()
    if not _EMAIL_RE.match(candidate):
        raise ValidationError(f"{email!r} is not a valid contact email address.")
    return candidate


@dataclass(slots=True)
class CertificateProvisioner:
    """Drive certbot from DNS verification to a scheduled renewal."""

    executor: CommandExecutor
    prober: ReadinessProber
    scanner: PortScanner
    discovery: PublicAddressDiscovery
    firewall: FirewallManager
    templates: TemplateEngine
    config: TLSConfig
    ufw_bin: str = "ufw"
    clock: Callable[[], datetime] = lambda: datetime.now(UTC)
    state: ProvisionState = ProvisionState.UNVERIFIED
    history: list[ProvisionState] = field(default_factory=list)

    @property
    def inspector(self) -> TLSInspector:
        return TLSInspector(self.config.live_dir)

    @property
    def policy(self) -> RenewalPolicy:
        return RenewalPolicy(
            schedule=self.config.renewal_schedule,
            renew_before_days=self.config.renew_before_days,
            cron_file=self.config.renewal_cron_file,
        )

    def issue(
        self,
        domain: str,
        email: str,
        *,
        address: str | None = None,
        op: OperationScope | None = None,
    ) -> CertificateRecord:
        """Obtain a certificate for *domain*, registering *email* with the CA."""
        domain = validate_domain(domain)
        email = validate_email(email)
        self.history.clear()
        self._enter(ProvisionState.UNVERIFIED, op)
        try:
            self._enter(ProvisionState.DOMAIN_VERIFYING, op)
            public_address = self.discovery.discover(address)
            self.verify_dns(domain, public_address, op=op)
            port = self.config.challenge_port
            self._require_port_free(port)

            self._enter(ProvisionState.CHALLENGE_SERVING, op)
            rule = FirewallRule(port, "tcp", "ACME challenge")
            with self.firewall.temporarily_open(rule, op=op):
                outcome = self.executor.run(
                    self._certonly_argv(domain, email, port),
                    timeout=self.config.certbot_timeout,
                )
            self._raise_for_certbot(outcome, domain)

            report = TLSValidator().validate(self.inspector.material_for(domain), now=self.clock())
            if report.has_errors:
                raise ClientError(
                    f"certbot reported success but the files for {domain} are not usable: "
                    + "; ".join(report.errors())
                )
            self.schedule_renewal([domain])
            record = CertificateRecord(
                domain=domain,
                issued_at=self.clock(),
                not_valid_after=report.not_valid_after or self.clock(),
                certificate=report.material.certificate,
                key=report.material.key,
                renewal=self.policy,
            )
        except Exception:
            self._enter(ProvisionState.FAILED, op)
            raise
        self._enter(ProvisionState.ISSUED, op)
        return record

    def verify_dns(
        self,
        domain: str,
        expected: str,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Wait for *domain* to resolve to *expected*.

        Raises :class:`DnsMismatch` when the records point elsewhere or are
        missing, and :class:`ClientError` when the lookup itself keeps failing.
        """
        budget = self.config.dns_propagation
        condition = ReadinessCondition.dns_matches(
            domain, expected, attempts=budget.attempts, interval=budget.interval
        )
        result = self.prober.wait(condition)
        if op is not None:
            op.add_step("tls.dns", status=result.status.value, detail=result.to_dict())
        if result.satisfied:
            return
        if result.observation.state is ObservationState.ERROR:
            raise ClientError(
                f"Could not look up the A record of {domain}: "
                f"{result.observation.detail or 'resolver failed'}",
                remediation=(
                    "Check that dig (dnsutils) is installed and a DNS resolver is "
                    "reachable from this host, then re-run."
                ),
            )
        observed: Sequence[str] = ()
        if result.observation.state is ObservationState.MISMATCH and result.observation.value:
            observed = [item.strip() for item in result.observation.value.split(",")]
        raise DnsMismatch(domain, expected, observed)

    def schedule_renewal(self, domains: Sequence[str]) -> bool:
        """Render the renewal cron file; return ``True`` when it changed."""
        return self.templates.render_to_path(
            "cron/certbot-renew.j2",
            self.config.renewal_cron_file,
            {
                "domains": list(domains),
                "schedule": self.config.renewal_schedule,
                "certbot_bin": self.config.certbot_bin,
                "ufw_bin": self.ufw_bin,
                "port": self.config.challenge_port,
            },
            mode=0o644,
        )

    def inspect(self, domain: str) -> TLSValidationReport:
        """Validate the material currently present for *domain*."""
        material = self.inspector.material_for(validate_domain(domain))
        return TLSValidator(warn_expiry_days=self.config.renew_before_days).validate(
            material, now=self.clock()
        )

    def renew(
        self,
        domain: str,
        *,
        force: bool = False,
        op: OperationScope | None = None,
    ) -> RenewalResult:
        """Renew *domain* when it is within the renewal window (or *force*)."""
        domain = validate_domain(domain)
        material = self.inspector.detect(domain)
        if material is None:
            raise ProvisionError(
                f"No certificate found for {domain} under {self.config.live_dir}.",
                remediation=f"Issue one first with `hardenctl cert issue {domain}`.",
            )
        days_left = (certificate_expiry(material.certificate) - self.clock()).days
        if not force and days_left > self.config.renew_before_days:
            return RenewalResult(
                domain,
                renewed=False,
                days_remaining=days_left,
                message=(
                    f"{days_left} day(s) left; renewal starts at "
                    f"{self.config.renew_before_days} day(s)."
                ),
            )
        port = self.config.challenge_port
        self._require_port_free(port)
        argv = [
            self.config.certbot_bin,
            "renew",
            "--cert-name",
            domain,
            "--non-interactive",
        ]
        if force:
            argv.append("--force-renewal")
        with self.firewall.temporarily_open(FirewallRule(port, "tcp", "ACME challenge"), op=op):
            outcome = self.executor.run(argv, timeout=self.config.certbot_timeout)
        self._raise_for_certbot(outcome, domain)
        days_after = (certificate_expiry(material.certificate) - self.clock()).days
        return RenewalResult(domain, True, days_after, f"Renewed; {days_after} day(s) left.")

    # ------------------------------------------------------------------
    def _enter(self, state: ProvisionState, op: OperationScope | None) -> None:
        self.state = state
        self.history.append(state)
        if op is not None:
            op.add_step("tls.state", status=state.value)

    def _require_port_free(self, port: int) -> None:
        if self.scanner.listening(port, "tcp"):
            raise PortUnavailable(port, self.scanner.owner(port, "tcp"))

    def _certonly_argv(self, domain: str, email: str, port: int) -> list[str]:
        return [
            self.config.certbot_bin,
            "certonly",
            "--standalone",
            "--preferred-challenges",
            "http",
            "--http-01-port",
            str(port),
            "--agree-tos",
            "--email",
            email,
            "-d",
            domain,
            "--non-interactive",
        ]

    @staticmethod
    def _raise_for_certbot(outcome: CommandResult, domain: str) -> None:
        if outcome.ok:
            return
        if outcome.timed_out:
            raise ClientError(f"certbot timed out while handling {domain}.")
        text = f"{outcome.stdout}\n{outcome.stderr}"
        summary = outcome.stderr.strip() or outcome.stdout.strip() or "no output"
        if any(marker in text.lower() for marker in _CHALLENGE_MARKERS):
            raise ChallengeRejected(f"The CA rejected the challenge for {domain}: {summary}")
        raise ClientError(
            f"certbot failed for {domain} (exit {outcome.exit_code}): {summary}",
            remediation="Check /var/log/letsencrypt/letsencrypt.log and re-run.",
        )


__all__ = [
    "CertificateProvisioner",
    "CertificateRecord",
    "ProvisionState",
    "RenewalPolicy",
    "RenewalResult",
    "validate_domain",
    "validate_email",
]
