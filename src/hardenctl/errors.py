"""Error kinds shared by the reconfiguration and activation engine.

Every error carries a machine-distinguishable ``kind``, a human-readable
``remediation`` hint and the CLI exit code it maps to. Only
:class:`FatalLockoutRisk` maps to :attr:`ExitCode.LOCKOUT`; every other kind
is raised (or reported) before any net change to the host remains.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class HardenctlError(RuntimeError):
    """Base class for engine failures."""

    kind = "error"
    exit_code = ExitCode.VALIDATION

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        """Store the message and an optional remediation hint."""
        super().__init__(message)
        self.message = message
        self.remediation = remediation or self.default_remediation()

    def default_remediation(self) -> str:
        """Return the remediation used when the raiser did not supply one."""
        return "Review the message above, fix the input and re-run the command."

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "message": self.message,
            "remediation": self.remediation,
            "exit_code": int(self.exit_code),
        }


class ValidationError(HardenctlError):
    """A proposed configuration is malformed; it was never applied."""

    kind = "validation"


class CommandError(HardenctlError):
    """A host command failed outright."""

    kind = "command"

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str] = (),
        exit_code: int | None = None,
        remediation: str | None = None,
    ) -> None:
        """Record the failing argv and exit status."""
        super().__init__(message, remediation=remediation)
        self.argv = tuple(argv)
        self.returncode = exit_code


class LivenessError(HardenctlError):
    """An applied configuration did not come up; it was rolled back."""

    kind = "liveness"

    def default_remediation(self) -> str:
        return (
            "The previous configuration was restored and is serving again. "
            "Check the service logs for why the new configuration failed."
        )


class FatalLockoutRisk(HardenctlError):
    """Rollback itself failed; all automation must stop."""

    kind = "fatal-lockout-risk"
    exit_code = ExitCode.LOCKOUT

    def default_remediation(self) -> str:
        return (
            "Do not close existing sessions. Use console (out-of-band) access to "
            "inspect the host, then run 'hardenctl snapshots restore <subsystem>' "
            "to put the saved configuration back."
        )


class ReadinessTimeout(HardenctlError):
    """An external condition was never satisfied within its budget."""

    kind = "readiness-timeout"


class PlanningError(HardenctlError):
    """Service selection cannot be planned; nothing was activated."""

    kind = "planning"


class ProvisionError(HardenctlError):
    """Certificate issuance failed; never retried automatically."""

    kind = "provision"


class DnsMismatch(ProvisionError):
    """The domain does not resolve to the host's public address."""

    kind = "dns-mismatch"

    def __init__(self, domain: str, expected: str, observed: Sequence[str] | None) -> None:
        """Build the message from the expected and observed record values."""
        self.domain = domain
        self.expected = expected
        self.observed = tuple(observed or ())
        if self.observed:
            message = (
                f"{domain} resolves to {', '.join(self.observed)}, expected {expected}."
            )
            remediation = (
                f"Update the A record of {domain} to {expected}, wait for propagation "
                "and re-run."
            )
        else:
            message = f"{domain} does not resolve to any A record."
            remediation = (
                f"Add an A record for {domain} with value {expected} (TTL 3600 or "
                "default), wait for propagation and re-run."
            )
        super().__init__(message, remediation=remediation)


class AddressUnconfirmed(ProvisionError):
    """Public address discovery sources did not agree."""

    kind = "address-unconfirmed"

    def __init__(self, candidates: Sequence[str]) -> None:
        """Record the candidate addresses that were observed."""
        self.candidates = tuple(candidates)
        detail = ", ".join(self.candidates) if self.candidates else "none"
        super().__init__(
            f"Could not confirm the public IPv4 address (candidates: {detail}).",
            remediation="Pass the server's public address explicitly with --address.",
        )


class PortUnavailable(ProvisionError):
    """The challenge port is already bound by another process."""

    kind = "port-unavailable"

    def __init__(self, port: int, owner: str | None) -> None:
        """Describe which process holds *port*."""
        self.port = port
        self.owner = owner
        holder = owner or "an unknown process"
        super().__init__(
            f"Port {port} is in use by {holder}.",
            remediation=(
                f"Stop {holder} (e.g. `systemctl stop <service>`) so port {port} is "
                "free for the challenge, then re-run."
            ),
        )


class ChallengeRejected(ProvisionError):
    """The ACME server rejected the domain-ownership proof."""

    kind = "challenge-rejected"

    def default_remediation(self) -> str:
        return (
            "Make sure the domain points at this host and that the challenge port is "
            "reachable from the internet, then re-run."
        )


class ClientError(ProvisionError):
    """The ACME client failed for a reason other than the challenge."""

    kind = "client-error"


__all__ = [
    "AddressUnconfirmed",
    "ChallengeRejected",
    "ClientError",
    "CommandError",
    "DnsMismatch",
    "FatalLockoutRisk",
    "HardenctlError",
    "LivenessError",
    "PlanningError",
    "PortUnavailable",
    "ProvisionError",
    "ReadinessTimeout",
    "ValidationError",
]
