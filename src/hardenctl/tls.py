"""TLS helpers: locate and validate issued certificate material."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization

FULLCHAIN_NAME = "fullchain.pem"
PRIVKEY_NAME = "privkey.pem"
CHAIN_NAME = "chain.pem"


class TLSValidationSeverity(Enum):
    """How serious a single certificate check outcome is."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """One check (``exists``, ``parse``, ``match``, ``expiry``) on one file."""

    scope: str
    check: str
    severity: TLSValidationSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class TLSMaterial:
    """Paths of an issued certificate, its key and (when present) the chain."""

    certificate: Path
    key: Path
    chain: Path | None = None

    @property
    def directory(self) -> Path:
        """Return the directory holding the certificate."""
        return self.certificate.parent


@dataclass(frozen=True)
class TLSValidationReport:
    """Findings for one domain's material, plus the validity window."""

    material: TLSMaterial
    findings: tuple[TLSValidationFinding, ...]
    not_valid_before: datetime | None
    not_valid_after: datetime | None

    @property
    def has_errors(self) -> bool:
        return any(f.severity is TLSValidationSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        return any(f.severity is TLSValidationSeverity.WARNING for f in self.findings)

    @property
    def status(self) -> TLSValidationSeverity:
        """Return the worst severity among the findings."""
        if self.has_errors:
            return TLSValidationSeverity.ERROR
        if self.has_warnings:
            return TLSValidationSeverity.WARNING
        return TLSValidationSeverity.OK

    def errors(self) -> list[str]:
        """Return the messages of every error finding."""
        return [
            f"{finding.scope}: {finding.message}"
            for finding in self.findings
            if finding.severity is TLSValidationSeverity.ERROR
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "paths": {
                "certificate": str(self.material.certificate),
                "key": str(self.material.key),
                "chain": str(self.material.chain) if self.material.chain else None,
            },
            "status": self.status.value,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {
                    "scope": finding.scope,
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                    "path": str(finding.path) if finding.path is not None else None,
                }
                for finding in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Any cryptography public key."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Any cryptography private key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


@dataclass(frozen=True)
class TLSInspector:
    """Resolve certificate material under the ACME client's live directory."""

    live_dir: Path

    def material_for(self, domain: str) -> TLSMaterial:
        """Return the expected ``<live_dir>/<domain>`` paths, present or not."""
        directory = self.live_dir / domain
        chain = directory / CHAIN_NAME
        return TLSMaterial(
            certificate=directory / FULLCHAIN_NAME,
            key=directory / PRIVKEY_NAME,
            chain=chain if chain.exists() else None,
        )

    def detect(self, domain: str) -> TLSMaterial | None:
        """Return the material for *domain* when both files are present."""
        material = self.material_for(domain)
        if material.certificate.is_file() and material.key.is_file():
            return material
        return None


class _Findings:
    """Ordered finding collector for one validation run."""

    def __init__(self) -> None:
        self.items: list[TLSValidationFinding] = []

    def ok(self, scope: str, check: str, message: str, path: Path) -> None:
        self.items.append(
            TLSValidationFinding(scope, check, TLSValidationSeverity.OK, message, path)
        )

    def warn(self, scope: str, check: str, message: str, path: Path) -> None:
        self.items.append(
            TLSValidationFinding(scope, check, TLSValidationSeverity.WARNING, message, path)
        )

    def fail(self, scope: str, check: str, message: str, path: Path) -> None:
        self.items.append(
            TLSValidationFinding(scope, check, TLSValidationSeverity.ERROR, message, path)
        )


class TLSValidator:
    """Check that issued material can actually be served.

    Each file is checked for presence and readability, then parsed; the
    certificate must match the key and still be valid at *now*. Expiry
    within ``warn_expiry_days`` is a warning, since renewal is expected to
    pick it up.
    """

    def __init__(self, *, warn_expiry_days: int = 30) -> None:
        self._warn_expiry_days = warn_expiry_days

    def validate(
        self,
        material: TLSMaterial,
        *,
        now: datetime | None = None,
    ) -> TLSValidationReport:
        """Validate *material* and return a structured report."""
        findings = _Findings()
        cert = self._read_certificate(material.certificate, findings)
        key = self._read_key(material.key, findings)

        if cert is not None and key is not None:
            if _public_keys_match(cert, key):
                findings.ok(
                    "certificate", "match", "Certificate and key match.", material.certificate
                )
            else:
                findings.fail(
                    "certificate",
                    "match",
                    "Certificate does not match the provided key.",
                    material.certificate,
                )
        if cert is not None:
            self._check_expiry(cert, material.certificate, now or datetime.now(UTC), findings)

        return TLSValidationReport(
            material=material,
            findings=tuple(findings.items),
            not_valid_before=cert.not_valid_before_utc if cert is not None else None,
            not_valid_after=cert.not_valid_after_utc if cert is not None else None,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _present(path: Path, scope: str, findings: _Findings) -> bool:
        if not path.is_file():
            findings.fail(scope, "exists", "File does not exist.", path)
            return False
        if not os.access(path, os.R_OK):
            findings.fail(scope, "readable", "File is not readable by the current user.", path)
            return False
        findings.ok(scope, "exists", "File present and readable.", path)
        return True

    def _read_certificate(self, path: Path, findings: _Findings) -> x509.Certificate | None:
        if not self._present(path, "certificate", findings):
            return None
        try:
            cert = load_certificate(path)
        except ValueError as exc:
            findings.fail("certificate", "parse", f"Not a PEM or DER certificate: {exc}", path)
            return None
        subject = cert.subject.rfc4514_string() or f"serial {cert.serial_number}"
        findings.ok("certificate", "parse", f"Parsed certificate for {subject}.", path)
        return cert

    def _read_key(self, path: Path, findings: _Findings) -> PrivateKeyProtocol | None:
        if not self._present(path, "key", findings):
            return None
        try:
            key = _load_private_key(path)
        except (ValueError, TypeError) as exc:
            findings.fail("key", "parse", f"Not an unencrypted PEM private key: {exc}", path)
            return None
        findings.ok("key", "parse", "Parsed private key.", path)
        return key

    def _check_expiry(
        self, cert: x509.Certificate, path: Path, now: datetime, findings: _Findings
    ) -> None:
        expires = cert.not_valid_after_utc
        stamp = expires.isoformat()
        if expires <= now:
            findings.fail("certificate", "expiry", f"Certificate expired on {stamp}.", path)
            return
        days_left = (expires - now).days
        if days_left <= self._warn_expiry_days:
            findings.warn(
                "certificate",
                "expiry",
                f"Certificate expires on {stamp} ({days_left} day(s) left); renew it.",
                path,
            )
            return
        findings.ok("certificate", "expiry", f"Certificate valid until {stamp}.", path)


def load_certificate(path: Path) -> x509.Certificate:
    """Load a PEM (or DER) certificate; raise ``ValueError`` when unparseable."""
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def certificate_expiry(path: Path) -> datetime:
    """Return the ``notAfter`` timestamp of the certificate at *path*."""
    return load_certificate(path).not_valid_after_utc


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "TLSInspector",
    "TLSMaterial",
    "TLSValidationFinding",
    "TLSValidationReport",
    "TLSValidationSeverity",
    "TLSValidator",
    "certificate_expiry",
    "load_certificate",
]
