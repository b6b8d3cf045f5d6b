"""Certificate inspection for managed sites."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .config import TLSConfig
from .models import SiteSpec


class TLSSeverity(Enum):
    """Severity of a single certificate check."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSFinding:
    """Outcome of one check against the certificate material."""

    scope: str
    check: str
    severity: TLSSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class TLSMaterial:
    """Certificate and key locations for a site."""

    source: str
    certificate: Path
    key: Path
    domain: str


@dataclass(frozen=True)
class TLSValidationReport:
    """Aggregate of the findings for one :class:`TLSMaterial`."""

    material: TLSMaterial
    findings: tuple[TLSFinding, ...]
    not_valid_before: datetime | None = None
    not_valid_after: datetime | None = None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is an error."""
        return any(f.severity is TLSSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        """Return True when any finding is a warning."""
        return any(f.severity is TLSSeverity.WARNING for f in self.findings)

    @property
    def status(self) -> TLSSeverity:
        """Return the worst severity among the findings."""
        if self.has_errors:
            return TLSSeverity.ERROR
        if self.has_warnings:
            return TLSSeverity.WARNING
        return TLSSeverity.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "domain": self.material.domain,
            "source": self.material.source,
            "paths": {
                "certificate": str(self.material.certificate),
                "key": str(self.material.key),
            },
            "status": self.status.value,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "findings": [
                {
                    "scope": f.scope,
                    "check": f.check,
                    "severity": f.severity.value,
                    "message": f.message,
                    "path": str(f.path) if f.path is not None else None,
                }
                for f in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Public keys that can be serialised for comparison."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the encoded public key."""


class PrivateKeyProtocol(Protocol):
    """Private keys exposing their public half."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the matching public key."""


class TLSInspector:
    """Work out where a site's certificate material lives."""

    def __init__(self, config: TLSConfig) -> None:
        """Keep the TLS section of the application configuration."""
        self._config = config

    def resolve(self, spec: SiteSpec) -> TLSMaterial:
        """Return the certificate material for *spec*.

        Explicit paths on the spec win; otherwise the Let's Encrypt live
        directory for ``full_domain`` is used.
        """
        if spec.has_explicit_certificate:
            return TLSMaterial(
                source="explicit",
                certificate=Path(str(spec.ssl_cert_path)).expanduser(),
                key=Path(str(spec.ssl_key_path)).expanduser(),
                domain=spec.full_domain,
            )
        live = self._config.live_dir.expanduser()
        return TLSMaterial(
            source="lets-encrypt",
            certificate=Path(spec.certificate_path(live)),
            key=Path(spec.certificate_key_path(live)),
            domain=spec.full_domain,
        )


class TLSValidator:
    """Check presence, parse, key match and expiry of certificate material."""

    def __init__(self, warn_expiry_days: int = 30) -> None:
        """Set the expiry window that triggers a warning."""
        self._warn_expiry_days = warn_expiry_days

    def validate(self, material: TLSMaterial, *, now: datetime | None = None) -> TLSValidationReport:
        """Validate *material* and return a :class:`TLSValidationReport`."""
        now = now or datetime.now(UTC)
        findings: list[TLSFinding] = []

        cert_ok = _check_file(material.certificate, "certificate", findings)
        key_ok = _check_file(material.key, "key", findings)
        if not (cert_ok and key_ok):
            return TLSValidationReport(material=material, findings=tuple(findings))

        certificate: x509.Certificate | None = None
        private_key: PrivateKeyProtocol | None = None
        try:
            certificate = _load_certificate(material.certificate)
        except ValueError as exc:
            findings.append(
                TLSFinding(
                    "certificate", "parse", TLSSeverity.ERROR,
                    f"Failed to parse certificate: {exc}", material.certificate,
                )
            )
        else:
            findings.append(
                TLSFinding(
                    "certificate", "parse", TLSSeverity.OK,
                    f"Loaded certificate (serial {certificate.serial_number})",
                    material.certificate,
                )
            )
        try:
            private_key = _load_private_key(material.key)
        except (TypeError, ValueError) as exc:
            findings.append(
                TLSFinding(
                    "key", "parse", TLSSeverity.ERROR,
                    f"Failed to parse private key: {exc}", material.key,
                )
            )
        else:
            findings.append(TLSFinding("key", "parse", TLSSeverity.OK, "Loaded private key.", material.key))

        if certificate is not None and private_key is not None:
            if _public_keys_match(certificate, private_key):
                findings.append(
                    TLSFinding(
                        "certificate", "match", TLSSeverity.OK,
                        "Certificate and key match.", material.certificate,
                    )
                )
            else:
                findings.append(
                    TLSFinding(
                        "certificate", "match", TLSSeverity.ERROR,
                        "Certificate does not match the private key.", material.certificate,
                    )
                )

        not_before: datetime | None = None
        not_after: datetime | None = None
        if certificate is not None:
            not_before = certificate.not_valid_before_utc
            not_after = certificate.not_valid_after_utc
            findings.append(self._expiry_finding(not_after, now, material.certificate))

        return TLSValidationReport(
            material=material,
            findings=tuple(findings),
            not_valid_before=not_before,
            not_valid_after=not_after,
        )

    def _expiry_finding(self, not_after: datetime, now: datetime, path: Path) -> TLSFinding:
        if not_after <= now:
            return TLSFinding(
                "certificate", "expiry", TLSSeverity.ERROR,
                f"Certificate expired on {not_after.isoformat()}", path,
            )
        days_remaining = (not_after - now).days
        if days_remaining <= self._warn_expiry_days:
            return TLSFinding(
                "certificate", "expiry", TLSSeverity.WARNING,
                f"Certificate expires soon ({not_after.isoformat()}, "
                f"{days_remaining} day(s) remaining)",
                path,
            )
        return TLSFinding(
            "certificate", "expiry", TLSSeverity.OK,
            f"Certificate valid until {not_after.isoformat()}", path,
        )


def _check_file(path: Path, scope: str, findings: list[TLSFinding]) -> bool:
    if not path.exists():
        findings.append(TLSFinding(scope, "exists", TLSSeverity.ERROR, "File does not exist.", path))
        return False
    if not path.is_file():
        findings.append(
            TLSFinding(scope, "type", TLSSeverity.ERROR, "Path is not a regular file.", path)
        )
        return False
    if not os.access(path, os.R_OK):
        findings.append(
            TLSFinding(
                scope, "readable", TLSSeverity.ERROR,
                "File is not readable by the current user.", path,
            )
        )
        return False
    findings.append(TLSFinding(scope, "exists", TLSSeverity.OK, "File present and readable.", path))
    return True


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    return cast(PrivateKeyProtocol, key)


def _public_keys_match(certificate: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    encoding = serialization.Encoding.DER
    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_bytes = certificate.public_key().public_bytes(encoding=encoding, format=public_format)
    key_bytes = private_key.public_key().public_bytes(encoding=encoding, format=public_format)
    return cert_bytes == key_bytes


__all__ = [
    "TLSFinding",
    "TLSInspector",
    "TLSMaterial",
    "TLSSeverity",
    "TLSValidationReport",
    "TLSValidator",
]
