"""Data model for site reconciliation.

:class:`SiteSpec` is the declarative input, :class:`SiteState` what was
observed on disk, and :class:`ReconcileResult` the structured outcome handed
back to the caller. Failures are values on the result, not exceptions.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

DEFAULT_PORT = 3000
DEFAULT_ROOT = "/var/www/html"
DEFAULT_CLIENT_MAX_BODY_SIZE = "10M"
DEFAULT_LIVE_DIR = Path("/etc/letsencrypt/live")
NGINX_LOG_DIR = "/var/log/nginx"

_LABEL_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_BODY_SIZE_RE = re.compile(r"^\d+[kKmMgG]?$")


class SiteSpecError(ValueError):
    """Raised when a site specification is malformed."""


def _validate_hostname(value: str, label: str) -> str:
    text = value.strip().lower()
    if not text:
        raise SiteSpecError(f"{label} must be a non-empty hostname.")
    if text.startswith(".") or text.endswith("."):
        raise SiteSpecError(f"{label} '{value}' must not start or end with a dot.")
    for part in text.split("."):
        if not _LABEL_RE.match(part):
            raise SiteSpecError(f"{label} '{value}' contains an invalid label '{part}'.")
    return text


@dataclass(frozen=True)
class SiteSpec:
    """Declarative description of a reverse-proxied virtual host."""

    domain: str
    subdomain: str | None = None
    port: int = DEFAULT_PORT
    ssl_enabled: bool = False
    ssl_cert_path: str | None = None
    ssl_key_path: str | None = None
    gzip_enabled: bool = True
    rate_limiting: bool = False
    security_headers: bool = False
    access_log: bool = True
    error_log: bool = True
    static_path: str | None = None
    client_max_body_size: str | None = None

    def __post_init__(self) -> None:
        """Normalise and validate the hostname parts and port."""
        object.__setattr__(self, "domain", _validate_hostname(self.domain, "domain"))
        subdomain = (self.subdomain or "").strip()
        object.__setattr__(
            self,
            "subdomain",
            _validate_hostname(subdomain, "subdomain") if subdomain else None,
        )
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise SiteSpecError(f"port must be an integer. Got {self.port!r}.")
        if not 1 <= self.port <= 65535:
            raise SiteSpecError(f"port must be between 1 and 65535. Got {self.port}.")
        if self.client_max_body_size and not _BODY_SIZE_RE.match(self.client_max_body_size):
            raise SiteSpecError(
                f"client_max_body_size '{self.client_max_body_size}' is not an nginx size."
            )

    @classmethod
    def for_new_site(
        cls,
        domain: str,
        subdomain: str | None = None,
        *,
        port: int = DEFAULT_PORT,
        ssl_enabled: bool = False,
        rate_limiting: bool | None = None,
        security_headers: bool | None = None,
        **options: object,
    ) -> SiteSpec:
        """Build a spec with the defaults applied to freshly created sites.

        Every toggle defaults to on, except rate limiting and security
        headers which follow the TLS flag. Security headers are never
        enabled without TLS.
        """
        return cls(
            domain=domain,
            subdomain=subdomain,
            port=port,
            ssl_enabled=ssl_enabled,
            rate_limiting=ssl_enabled if rate_limiting is None else rate_limiting,
            security_headers=ssl_enabled and (True if security_headers is None else security_headers),
            **options,  # type: ignore[arg-type]
        )

    @property
    def full_domain(self) -> str:
        """Return ``subdomain.domain`` (or just the domain)."""
        if self.subdomain:
            return f"{self.subdomain}.{self.domain}"
        return self.domain

    @property
    def server_names(self) -> tuple[str, str]:
        """Return the names served by both server blocks."""
        return (self.full_domain, f"www.{self.full_domain}")

    @property
    def zone_name(self) -> str:
        """Return the rate-limit zone name derived from the full domain."""
        return f"{self.full_domain.replace('.', '_')}_limit"

    @property
    def access_log_path(self) -> str:
        """Return the access log location."""
        return f"{NGINX_LOG_DIR}/{self.full_domain}.access.log"

    @property
    def error_log_path(self) -> str:
        """Return the error log location."""
        return f"{NGINX_LOG_DIR}/{self.full_domain}.error.log"

    @property
    def has_explicit_certificate(self) -> bool:
        """Return ``True`` when certificate paths were supplied explicitly."""
        return bool(self.ssl_cert_path and self.ssl_key_path)

    def certificate_path(self, live_dir: Path = DEFAULT_LIVE_DIR) -> str:
        """Return the certificate path, falling back to the Let's Encrypt layout."""
        return self.ssl_cert_path or str(live_dir / self.full_domain / "fullchain.pem")

    def certificate_key_path(self, live_dir: Path = DEFAULT_LIVE_DIR) -> str:
        """Return the private key path, falling back to the Let's Encrypt layout."""
        return self.ssl_key_path or str(live_dir / self.full_domain / "privkey.pem")

    def with_ssl(self, enabled: bool) -> SiteSpec:
        """Return a copy with TLS switched on or off."""
        return replace(self, ssl_enabled=enabled)


class Lifecycle(str, Enum):
    """Conceptual lifecycle position of a site."""

    ABSENT = "absent"
    AVAILABLE = "available"
    ENABLED = "enabled"
    ENABLED_WITH_TLS = "enabled-with-tls"


@dataclass(frozen=True)
class SiteState:
    """Observed on-disk state of a site."""

    available: bool
    enabled: bool
    cert_present: bool = False
    warnings: tuple[str, ...] = ()

    @property
    def lifecycle(self) -> Lifecycle:
        """Map the observed flags onto the lifecycle."""
        if self.enabled and self.cert_present:
            return Lifecycle.ENABLED_WITH_TLS
        if self.enabled:
            return Lifecycle.ENABLED
        if self.available:
            return Lifecycle.AVAILABLE
        return Lifecycle.ABSENT

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "available": self.available,
            "enabled": self.enabled,
            "cert_present": self.cert_present,
            "lifecycle": self.lifecycle.value,
            "warnings": list(self.warnings),
        }


class Intent(str, Enum):
    """What the caller wants done to a site."""

    CREATE = "create"
    REMOVE = "remove"
    ENABLE = "enable"
    DISABLE = "disable"
    VALIDATE_ONLY = "validate-only"

    @property
    def mutating(self) -> bool:
        """Return ``True`` for intents that require the site lock."""
        return self is not Intent.VALIDATE_ONLY


class ErrorKind(str, Enum):
    """Failure taxonomy for reconciliation."""

    PREREQUISITE_MISSING = "prerequisite-missing"
    VALIDATION_FAILURE = "validation-failure"
    EXTERNAL_COMMAND_FAILURE = "external-command-failure"
    CERT_ISSUANCE_FAILURE = "cert-issuance-failure"
    LOCK_TIMEOUT = "lock-timeout"


@dataclass(frozen=True)
class ReconcileError:
    """A classified failure with its message."""

    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        """Return ``kind: message``."""
        return f"{self.kind.value}: {self.message}"


@dataclass
class ReconcileResult:
    """Structured outcome of one reconciliation."""

    intent: Intent
    full_domain: str
    success: bool = True
    changed: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[ReconcileError] = field(default_factory=list)
    steps: list[tuple[str, str, str | None]] = field(default_factory=list)
    state: SiteState | None = None
    config_path: Path | None = None
    rendered: str | None = None
    tls_active: bool = False
    lock_wait_ms: int | None = None

    def warn(self, message: str) -> None:
        """Record a warning without failing the result."""
        self.warnings.append(message)

    def fail(self, kind: ErrorKind, message: str) -> ReconcileResult:
        """Record an error, mark the result failed and return it."""
        self.errors.append(ReconcileError(kind=kind, message=message))
        self.success = False
        return self

    def step(self, name: str, status: str = "success", detail: str | None = None) -> None:
        """Record a step taken during reconciliation."""
        self.steps.append((name, status, detail))

    def has_error(self, kind: ErrorKind) -> bool:
        """Return ``True`` when an error of *kind* was recorded."""
        return any(error.kind is kind for error in self.errors)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "intent": self.intent.value,
            "full_domain": self.full_domain,
            "success": self.success,
            "changed": self.changed,
            "tls_active": self.tls_active,
            "warnings": list(self.warnings),
            "errors": [{"kind": e.kind.value, "message": e.message} for e in self.errors],
            "steps": [
                {"name": name, "status": status, "detail": detail}
                for name, status, detail in self.steps
            ],
            "state": self.state.to_dict() if self.state else None,
            "config_path": str(self.config_path) if self.config_path else None,
        }


__all__ = [
    "DEFAULT_CLIENT_MAX_BODY_SIZE",
    "DEFAULT_LIVE_DIR",
    "DEFAULT_PORT",
    "DEFAULT_ROOT",
    "ErrorKind",
    "Intent",
    "Lifecycle",
    "ReconcileError",
    "ReconcileResult",
    "SiteSpec",
    "SiteSpecError",
    "SiteState",
]
