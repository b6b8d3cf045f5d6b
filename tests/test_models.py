"""Tests for the site data model."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitectl.models import (
    ErrorKind,
    Intent,
    Lifecycle,
    ReconcileResult,
    SiteSpec,
    SiteSpecError,
    SiteState,
)


def test_full_domain_with_and_without_subdomain() -> None:
    """full_domain joins the subdomain only when it is non-empty."""
    assert SiteSpec(domain="example.com").full_domain == "example.com"
    assert SiteSpec(domain="example.com", subdomain="api").full_domain == "api.example.com"
    assert SiteSpec(domain="example.com", subdomain="").full_domain == "example.com"
    assert SiteSpec(domain="example.com", subdomain="  ").subdomain is None


def test_derived_names() -> None:
    """Zone, server names and log paths derive from the full domain."""
    spec = SiteSpec(domain="Example.COM", subdomain="api")

    assert spec.full_domain == "api.example.com"
    assert spec.zone_name == "api_example_com_limit"
    assert spec.server_names == ("api.example.com", "www.api.example.com")
    assert spec.access_log_path == "/var/log/nginx/api.example.com.access.log"
    assert spec.error_log_path == "/var/log/nginx/api.example.com.error.log"


def test_certificate_paths_default_to_live_dir(tmp_path: Path) -> None:
    """Certificate paths follow the live directory unless given explicitly."""
    spec = SiteSpec(domain="example.com", ssl_enabled=True)
    explicit = SiteSpec(
        domain="example.com",
        ssl_enabled=True,
        ssl_cert_path="/etc/ssl/cert.pem",
        ssl_key_path="/etc/ssl/key.pem",
    )

    assert spec.certificate_path() == "/etc/letsencrypt/live/example.com/fullchain.pem"
    assert spec.certificate_key_path(tmp_path) == str(tmp_path / "example.com" / "privkey.pem")
    assert not spec.has_explicit_certificate
    assert explicit.has_explicit_certificate
    assert explicit.certificate_path(tmp_path) == "/etc/ssl/cert.pem"


@pytest.mark.parametrize(
    ("domain", "subdomain"),
    [
        ("", None),
        (".example.com", None),
        ("example.com.", None),
        ("exa mple.com", None),
        ("example.com/../etc", None),
        ("example.com", "-api"),
    ],
)
def test_invalid_hostnames_rejected(domain: str, subdomain: str | None) -> None:
    """Malformed hostnames raise SiteSpecError."""
    with pytest.raises(SiteSpecError):
        SiteSpec(domain=domain, subdomain=subdomain)


@pytest.mark.parametrize("port", [0, 65536, -1])
def test_port_range_enforced(port: int) -> None:
    """Ports outside 1..65535 are rejected."""
    with pytest.raises(SiteSpecError, match="port"):
        SiteSpec(domain="example.com", port=port)


def test_body_size_format_enforced() -> None:
    """client_max_body_size must be an nginx size."""
    assert SiteSpec(domain="example.com", client_max_body_size="512k").client_max_body_size == "512k"
    with pytest.raises(SiteSpecError, match="client_max_body_size"):
        SiteSpec(domain="example.com", client_max_body_size="10 MB")


def test_for_new_site_defaults() -> None:
    """New sites enable every toggle; rate limiting and headers follow TLS."""
    http = SiteSpec.for_new_site("example.com")
    https = SiteSpec.for_new_site("example.com", ssl_enabled=True)
    forced = SiteSpec.for_new_site("example.com", rate_limiting=True, security_headers=True)

    assert http.gzip_enabled and http.access_log and http.error_log
    assert (http.rate_limiting, http.security_headers) == (False, False)
    assert (https.rate_limiting, https.security_headers) == (True, True)
    assert forced.rate_limiting is True
    assert forced.security_headers is False


def test_with_ssl_returns_copy() -> None:
    """with_ssl leaves the original spec untouched."""
    spec = SiteSpec.for_new_site("example.com", ssl_enabled=True)

    plain = spec.with_ssl(False)

    assert spec.ssl_enabled is True
    assert plain.ssl_enabled is False
    assert plain.full_domain == spec.full_domain


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        (SiteState(available=False, enabled=False), Lifecycle.ABSENT),
        (SiteState(available=True, enabled=False), Lifecycle.AVAILABLE),
        (SiteState(available=True, enabled=True), Lifecycle.ENABLED),
        (SiteState(available=True, enabled=True, cert_present=True), Lifecycle.ENABLED_WITH_TLS),
    ],
)
def test_lifecycle_mapping(state: SiteState, expected: Lifecycle) -> None:
    """Observed flags map onto lifecycle positions."""
    assert state.lifecycle is expected


def test_intent_mutating_flag() -> None:
    """Only validate-only runs without the site lock."""
    assert not Intent.VALIDATE_ONLY.mutating
    assert all(intent.mutating for intent in Intent if intent is not Intent.VALIDATE_ONLY)


def test_result_fail_and_serialise() -> None:
    """fail() flips success and records a classified error."""
    result = ReconcileResult(intent=Intent.CREATE, full_domain="example.com")
    result.warn("note")
    result.step("nginx.validate", "failed", "bad directive")

    returned = result.fail(ErrorKind.VALIDATION_FAILURE, "bad directive")

    assert returned is result
    assert result.success is False
    assert result.has_error(ErrorKind.VALIDATION_FAILURE)
    data = result.to_dict()
    assert data["errors"] == [{"kind": "validation-failure", "message": "bad directive"}]
    assert data["steps"] == [{"name": "nginx.validate", "status": "failed", "detail": "bad directive"}]
    assert data["warnings"] == ["note"]
