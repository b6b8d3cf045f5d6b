"""Render a :class:`SiteSpec` into nginx virtual-host text."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from .models import DEFAULT_CLIENT_MAX_BODY_SIZE, DEFAULT_LIVE_DIR, DEFAULT_ROOT, SiteSpec
from .templates import TemplateEngine

SITE_TEMPLATE = "nginx/site.conf.j2"
GENERATED_PREFIX = "# Generated:"


def build_context(
    spec: SiteSpec,
    *,
    generated_at: str,
    live_dir: Path = DEFAULT_LIVE_DIR,
) -> dict[str, object]:
    """Return the template variables for *spec*."""
    return {
        "full_domain": spec.full_domain,
        "generated_at": generated_at,
        "port": spec.port,
        "ssl": spec.ssl_enabled,
        "rate_limiting": spec.rate_limiting,
        "zone_name": spec.zone_name,
        "server_names": spec.server_names,
        "certificate": spec.certificate_path(live_dir),
        "certificate_key": spec.certificate_key_path(live_dir),
        # Hardening headers only make sense on the HTTPS block.
        "security_headers": spec.ssl_enabled and spec.security_headers,
        "root": spec.static_path or DEFAULT_ROOT,
        "client_max_body_size": spec.client_max_body_size or DEFAULT_CLIENT_MAX_BODY_SIZE,
        "access_log": spec.access_log,
        "access_log_path": spec.access_log_path,
        "error_log": spec.error_log,
        "error_log_path": spec.error_log_path,
        "gzip": spec.gzip_enabled,
    }


def render(
    spec: SiteSpec,
    *,
    generated_at: str | None = None,
    templates: TemplateEngine | None = None,
    live_dir: Path = DEFAULT_LIVE_DIR,
) -> str:
    """Return the nginx configuration for *spec*.

    The output is a pure function of *spec* apart from the ``# Generated:``
    header line, which carries *generated_at* (default: now, UTC).
    """
    engine = templates or TemplateEngine.with_overrides(None)
    stamp = generated_at or datetime.now(UTC).isoformat()
    return engine.render_to_string(
        SITE_TEMPLATE,
        build_context(spec, generated_at=stamp, live_dir=live_dir),
    )


def strip_generated_header(text: str) -> str:
    """Return *text* without its ``# Generated:`` line."""
    return "".join(
        line for line in text.splitlines(keepends=True) if not line.startswith(GENERATED_PREFIX)
    )


__all__ = ["SITE_TEMPLATE", "build_context", "render", "strip_generated_header"]
