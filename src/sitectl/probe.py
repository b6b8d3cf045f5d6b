"""Read-only probes for daemon status and per-site filesystem state."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .logging import StructuredLogger
from .models import DEFAULT_LIVE_DIR, SiteState
from .providers.nginx import NginxProvider
from .providers.systemd import SystemdProvider


@dataclass(slots=True)
class StateProbe:
    """Observe the daemon and a site's stores. Never mutates anything."""

    nginx: NginxProvider
    systemd: SystemdProvider
    logger: StructuredLogger
    live_dir: Path = DEFAULT_LIVE_DIR

    def daemon_installed(self) -> bool:
        """Return ``True`` when the nginx binary runs."""
        return self.nginx.is_installed()

    def daemon_running(self) -> bool:
        """Return ``True`` when the service manager reports nginx active."""
        return self.systemd.is_active()

    def site_state(self, full_domain: str, *, certificate: Path | None = None) -> SiteState:
        """Return the observed :class:`SiteState` for *full_domain*.

        *certificate* overrides the Let's Encrypt path used for
        ``cert_present`` (for sites with explicit certificate paths).
        """
        warnings: list[str] = []
        site_path = self.nginx.site_path(full_domain)
        available = site_path.is_file()

        link = self.nginx.link_status(full_domain)
        enabled = False
        if link.broken:
            warnings.append(
                f"Broken symlink {self.nginx.enabled_path(full_domain)}; "
                "treating site as not enabled and not available."
            )
            available = False
        elif link.present and not link.is_symlink:
            warnings.append(
                f"{self.nginx.enabled_path(full_domain)} is a regular file, not a symlink."
            )
            enabled = available
        elif link.present and not link.points_to_site:
            warnings.append(
                f"{self.nginx.enabled_path(full_domain)} does not point at {site_path}."
            )
        else:
            enabled = link.points_to_site

        cert_path = certificate or (self.live_dir / full_domain / "fullchain.pem")
        state = SiteState(
            available=available,
            enabled=enabled and available,
            cert_present=cert_path.is_file(),
            warnings=tuple(warnings),
        )
        for warning in warnings:
            self.logger.warning(warning)
        return state


__all__ = ["StateProbe"]
