"""Provider interfaces for sitectl."""
from __future__ import annotations

from .nginx import LinkStatus, NginxError, NginxProvider, ValidationOutcome
from .packages import PackageManager
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "LinkStatus",
    "NginxError",
    "NginxProvider",
    "PackageManager",
    "SystemdError",
    "SystemdProvider",
    "ValidationOutcome",
]
