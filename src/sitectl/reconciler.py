"""Drive a site from its observed state to the state an intent asks for.

Every mutating transition follows the same shape: take the per-site lock,
make sure nginx is installed and running, validate the tree as it would look
after the change, apply the change and reload. Failures are recorded on the
returned :class:`ReconcileResult`; provider exceptions never escape.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from .certificates import CertificateProvisioner
from .locking import LockError, LockManager, LockTimeoutError
from .logging import StructuredLogger
from .models import (
    DEFAULT_LIVE_DIR,
    ErrorKind,
    Intent,
    ReconcileError,
    ReconcileResult,
    SiteSpec,
    SiteState,
)
from .probe import StateProbe
from .providers.nginx import NginxError, NginxProvider
from .providers.packages import PackageManager
from .providers.systemd import SystemdError, SystemdProvider
from .renderer import render, strip_generated_header
from .steps import Step, run_steps
from .templates import TemplateEngine, TemplateError


class Reconciler:
    """Apply create, remove, enable, disable and validate-only intents."""

    def __init__(
        self,
        *,
        nginx: NginxProvider,
        systemd: SystemdProvider,
        packages: PackageManager,
        probe: StateProbe,
        certificates: CertificateProvisioner,
        locks: LockManager,
        logger: StructuredLogger,
        templates: TemplateEngine | None = None,
        live_dir: Path = DEFAULT_LIVE_DIR,
        daemon_packages: Sequence[str] = ("nginx",),
        lock_timeout: float | None = None,
    ) -> None:
        """Wire the reconciler to its providers."""
        self._nginx = nginx
        self._systemd = systemd
        self._packages = packages
        self._probe = probe
        self._certificates = certificates
        self._locks = locks
        self._logger = logger
        self._templates = templates or TemplateEngine.with_overrides(None)
        self._live_dir = live_dir
        self._daemon_packages = tuple(daemon_packages)
        self._lock_timeout = lock_timeout

    def reconcile(self, spec: SiteSpec, intent: Intent, *, dry_run: bool = False) -> ReconcileResult:
        """Reconcile *spec* according to *intent* and return the outcome."""
        name = spec.full_domain
        result = ReconcileResult(
            intent=intent,
            full_domain=name,
            config_path=self._nginx.site_path(name),
        )

        if dry_run:
            return self._dry_run(spec, result)
        if not intent.mutating:
            self._validate_only(result)
            result.state = self._observe(spec)
            return result

        handlers: Mapping[Intent, Callable[[SiteSpec, ReconcileResult], None]] = {
            Intent.CREATE: self._create,
            Intent.REMOVE: self._remove,
            Intent.ENABLE: self._enable,
            Intent.DISABLE: self._disable,
        }
        try:
            with self._locks.site_lock(name, timeout=self._lock_timeout) as handle:
                result.lock_wait_ms = handle.wait_ms
                if self._bootstrap(result):
                    handlers[intent](spec, result)
        except LockTimeoutError as exc:
            result.fail(ErrorKind.LOCK_TIMEOUT, str(exc))
        except LockError as exc:
            result.fail(ErrorKind.EXTERNAL_COMMAND_FAILURE, str(exc))
        except (NginxError, SystemdError) as exc:
            result.fail(ErrorKind.EXTERNAL_COMMAND_FAILURE, str(exc))
        except TemplateError as exc:
            result.fail(ErrorKind.VALIDATION_FAILURE, str(exc))

        result.state = self._observe(spec)
        for error in result.errors:
            self._logger.error(str(error))
        return result

    # Prerequisites ------------------------------------------------------
    def _bootstrap(self, result: ReconcileResult) -> bool:
        steps = [
            Step(
                name="nginx.install",
                check=self._probe.daemon_installed,
                apply=lambda: self._packages.install(self._daemon_packages),
                post_apply=lambda: self._systemd.enable(check=False),
            ),
            Step(
                name="nginx.start",
                check=self._probe.daemon_running,
                apply=lambda: self._systemd.start(check=False),
            ),
        ]
        outcomes = run_steps(steps, self._logger)
        for outcome in outcomes:
            result.step(outcome.name, outcome.status.value, outcome.detail)
        failed = next((outcome for outcome in outcomes if not outcome.ok), None)
        if failed is not None:
            result.fail(
                ErrorKind.PREREQUISITE_MISSING,
                f"{failed.name} failed: {failed.detail or 'unknown error'}",
            )
            return False
        self._nginx.ensure_directories()
        return True

    # Intents ------------------------------------------------------------
    def _create(self, spec: SiteSpec, result: ReconcileResult) -> None:
        if not spec.ssl_enabled or spec.has_explicit_certificate:
            self._apply_config(spec, result)
            return
        if Path(spec.certificate_path(self._live_dir)).is_file():
            result.step("tls.certificate", "satisfied", "existing certificate reused")
            self._apply_config(spec, result)
            return

        # certbot's nginx authenticator needs the port-80 server to be live first.
        if not self._apply_config(spec.with_ssl(False), result):
            return

        installed = self._certificates.ensure_client_installed()
        result.step(installed.name, installed.status.value, installed.detail)
        if not installed.ok:
            self._degrade_to_http(result, f"ACME client unavailable: {installed.detail}")
            return

        issued = self._certificates.issue(spec.domain, spec.subdomain)
        if not issued.ok:
            result.step("tls.issue", "failed", issued.result.describe())
            self._degrade_to_http(result, issued.result.output or issued.result.describe())
            return
        result.step("tls.issue", detail=issued.full_domain)
        if issued.renewal_error:
            result.warn(issued.renewal_error)
        elif issued.renewal_added:
            result.step("tls.renewal", detail="renewal job installed")

        self._apply_config(spec, result)

    def _degrade_to_http(self, result: ReconcileResult, message: str) -> None:
        warning = ReconcileError(ErrorKind.CERT_ISSUANCE_FAILURE, message)
        result.warn(f"{warning}; site left on HTTP only")

    def _enable(self, spec: SiteSpec, result: ReconcileResult) -> None:
        name = spec.full_domain
        state = self._observe(spec, result)
        if not state.available:
            result.fail(
                ErrorKind.EXTERNAL_COMMAND_FAILURE,
                f"Site configuration {self._nginx.site_path(name)} does not exist.",
            )
            return
        if state.enabled:
            result.warn(f"Site {name} is already enabled.")
            result.step("nginx.enable", "unchanged")
            return

        site_path = self._nginx.site_path(name)
        if not self._gated(
            result,
            {name: site_path},
            mutate=lambda: self._nginx.enable(name),
            rollback=lambda: self._nginx.disable(name),
        ):
            return
        result.step("nginx.enable", detail=str(self._nginx.enabled_path(name)))
        result.changed = True
        self._reload(result)

    def _disable(self, spec: SiteSpec, result: ReconcileResult) -> None:
        name = spec.full_domain
        self._observe(spec, result)
        link = self._nginx.link_status(name)
        if not link.present:
            result.warn(f"Site {name} is not enabled.")
            result.step("nginx.disable", "unchanged")
            return

        site_path = self._nginx.site_path(name)
        if not self._gated(
            result,
            {name: None},
            mutate=lambda: self._nginx.disable(name),
            rollback=lambda: self._nginx.enable(name) if site_path.is_file() else None,
        ):
            return
        result.step("nginx.disable", detail=str(self._nginx.enabled_path(name)))
        result.changed = True
        self._reload(result)

    def _remove(self, spec: SiteSpec, result: ReconcileResult) -> None:
        name = spec.full_domain
        state = self._observe(spec, result)
        link = self._nginx.link_status(name)
        if not state.available and not link.present:
            result.warn(f"Site {name} does not exist; nothing to remove.")
            result.step("nginx.remove", "unchanged")
            return

        previous = self._nginx.read_site(name)
        was_enabled = state.enabled

        def mutate() -> None:
            if self._nginx.disable(name):
                result.step("nginx.disable", detail=str(self._nginx.enabled_path(name)))
            if self._nginx.delete_site(name):
                result.step("nginx.delete", detail=str(self._nginx.site_path(name)))

        def rollback() -> None:
            if previous is not None:
                self._restore(name, previous)
                if was_enabled:
                    self._nginx.enable(name)

        if not self._gated(result, {name: None}, mutate=mutate, rollback=rollback):
            return
        result.changed = True
        self._reload(result)

    def _validate_only(self, result: ReconcileResult) -> None:
        outcome = self._nginx.validate()
        if not outcome.ok:
            result.step("nginx.validate", "failed", outcome.output)
            result.fail(ErrorKind.VALIDATION_FAILURE, outcome.output or outcome.result.describe())
            return
        result.step("nginx.validate", detail=outcome.output or None)

    def _dry_run(self, spec: SiteSpec, result: ReconcileResult) -> ReconcileResult:
        if result.intent is Intent.CREATE:
            result.rendered = render(spec, templates=self._templates, live_dir=self._live_dir)
        result.step(result.intent.value, "skipped", "dry run; no changes made")
        result.state = self._observe(spec)
        return result

    # Helpers ------------------------------------------------------------
    def _apply_config(self, spec: SiteSpec, result: ReconcileResult) -> bool:
        """Write, validate and enable the configuration for *spec*."""
        name = spec.full_domain
        rendered = render(spec, templates=self._templates, live_dir=self._live_dir)
        result.rendered = rendered
        state = self._observe(spec, result)
        previous = self._nginx.read_site(name)

        if (
            previous is not None
            and state.enabled
            and strip_generated_header(previous) == strip_generated_header(rendered)
        ):
            result.step("nginx.config", "unchanged", str(self._nginx.site_path(name)))
            result.tls_active = spec.ssl_enabled
            return True

        candidate = self._nginx.stage_candidate(name, rendered)
        linked: list[bool] = []

        def mutate() -> None:
            self._nginx.promote(candidate, name)
            linked.append(self._nginx.enable(name))

        def rollback() -> None:
            if previous is None:
                self._nginx.delete_site(name)
            else:
                self._restore(name, previous)
            if linked and linked[0]:
                self._nginx.disable(name)

        try:
            if not self._gated(result, {name: candidate}, mutate=mutate, rollback=rollback):
                return False
        finally:
            self._nginx.discard(candidate)

        result.step("nginx.config", detail=str(self._nginx.site_path(name)))
        result.step("nginx.enable", "success" if linked and linked[0] else "unchanged")
        result.changed = True
        if not self._reload(result):
            return False
        result.tls_active = spec.ssl_enabled
        return True

    def _gated(
        self,
        result: ReconcileResult,
        overrides: Mapping[str, Path | None],
        *,
        mutate: Callable[[], object],
        rollback: Callable[[], object],
    ) -> bool:
        """Run *mutate* only if the resulting tree passes ``nginx -t``.

        When the tree cannot be staged the change is applied, the live tree is
        checked, and *rollback* undoes the change on failure.
        """
        outcome = self._nginx.validate(overrides)
        if outcome.note:
            result.warn(outcome.note)
        if not outcome.staged:
            mutate()
            outcome = self._nginx.validate()
            if not outcome.ok:
                rollback()
        if not outcome.ok:
            result.step("nginx.validate", "failed", outcome.output)
            result.fail(ErrorKind.VALIDATION_FAILURE, outcome.output or outcome.result.describe())
            return False
        result.step("nginx.validate")
        if outcome.staged:
            mutate()
        return True

    def _restore(self, name: str, content: str) -> None:
        candidate = self._nginx.stage_candidate(name, content)
        try:
            self._nginx.promote(candidate, name)
        finally:
            self._nginx.discard(candidate)

    def _reload(self, result: ReconcileResult) -> bool:
        reload = self._systemd.reload(check=False)
        if not reload.ok:
            result.step("nginx.reload", "failed", reload.describe())
            result.fail(ErrorKind.EXTERNAL_COMMAND_FAILURE, f"Reload failed: {reload.describe()}")
            return False
        result.step("nginx.reload")
        return True

    def _observe(self, spec: SiteSpec, result: ReconcileResult | None = None) -> SiteState:
        certificate = Path(spec.ssl_cert_path) if spec.has_explicit_certificate else None
        state = self._probe.site_state(spec.full_domain, certificate=certificate)
        if result is not None:
            for warning in state.warnings:
                if warning not in result.warnings:
                    result.warn(warning)
        return state


__all__ = ["Reconciler"]
