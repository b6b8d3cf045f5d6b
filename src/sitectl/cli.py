"""Typer-powered command line interface for ``sitectl``.

Each command loads the merged configuration once, builds the providers and
hands a :class:`~sitectl.models.SiteSpec` to the reconciler. Every invocation
is recorded as a single structured operation in ``operations.jsonl``.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .certificates import CertificateProvisioner
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import Intent, ReconcileResult, SiteSpec, SiteSpecError
from .probe import StateProbe
from .providers import NginxProvider, PackageManager, SystemdProvider
from .reconciler import Reconciler
from .runner import CommandRunner
from .templates import TemplateEngine
from .tls import TLSInspector, TLSSeverity, TLSValidationReport, TLSValidator

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitectl's YAML config file.",
)

DOMAIN_OPTION = typer.Option(..., "--domain", "-d", help="Primary domain, e.g. example.com.")
SUBDOMAIN_OPTION = typer.Option(
    None,
    "--subdomain",
    "-s",
    help="Optional subdomain; the site is served as <subdomain>.<domain>.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit output as JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Reverse-proxy site manager.

        Generates nginx virtual hosts that proxy to a local application port,
        enables and disables them, and provisions Let's Encrypt certificates.
        """
    ).strip(),
)
tls_app = typer.Typer(help="Inspect TLS certificates for managed sites.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(tls_app, name="tls")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    nginx: NginxProvider
    systemd: SystemdProvider
    probe: StateProbe
    reconciler: Reconciler
    tls_inspector: TLSInspector
    tls_validator: TLSValidator


def _build_runtime(config: AppConfig, *, verbose: bool = False) -> RuntimeContext:
    logger = StructuredLogger(config.logs_dir, console=console, verbose=verbose)
    runner = CommandRunner(
        default_timeout=config.command_timeout,
        privilege_command=config.privilege_command,
    )
    templates = TemplateEngine.with_overrides(config.templates_dir)
    nginx = NginxProvider(
        runner=runner,
        sites_available=config.nginx.sites_available,
        sites_enabled=config.nginx.sites_enabled,
        main_config=config.nginx.main_config,
        nginx_bin=config.nginx.bin,
    )
    systemd = SystemdProvider(
        runner=runner,
        service=config.nginx.service,
        systemctl_bin=config.nginx.systemctl_bin,
    )
    packages = PackageManager(
        runner=runner,
        logger=logger,
        manager=config.packages.manager,
        update_args=config.packages.update_args,
        install_args=config.packages.install_args,
    )
    probe = StateProbe(nginx=nginx, systemd=systemd, logger=logger, live_dir=config.tls.live_dir)
    reconciler = Reconciler(
        nginx=nginx,
        systemd=systemd,
        packages=packages,
        probe=probe,
        certificates=CertificateProvisioner(runner, packages, logger, config.tls),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=logger,
        templates=templates,
        live_dir=config.tls.live_dir,
        daemon_packages=config.packages.daemon_packages,
    )
    return RuntimeContext(
        config=config,
        logger=logger,
        nginx=nginx,
        systemd=systemd,
        probe=probe,
        reconciler=reconciler,
        tls_inspector=TLSInspector(config.tls),
        tls_validator=TLSValidator(config.tls.warn_expiry_days),
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    lock_timeout_override: float | None = None,
    sites_available: Path | None = None,
    sites_enabled: Path | None = None,
    verbose: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    nginx_overrides: dict[str, object] = {}
    if sites_available is not None:
        nginx_overrides["sites_available"] = str(sites_available)
    if sites_enabled is not None:
        nginx_overrides["sites_enabled"] = str(sites_enabled)
    if nginx_overrides:
        overrides["nginx"] = nginx_overrides

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    runtime = _build_runtime(config, verbose=verbose)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sitectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    sites_available: Path | None = typer.Option(
        None,
        "--sites-available",
        file_okay=False,
        help="Override the directory holding generated site configurations.",
    ),
    sites_enabled: Path | None = typer.Option(
        None,
        "--sites-enabled",
        file_okay=False,
        help="Override the directory holding enabled-site symlinks.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output."),
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(
        ctx,
        config_file,
        lock_timeout_override=lock_timeout,
        sites_available=sites_available,
        sites_enabled=sites_enabled,
        verbose=verbose,
    )
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"sitectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc), context=context)
    raise typer.Exit(code=int(rc))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {escape(summary)}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _site_spec(op: OperationScope, domain: str, subdomain: str | None, **options: object) -> SiteSpec:
    try:
        if options:
            return SiteSpec.for_new_site(domain, subdomain, **options)  # type: ignore[arg-type]
        return SiteSpec(domain=domain, subdomain=subdomain)
    except SiteSpecError as exc:
        _command_error(op, str(exc))


def _finish(op: OperationScope, result: ReconcileResult, summary: str) -> None:
    """Copy *result* into the operation record and report it on the console."""
    for name, status, detail in result.steps:
        op.add_step(name, status=status, detail=detail)
    if result.lock_wait_ms is not None:
        op.set_lock_wait_ms(result.lock_wait_ms)
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")

    context = {"result": result.to_dict()}
    if not result.success:
        # Validator output is reported verbatim.
        for error in result.errors:
            console.print(f"[red]{error.kind.value}[/red]")
            console.print(error.message, markup=False, highlight=False, soft_wrap=True)
        op.error(
            f"{result.intent.value} failed for {result.full_domain}.",
            errors=[str(error) for error in result.errors],
            rc=int(ExitCode.FAILURE),
            context=context,
        )
        raise typer.Exit(code=ExitCode.FAILURE)

    console.print(f"[green]{escape(summary)}[/green]")
    if result.warnings:
        op.warning(summary, warnings=result.warnings, changed=int(result.changed), context=context)
    else:
        op.success(summary, changed=int(result.changed), context=context)


@app.command()
def create(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    subdomain: str | None = SUBDOMAIN_OPTION,
    port: int = typer.Option(3000, "--port", "-p", help="Local application port to proxy to."),
    ssl: bool = typer.Option(False, "--ssl", help="Serve over HTTPS with a Let's Encrypt certificate."),
    cert: Path | None = typer.Option(
        None, "--cert", dir_okay=False, help="Existing certificate (PEM); implies --ssl."
    ),
    key: Path | None = typer.Option(
        None, "--key", dir_okay=False, help="Private key matching --cert."
    ),
    static_path: str | None = typer.Option(
        None, "--static-path", help="Document root for static files (default /var/www/html)."
    ),
    client_max_body_size: str | None = typer.Option(
        None, "--client-max-body-size", help="Maximum request body size (default 10M)."
    ),
    no_gzip: bool = typer.Option(False, "--no-gzip", help="Disable gzip compression."),
    rate_limit: bool | None = typer.Option(
        None,
        "--rate-limit/--no-rate-limit",
        help="Toggle request rate limiting (defaults to on with --ssl).",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Render the configuration without touching the system."
    ),
) -> None:
    """Generate, validate, enable and reload a reverse-proxy site."""
    runtime = _get_runtime(ctx)
    args = {
        "domain": domain,
        "subdomain": subdomain,
        "port": port,
        "ssl": ssl,
        "cert": cert,
        "key": key,
        "static_path": static_path,
        "client_max_body_size": client_max_body_size,
        "gzip": not no_gzip,
        "rate_limit": rate_limit,
        "dry_run": dry_run,
    }
    with runtime.logger.operation("create", args=args, target={"kind": "site", "domain": domain}) as op:
        if (cert is None) != (key is None):
            _command_error(op, "Provide both --cert and --key, or neither.")
        spec = _site_spec(
            op,
            domain,
            subdomain,
            port=port,
            ssl_enabled=ssl or cert is not None,
            rate_limiting=rate_limit,
            ssl_cert_path=str(cert) if cert else None,
            ssl_key_path=str(key) if key else None,
            gzip_enabled=not no_gzip,
            static_path=static_path,
            client_max_body_size=client_max_body_size,
        )
        result = runtime.reconciler.reconcile(spec, Intent.CREATE, dry_run=dry_run)

        if dry_run:
            console.print(f"Would write {result.config_path}:")
            console.print(result.rendered or "", markup=False, highlight=False, soft_wrap=True)
            _dry_run_complete(
                op,
                f"no changes made for {spec.full_domain}.",
                context={"path": result.config_path, "content": result.rendered},
            )
            return

        scheme = "https" if result.tls_active else "http"
        _finish(op, result, f"Site {spec.full_domain} is live at {scheme}://{spec.full_domain}")


def _site_command(
    ctx: typer.Context,
    intent: Intent,
    domain: str,
    subdomain: str | None,
    summary: str,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        intent.value,
        args={"domain": domain, "subdomain": subdomain},
        target={"kind": "site", "domain": domain},
    ) as op:
        spec = _site_spec(op, domain, subdomain)
        result = runtime.reconciler.reconcile(spec, intent)
        _finish(op, result, summary.format(site=spec.full_domain))


@app.command()
def remove(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    subdomain: str | None = SUBDOMAIN_OPTION,
) -> None:
    """Disable a site and delete its configuration."""
    _site_command(ctx, Intent.REMOVE, domain, subdomain, "Site {site} removed.")


@app.command()
def enable(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    subdomain: str | None = SUBDOMAIN_OPTION,
) -> None:
    """Link an existing site configuration into sites-enabled."""
    _site_command(ctx, Intent.ENABLE, domain, subdomain, "Site {site} enabled.")


@app.command()
def disable(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    subdomain: str | None = SUBDOMAIN_OPTION,
) -> None:
    """Remove a site's sites-enabled link, keeping its configuration."""
    _site_command(ctx, Intent.DISABLE, domain, subdomain, "Site {site} disabled.")


@app.command("test")
def test_config(ctx: typer.Context) -> None:
    """Run ``nginx -t`` against the live configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("test", target={"kind": "nginx"}) as op:
        outcome = runtime.nginx.validate()
        op.add_step("nginx.validate", status="success" if outcome.ok else "failed")
        if outcome.output:
            console.print(outcome.output, markup=False, highlight=False, soft_wrap=True)
        if not outcome.ok:
            _command_error(
                op,
                "nginx configuration test failed.",
                errors=[outcome.output or outcome.result.describe()],
            )
        console.print("[green]nginx configuration test passed.[/green]")
        op.success("nginx configuration test passed.", changed=0)


def _format_tls_status(severity: TLSSeverity) -> str:
    if severity is TLSSeverity.OK:
        return "[green]OK[/green]"
    if severity is TLSSeverity.WARNING:
        return "[yellow]WARN[/yellow]"
    return "[red]ERROR[/red]"


def _render_tls_report(report: TLSValidationReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Scope")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Message")
    for finding in report.findings:
        table.add_row(
            finding.scope,
            finding.check,
            _format_tls_status(finding.severity),
            escape(finding.message),
        )
    console.print(table)
    console.print(f"Certificate: {report.material.certificate}\nKey: {report.material.key}")
    if report.not_valid_after is not None:
        console.print(f"Not valid after: {report.not_valid_after.isoformat()}")


@app.command()
def status(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    subdomain: str | None = SUBDOMAIN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the daemon and site state for a domain."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"domain": domain, "subdomain": subdomain, "json": json_output},
        target={"kind": "site", "domain": domain},
    ) as op:
        spec = _site_spec(op, domain, subdomain)
        state = runtime.probe.site_state(spec.full_domain)
        material = runtime.tls_inspector.resolve(spec)
        report = (
            runtime.tls_validator.validate(material) if material.certificate.exists() else None
        )
        installed = runtime.probe.daemon_installed()
        running = runtime.probe.daemon_running()
        payload = {
            "site": spec.full_domain,
            "daemon": {"installed": installed, "running": running},
            "config_path": str(runtime.nginx.site_path(spec.full_domain)),
            "state": state.to_dict(),
            "tls": report.to_dict() if report else None,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            table.add_row("Site", spec.full_domain)
            table.add_row("Lifecycle", state.lifecycle.value)
            table.add_row("Config", str(payload["config_path"]))
            table.add_row("nginx installed", str(installed))
            table.add_row("nginx running", str(running))
            table.add_row("Certificate", _format_tls_status(report.status) if report else "none")
            console.print(table)
            for warning in state.warnings:
                console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
        if state.warnings:
            op.warning("Reported site status.", warnings=list(state.warnings), context=payload)
            return
        op.success("Reported site status.", changed=0, context=payload)


@tls_app.command("verify")
def tls_verify(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    subdomain: str | None = SUBDOMAIN_OPTION,
    cert: Path | None = typer.Option(None, "--cert", help="Certificate to verify instead."),
    key: Path | None = typer.Option(None, "--key", help="Private key to verify instead."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate the certificate and key a site uses."""
    runtime = _get_runtime(ctx)
    args = {
        "domain": domain,
        "subdomain": subdomain,
        "cert": cert,
        "key": key,
        "json": json_output,
    }
    with runtime.logger.operation(
        "tls verify", args=args, target={"kind": "site", "domain": domain}
    ) as op:
        if (cert is None) != (key is None):
            _command_error(op, "Provide both --cert and --key, or neither.")
        if cert is not None and key is not None:
            spec = _site_spec(
                op,
                domain,
                subdomain,
                ssl_enabled=True,
                ssl_cert_path=str(cert),
                ssl_key_path=str(key),
            )
        else:
            spec = _site_spec(op, domain, subdomain)
        report = runtime.tls_validator.validate(runtime.tls_inspector.resolve(spec))
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_tls_report(report)

        errors = [
            f"{f.scope}:{f.check} {f.message}"
            for f in report.findings
            if f.severity is TLSSeverity.ERROR
        ]
        warnings = [
            f"{f.scope}:{f.check} {f.message}"
            for f in report.findings
            if f.severity is TLSSeverity.WARNING
        ]
        context = {"report": report.to_dict()}
        if errors:
            op.error("TLS validation failed.", errors=errors, rc=int(ExitCode.FAILURE), context=context)
            raise typer.Exit(code=ExitCode.FAILURE)
        if warnings:
            op.warning("TLS validation completed with warnings.", warnings=warnings, context=context)
            return
        op.success("TLS validation successful.", context=context)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            rendered = json.dumps(value, indent=2, sort_keys=True) if isinstance(value, dict) else str(value)
            table.add_row(key, escape(rendered))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
