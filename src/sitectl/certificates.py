"""Certificate issuance through certbot and renewal scheduling via cron."""
from __future__ import annotations

from dataclasses import dataclass

from .config import TLSConfig
from .logging import StructuredLogger
from .providers.packages import PackageManager
from .runner import CommandResult, CommandRunnerProtocol, FailureKind
from .steps import Step, StepOutcome, run_step


class RenewalJobError(RuntimeError):
    """Raised when the renewal cron entry cannot be written."""


@dataclass(frozen=True, slots=True)
class IssueResult:
    """Outcome of a certificate request."""

    full_domain: str
    result: CommandResult
    renewal_added: bool = False
    renewal_error: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when certbot obtained the certificate."""
        return self.result.ok


def _command_signature(line: str) -> str | None:
    """Return the command portion of a crontab line, whitespace-normalised."""
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("@"):
        parts = text.split(None, 1)
    else:
        parts = text.split(None, 5)
        parts = parts[5:] if len(parts) == 6 else []
    return " ".join(parts[-1].split()) if parts else None


class CertificateProvisioner:
    """Install certbot, request certificates and keep a renewal job in cron."""

    def __init__(
        self,
        runner: CommandRunnerProtocol,
        packages: PackageManager,
        logger: StructuredLogger,
        config: TLSConfig,
    ) -> None:
        """Wire the provisioner to its collaborators and TLS settings."""
        self._runner = runner
        self._packages = packages
        self._logger = logger
        self._config = config

    def client_installed(self) -> bool:
        """Return ``True`` when ``certbot --version`` succeeds."""
        return self._runner.run(self._config.certbot_bin, ["--version"]).ok

    def ensure_client_installed(self) -> StepOutcome:
        """Install the ACME client packages unless certbot already runs."""
        step = Step(
            name="certbot.install",
            check=self.client_installed,
            apply=lambda: self._packages.install(self._config.client_packages),
        )
        return run_step(step, self._logger)

    def issue(self, domain: str, subdomain: str | None = None) -> IssueResult:
        """Request a certificate for the site and its ``www.`` alias."""
        full_domain = f"{subdomain}.{domain}" if subdomain else domain
        email = self._config.email or f"admin@{domain}"
        self._logger.info(f"Requesting certificate for {full_domain}")
        result = self._runner.run(
            self._config.certbot_bin,
            [
                "certonly",
                "--nginx",
                "--non-interactive",
                "--agree-tos",
                "--email",
                email,
                "-d",
                full_domain,
                "-d",
                f"www.{full_domain}",
            ],
            privileged=True,
        )
        if not result.ok:
            self._logger.warning(f"Certificate request for {full_domain} failed: {result.describe()}")
            return IssueResult(full_domain=full_domain, result=result)

        try:
            added = self.ensure_renewal_job()
        except RenewalJobError as exc:
            self._logger.warning(str(exc))
            return IssueResult(full_domain=full_domain, result=result, renewal_error=str(exc))
        return IssueResult(full_domain=full_domain, result=result, renewal_added=added)

    def ensure_renewal_job(self) -> bool:
        """Add the renewal cron line unless one with the same command exists.

        Returns ``True`` when a line was added.
        """
        listing = self._runner.run(self._config.crontab_bin, ["-l"], privileged=True)
        existing = ""
        if listing.ok:
            existing = listing.stdout
        elif listing.failure is not FailureKind.NON_ZERO_EXIT or listing.exit_code != 1:
            # crontab -l exits 1 only when the user has no crontab yet.
            raise RenewalJobError(f"Unable to read crontab: {listing.describe()}")

        wanted = " ".join(self._config.renewal_command.split())
        if any(_command_signature(line) == wanted for line in existing.splitlines()):
            self._logger.debug("Renewal cron entry already present")
            return False

        cron_line = f"{self._config.renewal_schedule} {self._config.renewal_command}"
        content = existing
        if content and not content.endswith("\n"):
            content += "\n"
        content += cron_line + "\n"

        self._logger.info(f"Installing renewal cron entry: {cron_line}")
        written = self._runner.run(
            self._config.crontab_bin,
            ["-"],
            input=content,
            privileged=True,
        )
        if not written.ok:
            raise RenewalJobError(f"Unable to install renewal cron entry: {written.describe()}")
        return True


__all__ = ["CertificateProvisioner", "IssueResult", "RenewalJobError"]
