"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from sitectl.certificates import CertificateProvisioner
from sitectl.config import TLSConfig
from sitectl.locking import LockManager
from sitectl.logging import StructuredLogger
from sitectl.probe import StateProbe
from sitectl.providers import NginxProvider, PackageManager, SystemdProvider
from sitectl.reconciler import Reconciler
from sitectl.runner import CommandResult, FailureKind

Handler = Callable[[tuple[str, ...], "str | None"], CommandResult]

_INCLUDE_RE = re.compile(r"include\s+(\S+)/\*;")


def ok(*args: str, stdout: str = "", stderr: str = "") -> CommandResult:
    """Return a successful result."""
    return CommandResult(args=tuple(args), exit_code=0, stdout=stdout, stderr=stderr)


def fail(*args: str, rc: int = 1, stdout: str = "", stderr: str = "") -> CommandResult:
    """Return a failed result."""
    return CommandResult(
        args=tuple(args),
        exit_code=rc,
        stdout=stdout,
        stderr=stderr,
        failure=FailureKind.NON_ZERO_EXIT,
    )


def make_certificate(
    directory: Path,
    *,
    common_name: str = "example.com",
    valid_for: timedelta = timedelta(days=90),
    cert_name: str = "fullchain.pem",
    key_name: str = "privkey.pem",
) -> tuple[Path, Path]:
    """Write a self-signed certificate and key into *directory*."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + valid_for)
        .sign(key, hashes.SHA256())
    )
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / cert_name
    key_path = directory / key_name
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    key_path.chmod(0o600)
    return cert_path, key_path


@dataclass
class Call:
    """A recorded invocation."""

    program: str
    args: tuple[str, ...]
    input: str | None = None
    privileged: bool = False

    @property
    def command(self) -> tuple[str, ...]:
        """Return the program followed by its arguments."""
        return (self.program, *self.args)


@dataclass
class FakeRunner:
    """Scripted stand-in for :class:`sitectl.runner.CommandRunner`.

    Every command succeeds unless a handler is registered for
    ``"<program> <first-arg>"`` or ``"<program>"``. ``nginx -t`` calls record
    the enabled sites they were given in :attr:`validated` and fail with
    :attr:`nginx_error` when it is set.
    """

    handlers: dict[str, CommandResult | Handler] = field(default_factory=dict)
    calls: list[Call] = field(default_factory=list)
    validated: list[dict[str, str]] = field(default_factory=list)
    nginx_error: str | None = None
    crontab: str | None = None

    def on(self, key: str, handler: CommandResult | Handler) -> None:
        """Register *handler* for ``program`` or ``program first-arg``."""
        self.handlers[key] = handler

    def run(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        input: str | None = None,  # noqa: A002
        timeout: float | None = None,
        privileged: bool = False,
    ) -> CommandResult:
        """Record the call and return the scripted result."""
        argv = tuple(args)
        self.calls.append(Call(program=program, args=argv, input=input, privileged=privileged))
        key = f"{program} {argv[0]}" if argv else program
        handler = self.handlers.get(key, self.handlers.get(program))
        if isinstance(handler, CommandResult):
            return handler
        if handler is not None:
            return handler(argv, input)
        if program == "nginx" and argv[:1] == ("-t",):
            return self._nginx_test(argv)
        if program == "crontab":
            return self._crontab(argv, input)
        return ok(program, *argv)

    def commands(self, program: str | None = None) -> list[tuple[str, ...]]:
        """Return recorded commands, optionally filtered by program."""
        return [call.command for call in self.calls if program is None or call.program == program]

    def _nginx_test(self, argv: tuple[str, ...]) -> CommandResult:
        sites: dict[str, str] = {}
        if "-c" in argv:
            main = Path(argv[argv.index("-c") + 1])
            match = _INCLUDE_RE.search(main.read_text(encoding="utf-8"))
            if match:
                for entry in sorted(Path(match.group(1)).iterdir()):
                    sites[entry.name] = entry.read_text(encoding="utf-8")
        self.validated.append(sites)
        if self.nginx_error:
            return fail("nginx", *argv, stderr=self.nginx_error)
        return ok("nginx", *argv, stderr="nginx: configuration file test is successful")

    def _crontab(self, argv: tuple[str, ...], content: str | None) -> CommandResult:
        if argv == ("-l",):
            if self.crontab is None:
                return fail("crontab", "-l", stderr="no crontab for root")
            return ok("crontab", "-l", stdout=self.crontab)
        self.crontab = content
        return ok("crontab", *argv)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a fresh scripted runner."""
    return FakeRunner()


@pytest.fixture
def logger(tmp_path: Path) -> StructuredLogger:
    """Return a structured logger writing under *tmp_path*."""
    return StructuredLogger(tmp_path / "logs")


@pytest.fixture
def nginx_root(tmp_path: Path) -> Path:
    """Create a minimal nginx tree whose main config includes sites-enabled."""
    root = tmp_path / "nginx"
    (root / "sites-available").mkdir(parents=True)
    (root / "sites-enabled").mkdir()
    (root / "nginx.conf").write_text(
        "events {}\n"
        "http {\n"
        "    include /etc/nginx/mime.types;\n"
        f"    include {root / 'sites-enabled'}/*;\n"
        "}\n",
        encoding="utf-8",
    )
    return root


@pytest.fixture
def nginx(fake_runner: FakeRunner, nginx_root: Path) -> NginxProvider:
    """Return an nginx provider bound to the temporary tree."""
    return NginxProvider(
        runner=fake_runner,
        sites_available=nginx_root / "sites-available",
        sites_enabled=nginx_root / "sites-enabled",
        main_config=nginx_root / "nginx.conf",
    )


@pytest.fixture
def live_dir(tmp_path: Path) -> Path:
    """Return the Let's Encrypt live directory used by tests."""
    path = tmp_path / "letsencrypt" / "live"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def tls_config(live_dir: Path) -> TLSConfig:
    """Return TLS settings pointing at the temporary live directory."""
    return TLSConfig(live_dir=live_dir)


@pytest.fixture
def reconciler(
    tmp_path: Path,
    fake_runner: FakeRunner,
    nginx: NginxProvider,
    logger: StructuredLogger,
    live_dir: Path,
    tls_config: TLSConfig,
) -> Reconciler:
    """Return a reconciler wired entirely to fakes and temporary paths."""
    systemd = SystemdProvider(runner=fake_runner)
    packages = PackageManager(runner=fake_runner, logger=logger)
    probe = StateProbe(nginx=nginx, systemd=systemd, logger=logger, live_dir=live_dir)
    return Reconciler(
        nginx=nginx,
        systemd=systemd,
        packages=packages,
        probe=probe,
        certificates=CertificateProvisioner(fake_runner, packages, logger, tls_config),
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
        logger=logger,
        live_dir=live_dir,
    )
