"""Shared test helpers: throwaway certificates and fake external tools."""
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.backends import default_backend

from datahub_bootstrap.connection import parse_connection_string
from datahub_bootstrap.probe import CheckKind, DependencyTarget, RetryPolicy


ENV_VARS = [
    "LOGGING_LEVEL", "TIMEZONE",
    "DATABASE_URL", "OPENSEARCH_URI", "KAFKA_BOOTSTRAP_SERVER", "DATAHUB_GMS_URL",
    "KAFKA_SASL_USERNAME", "KAFKA_SASL_PASSWORD",
    "KAFKA_ACCESS_CERT", "KAFKA_ACCESS_KEY", "KAFKA_CA_CERT",
    "DATAHUB_SECRET", "DATAHUB_SYSTEM_CLIENT_ID", "DATAHUB_SYSTEM_CLIENT_SECRET",
    "METADATA_SERVICE_AUTH_ENABLED", "JAVA_MEMORY_OPTS", "OPENSEARCH_SSL_PROTOCOL",
    "WAIT_FOR_DEPENDENCIES", "WAIT_MAX_ATTEMPTS", "WAIT_INTERVAL", "WAIT_CHECK_TIMEOUT",
    "WAIT_OPTIONAL_DEPENDENCIES", "WAIT_ATTEMPT_OVERRIDES", "WAIT_CONCURRENCY",
    "FAILURE_PAUSE", "CERTS_DIR",
]


def make_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048, backend=default_backend())


def make_cert_pem(common_name: str, key=None, days_valid: int = 365) -> tuple[str, str]:
    """Create a self-signed certificate; returns (cert_pem, key_pem)."""
    key = key or make_key()
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    if days_valid < 0:
        not_valid_before = datetime.now(timezone.utc) + timedelta(days=days_valid * 2)
    else:
        not_valid_before = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_valid_before)
        .not_valid_after(datetime.now(timezone.utc) + timedelta(days=days_valid))
        .sign(key, hashes.SHA256(), default_backend())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    return cert_pem, key_pem


class FakeTools:
    """Stand-in for subprocess.run that imitates openssl and keytool.

    openssl writes the ``-out`` file; keytool appends the alias to the
    ``-keystore`` file so tests can count imported entries.
    """

    def __init__(self, fail_pkcs12: bool = False, fail_aliases=(), missing: set[str] | None = None):
        self.fail_pkcs12 = fail_pkcs12
        self.fail_aliases = set(fail_aliases)
        self.missing = missing or set()
        self.calls = []

    def __call__(self, cmd, capture_output=True, timeout=None, check=False):
        self.calls.append(list(cmd))
        tool = cmd[0]
        if tool in self.missing:
            raise FileNotFoundError(tool)
        if tool == "openssl":
            if self.fail_pkcs12:
                return subprocess.CompletedProcess(cmd, 1, b"", b"unable to load private key")
            Path(cmd[cmd.index("-out") + 1]).write_bytes(b"PKCS12")
        elif tool == "keytool":
            alias = cmd[cmd.index("-alias") + 1]
            if alias in self.fail_aliases:
                return subprocess.CompletedProcess(cmd, 1, b"", b"keytool error: java.lang.Exception")
            with open(cmd[cmd.index("-keystore") + 1], "a", encoding="utf-8") as f:
                f.write(alias + "\n")
        return subprocess.CompletedProcess(cmd, 0, b"", b"")

    def commands(self, tool: str):
        return [c for c in self.calls if c[0] == tool]


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_target(name="database", url="postgres://db:5432/app", kind=CheckKind.TCP, required=True,
                attempts=3, interval=10.0, **kwargs) -> DependencyTarget:
    return DependencyTarget(
        name=name,
        descriptor=parse_connection_string(url),
        kind=kind,
        required=required,
        policy=RetryPolicy(max_attempts=attempts, interval=interval, check_timeout=1.0),
        **kwargs,
    )


@pytest.fixture
def fake_tools(monkeypatch):
    import datahub_bootstrap.tls as tls
    tools = FakeTools()
    monkeypatch.setattr(tls.subprocess, "run", tools)
    return tools


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
