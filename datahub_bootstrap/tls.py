"""Kafka mTLS material: PEM validation, PKCS12 keystore and JKS truststore creation."""
import os
import re
import shutil
import logging
import datetime
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.backends import default_backend

from .constants import (
    CA_ALIAS,
    CA_CERT_FILENAME,
    CERT_EXPIRY_WARNING_DAYS,
    CERTIFICATE_MODE,
    CERTS_DIR_MODE,
    CERTS_DIR_PREFIX,
    CLIENT_CERT_FILENAME,
    CLIENT_KEY_FILENAME,
    KEYSTORE_ALIAS,
    KEYSTORE_FILENAME,
    PRIVATE_KEY_MODE,
    STORE_PASSWORD,
    TOOL_TIMEOUT,
    TRUSTSTORE_FILENAME,
)
from .errors import CredentialMaterializationFailure, MissingConfiguration

logger = logging.getLogger(__name__)

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class TlsMaterial:
    client_certificate_pem: str | None = None
    client_key_pem: str | None = None
    ca_certificates_pem: tuple[str, ...] = ()

    @property
    def has_client_identity(self) -> bool:
        return bool(self.client_certificate_pem and self.client_key_pem)

    @property
    def is_empty(self) -> bool:
        return not (self.client_certificate_pem or self.client_key_pem or self.ca_certificates_pem)

    @classmethod
    def from_settings(cls, settings) -> "TlsMaterial | None":
        """Collect PEM material from settings, or None when nothing is configured.

        Raises:
            MissingConfiguration: If only half of the client certificate/key pair is set
        """
        cert = normalize_pem(settings.kafka_access_cert)
        key = normalize_pem(settings.kafka_access_key)
        ca = normalize_pem(settings.kafka_ca_cert)

        if cert and not key:
            raise MissingConfiguration("Kafka client key", "KAFKA_ACCESS_CERT is set without KAFKA_ACCESS_KEY")
        if key and not cert:
            raise MissingConfiguration("Kafka client certificate", "KAFKA_ACCESS_KEY is set without KAFKA_ACCESS_CERT")

        material = cls(
            client_certificate_pem=cert,
            client_key_pem=key,
            ca_certificates_pem=tuple(split_pem_certificates(ca)) if ca else (),
        )
        if ca and not material.ca_certificates_pem:
            raise MissingConfiguration("Kafka CA certificate", "KAFKA_CA_CERT contains no PEM certificate block")
        if material.is_empty:
            return None
        return material


@dataclass(frozen=True)
class KeyStoreArtifact:
    path: str
    password: str
    store_type: str = "PKCS12"


@dataclass(frozen=True)
class TrustStoreArtifact:
    path: str
    password: str
    aliases: tuple[str, ...] = ()
    store_type: str = "JKS"


@dataclass
class TlsArtifacts:
    directory: str
    keystore: KeyStoreArtifact | None = None
    truststore: TrustStoreArtifact | None = None
    pem_files: list[str] = field(default_factory=list)

    def cleanup(self):
        """Remove the scoped directory. Only used on abort paths."""
        shutil.rmtree(self.directory, ignore_errors=True)
        logger.debug("Removed credential directory %s", self.directory)


def normalize_pem(value: str | None) -> str | None:
    """Strip a PEM blob and expand literal ``\\n`` escapes used by some secret stores."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if "-----BEGIN" in text and "\n" not in text and "\\n" in text:
        text = text.replace("\\n", "\n")
    return text + "\n"


def split_pem_certificates(blob: str) -> list[str]:
    """Split concatenated PEM certificates into individual blocks.

    keytool only imports the first certificate of a multi-certificate file,
    so every block has to be imported on its own.
    """
    return [match.group(0) + "\n" for match in _PEM_CERT_RE.finditer(blob or "")]


def _write_secure(path: Path, content: str, mode: int):
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    os.chmod(str(path), mode)


def _validate_client_identity(cert_pem: str, key_pem: str):
    """Validate PEM format and that certificate and private key belong together.

    Raises:
        CredentialMaterializationFailure: If either PEM is invalid or they don't match
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"), default_backend())
    except ValueError as exc:
        raise CredentialMaterializationFailure("load Kafka client certificate", f"invalid PEM: {exc}") from exc
    try:
        key = serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None, backend=default_backend())
    except (ValueError, TypeError) as exc:
        raise CredentialMaterializationFailure("load Kafka client key", f"invalid PEM: {exc}") from exc

    cert_public = cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_public = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if cert_public != key_public:
        raise CredentialMaterializationFailure(
            "validate Kafka client identity", "certificate and private key do not match"
        )

    _log_expiration(cert, "Kafka client certificate")


def _log_expiration(cert: x509.Certificate, label: str):
    expiration = cert.not_valid_after_utc
    days_until_expiry = (expiration - datetime.datetime.now(datetime.timezone.utc)).total_seconds() / 86400
    if days_until_expiry <= 0:
        logger.error("%s has EXPIRED (expiration: %s)", label, expiration.isoformat())
    elif days_until_expiry < CERT_EXPIRY_WARNING_DAYS:
        logger.warning("%s expires in %d days (%s)", label, days_until_expiry, expiration.isoformat())
    else:
        logger.info("%s is valid (expires in %d days)", label, days_until_expiry)


def _run_tool(cmd: list[str], step: str) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            timeout=TOOL_TIMEOUT,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CredentialMaterializationFailure(step, f"{cmd[0]} is not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise CredentialMaterializationFailure(step, f"{cmd[0]} timed out after {TOOL_TIMEOUT}s") from exc


def _tool_error(result: subprocess.CompletedProcess) -> str:
    output = result.stderr or result.stdout or b""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="ignore")
    return output.strip() or f"exit code {result.returncode}"


def create_keystore(cert_path: Path, key_path: Path, keystore_path: Path, password: str = STORE_PASSWORD) -> KeyStoreArtifact:
    """Combine a client certificate and key into a password-protected PKCS12 keystore.

    Raises:
        CredentialMaterializationFailure: If openssl fails or produces no file
    """
    step = "create Kafka client keystore"
    cmd = [
        "openssl", "pkcs12", "-export",
        "-in", str(cert_path),
        "-inkey", str(key_path),
        "-out", str(keystore_path),
        "-name", KEYSTORE_ALIAS,
        "-passout", f"pass:{password}",
    ]
    logger.info("Creating PKCS12 keystore from client certificate and key...")
    result = _run_tool(cmd, step)
    if result.returncode != 0:
        raise CredentialMaterializationFailure(step, _tool_error(result))
    if not keystore_path.is_file():
        raise CredentialMaterializationFailure(step, f"openssl did not produce {keystore_path}")
    os.chmod(str(keystore_path), PRIVATE_KEY_MODE)
    logger.info("Keystore created at %s", keystore_path)
    return KeyStoreArtifact(path=str(keystore_path), password=password)


def create_truststore(ca_paths: list[Path], truststore_path: Path, password: str = STORE_PASSWORD) -> TrustStoreArtifact:
    """Import every CA certificate into a JKS truststore under a distinct alias.

    A failed import is logged and skipped; the truststore is only considered
    failed when no certificate at all could be imported.

    Raises:
        CredentialMaterializationFailure: If zero certificates were imported
    """
    step = "create Kafka truststore"
    if truststore_path.exists():
        truststore_path.unlink()

    imported = []
    errors = []
    for index, ca_path in enumerate(ca_paths):
        alias = CA_ALIAS.format(index=index)
        cmd = [
            "keytool", "-importcert", "-trustcacerts", "-noprompt",
            "-keystore", str(truststore_path),
            "-storetype", "JKS",
            "-storepass", password,
            "-alias", alias,
            "-file", str(ca_path),
        ]
        try:
            result = _run_tool(cmd, step)
        except CredentialMaterializationFailure as exc:
            logger.warning("Failed to import CA certificate %s as %s: %s", ca_path.name, alias, exc.detail)
            errors.append(f"{alias}: {exc.detail}")
            continue
        if result.returncode != 0:
            detail = _tool_error(result)
            logger.warning("Failed to import CA certificate %s as %s: %s", ca_path.name, alias, detail)
            errors.append(f"{alias}: {detail}")
            continue
        imported.append(alias)
        logger.info("Imported CA certificate %s as alias %s", ca_path.name, alias)

    if not imported:
        detail = "; ".join(errors) if errors else "no CA certificates supplied"
        raise CredentialMaterializationFailure(step, f"no CA certificate could be imported ({detail})")
    if not truststore_path.is_file():
        raise CredentialMaterializationFailure(step, f"keytool did not produce {truststore_path}")
    if errors:
        logger.warning("Truststore created with %d of %d CA certificates", len(imported), len(ca_paths))

    os.chmod(str(truststore_path), CERTIFICATE_MODE)
    logger.info("Truststore created at %s with aliases %s", truststore_path, ", ".join(imported))
    return TrustStoreArtifact(path=str(truststore_path), password=password, aliases=tuple(imported))


def _is_parseable_certificate(pem: str) -> bool:
    try:
        x509.load_pem_x509_certificate(pem.encode("utf-8"), default_backend())
        return True
    except ValueError as exc:
        logger.warning("Skipping CA certificate block that is not valid PEM: %s", exc)
        return False


def make_credentials_dir(base_dir: str | None = None) -> Path:
    try:
        if base_dir:
            Path(base_dir).mkdir(parents=True, exist_ok=True)
        directory = Path(tempfile.mkdtemp(prefix=CERTS_DIR_PREFIX, dir=base_dir))
        os.chmod(str(directory), CERTS_DIR_MODE)
    except OSError as exc:
        raise CredentialMaterializationFailure("create credential directory", str(exc)) from exc
    return directory


def materialize(material: TlsMaterial | None, base_dir: str | None = None) -> TlsArtifacts | None:
    """Write PEM material to a scoped directory and build keystore/truststore files.

    Args:
        material: PEM blobs collected from the environment, or None
        base_dir: Parent for the scoped directory (default: system temp dir)

    Returns:
        TlsArtifacts describing what was created, or None when there is no material

    Raises:
        CredentialMaterializationFailure: If the keystore or truststore cannot be built
    """
    if material is None or material.is_empty:
        logger.info("No Kafka TLS material provided; skipping keystore and truststore")
        return None

    directory = make_credentials_dir(base_dir)
    artifacts = TlsArtifacts(directory=str(directory))
    logger.info("=== Setting up Kafka SSL/TLS certificates in %s ===", directory)

    try:
        if material.has_client_identity:
            _validate_client_identity(material.client_certificate_pem, material.client_key_pem)
            cert_path = directory / CLIENT_CERT_FILENAME
            key_path = directory / CLIENT_KEY_FILENAME
            _write_secure(cert_path, material.client_certificate_pem, CERTIFICATE_MODE)
            _write_secure(key_path, material.client_key_pem, PRIVATE_KEY_MODE)
            artifacts.pem_files.extend([str(cert_path), str(key_path)])
            artifacts.keystore = create_keystore(cert_path, key_path, directory / KEYSTORE_FILENAME)

        if material.ca_certificates_pem:
            ca_paths = []
            for index, pem in enumerate(material.ca_certificates_pem):
                if not _is_parseable_certificate(pem):
                    continue
                ca_path = directory / CA_CERT_FILENAME.format(index=index)
                _write_secure(ca_path, pem, CERTIFICATE_MODE)
                artifacts.pem_files.append(str(ca_path))
                ca_paths.append(ca_path)
            if not ca_paths:
                raise CredentialMaterializationFailure(
                    "create Kafka truststore", "no CA certificate block could be parsed"
                )
            artifacts.truststore = create_truststore(ca_paths, directory / TRUSTSTORE_FILENAME)
    except CredentialMaterializationFailure:
        artifacts.cleanup()
        raise
    except OSError as exc:
        artifacts.cleanup()
        raise CredentialMaterializationFailure("write certificate files", str(exc)) from exc

    logger.info("Kafka certificates configured (keystore=%s, truststore=%s)",
                "yes" if artifacts.keystore else "no",
                "yes" if artifacts.truststore else "no")
    return artifacts
