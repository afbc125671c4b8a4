"""One-shot bootstrap: parse, materialize credentials, wait, assemble, hand off."""
import logging
import os
import sys
import time
from dataclasses import replace

from . import handoff, tls
from .assembler import BootstrapResult, ServiceProfile, assemble, build_targets, get_profile, resolve_endpoints, resolve_values
from .config import Settings, configure_logging, load_settings
from .constants import REDACTED_SUFFIX_LENGTH, SECRET_MARKERS
from .errors import BootstrapError, DependencyUnreachable
from .probe import DependencyProber, enforce

logger = logging.getLogger(__name__)


def redact(value: str | None) -> str:
    """Show presence and at most the last few characters of a secret."""
    if not value:
        return "NOT SET"
    if len(value) <= REDACTED_SUFFIX_LENGTH * 2:
        return "set (hidden)"
    return f"...{value[-REDACTED_SUFFIX_LENGTH:]} (last {REDACTED_SUFFIX_LENGTH} chars)"


def is_secret_name(name: str) -> bool:
    upper = name.upper()
    return any(marker in upper for marker in SECRET_MARKERS)


def log_runtime_info():
    try:
        uid, gid = os.getuid(), os.getgid()
    except AttributeError:
        uid = gid = "?"
    logger.info("Running as: uid=%s gid=%s", uid, gid)

    try:
        with open("/proc/meminfo", "r", encoding="utf-8") as f:
            meminfo = dict(
                (parts[0].rstrip(":"), parts[1])
                for parts in (line.split() for line in f)
                if len(parts) >= 2
            )
    except OSError:
        logger.debug("Memory info not available (/proc/meminfo not found)")
        return
    for key in ("MemTotal", "MemAvailable", "MemFree"):
        if key in meminfo:
            logger.info("%s: %.0f MB", key, int(meminfo[key]) / 1024)


def log_input_summary(settings: Settings):
    logger.info("DATABASE_URL set: %s", "yes" if settings.database_url else "NO")
    logger.info("OPENSEARCH_URI set: %s", "yes" if settings.opensearch_uri else "NO")
    logger.info("KAFKA_BOOTSTRAP_SERVER: %s", settings.kafka_bootstrap_server or "NOT SET")
    logger.info("DATAHUB_GMS_URL: %s", settings.datahub_gms_url or "NOT SET")
    logger.info("KAFKA_SASL_USERNAME set: %s", "yes" if settings.kafka_sasl_username else "NO")
    logger.info("KAFKA_ACCESS_CERT set: %s", "yes" if settings.kafka_access_cert else "NO")
    logger.info("KAFKA_ACCESS_KEY set: %s", "yes" if settings.kafka_access_key else "NO")
    logger.info("KAFKA_CA_CERT set: %s", "yes" if settings.kafka_ca_cert else "NO")
    logger.info("DATAHUB_SECRET: %s", redact(settings.datahub_secret))


def check_auth(settings: Settings):
    """Warn about auth settings that break frontend -> GMS authentication."""
    if not settings.datahub_secret:
        logger.error("DATAHUB_SECRET is NOT SET - this will cause authentication failures!")
    if settings.metadata_service_auth_enabled:
        logger.warning("METADATA_SERVICE_AUTH_ENABLED is enabled; the frontend must present a valid system client secret")
    if settings.datahub_secret and not settings.metadata_service_auth_enabled:
        logger.info("Authentication configuration is consistent (DATAHUB_SECRET set, METADATA_SERVICE_AUTH_ENABLED=false)")


def log_policy(targets):
    for target in targets:
        logger.info(
            "Dependency %s: %s, %s check, up to %d attempts every %.0fs",
            target.name,
            "REQUIRED" if target.required else "optional",
            target.kind.value,
            target.policy.max_attempts,
            target.policy.interval,
        )


def log_result(profile: ServiceProfile, result: BootstrapResult):
    logger.info("=== %s configuration ===", profile.name)
    for name in sorted(result.env):
        value = result.env[name]
        logger.info("  %s=%s", name, redact(value) if is_secret_name(name) else value)


def run(profile: ServiceProfile, settings: Settings, argv: list[str] | None = None, prober: DependencyProber | None = None) -> BootstrapResult:
    """Run every stage up to (not including) the handoff.

    The credential directory is removed if any later stage fails, since
    nothing will inherit it.
    """
    endpoints = resolve_endpoints(settings, profile)
    material = tls.TlsMaterial.from_settings(settings)
    artifacts = tls.materialize(material, base_dir=settings.certs_dir)

    try:
        targets = build_targets(profile, endpoints, settings)
        if not settings.wait_for_dependencies:
            logger.warning("WAIT_FOR_DEPENDENCIES=false; skipping readiness checks for %d target(s)", len(targets))
        elif targets:
            log_policy(targets)
            logger.info("=== Waiting for dependencies ===")
            if prober is None:
                prober = DependencyProber(max_workers=settings.wait_concurrency)
            enforce(prober.probe_all(targets))
            logger.info("=== All dependencies ready ===")

        values = resolve_values(settings, endpoints, artifacts)
        return replace(assemble(profile, values, argv), artifacts=artifacts)
    except BaseException:
        if artifacts is not None:
            artifacts.cleanup()
        raise


def main(service: str, argv: list[str] | None = None, sleep=time.sleep):
    profile = get_profile(service)
    settings = load_settings()
    configure_logging(settings)

    logger.info("=== DataHub %s entrypoint starting ===", profile.name)
    log_runtime_info()
    log_input_summary(settings)
    if profile.check_auth:
        check_auth(settings)

    try:
        result = run(profile, settings, argv)
        log_result(profile, result)
        try:
            handoff.exec_process(result)
        except OSError as exc:
            logger.error("Failed to launch %s: %s", result.argv[0], exc)
            if result.artifacts is not None:
                result.artifacts.cleanup()
            sys.exit(1)
    except DependencyUnreachable as exc:
        pause = settings.failure_pause_seconds
        logger.error("%s; exiting in %.0fs so the orchestrator can restart", exc, pause)
        sleep(pause)
        sys.exit(1)
    except BootstrapError as exc:
        logger.error("%s", exc)
        sys.exit(1)
