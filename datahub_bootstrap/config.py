import datetime
import logging
import os
import re
import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_PROBE_WORKERS,
    DEFAULT_SEARCH_SSL_PROTOCOL,
    DEFAULT_SYSTEM_CLIENT_ID,
    DEFAULT_WAIT_ATTEMPTS,
    MAX_CHECK_TIMEOUT,
)

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )

    logging_level: str = "INFO"
    timezone: str = "UTC"

    # Connection strings
    database_url: str | None = None
    opensearch_uri: str | None = None
    kafka_bootstrap_server: str | None = None
    datahub_gms_url: str | None = None

    # Broker credentials
    kafka_sasl_username: str | None = None
    kafka_sasl_password: str | None = None
    kafka_access_cert: str | None = None
    kafka_access_key: str | None = None
    kafka_ca_cert: str | None = None

    # Shared auth
    datahub_secret: str | None = None
    datahub_system_client_id: str = DEFAULT_SYSTEM_CLIENT_ID
    datahub_system_client_secret: str | None = None
    metadata_service_auth_enabled: bool = False

    java_memory_opts: str | None = None
    opensearch_ssl_protocol: str = DEFAULT_SEARCH_SSL_PROTOCOL

    # Readiness waits
    wait_for_dependencies: bool = True
    wait_max_attempts: int = DEFAULT_WAIT_ATTEMPTS
    wait_interval: str = "30s"
    wait_check_timeout: float = DEFAULT_CHECK_TIMEOUT
    wait_optional_dependencies: str = ""
    wait_attempt_overrides: str = ""
    wait_concurrency: int = DEFAULT_PROBE_WORKERS
    failure_pause: str = "30s"

    certs_dir: str | None = None

    @field_validator("wait_interval", "failure_pause")
    @classmethod
    def validate_intervals(cls, v, info):
        if v is None or (isinstance(v, str) and v.strip() == ""):
            raise ValueError(f"{info.field_name} cannot be None or empty string")
        try:
            parse_interval(str(v))
            return v
        except Exception as exc:
            raise ValueError(f"Invalid interval: {exc}") from exc

    @field_validator("wait_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v):
        if int(v) < 1:
            raise ValueError("wait_max_attempts must be >= 1")
        if int(v) > 1000:
            raise ValueError("wait_max_attempts must be <= 1000")
        return int(v)

    @field_validator("wait_check_timeout")
    @classmethod
    def validate_check_timeout(cls, v):
        if float(v) <= 0:
            raise ValueError("wait_check_timeout must be > 0")
        if float(v) >= MAX_CHECK_TIMEOUT:
            raise ValueError(f"wait_check_timeout must be < {MAX_CHECK_TIMEOUT:g} seconds")
        return float(v)

    @field_validator("wait_concurrency")
    @classmethod
    def validate_concurrency(cls, v):
        if int(v) < 1:
            raise ValueError("wait_concurrency must be >= 1")
        return int(v)

    @field_validator("wait_attempt_overrides")
    @classmethod
    def validate_attempt_overrides(cls, v):
        parse_attempt_overrides(v)
        return v

    @field_validator(
        "database_url",
        "opensearch_uri",
        "kafka_sasl_password",
        "kafka_access_key",
        "datahub_secret",
        "datahub_system_client_secret",
        mode="before",
    )
    @classmethod
    def _prefer_docker_secret(cls, v, info):
        """
        Prefer Docker secrets mounted at /run/secrets/<NAME> over environment variables.
        Tries secret files with the field name upper-cased and as-is.
        """
        secret = None
        try:
            candidates = [info.field_name.upper(), info.field_name]
            for name in candidates:
                path = f"/run/secrets/{name}"
                if os.path.isfile(path):
                    with open(path, "r", encoding="utf-8") as f:
                        data = f.read().strip()
                    if data:
                        secret = data
                        break
        except OSError:
            secret = None
        if secret:
            logger.debug("Using docker secret for %s", info.field_name)
            return secret
        return v

    @property
    def wait_interval_seconds(self) -> float:
        return float(parse_interval(self.wait_interval))

    @property
    def failure_pause_seconds(self) -> float:
        return float(parse_interval(self.failure_pause))

    @property
    def optional_dependencies(self) -> set[str]:
        return {
            name.strip().lower()
            for name in self.wait_optional_dependencies.split(",")
            if name.strip()
        }

    @property
    def attempt_overrides(self) -> dict[str, int]:
        return parse_attempt_overrides(self.wait_attempt_overrides)


def load_settings() -> Settings:
    try:
        settings = Settings()
        return settings
    except ValidationError as e:
        logger.error("Configuration error:")
        for err in e.errors():
            logger.error(" - %s: %s", err.get('loc'), err.get('msg'))
        sys.exit(1)


class LocalISOFormatter(logging.Formatter):
    def __init__(self, fmt=None, datefmt=None, tz_name: str | None = None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._tz = None
        self._tz_name = tz_name
        if tz_name:
            try:
                self._tz = ZoneInfo(tz_name)
            except ZoneInfoNotFoundError:
                self._tz = None

    def formatTime(self, record, datefmt=None):
        if self._tz is not None:
            dt = datetime.datetime.fromtimestamp(record.created, tz=self._tz)
        else:
            dt = datetime.datetime.fromtimestamp(record.created).astimezone()
        return dt.isoformat(timespec='milliseconds')


def configure_logging(settings: Settings | None = None):
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        tzname = getattr(settings, 'timezone', None) if settings is not None else None
        formatter = LocalISOFormatter('%(asctime)s %(levelname)s %(name)s %(message)s', tz_name=tzname)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    if settings is not None:
        lvl = str(getattr(settings, 'logging_level', 'INFO')).strip().upper()
        numeric = getattr(logging, lvl, None)
        if not isinstance(numeric, int):
            root.setLevel(logging.INFO)
        else:
            root.setLevel(numeric)
    else:
        root.setLevel(logging.INFO)

    logger.info("Logging configured; root level=%s", logging.getLevelName(root.level))

    noisy = ['httpx', 'httpcore']
    for n in noisy:
        logging.getLogger(n).setLevel(logging.WARNING)


def parse_interval(interval: str) -> int:
    if not interval:
        raise ValueError("Empty interval")
    s = str(interval).strip().lower()

    m = re.fullmatch(r"([+-]?\d+)\s*(s|sec|secs|second|seconds|m|min|mins|minute|minutes|h|hr|hrs|hour|hours)?", s)
    if not m:
        raise ValueError(f"Invalid interval '{interval}'")
    raw_num = m.group(1)
    num = int(raw_num)
    unit = m.group(2) or "s"

    if raw_num.startswith('-') or num < 0:
        raise ValueError("Interval must be non-negative")
    if num == 0:
        raise ValueError("Interval must be positive")

    if unit.startswith("s"):
        return num
    if unit.startswith("m"):
        return num * 60
    if unit.startswith("h"):
        return num * 3600
    return num


def parse_attempt_overrides(raw: str | None) -> dict[str, int]:
    """Parse ``name=attempts`` pairs, e.g. ``"gms=60,broker=10"``."""
    overrides: dict[str, int] = {}
    if not raw:
        return overrides
    for item in str(raw).split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, value = item.partition("=")
        name = name.strip().lower()
        if not sep or not name:
            raise ValueError(f"Invalid attempt override '{item}' (expected name=attempts)")
        try:
            attempts = int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid attempt count in '{item}'") from exc
        if attempts < 1:
            raise ValueError(f"Attempt count must be >= 1 in '{item}'")
        overrides[name] = attempts
    return overrides
