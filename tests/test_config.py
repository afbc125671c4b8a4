import builtins
import io
import logging
import os

import pytest
from pydantic import ValidationError

from datahub_bootstrap.config import (
    Settings,
    configure_logging,
    load_settings,
    parse_attempt_overrides,
    parse_interval,
)


def _make_fake_open(secret_path: str, secret_content: str):
    real_open = builtins.open

    def fake_open(path, mode='r', encoding=None, *args, **kwargs):
        if os.path.normpath(path) == os.path.normpath(secret_path):
            return io.StringIO(secret_content)
        return real_open(path, mode, encoding=encoding, *args, **kwargs)

    return fake_open


def test_defaults():
    s = Settings()
    assert s.wait_max_attempts == 40
    assert s.wait_interval_seconds == 30
    assert s.wait_check_timeout == 5.0
    assert s.failure_pause_seconds == 30
    assert s.optional_dependencies == set()
    assert s.attempt_overrides == {}
    assert s.metadata_service_auth_enabled is False
    assert s.datahub_system_client_id == "__datahub_system"


def test_reads_environment_case_insensitively(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db/app")
    monkeypatch.setenv("METADATA_SERVICE_AUTH_ENABLED", "true")
    monkeypatch.setenv("WAIT_INTERVAL", "1min")
    s = Settings()
    assert s.database_url == "postgres://u:p@db/app"
    assert s.metadata_service_auth_enabled is True
    assert s.wait_interval_seconds == 60


def test_empty_environment_value_is_unset(monkeypatch):
    monkeypatch.setenv("KAFKA_ACCESS_CERT", "")
    assert Settings().kafka_access_cert is None


@pytest.mark.parametrize("kwargs", [
    {"wait_max_attempts": 0},
    {"wait_max_attempts": 5000},
    {"wait_check_timeout": 0},
    {"wait_check_timeout": 30},
    {"wait_interval": "5d"},
    {"wait_interval": ""},
    {"failure_pause": "-1"},
    {"wait_concurrency": 0},
    {"wait_attempt_overrides": "gms"},
])
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ValidationError):
        Settings(**kwargs)


def test_docker_secret_preferred(monkeypatch):
    secret_path = "/run/secrets/DATABASE_URL"
    monkeypatch.setattr(os.path, "isfile", lambda p: os.path.normpath(p) == os.path.normpath(secret_path))
    monkeypatch.setattr(builtins, "open", _make_fake_open(secret_path, "postgres://secret@db/app\n"))

    s = Settings(database_url="postgres://env@db/app")
    assert s.database_url == "postgres://secret@db/app"


def test_blank_docker_secret_falls_back_to_env(monkeypatch):
    secret_path = "/run/secrets/datahub_secret"
    monkeypatch.setattr(os.path, "isfile", lambda p: os.path.normpath(p) == os.path.normpath(secret_path))
    monkeypatch.setattr(builtins, "open", _make_fake_open(secret_path, "  \n"))

    s = Settings(datahub_secret="env-secret")
    assert s.datahub_secret == "env-secret"


def test_load_settings_exits_on_validation_error(monkeypatch, caplog):
    monkeypatch.setenv("WAIT_MAX_ATTEMPTS", "0")
    caplog.set_level(logging.ERROR)
    with pytest.raises(SystemExit) as excinfo:
        load_settings()
    assert excinfo.value.code == 1
    assert "Configuration error" in caplog.text


@pytest.mark.parametrize("raw,seconds", [("30", 30), ("30s", 30), ("2 min", 120), ("1h", 3600)])
def test_parse_interval(raw, seconds):
    assert parse_interval(raw) == seconds


@pytest.mark.parametrize("raw", ["", "0", "-5", "abc"])
def test_parse_interval_invalid(raw):
    with pytest.raises(ValueError):
        parse_interval(raw)


def test_parse_attempt_overrides():
    assert parse_attempt_overrides("GMS=60, broker=10,") == {"gms": 60, "broker": 10}
    assert parse_attempt_overrides("") == {}
    with pytest.raises(ValueError):
        parse_attempt_overrides("gms=0")
    with pytest.raises(ValueError):
        parse_attempt_overrides("gms=many")


def test_configure_logging_unknown_level_defaults_to_info():
    logging.getLogger().handlers[:] = []
    configure_logging(Settings(logging_level="NOT_A_LEVEL"))
    assert logging.getLogger().level == logging.INFO


def test_configure_logging_quiets_http_clients():
    configure_logging(Settings(logging_level="DEBUG"))
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING
