from __future__ import annotations

from pathlib import Path

import pytest

from ctrcfg.src.config import (
    DEFAULT_TEMPLATES_DIR,
    RUNTIME_VERSION,
    Settings,
    env_int,
    load_settings,
    parse_bool,
)
from ctrcfg.src.errors import ConfigError

# ---------------------------------------------------------------------------
# env_int() tests
# ---------------------------------------------------------------------------


def test_env_int_returns_default_when_not_set() -> None:
    assert env_int({}, "TEST_ENV_INT", 42) == 42


def test_env_int_parses_valid_integer() -> None:
    assert env_int({"TEST_ENV_INT": "10"}, "TEST_ENV_INT", 42) == 10


@pytest.mark.parametrize("raw", ["abc", "", "1.5"])
def test_env_int_raises_on_non_integer(raw: str) -> None:
    with pytest.raises(ConfigError, match="TEST_ENV_INT must be an integer"):
        env_int({"TEST_ENV_INT": raw}, "TEST_ENV_INT", 42)


def test_env_int_enforces_minimum() -> None:
    with pytest.raises(ConfigError, match="TEST_ENV_INT must be >= 0, got: -1"):
        env_int({"TEST_ENV_INT": "-1"}, "TEST_ENV_INT", 42, minimum=0)


def test_env_int_enforces_maximum() -> None:
    with pytest.raises(ConfigError, match="TEST_ENV_INT must be <= 65535, got: 70000"):
        env_int({"TEST_ENV_INT": "70000"}, "TEST_ENV_INT", 42, maximum=65535)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, True), ("true", True), ("1", True), (" YES ", True), ("false", False), ("", False)],
)
def test_parse_bool(raw: str | None, expected: bool) -> None:
    assert parse_bool(raw, default=True) is expected


# ---------------------------------------------------------------------------
# load_settings() tests
# ---------------------------------------------------------------------------


def test_load_settings_defaults() -> None:
    settings = load_settings({})

    assert settings == Settings()
    assert settings.build_version == RUNTIME_VERSION
    assert settings.templates_dir == DEFAULT_TEMPLATES_DIR
    assert settings.leader_election_enabled is True


def test_load_settings_reads_os_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKERS", "3")

    assert load_settings().workers == 3


def test_load_settings_custom_values(tmp_path: Path) -> None:
    settings = load_settings(
        {
            "CONTROLLER_NAMESPACE": "custom-ns",
            "TEMPLATES_DIR": str(tmp_path),
            "CONTROLLER_VERSION": "abc123",
            "WORKERS": "2",
            "HEALTH_PORT": "9090",
            "LEADER_ELECTION_ENABLED": "false",
            "LEADER_ELECTION_LEASE_NAME": "custom-lease",
            "LEADER_ELECTION_LEASE_DURATION_SECONDS": "30",
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS": "20",
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS": "5",
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS": "60",
        }
    )

    assert settings == Settings(
        namespace="custom-ns",
        templates_dir=str(tmp_path),
        build_version="abc123",
        workers=2,
        health_port=9090,
        leader_election_enabled=False,
        lease_name="custom-lease",
        lease_duration_seconds=30,
        renew_deadline_seconds=20,
        retry_period_seconds=5,
        controller_stop_timeout_seconds=60,
    )


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"CONTROLLER_NAMESPACE": "  "}, "CONTROLLER_NAMESPACE must be a non-empty string"),
        ({"TEMPLATES_DIR": "/does/not/exist"}, "is not a directory"),
        ({"CONTROLLER_VERSION": ""}, "CONTROLLER_VERSION must be a non-empty string"),
        ({"WORKERS": "0"}, "WORKERS must be >= 1"),
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535"),
        (
            {"LEADER_ELECTION_RENEW_DEADLINE_SECONDS": "15"},
            "RENEW_DEADLINE_SECONDS must be smaller than",
        ),
        (
            {"LEADER_ELECTION_RETRY_PERIOD_SECONDS": "10"},
            "RETRY_PERIOD_SECONDS must be smaller than",
        ),
    ],
)
def test_load_settings_rejects_invalid_values(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_settings(env)


def test_default_templates_are_bundled() -> None:
    assert (Path(DEFAULT_TEMPLATES_DIR) / "common" / "files" / "containers-storage.yaml").is_file()
