"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from taskforge.ai.orchestration.errors import RETRYABLE_ERROR_CODES
from taskforge.services.settings import (
    Settings,
    SettingsStore,
    active_env_overrides,
    parse_error_codes,
    redact_secret,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("TASKFORGE_"):
            monkeypatch.delenv(name, raising=False)


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="gpt-4.1-mini",
        organization="acme",
        run_max_retries=2,
        best_of_n_default=3,
        agents_path="agents",
    )

    saved = SettingsStore(path).save(original)
    reloaded = SettingsStore(path).load()

    assert saved == path
    assert reloaded == original
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1
    assert not path.with_suffix(".tmp").exists()


def test_unknown_fields_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "custom", "theme": "dark", "version": 1}), encoding="utf-8")

    assert SettingsStore(path).load().model == "custom"


@pytest.mark.parametrize("body", ["{not json", "[1, 2, 3]"])
def test_invalid_file_falls_back_to_defaults(tmp_path: Path, body: str) -> None:
    path = tmp_path / "settings.json"
    path.write_text(body, encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_cli_overrides_skip_unknown_and_none(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load(
        overrides={"model": "cli-model", "api_key": None, "bogus": 1}
    )

    assert settings.model == "cli-model"
    assert settings.api_key == ""


def test_environment_overrides_win_over_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKFORGE_MODEL", "env-model")
    monkeypatch.setenv("TASKFORGE_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("TASKFORGE_RUN_MAX_RETRIES", "4")
    monkeypatch.setenv("TASKFORGE_REQUEST_TIMEOUT", "12.5")

    settings = SettingsStore(tmp_path / "settings.json").load(overrides={"model": "cli-model"})

    assert settings.model == "env-model"
    assert settings.debug_logging is True
    assert settings.run_max_retries == 4
    assert settings.request_timeout == 12.5
    assert active_env_overrides() == [
        "TASKFORGE_DEBUG_LOGGING",
        "TASKFORGE_MODEL",
        "TASKFORGE_REQUEST_TIMEOUT",
        "TASKFORGE_RUN_MAX_RETRIES",
    ]


def test_invalid_numeric_environment_values_are_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKFORGE_MAX_RETRIES", "many")
    monkeypatch.setenv("TASKFORGE_RETRY_MAX_SECONDS", "soon")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.max_retries == Settings().max_retries
    assert settings.retry_max_seconds == Settings().retry_max_seconds


def test_projections() -> None:
    settings = Settings(
        api_key="key",
        model="m",
        max_retries=5,
        run_max_retries=-1,
        run_retry_base_delay=0.25,
        run_retry_max_delay=2.0,
    )

    client = settings.client_settings()
    policy = settings.retry_policy()

    assert (client.api_key, client.model, client.max_retries) == ("key", "m", 5)
    assert policy.max_retries == 0
    assert (policy.base_delay, policy.max_delay) == (0.25, 2.0)
    assert policy.retryable_codes == RETRYABLE_ERROR_CODES


def test_retryable_codes_from_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKFORGE_RUN_RETRYABLE_CODES", "timeout, BAD_REQUEST,,")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.retry_policy().retryable_codes == frozenset({"TIMEOUT", "BAD_REQUEST"})
    assert parse_error_codes("  ") == RETRYABLE_ERROR_CODES


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, ""), ("  ", ""), ("abc", "***"), ("sk-123456789", "********6789")],
)
def test_redact_secret(value: str | None, expected: str) -> None:
    assert redact_secret(value) == expected
