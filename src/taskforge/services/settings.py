"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..ai.client import ClientSettings
from ..ai.orchestration.errors import RETRYABLE_ERROR_CODES
from ..ai.orchestration.run_controller import RetryPolicy

__all__ = ["Settings", "SettingsStore", "redact_secret", "active_env_overrides", "parse_error_codes"]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".taskforge"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "TASKFORGE_API_KEY": "api_key",
    "TASKFORGE_BASE_URL": "base_url",
    "TASKFORGE_MODEL": "model",
    "TASKFORGE_ORGANIZATION": "organization",
    "TASKFORGE_LOG_LEVEL": "log_level",
    "TASKFORGE_AGENTS_PATH": "agents_path",
    "TASKFORGE_RUN_RETRYABLE_CODES": "run_retryable_codes",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TASKFORGE_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TASKFORGE_REQUEST_TIMEOUT": "request_timeout",
    "TASKFORGE_RETRY_MIN_SECONDS": "retry_min_seconds",
    "TASKFORGE_RETRY_MAX_SECONDS": "retry_max_seconds",
    "TASKFORGE_RUN_RETRY_BASE_DELAY": "run_retry_base_delay",
    "TASKFORGE_RUN_RETRY_MAX_DELAY": "run_retry_max_delay",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TASKFORGE_MAX_RETRIES": "max_retries",
    "TASKFORGE_RUN_MAX_RETRIES": "run_max_retries",
    "TASKFORGE_MAX_AGENT_STEPS": "max_agent_steps",
    "TASKFORGE_BEST_OF_N_MIN": "best_of_n_min",
    "TASKFORGE_BEST_OF_N_MAX": "best_of_n_max",
    "TASKFORGE_BEST_OF_N_DEFAULT": "best_of_n_default",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    run_max_retries: int = 0
    run_retry_base_delay: float = 1.0
    run_retry_max_delay: float = 8.0
    run_retryable_codes: str | None = None
    max_agent_steps: int = 20
    best_of_n_min: int = 1
    best_of_n_max: int = 10
    best_of_n_default: int = 5
    debug_logging: bool = False
    log_level: str = "INFO"
    agents_path: str | None = None

    def client_settings(self) -> ClientSettings:
        """Project the fields the model client needs."""

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            temperature=self.temperature,
            debug_logging=self.debug_logging,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max(0, self.run_max_retries),
            base_delay=self.run_retry_base_delay,
            max_delay=self.run_retry_max_delay,
            retryable_codes=parse_error_codes(self.run_retryable_codes),
        )


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s (%d field(s))", self._path, len(data))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = asdict(settings)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str | None) -> str:
    """Mask all but the last four characters of ``value``."""

    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{'*' * (len(stripped) - 4)}{stripped[-4:]}"


def active_env_overrides() -> list[str]:
    """Names of the ``TASKFORGE_*`` variables currently overriding settings."""

    names = [*_ENV_OVERRIDES, *_BOOL_ENV_OVERRIDES, *_INT_ENV_OVERRIDES, *_FLOAT_ENV_OVERRIDES]
    return sorted(name for name in names if name in os.environ)


def parse_error_codes(value: str | None) -> frozenset[str]:
    """Parse a comma-separated list of error codes; blank means the built-in set."""

    codes = frozenset(part.strip().upper() for part in (value or "").split(",") if part.strip())
    return codes or RETRYABLE_ERROR_CODES
