from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_CONFIG_PATH = Path("prloop.toml")
INCLUDE_CHECKS_ENV = "PRLOOP_INCLUDE_CHECKS"
EXCLUDE_CHECKS_ENV = "PRLOOP_EXCLUDE_CHECKS"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
MIN_SETTLE_DELAY_SECONDS = 30.0


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Settings:
    include_checks: tuple[str, ...] = ()
    exclude_checks: tuple[str, ...] = ()
    require_checks: bool = False
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    min_wait_after_push_seconds: float = MIN_SETTLE_DELAY_SECONDS
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class SettingsOverrides:
    """Values given on the command line; ``None`` means the flag was not passed."""

    include_checks: tuple[str, ...] | None = None
    exclude_checks: tuple[str, ...] | None = None
    require_checks: bool | None = None
    poll_interval_seconds: float | None = None
    min_wait_after_push_seconds: float | None = None
    timeout_seconds: float | None = None


def load_settings(
    overrides: SettingsOverrides,
    *,
    environ: Mapping[str, str],
    config_path: Path | None = None,
) -> Settings:
    """Resolve settings with precedence flag > environment > TOML file > default.

    An explicit ``config_path`` must exist; the default ``prloop.toml`` is optional.
    """
    file_settings = _load_file_settings(config_path)

    include_checks = _first_patterns(
        overrides.include_checks,
        _env_patterns(environ, INCLUDE_CHECKS_ENV),
        file_settings.include_checks,
    )
    exclude_checks = _first_patterns(
        overrides.exclude_checks,
        _env_patterns(environ, EXCLUDE_CHECKS_ENV),
        file_settings.exclude_checks,
    )

    settings = Settings(
        include_checks=include_checks,
        exclude_checks=exclude_checks,
        require_checks=(
            overrides.require_checks
            if overrides.require_checks is not None
            else file_settings.require_checks
        ),
        poll_interval_seconds=(
            overrides.poll_interval_seconds
            if overrides.poll_interval_seconds is not None
            else file_settings.poll_interval_seconds
        ),
        min_wait_after_push_seconds=(
            overrides.min_wait_after_push_seconds
            if overrides.min_wait_after_push_seconds is not None
            else file_settings.min_wait_after_push_seconds
        ),
        timeout_seconds=(
            overrides.timeout_seconds
            if overrides.timeout_seconds is not None
            else file_settings.timeout_seconds
        ),
    )
    _validate_settings(settings)
    return settings


def split_pattern_list(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def flatten_pattern_args(values: Sequence[str] | None) -> tuple[str, ...] | None:
    if values is None:
        return None
    patterns: list[str] = []
    for value in values:
        if not value.strip():
            raise ConfigError("Check patterns must be non-empty")
        patterns.extend(split_pattern_list(value))
    return tuple(patterns)


def _validate_settings(settings: Settings) -> None:
    for pattern in (*settings.include_checks, *settings.exclude_checks):
        if not pattern.strip():
            raise ConfigError("Check patterns must be non-empty")
    if settings.poll_interval_seconds <= 0:
        raise ConfigError("poll_interval_seconds must be > 0")
    if settings.min_wait_after_push_seconds < MIN_SETTLE_DELAY_SECONDS:
        raise ConfigError(
            f"min_wait_after_push_seconds must be >= {int(MIN_SETTLE_DELAY_SECONDS)}"
        )
    if settings.timeout_seconds is not None and settings.timeout_seconds <= 0:
        raise ConfigError("timeout_seconds must be > 0 if provided")


def _first_patterns(*candidates: tuple[str, ...] | None) -> tuple[str, ...]:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return ()


def _env_patterns(environ: Mapping[str, str], key: str) -> tuple[str, ...] | None:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return None
    return split_pattern_list(raw)


@dataclass(frozen=True)
class _FileSettings:
    include_checks: tuple[str, ...] | None = None
    exclude_checks: tuple[str, ...] | None = None
    require_checks: bool = False
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    min_wait_after_push_seconds: float = MIN_SETTLE_DELAY_SECONDS
    timeout_seconds: float | None = None


def _load_file_settings(config_path: Path | None) -> _FileSettings:
    path = config_path if config_path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        if config_path is not None:
            raise ConfigError(f"Config file not found: {config_path}")
        return _FileSettings()

    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    checks_data = _optional_table(data, "checks") or {}
    wait_data = _optional_table(data, "wait") or {}

    return _FileSettings(
        include_checks=_optional_patterns(checks_data, "include"),
        exclude_checks=_optional_patterns(checks_data, "exclude"),
        require_checks=_bool_with_default(checks_data, "require_checks", False),
        poll_interval_seconds=_number_with_default(
            wait_data, "poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS
        ),
        min_wait_after_push_seconds=_number_with_default(
            wait_data, "min_wait_after_push_seconds", MIN_SETTLE_DELAY_SECONDS
        ),
        timeout_seconds=_optional_number(wait_data, "timeout_seconds"),
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_patterns(data: dict[str, object], key: str) -> tuple[str, ...] | None:
    if key not in data:
        return None
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of non-empty strings")
        out.append(item.strip())
    return tuple(out)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _optional_number(data: dict[str, object], key: str) -> float | None:
    if key not in data:
        return None
    return _number_with_default(data, key, 0.0)
