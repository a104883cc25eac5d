from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping
import os

import yaml

from .errors import ConfigurationError

ENV_PREFIX = "SPACE_RESERVATIONS_"
CONFIG_PATH_ENV = f"{ENV_PREFIX}CONFIG"
MIN_SECRET_LENGTH = 32


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///data/reservations.db"
    jwt_secret_key: str = ""
    jwt_expiration_days: int = 7
    jwt_issuer: str | None = None
    jwt_audience: str | None = None
    log_level: str = "INFO"
    admin_name: str = "Administrator"
    admin_email: str | None = None
    admin_password: str | None = None

    def validate(self) -> "Settings":
        if not self.jwt_secret_key:
            raise ConfigurationError("jwt_secret_key is not configured.")
        if len(self.jwt_secret_key) < MIN_SECRET_LENGTH:
            raise ConfigurationError(f"jwt_secret_key must be at least {MIN_SECRET_LENGTH} characters long.")
        if self.jwt_expiration_days <= 0:
            raise ConfigurationError("jwt_expiration_days must be greater than zero.")
        if bool(self.admin_email) != bool(self.admin_password):
            raise ConfigurationError("admin_email and admin_password must be configured together.")
        return self

    @property
    def token_lifetime_seconds(self) -> int:
        return self.jwt_expiration_days * 24 * 60 * 60


def load_settings(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from defaults, then a YAML file, then ``SPACE_RESERVATIONS_*`` variables."""
    env = os.environ if environ is None else environ
    settings = Settings()

    config_path = path or env.get(CONFIG_PATH_ENV)
    if config_path:
        settings = replace(settings, **_read_yaml_mapping(Path(config_path)))

    overrides: dict[str, Any] = {}
    for item in fields(Settings):
        raw = env.get(ENV_PREFIX + item.name.upper())
        if raw is not None:
            overrides[item.name] = raw
    if overrides:
        settings = replace(settings, **_coerce(overrides))

    return settings.validate()


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as error:
        raise ConfigurationError(f"Configuration file not found: {path}") from error
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
        raise ConfigurationError(f"Failed to read configuration file {path}: {error}") from error

    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Top-level YAML in {path} must be a mapping.")

    known = {item.name for item in fields(Settings)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
    return _coerce(payload)


def _coerce(values: Mapping[str, Any]) -> dict[str, Any]:
    coerced: dict[str, Any] = {}
    for key, value in values.items():
        if key == "jwt_expiration_days":
            try:
                coerced[key] = int(value)
            except (TypeError, ValueError) as error:
                raise ConfigurationError("jwt_expiration_days must be an integer.") from error
        elif value is None:
            coerced[key] = None
        else:
            coerced[key] = str(value)
    return coerced
