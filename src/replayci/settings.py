# settings.py
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Literal, Mapping, Optional

from dotenv import dotenv_values
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime defaults, overridable through REPLAYCI_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="REPLAYCI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    concurrency: int = Field(default=4, ge=1, le=256)
    step_timeout: float | None = Field(default=None, gt=0)
    workdir: str = "."
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"

    archive_url: str = "sqlite+aiosqlite:///.replayci/runs.db"
    archive_enabled: bool = True

    # env vars with these prefixes become secrets / variables of a run
    secret_env_prefix: str = "REPLAYCI_SECRET_"
    var_env_prefix: str = "REPLAYCI_VAR_"

    output_tail: int = Field(default=4000, ge=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return str(value).upper()


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()


# ----------------------------------------------------------------------
# Run inputs
# ----------------------------------------------------------------------

def _from_env(prefix: str, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    return {k[len(prefix):]: v for k, v in environ.items() if k.startswith(prefix) and len(k) > len(prefix)}


def load_secrets(
    secrets_file: Optional[str] = None,
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Collect run secrets from prefixed environment variables and an optional
    dotenv file. Entries from the file win over the environment.
    """
    settings = settings or get_settings()
    secrets = _from_env(settings.secret_env_prefix, environ)
    if secrets_file:
        path = Path(secrets_file).expanduser()
        if not path.is_file():
            raise FileNotFoundError(f"Secrets file not found: {path}")
        secrets.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    return secrets


def load_variables(
    pairs: Iterable[str] = (),
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Collect run variables from prefixed environment variables and K=V pairs."""
    settings = settings or get_settings()
    variables = _from_env(settings.var_env_prefix, environ)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Variable must be KEY=VALUE, got {pair!r}")
        variables[key.strip()] = value
    return variables
