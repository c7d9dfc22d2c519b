"""Tally configuration via environment variables."""

import json
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode


def parse_origins(value: str | list[str]) -> list[str]:
    """Read CORS origins from a JSON array ('["a","b"]') or a comma list ('a,b')."""
    if isinstance(value, list):
        return value
    stripped = value.strip()
    if not stripped.startswith("["):
        return [item.strip() for item in stripped.split(",") if item.strip()]
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON array: {e}") from e
    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        raise ValueError("JSON value must be an array of strings")
    return parsed


class TallySettings(BaseSettings):
    model_config = {"env_prefix": "TALLY_"}

    # Local key-value store: one file per namespace.
    data_dir: str = Field(default="backend/data/local", min_length=1)
    # Relational mirror used for signed-in users.
    remote_database_path: str = Field(default="backend/data/remote.db", min_length=1)
    log_dir: str = Field(default="backend/logs", min_length=1)
    # Prefix for export download names: <product>_data_<YYYY-MM-DD>.json
    product_name: str = Field(default="phase10", min_length=1, pattern=r"^[A-Za-z0-9_-]+$")

    remote_retry_attempts: int = Field(default=3, ge=1, le=10)
    remote_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # NoDecode keeps the raw env string so the comma form reaches the validator.
    cors_origins: Annotated[list[str], NoDecode] = []

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_origins(v)
