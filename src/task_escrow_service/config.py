"""
Configuration management for the task escrow service.

Loads configuration from YAML with ZERO defaults for required sections.
Every required value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str | None = None


class DatabaseConfig(BaseModel):
    """Task store configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int = Field(gt=0)


class LedgerConfig(BaseModel):
    """Task ledger configuration."""

    model_config = ConfigDict(extra="forbid")
    custody_account: str = Field(min_length=1)
    max_description_length: int = Field(gt=0)


class BankConfig(BaseModel):
    """Native value host configuration."""

    model_config = ConfigDict(extra="forbid")
    faucet_amount: int = Field(ge=0)
    genesis_balances: dict[str, int] = Field(default_factory=dict)


class Settings(BaseModel):
    """
    Root configuration container.

    All sections are REQUIRED. Missing sections cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    request: RequestConfig
    ledger: LedgerConfig
    bank: BankConfig


def get_config_path() -> Path:
    """Determine configuration file path: $CONFIG_PATH, else ./config.yaml."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


def load_settings(config_path: Path) -> Settings:
    """Parse and validate a YAML config file."""
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()
