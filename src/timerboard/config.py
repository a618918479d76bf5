"""Configuration loading and validation for Timerboard."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class DiscordConfig(BaseModel):
    """Discord REST gateway configuration."""

    api_base_url: str = "https://discord.com/api/v10"
    request_timeout_seconds: float = 10.0
    member_page_size: int = Field(1000, ge=1, le=1000)

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be appended directly."""
        return v.rstrip("/")


class SyncConfig(BaseModel):
    """Guild sync sweep configuration."""

    full_sync_window_minutes: int = Field(30, ge=1)
    check_interval_minutes: int = Field(5, ge=1)
    min_guilds_per_sweep: int = Field(1, ge=0)
    max_concurrent_guilds: int = Field(1, ge=1)

    @model_validator(mode="after")
    def validate_interval(self) -> "SyncConfig":
        """The sweep must run at least once per sync window."""
        if self.check_interval_minutes > self.full_sync_window_minutes:
            raise ValueError(
                "check_interval_minutes must not exceed full_sync_window_minutes"
            )
        return self


class NotificationsConfig(BaseModel):
    """Fleet notification configuration."""

    app_url: str = "http://localhost:8080"
    check_interval_seconds: int = Field(60, ge=1)
    formup_grace_minutes: int = Field(10, ge=0)
    fleet_list_enabled: bool = True
    fleet_list_max_fleets: int = Field(10, ge=1, le=25)

    @field_validator("app_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the app URL so paths can be appended directly."""
        return v.rstrip("/")


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "timerboard.db"


class Config(BaseModel):
    """Root configuration for Timerboard."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def database_path(self) -> Path:
        """Get full path to database file."""
        return self.data_dir / self.database.path

    @property
    def discord_token(self) -> str | None:
        """Get Discord bot token from environment."""
        return os.environ.get("DISCORD_TOKEN") or None

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        # Environment variable overrides
        if "TIMERBOARD_DATA_DIR" in os.environ:
            yaml_config["data_dir"] = os.environ["TIMERBOARD_DATA_DIR"]
        if "TIMERBOARD_LOG_LEVEL" in os.environ:
            yaml_config["log_level"] = os.environ["TIMERBOARD_LOG_LEVEL"]
        if "TIMERBOARD_LOG_JSON" in os.environ:
            yaml_config["log_json"] = os.environ["TIMERBOARD_LOG_JSON"].lower() == "true"

        return cls.model_validate(yaml_config)

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Args:
            config_path: Optional path to YAML configuration file.

        Returns:
            Config instance (from file or defaults).
        """
        if config_path is None:
            for path in [Path("config.yaml"), Path("config.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls()

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls()
