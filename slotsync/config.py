"""
Configuration management using Pydantic models loaded from YAML.
"""

from pathlib import Path
from typing import Tuple

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .domain.exceptions import BadTimezone, InvalidRange
from .domain.models import parse_time
from .domain.timezones import ensure_timezone

CONFIG_FILE_NAME = "slotsync.yaml"


class DayWindowConfig(BaseModel):
    """A wall-clock window within one day."""
    start: str = "00:00"
    end: str = "23:59"

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        """Ensure the bound is a valid HH:MM time."""
        try:
            parse_time(value)
        except InvalidRange as exc:
            raise ValueError(str(exc)) from exc
        return value

    @model_validator(mode="after")
    def validate_order(self) -> "DayWindowConfig":
        """Ensure the window opens before it closes."""
        if parse_time(self.end) <= parse_time(self.start):
            raise ValueError("end must be later than start")
        return self

    def as_tuple(self) -> Tuple[str, str]:
        return self.start, self.end


class AppConfig(BaseModel):
    """Application configuration."""
    database_url: str = "sqlite:///slotsync.db"
    default_timezone: str = "UTC"
    day: DayWindowConfig = Field(default_factory=DayWindowConfig)
    workday: DayWindowConfig = Field(
        default_factory=lambda: DayWindowConfig(start="09:00", end="23:00")
    )
    log_level: str = "INFO"

    @field_validator("default_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Reject unknown IANA zones up front."""
        try:
            ensure_timezone(value)
        except BadTimezone as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a {CONFIG_FILE_NAME} file or pass --config."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for the config in the current directory
    config_path = Path.cwd() / CONFIG_FILE_NAME

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / CONFIG_FILE_NAME

    return config_path


def load_config(config_path: Path | None = None) -> AppConfig:
    """
    Load the config from ``config_path`` or the default location.

    Falls back to built-in defaults when no explicit path is given and no
    file exists at the default location.
    """
    if config_path is not None:
        return AppConfig.load_from_yaml(config_path)

    default_path = get_default_config_path()
    if default_path.exists():
        return AppConfig.load_from_yaml(default_path)
    return AppConfig()
