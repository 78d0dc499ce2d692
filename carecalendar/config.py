"""
Configuration management using Pydantic models loaded from YAML.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class OrphanedSlotPolicy(str, Enum):
    """What happens to open slots a rule edit no longer implies."""
    DISABLE = "disable"
    DELETE = "delete"


class SchedulingConfig(BaseModel):
    """Defaults for materialization and booking."""
    materialization_window_days: int = 90
    default_max_advance_booking_days: int = 90
    default_min_advance_booking_hours: int = 2
    reminder_lead_hours: int = 24

    @field_validator("materialization_window_days", "default_max_advance_booking_days")
    @classmethod
    def validate_day_count(cls, value: int) -> int:
        """Windows must be between 1 and 365 days."""
        if not 1 <= value <= 365:
            raise ValueError(f"Day count must be between 1 and 365, got {value}")
        return value

    @field_validator("default_min_advance_booking_hours", "reminder_lead_hours")
    @classmethod
    def validate_hours(cls, value: int) -> int:
        if not 0 <= value <= 168:
            raise ValueError(f"Hours must be between 0 and 168, got {value}")
        return value


class RetentionConfig(BaseModel):
    """Retention windows for cancelled slots and expired rules."""
    orphaned_slot_policy: OrphanedSlotPolicy = OrphanedSlotPolicy.DISABLE
    cancelled_slot_retention_days: int = 90
    rule_retention_days: int = 365

    @field_validator("cancelled_slot_retention_days", "rule_retention_days")
    @classmethod
    def validate_retention(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Retention days cannot be negative")
        return value


class JobsConfig(BaseModel):
    """Background job cadence."""
    materialization_interval_minutes: int = 60
    reminder_interval_minutes: int = 15
    retention_hour: int = 3

    @field_validator("materialization_interval_minutes", "reminder_interval_minutes")
    @classmethod
    def validate_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Job intervals must be greater than zero")
        return value

    @field_validator("retention_hour")
    @classmethod
    def validate_hour(cls, v: int) -> int:
        """Validate hour is between 0 and 23."""
        if not 0 <= v <= 23:
            raise ValueError(f"Hour must be between 0 and 23, got {v}")
        return v


class AppConfig(BaseModel):
    """Application configuration."""
    database_url: str = "sqlite:///carecalendar.db"
    default_timezone: str = "America/New_York"
    log_level: str = "INFO"
    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)

    @field_validator("default_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            pendulum.timezone(value)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Unknown time zone: {value}") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def validate_windows(self) -> "AppConfig":
        """Reminders must fall inside the booking horizon."""
        horizon_hours = self.scheduling.default_max_advance_booking_days * 24
        if self.scheduling.reminder_lead_hours > horizon_hours:
            raise ValueError("reminder_lead_hours exceeds the booking horizon")
        return self

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
                f"Please create a config.yaml file. See config.example.yaml for reference."
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
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the given or default config file, falling back to defaults if absent."""
    path = config_path or get_default_config_path()
    if config_path is None and not path.exists():
        return AppConfig()
    return AppConfig.load_from_yaml(path)
