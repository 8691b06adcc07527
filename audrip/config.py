"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import logging
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DEFAULT_DOWNLOAD_DIR, WORK_DIR
from .jobs import AspectPolicy, TargetFormat


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    Timeouts and delays are in seconds.
    """
    download_dir: Path = Field(default_factory=lambda: DEFAULT_DOWNLOAD_DIR)
    work_dir: Path = Field(default_factory=lambda: WORK_DIR)
    max_concurrent_jobs: int = Field(default=2, ge=1, le=10)
    max_concurrent_probes: int = Field(default=8, ge=1, le=32)
    acquisition_timeout: float = Field(default=300, gt=0)
    transcode_timeout: float = Field(default=600, gt=0)
    cover_art_timeout: float = Field(default=15, gt=0)
    cancel_grace_delay: float = Field(default=0.2, ge=0, le=5)
    orphan_max_age: float = Field(default=3600, ge=0)
    square_art_size: int = Field(default=1000, ge=100, le=4000)
    default_format: TargetFormat = TargetFormat.MP3
    default_aspect: AspectPolicy = AspectPolicy.SQUARE
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('download_dir', 'work_dir', mode='before')
    @classmethod
    def expand_user_path(cls, value) -> Path:
        """Expands '~' so paths typed by hand behave like the defaults."""
        return Path(value).expanduser()


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
