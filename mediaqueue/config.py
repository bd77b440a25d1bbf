"""
Manages loading, saving, and validating the application settings using Pydantic.

This module defines the settings schema as a Pydantic model (`Settings`) and
provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import logging
from pathlib import Path
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .constants import DEFAULT_MAX_RETRIES, MAX_RETRIES_LIMIT
from .persistence import JsonStateFile


def default_download_dir() -> Path:
    return Path.home() / 'Downloads'


class Settings(BaseModel):
    """
    Defines the application's settings schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    settings. Out-of-range values are clamped rather than rejected so that an old
    or hand-edited settings file never prevents startup.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    download_dir: Path = Field(default_factory=default_download_dir)
    max_retries: int = DEFAULT_MAX_RETRIES
    language: str = 'en'
    log_level: str = 'INFO'

    @field_validator('download_dir', mode='before')
    @classmethod
    def normalize_download_dir(cls, value: Any) -> str:
        """
        Blank means the default; relative paths are anchored at the home directory.

        Returns a string because JSON-mode validation of a `Path` field only
        accepts strings.
        """
        raw = str(value).strip() if value is not None else ''
        if not raw:
            return str(default_download_dir())
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = Path.home() / path
        return str(path)

    @field_validator('max_retries', mode='before')
    @classmethod
    def clamp_max_retries(cls, value: Any) -> int:
        try:
            retries = int(value)
        except (TypeError, ValueError):
            return DEFAULT_MAX_RETRIES
        return min(max(retries, 0), MAX_RETRIES_LIMIT)

    @field_validator('language', mode='before')
    @classmethod
    def validate_language(cls, value: Any) -> str:
        language = str(value or '').strip()
        return language or 'en'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value


class ConfigManager:
    """Handles loading and saving the settings file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the settings file.
        """
        self.state_file = JsonStateFile(config_path)
        self.logger = logging.getLogger(__name__)

    def load(self) -> Settings:
        """
        Loads settings from file, falling back to the backup and then to defaults.

        Returns:
            A validated Settings object.
        """
        settings = self.state_file.load(Settings.model_validate_json)
        if settings is None:
            self.logger.info("No usable settings file found. Using default settings.")
            return Settings()
        return settings

    async def save(self, settings: Settings) -> bool:
        """
        Saves the provided settings object to the settings file.

        Args:
            settings: The Settings object to save.
        """
        return await self.state_file.save(settings.model_dump_json(by_alias=True, indent=4))
