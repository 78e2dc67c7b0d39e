"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
The download manager only ever sees the two optional overrides it needs, layered
over built-in defaults.
"""

import json
import time
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import DEFAULT_TRANSCRIPTION_MODEL, MAX_CONCURRENT_DOWNLOADS
from .exceptions import InvalidRequest


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    executable_path: Optional[Path] = None
    default_output_dir: Optional[Path] = None
    max_concurrent_downloads: int = Field(default=1, ge=1, le=MAX_CONCURRENT_DOWNLOADS)
    ffmpeg_location: Optional[Path] = None
    transcription_python: Optional[Path] = None
    transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL
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

    @field_validator('executable_path', 'default_output_dir', 'ffmpeg_location', 'transcription_python', mode='before')
    @classmethod
    def blank_path_is_unset(cls, value: Any) -> Any:
        """Treats an empty string as "no override"."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator('transcription_model')
    @classmethod
    def validate_transcription_model(cls, value: str) -> str:
        return value.strip() or DEFAULT_TRANSCRIPTION_MODEL


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
        # Ensure the configuration directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self._settings: Optional[Settings] = None

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
            self._settings = Settings()
            self.save(self._settings)
            return self._settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            self._settings = Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            self._settings = Settings()
        return self._settings

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

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            return self.load()
        return self._settings

    def get(self) -> Dict[str, Optional[Path]]:
        """Returns the two overrides the download manager reads."""
        return {
            'executable_path': self.settings.executable_path,
            'default_output_dir': self.settings.default_output_dir,
        }

    def set(self, partial: Dict[str, Any]) -> Settings:
        """
        Merges `partial` into the current settings, validates, and persists.

        Raises:
            InvalidRequest: If a key is unknown or a value fails validation.
        """
        unknown = set(partial) - set(Settings.model_fields)
        if unknown:
            raise InvalidRequest(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        try:
            new_settings = Settings.model_validate({**self.settings.model_dump(), **partial})
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            raise InvalidRequest(f"Error in field '{field}': {msg}") from e
        self.save(new_settings)
        self._settings = new_settings
        self.logger.info(f"Settings updated: {', '.join(sorted(partial))}")
        return new_settings
