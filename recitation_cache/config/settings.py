"""
Application settings management.

Loads cache configuration from environment variables (``RECITATION_CACHE_*``),
an optional ``.env`` file and a JSON config file kept in the data directory.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".recitation_cache"


class Settings(BaseSettings):
    """
    Offline cache settings with file persistence.

    Attributes:
        data_directory: Root directory for the database, audio and config file
        database_filename: SQLite file name inside the data directory
        audio_directory_name: Audio payload directory inside the data directory
        capacity_bytes: Maximum cached payload size (0 = unlimited)
        readiness_min_verses: Verses required before the cache counts as offline-ready
        verify_every: Mutations between full statistics recounts (0 = never)
        connectivity_probe_url: URL probed to detect connectivity
        connectivity_interval_seconds: Seconds between connectivity probes
        connectivity_timeout_seconds: Probe request timeout
        log_directory: Path to log files
        log_level: Logging level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RECITATION_CACHE_",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_directory: Path = Field(default=DEFAULT_DATA_DIR, description="Cache data root")
    database_filename: str = Field(default="offline_cache.db", description="SQLite file name")
    audio_directory_name: str = Field(default="audio", description="Audio payload directory")
    capacity_bytes: int = Field(default=0, ge=0, description="Storage limit in bytes")

    # Readiness and integrity
    readiness_min_verses: int = Field(default=1, ge=1, description="Readiness threshold")
    verify_every: int = Field(default=500, ge=0, description="Recount interval")

    # Connectivity
    connectivity_probe_url: str = Field(
        default="https://api.alquran.cloud/v1/meta",
        description="Connectivity probe URL",
    )
    connectivity_interval_seconds: float = Field(default=30.0, gt=0, description="Probe interval")
    connectivity_timeout_seconds: float = Field(default=5.0, gt=0, description="Probe timeout")

    # Logging
    log_directory: Path = Field(default=DEFAULT_DATA_DIR / "logs", description="Log file path")
    log_level: str = Field(default="INFO", description="Logging level")

    def __init__(self, **kwargs):
        """Initialize settings and load from config file if exists."""
        super().__init__(**kwargs)
        self._ensure_directories()
        self.load_from_file()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper().strip()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {v}")
        return level

    @property
    def config_file(self) -> Path:
        return self.data_directory / "config.json"

    @property
    def database_path(self) -> Path:
        return self.data_directory / self.database_filename

    @property
    def audio_directory(self) -> Path:
        return self.data_directory / self.audio_directory_name

    def _ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        for directory in [self.data_directory, self.audio_directory, self.log_directory]:
            directory.mkdir(parents=True, exist_ok=True)

    def _serializable(self) -> Dict[str, Any]:
        data = self.model_dump()
        for key, value in data.items():
            if isinstance(value, Path):
                data[key] = str(value)
        return data

    def save_to_file(self) -> None:
        """Save settings to the config file."""
        try:
            with open(self.config_file, "w") as f:
                json.dump(self._serializable(), f, indent=2)

            logger.info(f"Settings saved to {self.config_file}")

        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def load_from_file(self) -> None:
        """Load settings from the config file, ignoring unknown keys."""
        if not self.config_file.exists():
            logger.debug("No config file found, using defaults")
            return

        try:
            with open(self.config_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load settings: {e}")
            return

        # The file lives inside data_directory, so it cannot relocate it
        data.pop("data_directory", None)

        for key in ["log_directory"]:
            if key in data:
                data[key] = Path(data[key])

        for key, value in data.items():
            if key in type(self).model_fields:
                setattr(self, key, value)

        logger.info("Settings loaded from file")

    def reset_to_defaults(self) -> None:
        """Reset every setting except the data directory to its default."""
        for name, field in type(self).model_fields.items():
            if name != "data_directory":
                setattr(self, name, field.get_default(call_default_factory=True))
        self.save_to_file()

        logger.info("Settings reset to defaults")

    def export_config(self, export_path: Path) -> None:
        """
        Export configuration to external file.

        Args:
            export_path: Path to export config to
        """
        try:
            with open(export_path, "w") as f:
                json.dump(self._serializable(), f, indent=2)

            logger.info(f"Configuration exported to {export_path}")

        except OSError as e:
            logger.error(f"Failed to export config: {e}")
            raise
