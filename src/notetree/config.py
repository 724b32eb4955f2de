"""Configuration module for notetree."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notetree.exceptions import ConfigurationError

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the logs
_USER_ENV = Path.home() / ".notetree" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class NotetreeConfig(BaseModel):
    """Configuration for the note tree engine and its SQLite store."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTETREE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTETREE_DATABASE_PATH", "data/db/notetree.db")
        )
    )
    # Logging configuration
    log_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTETREE_LOG_DIR", str(Path.home() / ".notetree" / "logs"))
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTETREE_LOG_LEVEL", "INFO").upper()
    )
    # When set, operation metrics are persisted to this JSON file
    metrics_file: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTETREE_METRICS_FILE"))
            if os.getenv("NOTETREE_METRICS_FILE")
            else None
        )
    )
    # Upper bound for a single backing-store call; 0 disables the bound
    adapter_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("NOTETREE_ADAPTER_TIMEOUT", "30"))
    )
    # Temporary id prefixes for unconfirmed creations
    folder_temp_prefix: str = Field(
        default_factory=lambda: os.getenv(
            "NOTETREE_FOLDER_TEMP_PREFIX", "temp-folder"
        )
    )
    note_temp_prefix: str = Field(
        default_factory=lambda: os.getenv("NOTETREE_NOTE_TEMP_PREFIX", "temp-note")
    )
    # Defaults for new entities
    default_folder_name: str = Field(default="New Folder")
    default_note_title: str = Field(default="Untitled")

    @model_validator(mode="after")
    def _validate_settings(self) -> "NotetreeConfig":
        """Reject settings the engine cannot work with."""
        if self.adapter_timeout_seconds < 0:
            raise ConfigurationError(
                "adapter_timeout_seconds must be >= 0",
                config_key="NOTETREE_ADAPTER_TIMEOUT",
            )
        if not self.folder_temp_prefix.strip():
            raise ConfigurationError(
                "Temporary id prefix cannot be empty",
                config_key="NOTETREE_FOLDER_TEMP_PREFIX",
            )
        if not self.note_temp_prefix.strip():
            raise ConfigurationError(
                "Temporary id prefix cannot be empty",
                config_key="NOTETREE_NOTE_TEMP_PREFIX",
            )
        if self.log_level not in _LOG_LEVELS:
            logger.warning(
                "Unknown log level %r, falling back to INFO", self.log_level
            )
            self.log_level = "INFO"
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NotetreeConfig()
