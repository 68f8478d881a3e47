"""Configuration management for Dreampix.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the DREAMPIX_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (DREAMPIX_* prefix)
2. .env file in the project root
3. Default values defined in DreampixConfig

Example .env file:
    DREAMPIX_PROVIDER=gemini
    DREAMPIX_GEMINI_API_KEY=...
    DREAMPIX_DATA_DIR=data
    DREAMPIX_MAX_WORKERS=8

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from dreampix.core.config import config

    print(config.db_path)
    print(config.image_model)

Directory Management
--------------------
The configuration creates ``data_dir`` on initialization.  The SQLite store
lives inside it (``data_dir / db_filename``).
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DreampixConfig(BaseSettings):
    """Main configuration for Dreampix.

    Values are loaded from environment variables with the DREAMPIX_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Storage:
        data_dir : Path
            Directory holding the local database
        db_filename : str
            SQLite database filename inside ``data_dir``

    Provider Settings:
        provider : Literal["gemini", "dryrun"]
            Which generation provider backs the orchestrator
        gemini_api_key : str | None
            API key for the Gemini provider
        text_model : str
            Model used for prompt enhancement and explanations
        image_model : str
            Model used for image generation

    Generation Settings:
        max_image_count : int
            Largest ``count`` accepted per request (1-4)
        max_workers : int
            Thread pool size for parallel generation calls
        call_timeout : float | None
            Per-call timeout in seconds (None waits indefinitely)
        collage_background : str
            Fill colour for empty collage cells

    Server Settings:
        server_host : str
            Bind address for the HTTP server
        server_port : int
            Port for the HTTP server (1024-65535)

    Notes
    -----
    - ``data_dir`` is created automatically if it doesn't exist
    - With ``provider="gemini"`` and no API key, the application falls back
      to the dry-run provider
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DREAMPIX_",
        case_sensitive=False,
    )

    # Storage
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the local database",
    )
    db_filename: str = Field(
        default="dreampix.sqlite",
        description="SQLite database filename inside data_dir",
    )

    # Provider settings
    provider: Literal["gemini", "dryrun"] = Field(
        default="gemini",
        description="Generation provider (gemini or dryrun)",
    )
    gemini_api_key: str | None = Field(
        default=None,
        description="API key for the Gemini provider",
    )
    text_model: str = Field(
        default="gemini-2.5-flash",
        description="Model used for prompt enhancement and explanations",
    )
    image_model: str = Field(
        default="gemini-2.5-flash-image",
        description="Model used for image generation",
    )

    # Generation settings
    max_image_count: int = Field(
        default=4,
        description="Largest number of images per request",
        ge=1,
        le=4,
    )
    max_workers: int = Field(
        default=8,
        description="Thread pool size for parallel generation calls",
        ge=1,
        le=64,
    )
    call_timeout: float | None = Field(
        default=None,
        description="Per-call generation timeout in seconds (None = no timeout)",
        gt=0,
    )
    collage_background: str = Field(
        default="#0f172a",
        description="Fill colour for empty collage cells",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create the data directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        # Safe to call repeatedly; parents=True builds nested paths.
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def db_path(self) -> Path:
        """Absolute location of the SQLite database file."""
        return self.data_dir / self.db_filename


# Global configuration instance
# Loads values from environment variables (DREAMPIX_* prefix) and .env file.
config = DreampixConfig()
