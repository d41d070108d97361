"""Configuration management for the Image Harvest pipeline.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the HARVEST_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (HARVEST_* prefix)
2. .env file in the project root
3. Default values defined in HarvestConfig

Example .env file:
    HARVEST_RATE_LIMIT_MAX_REQUESTS=10
    HARVEST_RATE_LIMIT_WINDOW_MS=60000
    HARVEST_DEZGO_API_KEY=...
    HARVEST_STORAGE_DIR=uploads

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The FastAPI application reads it on startup; tests build their own instances
with temporary directories instead.

Usage Example
-------------
    from imageharvest.core.config import config

    print(config.max_guidance)
    print(config.storage_dir)

Directory Management
--------------------
The configuration creates required directories on initialization:
- storage_dir: Blob storage root for generated images
- the parent directory of database_path: SQLite metadata store

Guidance Bounds
---------------
Guidance is an integer in ``[min_guidance, max_guidance]`` (1-20 by default).
Requests that omit it receive ``default_guidance`` (10).
"""

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HarvestConfig(BaseSettings):
    """Main configuration for the generation pipeline.

    Attributes
    ----------
    Validation:
        max_prompt_length : int
            Maximum prompt length in characters
        min_guidance, max_guidance : int
            Inclusive guidance bounds
        default_guidance : int
            Guidance used when the request omits it

    Admission:
        rate_limit_max_requests : int
            Requests allowed per identity per window
        rate_limit_window_ms : int
            Window length in milliseconds
        admin_identities : list[str]
            Resolved identities (``user:<id>`` or ``ip:<addr>``) that bypass limits

    Queue:
        queue_concurrency : int
            Entries processed at once (1 = single lane)
        max_queue_size : int
            Pending entries allowed before enqueue is refused (0 = unbounded)
        task_timeout : float
            Seconds one entry may spend in the worker

    Dispatch:
        provider_timeout : float
            Seconds a single provider call may take
        multi_provider_fanout : bool
            Invoke every requested provider instead of one random pick
        providers_file : Path | None
            Optional JSON file extending the provider catalog

    Notes
    -----
    - Directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the application
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HARVEST_",
        case_sensitive=False,
    )

    # Request validation
    max_prompt_length: int = Field(default=1000, ge=1)
    min_guidance: int = Field(default=1)
    max_guidance: int = Field(default=20)
    default_guidance: int = Field(default=10)

    # Admission control
    rate_limit_max_requests: int = Field(
        default=10,
        description="Requests allowed per identity per window",
        ge=1,
    )
    rate_limit_window_ms: int = Field(
        default=60_000,
        description="Rate limit window in milliseconds",
        ge=1,
    )
    admin_identities: list[str] = Field(
        default_factory=list,
        description="Identities exempt from rate limiting (e.g. 'user:42')",
    )

    # Queue
    queue_concurrency: int = Field(default=1, ge=1, le=64)
    max_queue_size: int = Field(default=0, ge=0)
    task_timeout: float = Field(
        default=300.0,
        description="Seconds a queued entry may spend in the worker",
        gt=0,
    )

    # Provider dispatch
    provider_timeout: float = Field(
        default=120.0,
        description="Seconds a single provider call may take",
        gt=0,
    )
    multi_provider_fanout: bool = Field(
        default=False,
        description="Dispatch to every requested provider instead of one random pick",
    )
    providers_file: Path | None = Field(
        default=None,
        description="JSON file with additional provider catalog entries",
    )

    # Provider credentials
    dezgo_api_key: str = Field(default="")
    openai_api_key: str = Field(default="")
    openai_base_url: str = Field(default="https://api.openai.com")
    grok_api_key: str = Field(default="")
    grok_base_url: str = Field(default="https://api.x.ai")

    # Storage
    storage_dir: Path = Field(
        default=Path("uploads"),
        description="Directory holding generated image blobs",
    )
    storage_url_prefix: str = Field(
        default="uploads",
        description="URL prefix returned for stored blobs",
    )
    database_path: Path = Field(
        default=Path("data/images.db"),
        description="SQLite file for image metadata",
    )

    # Tagging
    tagging_enabled: bool = Field(default=True)
    tagging_api_key: str = Field(
        default="",
        description="API key for the chat completions tagger (empty = keyword fallback only)",
    )
    tagging_base_url: str = Field(default="https://api.openai.com")
    tagging_model: str = Field(default="gpt-3.5-turbo")
    tagging_max_retries: int = Field(default=2, ge=1, le=10)
    tagging_retry_delay: float = Field(
        default=2.0,
        description="Base back-off in seconds; attempt N waits N times this value",
        ge=0,
    )
    tagging_timeout: float = Field(default=30.0, gt=0)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080, ge=1024, le=65535)

    @model_validator(mode="after")
    def _check_guidance_bounds(self) -> "HarvestConfig":
        if self.min_guidance > self.max_guidance:
            raise ValueError("min_guidance must not exceed max_guidance")
        if not self.min_guidance <= self.default_guidance <= self.max_guidance:
            raise ValueError("default_guidance must lie within [min_guidance, max_guidance]")
        return self

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def rate_limit_window_seconds(self) -> float:
        """Window length in seconds."""
        return self.rate_limit_window_ms / 1000.0


# Global configuration instance, loaded from HARVEST_* variables and .env.
config = HarvestConfig()
