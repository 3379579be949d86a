"""Configuration management for the Seedream relay.

This module provides centralized configuration management using Pydantic Settings.
Values are loaded from environment variables without a prefix, so the variable
names used by existing deployments (``REPLICATE_API_TOKEN``,
``REQUEST_TIMEOUT_MS``, ``MAX_RETRIES``, ``PORT``) keep working.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables
2. .env file in the working directory
3. Default values defined in RelayConfig

Example .env file:
    REPLICATE_API_TOKEN=r8_xxxxxxxxxxxxxxxx
    REQUEST_TIMEOUT_MS=60000
    MAX_RETRIES=4
    PUBLIC_BASE_URL=https://relay.example.com

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The FastAPI application factory accepts an explicit instance instead, which
is how the tests run the app against temporary directories.

Usage Example
-------------
    from seedream_relay.core.config import config

    print(config.has_token)
    print(config.upload_dir)

Directory Management
--------------------
The upload directory is created on initialization.  The static directory is
optional: when it is missing the SPA fallback answers 404.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .input_schema import INPUT_SCHEMAS

logger = logging.getLogger(__name__)


class RelayConfig(BaseSettings):
    """Main configuration for the Seedream relay.

    Attributes
    ----------
    Upstream Settings:
        replicate_api_token : str | None
            Replicate credential.  Required for any upstream call.
        api_base_url : str
            Base URL of the Replicate HTTP API.
        model_owner, model_name : str
            Model addressed by the direct creation path.
        input_schema : str
            Key into the input schema capability table.
        prefer_wait : bool
            Ask the upstream to block until the prediction finishes.

    Retry Settings:
        request_timeout_ms : int
            Wall-clock bound of a single upstream attempt.
        max_retries : int
            Retries after the first attempt for transient failures.
        backoff_base_ms, backoff_cap_ms : int
            Exponential backoff parameters.

    Upload Settings:
        upload_dir : Path
            Flat directory holding uploaded reference images.
        public_base_url : str | None
            Externally visible origin; overrides forwarding headers.
        verify_uploads : bool
            Fetch the public URL of each upload before answering.
        upload_ttl_seconds : int | None
            Delete uploads older than this on each ingest.  ``None`` keeps
            them forever.
        max_upload_bytes : int
            Longest accepted data URL, in characters.

    Server Settings:
        static_dir, host, port, log_level, enable_debug_routes
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Upstream
    replicate_api_token: str | None = Field(
        default=None,
        description="Replicate API token (never sent to the browser)",
    )
    api_base_url: str = Field(
        default="https://api.replicate.com/v1",
        description="Base URL of the upstream prediction API",
    )
    model_owner: str = Field(default="bytedance")
    model_name: str = Field(default="seedream-4")
    input_schema: str = Field(
        default="image_input",
        description="Input field mapping used for the reference image",
    )
    prefer_wait: bool = Field(
        default=True,
        description="Send 'Prefer: wait' so the upstream answers synchronously",
    )

    # Retry policy
    request_timeout_ms: int = Field(default=60_000, ge=1)
    max_retries: int = Field(default=4, ge=0)
    backoff_base_ms: int = Field(default=1_000, ge=0)
    backoff_cap_ms: int = Field(default=8_000, ge=0)

    # Batch
    cancel_abandoned: bool = Field(
        default=False,
        description="Cancel sibling predictions upstream when a batch fails",
    )

    # Uploads
    upload_dir: Path = Field(
        default=Path("uploads"),
        description="Directory for uploaded reference images",
    )
    public_base_url: str | None = Field(
        default=None,
        description="Externally visible origin, e.g. https://relay.example.com",
    )
    verify_uploads: bool = Field(
        default=True,
        description="Check that each upload is publicly reachable",
    )
    verify_timeout_ms: int = Field(default=10_000, ge=1)
    upload_ttl_seconds: int | None = Field(
        default=None,
        ge=1,
        description="Age after which uploads are swept; unset keeps them",
    )
    max_upload_bytes: int = Field(
        default=15 * 1024 * 1024,
        ge=1,
        description="Largest accepted data URL, matching the 15 MB body limit",
    )

    # Server
    static_dir: Path = Field(
        default=Path("public"),
        description="Directory holding the single-page client",
    )
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    log_level: str = Field(default="info")
    enable_debug_routes: bool = Field(default=False)

    @field_validator("input_schema")
    @classmethod
    def _known_input_schema(cls, value: str) -> str:
        if value not in INPUT_SCHEMAS:
            raise ValueError(f"input_schema must be one of {sorted(INPUT_SCHEMAS)}")
        return value

    @field_validator("replicate_api_token")
    @classmethod
    def _blank_token_is_missing(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    def __init__(self, **kwargs):
        """Initialize configuration and create the upload directory."""
        super().__init__(**kwargs)
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    @property
    def has_token(self) -> bool:
        return bool(self.replicate_api_token)

    @property
    def model_url(self) -> str:
        """URL of the model resource used by both creation paths."""
        base = self.api_base_url.rstrip("/")
        return f"{base}/models/{self.model_owner}/{self.model_name}"


# Global configuration instance, loaded from the environment and .env file.
config = RelayConfig()
