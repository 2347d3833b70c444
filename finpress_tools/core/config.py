"""Configuration management for finpress-tools."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from finpress_tools import __version__
from finpress_tools.core.errors import ConfigurationError

logger = structlog.get_logger()


class CacheConfig(BaseModel):
    """Archive cache configuration."""

    cache_dir: Path = Field(
        default=Path.home() / ".cache" / "finpress-tools",
        description="Cache directory"
    )
    enabled: bool = Field(
        default=True,
        description="Whether caching is enabled"
    )


class FetchConfig(BaseModel):
    """Download and API client configuration."""

    base_domain: str = Field(
        default="finpress.org",
        description="Domain serving release archives"
    )
    api_base_url: str = Field(
        default="https://api.finpress.org",
        description="Base URL of the checksum and version-check APIs"
    )
    timeout: float = Field(
        default=600.0,  # 10 minutes
        description="Transfer timeout in seconds"
    )
    api_timeout: float = Field(default=30.0, description="API request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    insecure: bool = Field(
        default=False,
        description="Retry without certificate validation if the TLS handshake fails"
    )
    user_agent: str = Field(
        default=f"finpress-tools/{__version__}",
        description="User-Agent header sent with every request"
    )
    scratch_dir: Path | None = Field(
        default=None,
        description="Directory for temporary downloads (system temp dir if unset)"
    )

    @field_validator("timeout", "api_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("base_domain")
    @classmethod
    def validate_base_domain(cls, v: str) -> str:
        """Validate base domain."""
        v = v.strip().strip("/")
        if not v or "://" in v:
            raise ValueError(f"Invalid base domain: {v!r}")
        return v

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        """Validate API base URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"API base URL must be http(s): {v}")
        return v.rstrip("/")


class ReconcileConfig(BaseModel):
    """Post-update file cleanup configuration."""

    protected_prefix: str = Field(
        default="fin-content",
        description="Install-relative prefix treated as user data, never deleted"
    )

    @field_validator("protected_prefix")
    @classmethod
    def validate_protected_prefix(cls, v: str) -> str:
        """Validate protected prefix."""
        v = v.strip().strip("/")
        if not v:
            raise ValueError("Protected prefix cannot be empty")
        return v


class AppConfig(BaseModel):
    """Application configuration."""

    # Directory settings
    config_dir: Path = Field(
        default=Path.home() / ".config" / "finpress-tools",
        description="Configuration directory"
    )

    cache: CacheConfig = Field(default_factory=CacheConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="WARNING",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration

        Raises:
            ConfigurationError: If the file is unreadable or invalid
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "finpress-tools" / "config.json"

        if config_file.exists():
            try:
                with open(config_file, encoding="utf-8") as f:
                    data = json.load(f)
                return cls(**data)
            except (OSError, json.JSONDecodeError, ValidationError, TypeError) as e:
                raise ConfigurationError(f"Invalid configuration file {config_file}: {e}") from e

        # Return defaults
        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate output format."""
        valid_formats = {"rich", "json", "plain"}
        if v not in valid_formats:
            raise ValueError(f"Invalid output format: {v}. Valid formats: {valid_formats}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
