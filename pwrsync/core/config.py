"""Configuration management for pwrsync."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger()


class PatchServerConfig(BaseModel):
    """Primary patch server configuration."""

    patch_host: str = Field(
        default="https://game-patches.hytale.com",
        description="Base URL of the primary patch server"
    )
    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    probe_concurrency: int = Field(
        default=8,
        description="Maximum concurrent existence probes"
    )
    probe_batch_size: int = Field(
        default=20,
        description="Number of versions probed per batch"
    )
    max_consecutive_misses: int = Field(
        default=20,
        description="Consecutive absent versions that end a probe scan"
    )
    version_cache_ttl: int = Field(
        default=15 * 60,  # 15 minutes
        description="Version list cache lifetime in seconds"
    )

    @field_validator("patch_host")
    @classmethod
    def validate_patch_host(cls, v: str) -> str:
        """Validate and strip the patch host."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Patch host must be an http(s) URL: {v}")
        return v.rstrip("/")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("probe_concurrency", "probe_batch_size", "max_consecutive_misses")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate probe tuning values."""
        if v <= 0:
            raise ValueError("Probe settings must be positive")
        return v

    @field_validator("version_cache_ttl")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Validate TTL value."""
        if v < 0:
            raise ValueError("TTL must be non-negative")
        return v


class MirrorConfig(BaseModel):
    """Secondary mirror configuration."""

    index_url: str = Field(
        default="https://thecute.cloud/ShipOfYarn/api.php",
        description="Mirror index endpoint"
    )
    ttl: int = Field(
        default=30 * 60,  # 30 minutes
        description="Mirror index lifetime in seconds"
    )
    timeout: float = Field(default=15.0, description="Mirror index request timeout")
    enabled: bool = Field(default=True, description="Whether the mirror is consulted")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("ttl")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Validate TTL value."""
        if v < 0:
            raise ValueError("TTL must be non-negative")
        return v


class DownloadConfig(BaseModel):
    """Artifact download configuration."""

    timeout: float = Field(default=60.0, description="Per-request timeout in seconds")
    max_attempts: int = Field(default=5, description="Attempts per artifact download")
    base_backoff: float = Field(default=1.0, description="Base retry delay in seconds")
    chunk_size: int = Field(default=64 * 1024, description="Read buffer size in bytes")
    progress_interval: float = Field(
        default=0.1,
        description="Minimum seconds between progress reports"
    )
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")

    @field_validator("max_attempts", "chunk_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate attempt and buffer sizes."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("base_backoff", "progress_interval")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate delay values."""
        if v < 0:
            raise ValueError("Delay must be non-negative")
        return v


class PatchToolConfig(BaseModel):
    """External patch tool configuration."""

    executable: str = Field(default="butler", description="Patch tool executable")
    staging_dir_name: str = Field(
        default="staging-temp",
        description="Staging directory created inside the target instance"
    )


class AppConfig(BaseModel):
    """Application configuration."""

    # Directory settings
    config_dir: Path = Field(
        default=Path.home() / ".config" / "pwrsync",
        description="Configuration directory"
    )
    data_dir: Path = Field(
        default=Path.home() / ".local" / "share" / "pwrsync",
        description="Data directory"
    )
    instance_dir: Path | None = Field(
        default=None,
        description="Instance root, defaults to <data_dir>/instances"
    )
    legacy_dirs: list[Path] = Field(
        default_factory=list,
        description="Old launcher data directories scanned for instances"
    )

    branch: str = Field(default="release", description="Default branch")

    patch_server: PatchServerConfig = Field(default_factory=PatchServerConfig)
    mirror: MirrorConfig = Field(default_factory=MirrorConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    patch_tool: PatchToolConfig = Field(default_factory=PatchToolConfig)

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @property
    def cache_dir(self) -> Path:
        """Directory holding versions.json and downloaded artifacts."""
        return self.data_dir / "cache"

    @property
    def instance_root(self) -> Path:
        """Resolved instance root directory."""
        if self.instance_dir is None:
            return self.data_dir / "instances"
        root = self.instance_dir.expanduser()
        if not root.is_absolute():
            root = (self.data_dir / root).resolve()
        return root

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "pwrsync" / "config.json"

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

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

        with open(config_file, "w") as f:
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

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        """Normalize the default branch."""
        from pwrsync.core.utils import normalize_branch

        return normalize_branch(v).value
