"""
Ember configuration settings using Pydantic.

This module provides type-safe configuration management with validation,
environment variable support, and nested configuration structures.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeduplicationStrategy(str, Enum):
    """How aggressively exploit memory merges similar findings."""

    STRICT = "strict"
    MODERATE = "moderate"
    LOOSE = "loose"


class ExecutionConfig(BaseModel):
    """Agent execution configuration."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts per agent before the agent is marked failed",
    )
    parallel_phases: bool = Field(
        default=True,
        description="Run agents of multi-agent phases concurrently",
    )


class ErrorRecoveryConfig(BaseModel):
    """Retry backoff configuration for agent execution errors."""

    base_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Initial backoff delay for transient errors",
    )
    max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=300.0,
        description="Maximum backoff delay for transient errors",
    )
    rate_limit_base_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=300.0,
        description="Initial backoff delay for rate-limit errors",
    )
    rate_limit_max_seconds: float = Field(
        default=120.0,
        ge=0.0,
        le=900.0,
        description="Maximum backoff delay for rate-limit errors",
    )
    jitter_ratio: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Random jitter added on top of the delay, as a fraction of it",
    )


class GitConfig(BaseModel):
    """Git workspace configuration."""

    max_lock_retries: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Retries for git commands failing on index lock contention",
    )
    lock_retry_base_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Initial delay between lock-contention retries (doubles each time)",
    )


class OutputConfig(BaseModel):
    """Persisted state locations."""

    audit_logs_dir: Path = Field(
        default=Path("audit-logs"),
        description="Directory holding one audit folder per (hostname, session)",
    )
    session_store_file: Path = Field(
        default=Path(".ember-store.json"),
        description="JSON file holding the session store",
    )
    deliverables_dirname: str = Field(
        default="deliverables",
        description="Name of the deliverables folder inside the target workspace",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    @model_validator(mode="after")
    def resolve_paths(self) -> "OutputConfig":
        """Ensure state paths are absolute."""
        if not self.audit_logs_dir.is_absolute():
            object.__setattr__(self, "audit_logs_dir", Path.cwd() / self.audit_logs_dir)
        if not self.session_store_file.is_absolute():
            object.__setattr__(self, "session_store_file", Path.cwd() / self.session_store_file)
        return self


class ExploitMemoryConfig(BaseModel):
    """Exploit memory (finding deduplication store) configuration."""

    enabled: bool = Field(
        default=True,
        description="Record findings and credentials in exploit memory",
    )
    deduplication_strategy: DeduplicationStrategy = Field(
        default=DeduplicationStrategy.STRICT,
        description="Identity hash strategy used when saving findings",
    )
    db_dir: Path = Field(
        default=Path("exploit-memory"),
        description="Directory holding one SQLite database per hostname",
    )
    max_age_days: int = Field(
        default=90,
        ge=1,
        le=3650,
        description="Findings not re-verified within this window are considered stale",
    )

    @model_validator(mode="after")
    def resolve_db_dir(self) -> "ExploitMemoryConfig":
        """Ensure db_dir is an absolute path."""
        if not self.db_dir.is_absolute():
            object.__setattr__(self, "db_dir", Path.cwd() / self.db_dir)
        return self


class EmberSettings(BaseSettings):
    """
    Main Ember configuration.

    Settings are loaded from environment variables with the EMBER_ prefix,
    or from a .env file in the current directory. Nested sections use a
    double underscore, e.g. EMBER_EXECUTION__MAX_ATTEMPTS=5.

    The agent executor itself is external. EMBER_EXECUTOR names it as
    "package.module:attribute" and is resolved by the CLI.
    """

    model_config = SettingsConfigDict(
        env_prefix="EMBER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    executor: str | None = Field(
        default=None,
        description="Import path of the agent executor callable (module:attribute)",
    )

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    error_recovery: ErrorRecoveryConfig = Field(default_factory=ErrorRecoveryConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    exploit_memory: ExploitMemoryConfig = Field(default_factory=ExploitMemoryConfig)


_settings: EmberSettings | None = None


def get_settings() -> EmberSettings:
    """Get the cached settings instance, loading it on first use."""
    global _settings
    if _settings is None:
        _settings = EmberSettings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call reloads from the environment."""
    global _settings
    _settings = None
