"""Configuration module for Ember."""

from ember.config.settings import (
    DeduplicationStrategy,
    EmberSettings,
    ErrorRecoveryConfig,
    ExecutionConfig,
    ExploitMemoryConfig,
    GitConfig,
    OutputConfig,
    get_settings,
    reset_settings,
)

__all__ = [
    "DeduplicationStrategy",
    "EmberSettings",
    "ErrorRecoveryConfig",
    "ExecutionConfig",
    "ExploitMemoryConfig",
    "GitConfig",
    "OutputConfig",
    "get_settings",
    "reset_settings",
]
