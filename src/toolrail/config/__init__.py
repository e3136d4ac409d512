"""Configuration loading and validation."""

from toolrail.config.loader import load_config
from toolrail.config.schema import (
    BuildConfig,
    DedupConfig,
    LoggingConfig,
    LoopConfig,
    MemoryConfig,
    MetricsConfig,
    PolicyConfig,
    RetrySettings,
    RuntimeConfig,
    ToolrailConfig,
)

__all__ = [
    "BuildConfig",
    "DedupConfig",
    "LoggingConfig",
    "LoopConfig",
    "MemoryConfig",
    "MetricsConfig",
    "PolicyConfig",
    "RetrySettings",
    "RuntimeConfig",
    "ToolrailConfig",
    "load_config",
]
