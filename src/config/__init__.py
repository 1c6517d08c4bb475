"""Configuration loading for the bulk-load pipeline.

Configuration is loaded from a single YAML file (default
``src/config/config.yaml``) with ``${VAR}`` / ``${VAR:-default}``
environment expansion.

Usage:
    >>> from config import load_config, get_config
    >>>
    >>> config = load_config()
    >>> config.primary.table_name
    'public.events'
    >>> config.secondary_enabled
    False

Validate from the command line:
    python -m config.config --validate
"""

from config.config import (
    DEFAULT_CONFIG_FILE,
    BackpressureConfig,
    BatchConfig,
    LoaderConfig,
    ObservabilityConfig,
    QueueConfig,
    StagingConfig,
    TargetConfig,
    build_config,
    get_config,
    load_config,
    memory_overrides,
    reset_config,
    set_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "BackpressureConfig",
    "BatchConfig",
    "LoaderConfig",
    "ObservabilityConfig",
    "QueueConfig",
    "StagingConfig",
    "TargetConfig",
    "build_config",
    "get_config",
    "load_config",
    "memory_overrides",
    "reset_config",
    "set_config",
]
