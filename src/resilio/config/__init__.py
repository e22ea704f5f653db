"""Configuration loading and validation."""

from resilio.config.loader import (
    EngineConfig,
    ProbeConfig,
    SystemConfig,
    load_config,
)

__all__ = [
    # Main config
    "load_config",
    "EngineConfig",
    # Config sections
    "SystemConfig",
    "ProbeConfig",
]
