"""Configuration loader for Resilio.

Loads YAML configuration files and validates them against Pydantic models.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from resilio.alerts import AlertConfig
from resilio.analytics import AnalyticsConfig
from resilio.availability import AvailabilityConfig
from resilio.cache import CacheConfig
from resilio.errors import ConfigurationError
from resilio.escalation import EscalationConfig
from resilio.notifications import WebhookConfig
from resilio.performance import PerformanceConfig
from resilio.queue import QueueConfig
from resilio.retry import RetryConfig

CONFIG_FILE = "resilio.yaml"


class SystemConfig(BaseModel):
    """Global system configuration."""

    model_config = {"extra": "forbid"}

    log_level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR)$")
    log_format: str = Field(default="console", pattern=r"^(json|console)$")
    metrics_port: Optional[int] = Field(default=None, ge=1, le=65535)


class ProbeConfig(BaseModel):
    """HTTP health probe configuration."""

    model_config = {"extra": "forbid"}

    url: Optional[str] = Field(default=None, description="Health endpoint; no probe when unset")
    timeout_ms: int = Field(default=5_000, ge=100, le=60_000)
    use_head: bool = Field(default=True)


class EngineConfig(BaseModel):
    """Complete Resilio configuration. Every section is optional."""

    model_config = {"extra": "forbid"}

    version: str = Field(default="1.0")
    environment: str = Field(default="development")

    system: SystemConfig = Field(default_factory=SystemConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    availability: AvailabilityConfig = Field(default_factory=AvailabilityConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    webhook: Optional[WebhookConfig] = Field(default=None)


def load_config(config_dir: Path | str) -> EngineConfig:
    """Load configuration from a directory.

    Reads ``resilio.yaml``, merges any files listed under ``includes`` and
    then ``environments/<environment>.yaml``.

    Args:
        config_dir: Path to configuration directory containing YAML files.

    Returns:
        Validated EngineConfig object.

    Raises:
        FileNotFoundError: If config directory doesn't exist.
        ConfigurationError: If a file is not valid YAML or fails validation.
    """
    config_dir = Path(config_dir)

    if not config_dir.exists():
        raise FileNotFoundError(f"Config directory not found: {config_dir}")

    data = _read_yaml(config_dir / CONFIG_FILE)

    includes = data.pop("includes", [])
    for include in includes:
        include_path = config_dir / include
        if include_path.exists():
            _deep_merge(data, _read_yaml(include_path))

    env = data.get("environment", "development")
    env_file = config_dir / "environments" / f"{env}.yaml"
    if env_file.exists():
        _deep_merge(data, _read_yaml(env_file))

    try:
        return EngineConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration in {config_dir}",
            details={"errors": e.errors(include_url=False)},
        ) from e


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}", details={"file": str(path)}) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping in {path}", details={"file": str(path)})
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Deep merge override into base dictionary."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
