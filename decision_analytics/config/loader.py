"""
Configuration management and loading.

Handles retention windows, janitor schedules and sampling settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(ValueError):
    """Raised when the engine is configured or called with invalid settings."""


def require_positive(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"{name} must be > 0")


@dataclass(frozen=True)
class RetentionConfig:
    """Retention windows in days for each analyzer."""
    campaigns: float = 30
    atoms: float = 90
    users: float = 365

    def __post_init__(self):
        """Validate retention windows are positive."""
        require_positive(self.campaigns, "retention.campaigns")
        require_positive(self.atoms, "retention.atoms")
        require_positive(self.users, "retention.users")


@dataclass(frozen=True)
class SchedulerConfig:
    """Janitor job intervals in seconds."""
    cleanup_interval: float = 3600
    graph_rebuild_interval: float = 3600
    segment_refresh_interval: float = 3600

    def __post_init__(self):
        """Validate intervals are positive."""
        require_positive(self.cleanup_interval, "scheduler.cleanup_interval")
        require_positive(self.graph_rebuild_interval, "scheduler.graph_rebuild_interval")
        require_positive(self.segment_refresh_interval, "scheduler.segment_refresh_interval")


@dataclass(frozen=True)
class SamplingConfig:
    """Per-execution sample retention for atom records."""
    max_samples_per_record: int = 1000

    def __post_init__(self):
        if isinstance(self.max_samples_per_record, bool) or not isinstance(self.max_samples_per_record, int):
            raise ConfigurationError("sampling.max_samples_per_record must be an integer")
        require_positive(self.max_samples_per_record, "sampling.max_samples_per_record")


@dataclass(frozen=True)
class AnalyticsConfig:
    """Complete engine configuration."""
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.log_level not in VALID_LOG_LEVELS:
            raise ConfigurationError(f"logging.level must be one of: {list(VALID_LOG_LEVELS)}")

    @classmethod
    def defaults(cls) -> "AnalyticsConfig":
        """Reference deployment: 30/90/365 day retention, hourly janitor."""
        return cls()


_SECTIONS = {
    "retention": {"campaigns", "atoms", "users"},
    "scheduler": {"cleanup_interval", "graph_rebuild_interval", "segment_refresh_interval"},
    "sampling": {"max_samples_per_record"},
    "logging": {"level"},
}


def load_analytics_config(path: str) -> AnalyticsConfig:
    """Load and validate analytics configuration from a YAML file.

    Every section is optional and falls back to the reference deployment,
    but unknown keys and wrongly typed values are rejected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AnalyticsConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If YAML is invalid or configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Analytics config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AnalyticsConfig.defaults()

    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTIONS}

    return AnalyticsConfig(
        retention=RetentionConfig(**sections["retention"]),
        scheduler=SchedulerConfig(**sections["scheduler"]),
        sampling=SamplingConfig(**sections["sampling"]),
        log_level=str(sections["logging"].get("level", "WARNING")).upper(),
    )


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    """Extract and validate one top-level section.

    Args:
        raw_config: Parsed YAML document
        name: Section name

    Returns:
        Section dictionary (empty when the section is absent)

    Raises:
        ConfigurationError: If the section is not a dictionary or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTIONS[name]
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {name}: {unknown_keys}")
    return data
