"""
Configuration management and loading.

Handles the state directory location, retention and pricing settings,
read from an optional YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

HOME_ENV_VAR = "TOKEN_LEDGER_HOME"
CONFIG_ENV_VAR = "TOKEN_LEDGER_CONFIG"
DEFAULT_HOME = Path("~/.token-ledger")
CONFIG_FILE_NAME = "config.yaml"

DEFAULT_RETENTION_DAYS = 30
DEFAULT_INDEX_STALE_SECONDS = 300
DEFAULT_TOP_AGENTS_LIMIT = 10
DEFAULT_EXTERNAL_MODULE = "litellm"


def ledger_home() -> Path:
    """Root directory of the ledger, honouring ``TOKEN_LEDGER_HOME``."""
    home = os.environ.get(HOME_ENV_VAR)
    return Path(home).expanduser() if home else DEFAULT_HOME.expanduser()


def default_state_dir() -> Path:
    """Directory holding the event log and every derived state file."""
    return ledger_home() / "state"


@dataclass(frozen=True)
class PricingConfig:
    """Where live pricing comes from."""
    external_module: Optional[str] = DEFAULT_EXTERNAL_MODULE

    def __post_init__(self):
        """Validate the module name."""
        if self.external_module is not None:
            if not isinstance(self.external_module, str) or not self.external_module.strip():
                raise ValueError("external_module must be a non-empty string or null")


@dataclass(frozen=True)
class AnalyticsConfig:
    """Complete analytics configuration."""
    state_dir: Path = field(default_factory=default_state_dir)
    retention_days: int = DEFAULT_RETENTION_DAYS
    index_stale_seconds: float = DEFAULT_INDEX_STALE_SECONDS
    top_agents_limit: int = DEFAULT_TOP_AGENTS_LIMIT
    pricing: PricingConfig = field(default_factory=PricingConfig)

    def __post_init__(self):
        """Validate numeric settings are positive."""
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        if self.index_stale_seconds < 0:
            raise ValueError("index_stale_seconds must be >= 0")
        if self.top_agents_limit <= 0:
            raise ValueError("top_agents_limit must be > 0")


def _resolve_config_path(path: Optional[str]) -> Optional[Path]:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    default_path = ledger_home() / CONFIG_FILE_NAME
    return default_path if default_path.exists() else None


def load_config(path: Optional[str] = None) -> AnalyticsConfig:
    """Load and validate analytics configuration.

    Looks at ``path``, then ``$TOKEN_LEDGER_CONFIG``, then
    ``<ledger home>/config.yaml``. With none of them present the defaults
    are used. Every key is optional but unknown keys are rejected, so a
    typo never silently falls back to a default.

    Args:
        path: Optional path to a YAML configuration file

    Returns:
        Validated AnalyticsConfig object

    Raises:
        FileNotFoundError: If an explicitly named config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = _resolve_config_path(path)
    if config_path is None:
        return AnalyticsConfig()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if raw_config is None:
        return AnalyticsConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> AnalyticsConfig:
    """Validate an already decoded configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_top_keys = {'state_dir', 'retention_days', 'index_stale_seconds', 'top_agents_limit', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if raw_config.get('state_dir') is not None:
        state_dir = raw_config['state_dir']
        if not isinstance(state_dir, str) or not state_dir.strip():
            raise ValueError("'state_dir' must be a non-empty string")
        kwargs['state_dir'] = Path(state_dir).expanduser()

    for key in ('retention_days', 'top_agents_limit'):
        if key in raw_config:
            value = raw_config[key]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' must be an integer")
            kwargs[key] = value

    if 'index_stale_seconds' in raw_config:
        value = raw_config['index_stale_seconds']
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("'index_stale_seconds' must be a number")
        kwargs['index_stale_seconds'] = float(value)

    if 'pricing' in raw_config:
        kwargs['pricing'] = _parse_pricing_config(raw_config['pricing'])

    return AnalyticsConfig(**kwargs)


def _parse_pricing_config(data: Any) -> PricingConfig:
    """Parse and validate the ``pricing`` section.

    Raises:
        ValueError: If configuration is invalid
    """
    if data is None:
        return PricingConfig()
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    allowed_keys = {'external_module'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in pricing: {unknown_keys}")

    if 'external_module' not in data:
        return PricingConfig()
    return PricingConfig(external_module=data['external_module'])
