"""
Configuration management and loading.

Handles ledger constants, cache tuning, routing thresholds and generation
limits. Every section is optional and falls back to the product defaults.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


CONFIG_ENV_VAR = "KRONIQ_GUARD_CONFIG"
DB_ENV_VAR = "KRONIQ_GUARD_DB"
DEFAULT_DB_PATH = "kroniq_guard.db"

GENERATION_KINDS = ("image", "video", "song", "tts", "ppt")


@dataclass(frozen=True)
class LedgerConfig:
    """Token accounting constants."""
    early_adopter_limit: int = 106
    early_adopter_tokens: int = 300_000
    standard_allocation: int = 100_000
    cost_multiplier: float = 2.0
    usd_per_token: float = 0.000001
    reset_period_days: int = 30

    def __post_init__(self):
        """Validate ledger values are positive."""
        for name in (
            "early_adopter_limit",
            "early_adopter_tokens",
            "standard_allocation",
            "cost_multiplier",
            "usd_per_token",
            "reset_period_days",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True)
class AccessConfig:
    """Access cache tuning."""
    cache_ttl_seconds: float = 1.0
    cache_max_entries: int = 1024

    def __post_init__(self):
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be > 0")
        if self.cache_max_entries <= 0:
            raise ValueError("cache_max_entries must be > 0")


@dataclass(frozen=True)
class RoutingConfig:
    """Confidence thresholds for intent routing."""
    confirm_min: float = 0.5
    auto_route_min: float = 0.8

    def __post_init__(self):
        if not 0 <= self.confirm_min <= 1:
            raise ValueError("confirm_min must be between 0 and 1")
        if not 0 <= self.auto_route_min <= 1:
            raise ValueError("auto_route_min must be between 0 and 1")
        if self.confirm_min > self.auto_route_min:
            raise ValueError("confirm_min must be <= auto_route_min")


@dataclass(frozen=True)
class ProviderConfig:
    """Chat completion provider settings."""
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"


def _default_generation_limits() -> Dict[str, int]:
    return {"image": 7, "video": 2, "song": 2, "tts": 10, "ppt": 1}


@dataclass(frozen=True)
class GuardConfig:
    """Complete configuration."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    access: AccessConfig = field(default_factory=AccessConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    generation_limits: Dict[str, int] = field(default_factory=_default_generation_limits)
    provider: ProviderConfig = field(default_factory=ProviderConfig)

    def get_generation_limit(self, kind: str) -> int:
        """Free-tier daily limit for a generation kind."""
        if kind not in self.generation_limits:
            raise ValueError(f"Unknown generation kind: {kind}")
        return self.generation_limits[kind]


def default_config() -> GuardConfig:
    """Return the built-in product defaults."""
    return GuardConfig()


def load_guard_config(path: str) -> GuardConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys are rejected so a typo never silently falls back to a
    default token allocation or price multiplier.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'ledger', 'access', 'routing', 'generation_limits', 'provider'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    ledger = LedgerConfig(**_parse_section(
        raw_config.get('ledger'), "ledger",
        {
            'early_adopter_limit': int,
            'early_adopter_tokens': int,
            'standard_allocation': int,
            'cost_multiplier': float,
            'usd_per_token': float,
            'reset_period_days': int,
        },
    ))
    access = AccessConfig(**_parse_section(
        raw_config.get('access'), "access",
        {'cache_ttl_seconds': float, 'cache_max_entries': int},
    ))
    routing = RoutingConfig(**_parse_section(
        raw_config.get('routing'), "routing",
        {'confirm_min': float, 'auto_route_min': float},
    ))
    provider = ProviderConfig(**_parse_section(
        raw_config.get('provider'), "provider",
        {'base_url': str, 'api_key_env': str},
    ))

    limits = _default_generation_limits()
    limits.update(_parse_section(
        raw_config.get('generation_limits'), "generation_limits",
        {kind: int for kind in GENERATION_KINDS},
    ))
    for kind, value in limits.items():
        if value < 0:
            raise ValueError(f"'generation_limits.{kind}' must be >= 0")

    return GuardConfig(
        ledger=ledger,
        access=access,
        routing=routing,
        generation_limits=limits,
        provider=provider,
    )


def load_config_from_env() -> GuardConfig:
    """Load the file named by KRONIQ_GUARD_CONFIG, or the defaults."""
    path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return default_config()
    return load_guard_config(path)


def db_path_from_env() -> str:
    return os.environ.get(DB_ENV_VAR, DEFAULT_DB_PATH)


def _parse_section(data: Optional[Any], path: str, schema: Dict[str, type]) -> Dict[str, Any]:
    """Parse and type-check one configuration section.

    Args:
        data: Raw section data (None when the section is absent)
        path: Section name for error messages
        schema: Allowed keys mapped to their expected type

    Returns:
        Dictionary of coerced values for the keys present

    Raises:
        ValueError: If the section is malformed
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(schema.keys())
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        expected = schema[key]
        if expected is str:
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"'{key}' in {path} must be a non-empty string")
            parsed[key] = value
            continue
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {path} must be a number")
        if expected is int and not float(value).is_integer():
            raise ValueError(f"'{key}' in {path} must be a whole number")
        parsed[key] = expected(value)
    return parsed
