"""
Configuration management and loading.

Handles engine settings: free allowance, per-tier rate limits, ledger
retry budget and the pricing catalog.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from credit_ledger.core.pricing import DEFAULT_CATALOG, ModelPricing, PricingCatalog

CONFIG_ENV_VAR = "CREDIT_LEDGER_CONFIG"

DEFAULT_DAILY_FREE_LIMIT = 10
DEFAULT_FREE_WINDOW_HOURS = 24
DEFAULT_MAX_ATTEMPTS = 5


class Tier(Enum):
    """Caller classification supplied by identity resolution."""
    ANONYMOUS = "anonymous"
    REGISTERED = "registered"
    PAID = "paid"


@dataclass(frozen=True)
class TierLimits:
    """Request ceilings for one tier. ``daily=None`` means unbounded."""
    hourly: int
    daily: Optional[int] = None

    def __post_init__(self):
        """Validate limits are positive."""
        if self.hourly <= 0:
            raise ValueError("hourly limit must be > 0")
        if self.daily is not None and self.daily <= 0:
            raise ValueError("daily limit must be > 0 or unbounded")


DEFAULT_TIER_LIMITS = {
    Tier.ANONYMOUS: TierLimits(hourly=5, daily=15),
    Tier.REGISTERED: TierLimits(hourly=10, daily=20),
    Tier.PAID: TierLimits(hourly=100, daily=None),
}


@dataclass(frozen=True)
class CreditEngineConfig:
    """Complete engine configuration, passed explicitly to each component."""
    daily_free_limit: int = DEFAULT_DAILY_FREE_LIMIT
    free_window: timedelta = timedelta(hours=DEFAULT_FREE_WINDOW_HOURS)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    tiers: Dict[Tier, TierLimits] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    catalog: PricingCatalog = DEFAULT_CATALOG

    def __post_init__(self):
        """Validate engine settings."""
        if self.daily_free_limit < 0:
            raise ValueError("daily_free_limit cannot be negative")
        if self.free_window <= timedelta(0):
            raise ValueError("free_window must be positive")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        missing = set(Tier) - set(self.tiers)
        if missing:
            raise ValueError(f"Missing limits for tiers: {sorted(t.value for t in missing)}")

    def limits_for(self, tier: Tier) -> TierLimits:
        return self.tiers[tier]


def load_engine_config(path: Optional[str] = None) -> CreditEngineConfig:
    """Load and validate engine configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    misprice requests or loosen rate limits.

    Args:
        path: Path to YAML configuration file. Falls back to the
            CREDIT_LEDGER_CONFIG environment variable, then to defaults.

    Returns:
        Validated CreditEngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return CreditEngineConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'daily_free_limit', 'free_window_hours', 'ledger', 'tiers', 'models'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    daily_free_limit = _parse_int(
        raw_config.get('daily_free_limit', DEFAULT_DAILY_FREE_LIMIT), 'daily_free_limit', minimum=0
    )
    free_window_hours = _parse_int(
        raw_config.get('free_window_hours', DEFAULT_FREE_WINDOW_HOURS), 'free_window_hours', minimum=1
    )

    # Parse and validate ledger settings
    ledger_data = raw_config.get('ledger', {}) or {}
    if not isinstance(ledger_data, dict):
        raise ValueError("'ledger' must be a dictionary")
    unknown_ledger_keys = set(ledger_data.keys()) - {'max_attempts'}
    if unknown_ledger_keys:
        raise ValueError(f"Unknown ledger keys: {unknown_ledger_keys}")
    max_attempts = _parse_int(
        ledger_data.get('max_attempts', DEFAULT_MAX_ATTEMPTS), 'ledger.max_attempts', minimum=1
    )

    # Parse and validate tiers; unspecified tiers keep their defaults
    tiers = dict(DEFAULT_TIER_LIMITS)
    tiers_data = raw_config.get('tiers', {}) or {}
    if not isinstance(tiers_data, dict):
        raise ValueError("'tiers' must be a dictionary")
    for tier_name, tier_data in tiers_data.items():
        try:
            tier = Tier(str(tier_name).lower())
        except ValueError:
            valid_tiers = [t.value for t in Tier]
            raise ValueError(f"Unknown tier '{tier_name}', must be one of: {valid_tiers}")
        tiers[tier] = _parse_tier_limits(tier_data, f"tiers.{tier_name}")

    # Parse and validate models; an explicit list replaces the default catalog
    catalog = DEFAULT_CATALOG
    if 'models' in raw_config:
        models_data = raw_config['models']
        if not isinstance(models_data, list) or not models_data:
            raise ValueError("'models' must be a non-empty list")
        catalog = PricingCatalog(
            _parse_model_pricing(entry, f"models[{i}]") for i, entry in enumerate(models_data)
        )

    return CreditEngineConfig(
        daily_free_limit=daily_free_limit,
        free_window=timedelta(hours=free_window_hours),
        max_attempts=max_attempts,
        tiers=tiers,
        catalog=catalog
    )


def _parse_int(value: Any, path: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    if value < minimum:
        raise ValueError(f"'{path}' must be >= {minimum}")
    return value


def _parse_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        # str() first so 0.1 stays 0.1 rather than its binary expansion
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not number.is_finite() or number < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return number


def _parse_tier_limits(data: Any, path: str) -> TierLimits:
    """Parse and validate one tier's limits.

    Args:
        data: Tier configuration data
        path: Path for error messages

    Returns:
        Validated TierLimits

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - {'hourly', 'daily'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'hourly' not in data:
        raise ValueError(f"Missing required 'hourly' in {path}")
    hourly = _parse_int(data['hourly'], f"{path}.hourly", minimum=1)

    daily = data.get('daily')
    if daily is not None:
        daily = _parse_int(daily, f"{path}.daily", minimum=1)

    return TierLimits(hourly=hourly, daily=daily)


def _parse_model_pricing(data: Any, path: str) -> ModelPricing:
    """Parse and validate one pricing catalog entry."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    required_keys = {'provider', 'model', 'credits_per_1k_units', 'input_unit_cost', 'output_unit_cost'}
    unknown_keys = set(data.keys()) - required_keys - {'active'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    missing_keys: List[str] = sorted(required_keys - set(data.keys()))
    if missing_keys:
        raise ValueError(f"Missing required keys in {path}: {missing_keys}")

    for key in ('provider', 'model'):
        if not isinstance(data[key], str) or not data[key].strip():
            raise ValueError(f"'{path}.{key}' must be a non-empty string")

    active = data.get('active', True)
    if not isinstance(active, bool):
        raise ValueError(f"'{path}.active' must be a boolean")

    return ModelPricing(
        provider=data['provider'],
        model=data['model'],
        credits_per_1k_units=_parse_decimal(data['credits_per_1k_units'], f"{path}.credits_per_1k_units"),
        input_unit_cost=_parse_decimal(data['input_unit_cost'], f"{path}.input_unit_cost"),
        output_unit_cost=_parse_decimal(data['output_unit_cost'], f"{path}.output_unit_cost"),
        active=active
    )
