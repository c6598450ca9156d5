"""
Configuration management and loading.

Handles the plan table, pricing rates, entitlement mapping, provider and
cache settings, and the reconciliation policy.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from ..core.entitlements import EntitlementMapping
from ..core.errors import ConfigFileError
from ..core.pricing import DEFAULT_PRICING, PricingRates
from ..core.tiers import DEFAULT_PLANS, PlanTable, SubscriptionPlan, Tier
from ..sdk.providers import REVENUECAT_BASE_URL, RuntimeMode


class DowngradePolicy(Enum):
    """When a lower live tier replaces a higher stored tier."""
    IMMEDIATE = "immediate"  # Downgrade now and start a fresh period
    DEFERRED = "deferred"    # Keep the stored tier until the period ends


@dataclass(frozen=True)
class ProviderConfig:
    """Entitlement provider settings."""
    mode: RuntimeMode = RuntimeMode.REAL
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    api_key_env: str = "REVENUECAT_API_KEY"
    base_url: str = REVENUECAT_BASE_URL
    platform: str = "ios"
    refresh_seconds: float = 0.0

    def __post_init__(self):
        """Validate provider limits."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.refresh_seconds < 0:
            raise ValueError("refresh_seconds cannot be negative")


@dataclass(frozen=True)
class CacheConfig:
    """Offline cache settings."""
    max_age_hours: float = 24.0

    def __post_init__(self):
        if self.max_age_hours <= 0:
            raise ValueError("max_age_hours must be > 0")

    @property
    def max_age(self) -> timedelta:
        return timedelta(hours=self.max_age_hours)


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    plans: PlanTable = DEFAULT_PLANS
    pricing: PricingRates = DEFAULT_PRICING
    mapping: EntitlementMapping = field(default_factory=EntitlementMapping)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    downgrade_policy: DowngradePolicy = DowngradePolicy.DEFERRED


def default_metering_config() -> MeteringConfig:
    """Built-in configuration used when no file is supplied."""
    return MeteringConfig()


def load_metering_config(path: str) -> MeteringConfig:
    """Load and validate metering configuration from a YAML file.

    Every section is optional and falls back to the built-in defaults, but
    unknown keys are rejected so that a typo never silently changes a limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigFileError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigFileError("Configuration must be a dictionary")

    allowed_top_keys = {
        'plans', 'pricing', 'entitlements', 'products',
        'legacy_products', 'provider', 'cache', 'reconciliation',
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigFileError(f"Unknown configuration keys: {unknown_keys}")

    defaults = default_metering_config()

    plans = defaults.plans
    if 'plans' in raw_config:
        plans = _parse_plans(_section(raw_config, 'plans'))

    pricing = defaults.pricing
    if 'pricing' in raw_config:
        pricing = _parse_pricing(_section(raw_config, 'pricing'))

    mapping = EntitlementMapping(
        entitlement_tiers=_parse_tier_map(raw_config, 'entitlements', defaults.mapping.entitlement_tiers),
        product_ids=_parse_products(raw_config, defaults.mapping.product_ids),
        legacy_product_ids=_parse_tier_map(raw_config, 'legacy_products', defaults.mapping.legacy_product_ids),
    )

    provider = defaults.provider
    if 'provider' in raw_config:
        provider = _parse_provider(_section(raw_config, 'provider'))

    cache = defaults.cache
    if 'cache' in raw_config:
        cache_data = _section(raw_config, 'cache')
        _reject_unknown(cache_data, {'max_age_hours'}, 'cache')
        cache = CacheConfig(max_age_hours=_number(cache_data.get('max_age_hours', 24.0), 'cache.max_age_hours'))

    policy = defaults.downgrade_policy
    if 'reconciliation' in raw_config:
        recon_data = _section(raw_config, 'reconciliation')
        _reject_unknown(recon_data, {'downgrade_policy'}, 'reconciliation')
        policy = _parse_enum(
            DowngradePolicy, recon_data.get('downgrade_policy', policy.value), 'reconciliation.downgrade_policy'
        )

    return MeteringConfig(
        plans=plans,
        pricing=pricing,
        mapping=mapping,
        provider=provider,
        cache=cache,
        downgrade_policy=policy,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ConfigFileError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigFileError(f"Unknown keys in {path}: {unknown_keys}")


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigFileError(f"'{path}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ConfigFileError(f"'{path}' must be a number")
    if not result.is_finite() or result < 0:
        raise ConfigFileError(f"'{path}' must be >= 0")
    return result


def _number(value: Any, path: str) -> float:
    return float(_decimal(value, path))


def _tier(value: Any, path: str) -> Tier:
    return _parse_enum(Tier, value, path)


def _parse_enum(enum_cls, value: Any, path: str):
    if not isinstance(value, str):
        raise ConfigFileError(f"'{path}' must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ConfigFileError(f"'{path}' must be one of: {valid}")


def _parse_plans(data: Dict) -> PlanTable:
    """Parse the plan table; every tier must be present exactly once."""
    plans = []
    for tier_name, plan_data in data.items():
        tier = _tier(tier_name, f"plans.{tier_name}")
        if not isinstance(plan_data, dict):
            raise ConfigFileError(f"Plan '{tier_name}' must be a dictionary")
        _reject_unknown(plan_data, {'name', 'credit_limit', 'price'}, f"plans.{tier_name}")
        if 'credit_limit' not in plan_data:
            raise ConfigFileError(f"Missing required 'credit_limit' in plans.{tier_name}")
        plans.append(SubscriptionPlan(
            tier=tier,
            name=str(plan_data.get('name', tier.value.title())),
            monthly_credit_limit=_decimal(plan_data['credit_limit'], f"plans.{tier_name}.credit_limit"),
            price_amount=_decimal(plan_data.get('price', 0), f"plans.{tier_name}.price"),
        ))
    return PlanTable(tuple(plans))


def _parse_pricing(data: Dict) -> PricingRates:
    allowed = {
        'transcription_per_minute', 'llm_input_per_million',
        'llm_output_per_million', 'tts_per_million_chars',
    }
    _reject_unknown(data, allowed, 'pricing')
    rates = {key: _decimal(value, f"pricing.{key}") for key, value in data.items()}
    return PricingRates(**rates)


def _parse_tier_map(raw_config: Dict, name: str, default: Dict[str, Tier]) -> Dict[str, Tier]:
    if name not in raw_config:
        return dict(default)
    data = _section(raw_config, name)
    return {str(key): _tier(value, f"{name}.{key}") for key, value in data.items()}


def _parse_products(raw_config: Dict, default: Dict[Tier, Tuple[str, ...]]) -> Dict[Tier, Tuple[str, ...]]:
    if 'products' not in raw_config:
        return dict(default)
    data = _section(raw_config, 'products')
    products = {}
    for tier_name, ids in data.items():
        tier = _tier(tier_name, f"products.{tier_name}")
        if isinstance(ids, str):
            ids = [ids]
        if not isinstance(ids, list) or not all(isinstance(i, str) and i for i in ids):
            raise ConfigFileError(f"'products.{tier_name}' must be a list of product ids")
        products[tier] = tuple(ids)
    return products


def _parse_provider(data: Dict) -> ProviderConfig:
    allowed = {
        'mode', 'timeout_seconds', 'max_attempts', 'api_key_env',
        'base_url', 'platform', 'refresh_seconds',
    }
    _reject_unknown(data, allowed, 'provider')
    defaults = ProviderConfig()

    max_attempts = data.get('max_attempts', defaults.max_attempts)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise ConfigFileError("'provider.max_attempts' must be an integer")

    for key in ('api_key_env', 'base_url', 'platform'):
        if key in data and (not isinstance(data[key], str) or not data[key]):
            raise ConfigFileError(f"'provider.{key}' must be a non-empty string")

    return ProviderConfig(
        mode=_parse_enum(RuntimeMode, data.get('mode', defaults.mode.value), 'provider.mode'),
        timeout_seconds=_number(data.get('timeout_seconds', defaults.timeout_seconds), 'provider.timeout_seconds'),
        max_attempts=max_attempts,
        api_key_env=data.get('api_key_env', defaults.api_key_env),
        base_url=data.get('base_url', defaults.base_url),
        platform=data.get('platform', defaults.platform),
        refresh_seconds=_number(data.get('refresh_seconds', defaults.refresh_seconds), 'provider.refresh_seconds'),
    )
