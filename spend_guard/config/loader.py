"""
Configuration management and loading.

Loads the spend monitor's YAML settings into frozen dataclasses with
strict validation.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.pricing import PRICING_TABLE
from ..core.retry import RetryConfig

DEFAULT_CONFIG_PATH = "spend_guard.yaml"


class SuccessPolicy(Enum):
    """When a dispatch counts as delivered."""
    BROADCAST = "broadcast"  # Broadcast succeeded
    ANY_CHANNEL = "any_channel"
    ALL_CHANNELS = "all_channels"


@dataclass(frozen=True)
class MonitorSettings:
    """Threshold evaluation settings."""
    threshold: float
    min_service_cost: float = 1.0
    top_services: int = 5
    time_budget_seconds: float = 240.0

    def __post_init__(self):
        if self.threshold <= 0:
            raise ValueError("monitor.threshold must be > 0")
        if self.min_service_cost < 0:
            raise ValueError("monitor.min_service_cost cannot be negative")
        if self.top_services < 1:
            raise ValueError("monitor.top_services must be >= 1")
        if self.time_budget_seconds <= 0:
            raise ValueError("monitor.time_budget_seconds must be > 0")


@dataclass(frozen=True)
class BroadcastSettings:
    topic_arn: str
    region: str = "us-east-1"

    def __post_init__(self):
        if not self.topic_arn:
            raise ValueError("broadcast.topic_arn is required")


@dataclass(frozen=True)
class PushSettings:
    platform_application_arn: str
    bundle_id: str
    sandbox: bool = False
    region: str = "us-east-1"

    def __post_init__(self):
        if not self.platform_application_arn:
            raise ValueError("push.platform_application_arn is required")
        if not self.bundle_id:
            raise ValueError("push.bundle_id is required")


@dataclass(frozen=True)
class EnrichmentSettings:
    """Inference backend limits."""
    enabled: bool = True
    model: str = "gpt-4o-mini"
    max_tokens: int = 1000
    temperature: float = 0.3
    monthly_cost_cap: float = 10.0
    rate_limit_per_minute: int = 10
    fallback_on_error: bool = True

    def __post_init__(self):
        if self.model not in PRICING_TABLE.prices:
            raise ValueError(
                f"enrichment.model must be one of: {list(PRICING_TABLE.supported_models())}"
            )
        if self.max_tokens <= 0:
            raise ValueError("enrichment.max_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("enrichment.temperature must be between 0 and 2")
        if self.monthly_cost_cap <= 0:
            raise ValueError("enrichment.monthly_cost_cap must be > 0")
        if self.rate_limit_per_minute <= 0:
            raise ValueError("enrichment.rate_limit_per_minute must be > 0")


@dataclass(frozen=True)
class DispatchSettings:
    max_parallel_devices: int = 8
    success_policy: SuccessPolicy = SuccessPolicy.BROADCAST

    def __post_init__(self):
        if self.max_parallel_devices < 1:
            raise ValueError("dispatch.max_parallel_devices must be >= 1")


@dataclass(frozen=True)
class StorageSettings:
    db_path: str = "spend_guard.db"


@dataclass(frozen=True)
class SpendGuardConfig:
    """Complete spend monitor configuration."""
    monitor: MonitorSettings
    broadcast: BroadcastSettings
    push: Optional[PushSettings] = None
    enrichment: Optional[EnrichmentSettings] = None
    retry: RetryConfig = field(default_factory=RetryConfig)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)


# Allowed keys and their expected types, per section.
_SECTION_SCHEMAS: Dict[str, Dict[str, tuple]] = {
    "monitor": {
        "threshold": (int, float),
        "min_service_cost": (int, float),
        "top_services": (int,),
        "time_budget_seconds": (int, float),
    },
    "broadcast": {"topic_arn": (str,), "region": (str,)},
    "push": {
        "platform_application_arn": (str,),
        "bundle_id": (str,),
        "sandbox": (bool,),
        "region": (str,),
    },
    "enrichment": {
        "enabled": (bool,),
        "model": (str,),
        "max_tokens": (int,),
        "temperature": (int, float),
        "monthly_cost_cap": (int, float),
        "rate_limit_per_minute": (int,),
        "fallback_on_error": (bool,),
    },
    "retry": {
        "max_attempts": (int,),
        "base_delay": (int, float),
        "max_delay": (int, float),
        "jitter": (int, float),
    },
    "dispatch": {"max_parallel_devices": (int,), "success_policy": (str,)},
    "storage": {"db_path": (str,)},
}
_REQUIRED_SECTIONS = {"monitor", "broadcast"}
_REQUIRED_KEYS = {
    "monitor": {"threshold"},
    "broadcast": {"topic_arn"},
    "push": {"platform_application_arn", "bundle_id"},
}


def _check_section(name: str, data: Any) -> Dict[str, Any]:
    """Validate one section's keys and value types.

    Args:
        name: Section name, used in error messages
        data: Raw section mapping

    Returns:
        The section mapping with float fields coerced from ints

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    schema = _SECTION_SCHEMAS[name]
    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    missing = _REQUIRED_KEYS.get(name, set()) - set(data.keys())
    if missing:
        raise ValueError(f"Missing required keys in {name}: {missing}")

    checked: Dict[str, Any] = {}
    for key, value in data.items():
        expected = schema[key]
        # bool is an int subclass; only accept it where bool is expected
        if isinstance(value, bool) and bool not in expected:
            raise ValueError(f"'{name}.{key}' must be {expected[0].__name__}")
        if not isinstance(value, expected):
            raise ValueError(f"'{name}.{key}' must be {expected[0].__name__}")
        checked[key] = float(value) if float in expected else value
    return checked


def load_config(path: str = DEFAULT_CONFIG_PATH) -> SpendGuardConfig:
    """Load and validate spend monitor configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys,
    missing required keys, wrong types and out-of-range limits all fail.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated SpendGuardConfig object

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

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> SpendGuardConfig:
    """Validate an already-loaded configuration mapping."""
    unknown_keys = set(raw_config.keys()) - set(_SECTION_SCHEMAS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    for section in sorted(_REQUIRED_SECTIONS):
        if section not in raw_config:
            raise ValueError(f"Missing required '{section}' section")

    sections = {
        name: _check_section(name, raw_config[name])
        for name in _SECTION_SCHEMAS
        if name in raw_config
    }

    dispatch_data = dict(sections.get("dispatch", {}))
    if "success_policy" in dispatch_data:
        try:
            dispatch_data["success_policy"] = SuccessPolicy(dispatch_data["success_policy"].lower())
        except ValueError:
            valid = [policy.value for policy in SuccessPolicy]
            raise ValueError(f"'dispatch.success_policy' must be one of: {valid}")

    return SpendGuardConfig(
        monitor=MonitorSettings(**sections["monitor"]),
        broadcast=BroadcastSettings(**sections["broadcast"]),
        push=PushSettings(**sections["push"]) if "push" in sections else None,
        enrichment=EnrichmentSettings(**sections["enrichment"]) if "enrichment" in sections else None,
        retry=RetryConfig(**sections.get("retry", {})),
        dispatch=DispatchSettings(**dispatch_data),
        storage=StorageSettings(**sections.get("storage", {}))
    )
