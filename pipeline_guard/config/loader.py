"""
Configuration management and loading.

Handles budgets, rate limits, cache tiers, prefetching and alert rules.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from pipeline_guard.core.errors import ConfigurationError

ALERT_CONDITIONS = ("gt", "lt", "eq")


@dataclass(frozen=True)
class BudgetConfig:
    """Budget limits for one provider."""
    daily: float
    monthly: float

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.daily <= 0:
            raise ValueError("daily budget must be > 0")
        if self.monthly <= 0:
            raise ValueError("monthly budget must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding-window call limits per operation."""
    window_seconds: float = 60.0
    default_limit: int = 30
    operations: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.default_limit <= 0:
            raise ValueError("default_limit must be > 0")
        for name, limit in self.operations.items():
            if limit <= 0:
                raise ValueError(f"rate limit for {name} must be > 0")

    def limit_for(self, operation: str) -> int:
        return self.operations.get(operation, self.default_limit)


@dataclass(frozen=True)
class CacheConfig:
    """Freshness tiers and capacity of a tiered cache (seconds)."""
    max_entries: int = 50
    default_ttl: float = 1800.0
    fresh_threshold: float = 300.0
    stale_threshold: float = 1200.0
    enable_prefetching: bool = True
    sweep_interval: float = 300.0

    def __post_init__(self):
        if self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        if self.default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        if self.fresh_threshold <= 0:
            raise ValueError("fresh_threshold must be > 0")
        if self.fresh_threshold >= self.stale_threshold:
            raise ValueError("fresh_threshold must be < stale_threshold")
        if self.sweep_interval <= 0:
            raise ValueError("sweep_interval must be > 0")


@dataclass(frozen=True)
class PrefetchConfig:
    """Prefetch drain loop settings."""
    concurrency: int = 2
    story_limit: int = 15
    drain_interval: float = 60.0
    warmup_categories: Tuple[str, ...] = ("drama", "horror", "revenge")

    def __post_init__(self):
        if self.concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if self.story_limit <= 0:
            raise ValueError("story_limit must be > 0")
        if self.drain_interval <= 0:
            raise ValueError("drain_interval must be > 0")


@dataclass(frozen=True)
class AlertRuleConfig:
    """Threshold rule evaluated over a rolling window (seconds)."""
    id: str
    metric: str
    condition: str
    threshold: float
    window: float
    enabled: bool = True

    def __post_init__(self):
        if self.condition not in ALERT_CONDITIONS:
            raise ValueError(f"condition must be one of: {list(ALERT_CONDITIONS)}")
        if self.window <= 0:
            raise ValueError("window must be > 0")


DEFAULT_ALERT_RULES: Tuple[AlertRuleConfig, ...] = (
    AlertRuleConfig("high_api_latency", "api_latency", "gt", 10000, 300),
    AlertRuleConfig("low_cache_hit_rate", "cache_hit_rate", "lt", 0.5, 600),
    AlertRuleConfig("high_error_rate", "error_rate", "gt", 0.1, 300),
    AlertRuleConfig("high_memory_usage", "memory_usage", "gt", 0.85, 180),
    AlertRuleConfig("low_throughput", "throughput", "lt", 0.5, 900),
)


@dataclass(frozen=True)
class MonitorConfig:
    """Metric retention and alert evaluation settings."""
    retention_hours: float = 24.0
    cooldown_seconds: float = 300.0
    evaluate_interval: float = 60.0
    system_interval: float = 30.0
    memory_limit_mb: Optional[float] = None
    rules: Tuple[AlertRuleConfig, ...] = DEFAULT_ALERT_RULES

    def __post_init__(self):
        if self.retention_hours <= 0:
            raise ValueError("retention_hours must be > 0")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds cannot be negative")
        if self.evaluate_interval <= 0:
            raise ValueError("evaluate_interval must be > 0")
        if self.system_interval <= 0:
            raise ValueError("system_interval must be > 0")
        if self.memory_limit_mb is not None and self.memory_limit_mb <= 0:
            raise ValueError("memory_limit_mb must be > 0")


@dataclass(frozen=True)
class PipelineConfig:
    """Orchestrator settings and the provider name behind each stage."""
    result_ttl: float = 3600.0
    stage_timeout: float = 300.0
    max_cost_per_run: Optional[float] = None
    enhance_provider: str = "claude"
    speech_provider: str = "elevenlabs"
    render_provider: str = "shotstack"

    def __post_init__(self):
        if self.result_ttl <= 0:
            raise ValueError("result_ttl must be > 0")
        if self.stage_timeout <= 0:
            raise ValueError("stage_timeout must be > 0")
        if self.max_cost_per_run is not None and self.max_cost_per_run <= 0:
            raise ValueError("max_cost_per_run must be > 0")


DEFAULT_BUDGETS: Dict[str, BudgetConfig] = {
    "claude": BudgetConfig(daily=1.00, monthly=30.00),
    "shotstack": BudgetConfig(daily=5.00, monthly=150.00),
    "elevenlabs": BudgetConfig(daily=2.00, monthly=60.00),
    "openai": BudgetConfig(daily=1.00, monthly=30.00),
}


@dataclass(frozen=True)
class GuardConfig:
    """Complete Pipeline Guard configuration."""
    budgets: Dict[str, BudgetConfig] = field(default_factory=lambda: dict(DEFAULT_BUDGETS))
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    prefetch: PrefetchConfig = field(default_factory=PrefetchConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def get_budget(self, provider: str) -> Optional[BudgetConfig]:
        """Budget for a provider, or None when the provider is uncapped."""
        return self.budgets.get(provider)


def default_config() -> GuardConfig:
    """Built-in configuration used when no file is given."""
    return GuardConfig()


_SECTION_KEYS = {
    "rate_limits": {"window_seconds", "default_limit", "operations"},
    "cache": {
        "max_entries", "default_ttl", "fresh_threshold", "stale_threshold",
        "enable_prefetching", "sweep_interval",
    },
    "prefetch": {"concurrency", "story_limit", "drain_interval", "warmup_categories"},
    "monitor": {
        "retention_hours", "cooldown_seconds", "evaluate_interval",
        "system_interval", "memory_limit_mb", "rules",
    },
    "pipeline": {
        "result_ttl", "stage_timeout", "max_cost_per_run",
        "enhance_provider", "speech_provider", "render_provider",
    },
}
_RULE_KEYS = {"id", "metric", "condition", "threshold", "window", "enabled"}


def load_config(path: str) -> GuardConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns. Sections that are absent fall back
    to the built-in defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
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
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    allowed_top_keys = {"budgets"} | set(_SECTION_KEYS)
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    try:
        return GuardConfig(
            budgets=_parse_budgets(raw_config.get("budgets")),
            rate_limits=_parse_rate_limits(_section(raw_config, "rate_limits")),
            cache=CacheConfig(**_section(raw_config, "cache")),
            prefetch=_parse_prefetch(_section(raw_config, "prefetch")),
            monitor=_parse_monitor(_section(raw_config, "monitor")),
            pipeline=PipelineConfig(**_section(raw_config, "pipeline")),
        )
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated top-level section, or {} when it is absent."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {name}: {unknown_keys}")
    return dict(data)


def _parse_budgets(data: Any) -> Dict[str, BudgetConfig]:
    """Parse and validate the per-provider budget mapping.

    Args:
        data: Raw 'budgets' section

    Returns:
        Mapping of provider name to BudgetConfig

    Raises:
        ConfigurationError: If a provider entry is malformed
    """
    if data is None:
        return dict(DEFAULT_BUDGETS)
    if not isinstance(data, dict):
        raise ConfigurationError("'budgets' must be a dictionary")

    budgets = {}
    for provider, budget_data in data.items():
        path = f"budgets.{provider}"
        if not isinstance(budget_data, dict):
            raise ConfigurationError(f"'{path}' must be a dictionary")

        unknown_keys = set(budget_data.keys()) - {"daily", "monthly"}
        if unknown_keys:
            raise ConfigurationError(f"Unknown budget keys in {path}: {unknown_keys}")
        for key in ("daily", "monthly"):
            if key not in budget_data:
                raise ConfigurationError(f"Missing required '{key}' budget in {path}")
            if not isinstance(budget_data[key], (int, float)) or isinstance(budget_data[key], bool):
                raise ConfigurationError(f"'{key}' in {path} must be a number")

        try:
            budgets[provider] = BudgetConfig(
                daily=float(budget_data["daily"]),
                monthly=float(budget_data["monthly"]),
            )
        except ValueError as e:
            raise ConfigurationError(f"{path}: {e}") from e
    return budgets


def _parse_rate_limits(data: Dict[str, Any]) -> RateLimitConfig:
    operations = data.pop("operations", None) or {}
    if not isinstance(operations, dict):
        raise ConfigurationError("'rate_limits.operations' must be a dictionary")
    for name, limit in operations.items():
        if not isinstance(limit, int) or isinstance(limit, bool):
            raise ConfigurationError(f"rate limit for '{name}' must be an integer")
    return RateLimitConfig(operations=dict(operations), **data)


def _parse_prefetch(data: Dict[str, Any]) -> PrefetchConfig:
    if "warmup_categories" in data:
        categories = data["warmup_categories"]
        if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
            raise ConfigurationError("'prefetch.warmup_categories' must be a list of strings")
        data["warmup_categories"] = tuple(categories)
    return PrefetchConfig(**data)


def _parse_monitor(data: Dict[str, Any]) -> MonitorConfig:
    if "rules" not in data:
        return MonitorConfig(**data)

    raw_rules = data.pop("rules")
    if not isinstance(raw_rules, list):
        raise ConfigurationError("'monitor.rules' must be a list")

    rules = []
    seen_ids = set()
    for index, rule_data in enumerate(raw_rules):
        path = f"monitor.rules[{index}]"
        if not isinstance(rule_data, dict):
            raise ConfigurationError(f"'{path}' must be a dictionary")
        unknown_keys = set(rule_data.keys()) - _RULE_KEYS
        if unknown_keys:
            raise ConfigurationError(f"Unknown keys in {path}: {unknown_keys}")
        missing = {"id", "metric", "condition", "threshold", "window"} - set(rule_data.keys())
        if missing:
            raise ConfigurationError(f"Missing required keys in {path}: {missing}")
        if rule_data["id"] in seen_ids:
            raise ConfigurationError(f"Duplicate alert rule id: {rule_data['id']}")
        seen_ids.add(rule_data["id"])

        condition = str(rule_data["condition"]).lower()
        if condition not in ALERT_CONDITIONS:
            raise ConfigurationError(
                f"'condition' in {path} must be one of: {list(ALERT_CONDITIONS)}"
            )
        rules.append(AlertRuleConfig(
            id=str(rule_data["id"]),
            metric=str(rule_data["metric"]),
            condition=condition,
            threshold=float(rule_data["threshold"]),
            window=float(rule_data["window"]),
            enabled=bool(rule_data.get("enabled", True)),
        ))
    return MonitorConfig(rules=tuple(rules), **data)
