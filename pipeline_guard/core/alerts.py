"""
Threshold alerting over rolling metric windows.

Rules compare the mean of a metric over a window against a threshold.
Alerts are de-duplicated per rule with a cool-down and classified by how far
the observed mean deviates from the threshold. The engine is observability
only and never blocks the pipeline.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pipeline_guard.config.loader import DEFAULT_ALERT_RULES, AlertRuleConfig
from pipeline_guard.storage.repository import Storage
from .errors import StorageError
from .metrics import MetricSink

logger = logging.getLogger(__name__)

ALERT_RETENTION_SECONDS = 24 * 60 * 60
DEFAULT_COOLDOWN_SECONDS = 300.0
HEALTH_WINDOW_SECONDS = 300.0
EQ_TOLERANCE = 0.01
ALERT_PREFIX = "alert:"
HEALTH_KEY = "health:latest"


class AlertSeverity(Enum):
    """Severity levels for triggered alerts."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AlertInstance:
    """Triggered alert with details and explanation."""
    id: str
    rule: AlertRuleConfig
    triggered_at: float
    observed_value: float
    severity: AlertSeverity
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule": asdict(self.rule),
            "triggered_at": self.triggered_at,
            "observed_value": self.observed_value,
            "severity": self.severity.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertInstance":
        return cls(
            id=data["id"],
            rule=AlertRuleConfig(**data["rule"]),
            triggered_at=float(data["triggered_at"]),
            observed_value=float(data["observed_value"]),
            severity=AlertSeverity(data["severity"]),
            message=data["message"],
        )


@dataclass(frozen=True)
class SystemHealth:
    """Point-in-time health summary for dashboards."""
    status: HealthStatus
    uptime: float
    memory_usage: float
    cache_hit_rate: float
    api_latency: Dict[str, float]
    error_rate: float
    throughput: float
    recorded_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemHealth":
        data = dict(data)
        data["status"] = HealthStatus(data["status"])
        return cls(**data)


def condition_met(condition: str, value: float, threshold: float) -> bool:
    """Evaluate a rule condition against an observed value."""
    if condition == "gt":
        return value > threshold
    if condition == "lt":
        return value < threshold
    if condition == "eq":
        return abs(value - threshold) < EQ_TOLERANCE
    raise ValueError(f"Unknown condition: {condition}")


def determine_severity(value: float, threshold: float) -> AlertSeverity:
    """Classify by relative deviation |value - threshold| / threshold.

    A zero threshold has no relative scale: any non-zero value is critical.
    """
    if threshold == 0:
        return AlertSeverity.CRITICAL if value != 0 else AlertSeverity.LOW

    deviation = abs(value - threshold) / abs(threshold)
    if deviation > 2:
        return AlertSeverity.CRITICAL
    if deviation > 1:
        return AlertSeverity.HIGH
    if deviation > 0.5:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def _metric_unit(metric: str) -> str:
    if "latency" in metric:
        return "ms"
    if "rate" in metric or "usage" in metric:
        return "percentage"
    if "throughput" in metric:
        return "videos/min"
    return ""


def _format_value(value: float, unit: str) -> str:
    if unit == "ms":
        return f"{value:.0f}ms"
    if unit == "percentage":
        return f"{value * 100:.1f}%"
    return f"{value:.2f}"


def format_alert_message(rule: AlertRuleConfig, value: float) -> str:
    """Generate a human-readable alert message."""
    unit = _metric_unit(rule.metric)
    current = _format_value(value, unit)
    threshold = _format_value(rule.threshold, unit)

    templates = {
        "high_api_latency": "API latency is high: {current} (threshold: {threshold})",
        "low_cache_hit_rate": "Cache hit rate is low: {current} (threshold: {threshold})",
        "high_error_rate": "Error rate is high: {current} (threshold: {threshold})",
        "high_memory_usage": "Memory usage is high: {current} (threshold: {threshold})",
        "low_throughput": "Throughput is low: {current} videos/min (threshold: {threshold})",
    }
    template = templates.get(
        rule.id,
        f"Alert: {rule.metric} {rule.condition} {{threshold}} (current: {{current}})",
    )
    return template.format(current=current, threshold=threshold)


class AlertEngine:
    """Evaluates alert rules against a MetricSink."""

    def __init__(
        self,
        sink: MetricSink,
        rules: Iterable[AlertRuleConfig] = DEFAULT_ALERT_RULES,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        storage: Optional[Storage] = None,
    ):
        """Create the engine and reload alerts persisted within the retention horizon.

        Args:
            sink: Metric source the rules are evaluated against
            rules: Alert rules, keyed by id
            cooldown_seconds: Minimum time between two alerts of one rule
            storage: Durable store for alerts and health snapshots, optional
        """
        self.sink = sink
        self.clock = sink.clock
        self.cooldown_seconds = cooldown_seconds
        self.storage = storage
        self._rules: Dict[str, AlertRuleConfig] = {}
        self._alerts: List[AlertInstance] = []
        self._listeners: List[Callable[[AlertInstance], None]] = []
        for rule in rules:
            self.add_rule(rule)
        self._load_alerts()

    @property
    def rules(self) -> List[AlertRuleConfig]:
        return list(self._rules.values())

    def add_rule(self, rule: AlertRuleConfig) -> None:
        self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    def subscribe(self, callback: Callable[[AlertInstance], None]) -> Callable[[], None]:
        """Register a listener for new alerts. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def evaluate(self) -> List[AlertInstance]:
        """Check every enabled rule once and return the alerts created."""
        created = []
        for rule in self._rules.values():
            if not rule.enabled:
                continue

            mean = self.sink.mean(rule.metric, rule.window)
            if mean is None:
                continue

            if condition_met(rule.condition, mean, rule.threshold):
                alert = self._trigger(rule, mean)
                if alert is not None:
                    created.append(alert)
        return created

    def _trigger(self, rule: AlertRuleConfig, value: float) -> Optional[AlertInstance]:
        now = self.clock.now()
        for existing in self._alerts:
            if existing.rule.id == rule.id and now - existing.triggered_at < self.cooldown_seconds:
                return None

        alert = AlertInstance(
            id=f"alert_{int(now * 1000)}_{uuid.uuid4().hex[:5]}",
            rule=rule,
            triggered_at=now,
            observed_value=value,
            severity=determine_severity(value, rule.threshold),
            message=format_alert_message(rule, value),
        )
        self._alerts.append(alert)
        self._store(ALERT_PREFIX + alert.id, alert.to_dict())
        logger.warning("Performance alert [%s]: %s", alert.severity.value, alert.message)

        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception:
                logger.exception("Alert listener failed for %s", alert.id)
        return alert

    def sweep(self) -> int:
        """Drop old metric samples and alerts older than 24 hours."""
        dropped = self.sink.sweep()
        cutoff = self.clock.now() - ALERT_RETENTION_SECONDS
        for alert in self._alerts:
            if alert.triggered_at < cutoff:
                self._unstore(ALERT_PREFIX + alert.id)
        self._alerts = [a for a in self._alerts if a.triggered_at >= cutoff]
        return dropped

    def get_alerts(self, window: Optional[float] = 3600.0) -> List[AlertInstance]:
        """Alerts triggered within the last `window` seconds (all when None)."""
        if window is None:
            return list(self._alerts)
        cutoff = self.clock.now() - window
        return [a for a in self._alerts if a.triggered_at >= cutoff]

    def clear_alerts(self) -> None:
        for alert in self._alerts:
            self._unstore(ALERT_PREFIX + alert.id)
        self._alerts.clear()
        logger.info("All performance alerts cleared")

    def get_system_health(self, services: Iterable[str] = ("claude", "shotstack", "elevenlabs")) -> SystemHealth:
        """Summarize the last five minutes of metrics."""
        window = HEALTH_WINDOW_SECONDS
        memory_usage = self.sink.latest("memory_usage", window) or 0.0
        cache_hit_rate = self.sink.latest("cache_hit_rate", window)
        error_rate = self.sink.latest("error_rate", window) or 0.0
        throughput = self.sink.latest("throughput", window) or 0.0
        api_latency = {
            service: self.sink.mean(f"api_latency_{service}", window) or 0.0
            for service in services
        }

        status = HealthStatus.HEALTHY
        if error_rate > 0.2 or memory_usage > 0.9:
            status = HealthStatus.CRITICAL
        elif error_rate > 0.1 or memory_usage > 0.85 or (cache_hit_rate is not None and cache_hit_rate < 0.3):
            status = HealthStatus.DEGRADED

        return SystemHealth(
            status=status,
            uptime=self.sink.uptime(),
            memory_usage=memory_usage,
            cache_hit_rate=cache_hit_rate or 0.0,
            api_latency=api_latency,
            error_rate=error_rate,
            throughput=throughput,
            recorded_at=self.clock.now(),
        )

    def snapshot_health(self, services: Iterable[str] = ("claude", "shotstack", "elevenlabs")) -> SystemHealth:
        """Compute the current health summary and persist it for other processes."""
        health = self.get_system_health(services)
        self._store(HEALTH_KEY, health.to_dict())
        return health

    def last_health(self) -> Optional[SystemHealth]:
        """The most recently persisted health summary, if any."""
        if self.storage is None:
            return None
        try:
            raw = self.storage.get(HEALTH_KEY)
            if raw is None:
                return None
            return SystemHealth.from_dict(json.loads(raw))
        except (StorageError, ValueError, KeyError, TypeError) as e:
            logger.warning("Could not load health snapshot: %s", e)
            return None

    # Persistence

    def _load_alerts(self) -> None:
        if self.storage is None:
            return
        try:
            persisted = self.storage.list(ALERT_PREFIX)
        except StorageError as e:
            logger.warning("Could not list persisted alerts: %s", e)
            return

        cutoff = self.clock.now() - ALERT_RETENTION_SECONDS
        for key, raw in persisted.items():
            try:
                alert = AlertInstance.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable alert %s: %s", key, e)
                continue
            if alert.triggered_at < cutoff:
                self._unstore(key)
                continue
            self._alerts.append(alert)
        self._alerts.sort(key=lambda a: a.triggered_at)

    def _store(self, key: str, data: Dict[str, Any]) -> None:
        if self.storage is None:
            return
        try:
            self.storage.set(key, json.dumps(data))
        except StorageError as e:
            logger.warning("Could not persist %s: %s", key, e)

    def _unstore(self, key: str) -> None:
        if self.storage is None:
            return
        try:
            self.storage.delete(key)
        except StorageError as e:
            logger.warning("Could not delete %s: %s", key, e)
