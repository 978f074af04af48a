"""
Call-rate limiting and spend budgets.

Implements the two admission gates consulted before every external call:

1. Rate - sliding window call counter per operation, with a sticky block once
   the limit is reached
2. Budget - per-provider daily and monthly spend ledger

The limiter is advisory. It never calls providers and only the orchestrator
writes to the ledger, after a provider call has succeeded with a known cost.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pipeline_guard.config.loader import BudgetConfig, RateLimitConfig
from pipeline_guard.storage.repository import Storage
from .clock import Clock
from .errors import StorageError

logger = logging.getLogger(__name__)

LEDGER_PREFIX = "ledger:"
DAILY = "daily"
MONTHLY = "monthly"


@dataclass
class RateWindow:
    """Call counter for one operation within the current window."""
    count: int
    window_start: float
    blocked: bool = False


@dataclass
class SpendLedger:
    """Running spend for one provider in one period (a UTC day or month)."""
    provider: str
    period: str
    period_key: str
    spent: float = 0.0

    @property
    def storage_key(self) -> str:
        return f"{LEDGER_PREFIX}{self.provider}:{self.period}:{self.period_key}"


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a budget admission check."""
    allowed: bool
    provider: str
    estimated_cost: float
    boundary: Optional[str] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def period_keys(timestamp: float) -> Tuple[str, str]:
    """UTC (day, month) period identifiers for a timestamp."""
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d"), moment.strftime("%Y-%m")


class BudgetedRateLimiter:
    """Sliding-window rate limiter plus per-provider spend ledger."""

    def __init__(
        self,
        clock: Clock,
        storage: Storage,
        rate_limits: Optional[RateLimitConfig] = None,
        budgets: Optional[Dict[str, BudgetConfig]] = None,
    ):
        self.clock = clock
        self.storage = storage
        self.rate_limits = rate_limits or RateLimitConfig()
        self.budgets = dict(budgets or {})
        self._windows: Dict[str, RateWindow] = {}
        self._ledgers: Dict[str, SpendLedger] = {}

    # Rate

    def check_rate(self, operation: str) -> bool:
        """Admit one call for `operation` if its window allows it.

        An admitted call is counted. The call that brings the count up to the
        limit marks the window blocked until it rolls over.
        """
        now = self.clock.now()
        limit = self.rate_limits.limit_for(operation)
        window = self._windows.get(operation)
        if window is None:
            window = RateWindow(count=0, window_start=now)
            self._windows[operation] = window
        elif self._expired(window, now):
            window.count = 0
            window.window_start = now
            window.blocked = False

        if window.blocked or window.count >= limit:
            logger.info("Rate limit reached for %s (%d/%d)", operation, window.count, limit)
            return False

        window.count += 1
        if window.count >= limit:
            window.blocked = True
        return True

    def rate_available(self, operation: str) -> bool:
        """Whether `check_rate(operation)` would admit a call, without counting one."""
        window = self._windows.get(operation)
        if window is None or self._expired(window, self.clock.now()):
            return True
        return not window.blocked and window.count < self.rate_limits.limit_for(operation)

    def _expired(self, window: RateWindow, now: float) -> bool:
        return now - window.window_start > self.rate_limits.window_seconds

    def sweep(self) -> int:
        """Forget windows that have been idle for more than two window lengths."""
        now = self.clock.now()
        horizon = self.rate_limits.window_seconds * 2
        stale = [op for op, w in self._windows.items() if now - w.window_start > horizon]
        for operation in stale:
            del self._windows[operation]
        return len(stale)

    # Budget

    def check_budget(self, provider: str, estimated_cost: float) -> BudgetDecision:
        """Check whether spending `estimated_cost` keeps `provider` within budget.

        The estimate is used only for admission and is never written to the
        ledger. Providers without a configured budget are always allowed.
        """
        if estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")

        budget = self.budgets.get(provider)
        if budget is None:
            return BudgetDecision(True, provider, estimated_cost)

        daily = self._ledger(provider, DAILY)
        if daily.spent + estimated_cost > budget.daily:
            reason = (
                f"Daily budget limit for {provider} would be exceeded. "
                f"Current: ${daily.spent:.2f}, Limit: ${budget.daily:.2f}"
            )
            logger.warning(reason)
            return BudgetDecision(False, provider, estimated_cost, DAILY, reason)

        monthly = self._ledger(provider, MONTHLY)
        if monthly.spent + estimated_cost > budget.monthly:
            reason = (
                f"Monthly budget limit for {provider} would be exceeded. "
                f"Current: ${monthly.spent:.2f}, Limit: ${budget.monthly:.2f}"
            )
            logger.warning(reason)
            return BudgetDecision(False, provider, estimated_cost, MONTHLY, reason)

        return BudgetDecision(True, provider, estimated_cost)

    def record_spend(self, provider: str, amount: float) -> None:
        """Add the true cost of a successful provider call to both ledgers."""
        if amount < 0:
            raise ValueError("spend amount cannot be negative")

        for period in (DAILY, MONTHLY):
            ledger = self._ledger(provider, period)
            ledger.spent += amount
            self._persist(ledger)

    def spent(self, provider: str, period: str = DAILY) -> float:
        return self._ledger(provider, period).spent

    def _ledger(self, provider: str, period: str) -> SpendLedger:
        day, month = period_keys(self.clock.now())
        period_key = day if period == DAILY else month
        ledger = SpendLedger(provider=provider, period=period, period_key=period_key)

        cached = self._ledgers.get(ledger.storage_key)
        if cached is not None:
            return cached

        # period rollover: the previous period's ledger is no longer consulted
        prefix = f"{LEDGER_PREFIX}{provider}:{period}:"
        for key in [k for k in self._ledgers if k.startswith(prefix)]:
            del self._ledgers[key]

        ledger.spent = self._load_spent(ledger.storage_key)
        self._ledgers[ledger.storage_key] = ledger
        return ledger

    def _load_spent(self, key: str) -> float:
        try:
            raw = self.storage.get(key)
            if raw is None:
                return 0.0
            return float(json.loads(raw)["spent"])
        except (StorageError, ValueError, KeyError, TypeError) as e:
            logger.warning("Could not load ledger %s, starting from zero: %s", key, e)
            return 0.0

    def _persist(self, ledger: SpendLedger) -> None:
        try:
            self.storage.set(ledger.storage_key, json.dumps({
                "provider": ledger.provider,
                "period": ledger.period,
                "period_key": ledger.period_key,
                "spent": ledger.spent,
            }))
        except StorageError as e:
            logger.warning("Could not persist ledger %s: %s", ledger.storage_key, e)

    # Dashboards

    def get_rate_limit_status(self, provider: str) -> Dict[str, Any]:
        """Current rate window and budget usage for a provider."""
        now = self.clock.now()
        limit = self.rate_limits.limit_for(provider)
        window = self._windows.get(provider)
        if window is None or now - window.window_start > self.rate_limits.window_seconds:
            rate = {"count": 0, "limit": limit, "blocked": False, "resets_in": 0.0}
        else:
            rate = {
                "count": window.count,
                "limit": limit,
                "blocked": window.blocked,
                "resets_in": max(0.0, self.rate_limits.window_seconds - (now - window.window_start)),
            }

        status: Dict[str, Any] = {"provider": provider, "rate": rate}
        budget = self.budgets.get(provider)
        for period in (DAILY, MONTHLY):
            spent = self.spent(provider, period)
            cap = None if budget is None else getattr(budget, period)
            status[period] = {
                "spent": spent,
                "limit": cap,
                "remaining": None if cap is None else max(0.0, cap - spent),
            }
        return status
