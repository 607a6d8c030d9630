from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from prism.constants import (
    DEFAULT_INPUT_COST_PER_MILLION,
    DEFAULT_MODEL,
    DEFAULT_OUTPUT_COST_PER_MILLION,
    DEFAULT_RETENTION_DAYS,
    WEEK_DAYS,
)
from prism.state.models import DailyUsage, ModelUsage, UsageTotals


@dataclass(frozen=True)
class Pricing:
    input_per_million: float = DEFAULT_INPUT_COST_PER_MILLION
    output_per_million: float = DEFAULT_OUTPUT_COST_PER_MILLION

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            (input_tokens / 1_000_000) * self.input_per_million
            + (output_tokens / 1_000_000) * self.output_per_million
        )


def _day(now: Optional[datetime]) -> date:
    return (now or datetime.now()).date()


class UsageLedger:
    """
    Token and cost accounting bucketed by calendar day and by model.

    Written from every active thread's consumer, so every operation holds the lock. Cost
    is accumulated at write time with the pricing in effect then; it is never recomputed
    from token totals.
    """

    def __init__(
        self,
        *,
        pricing: Optional[Pricing] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        default_model: str = DEFAULT_MODEL,
    ) -> None:
        self._pricing = pricing or Pricing()
        self._retention_days = retention_days
        self._default_model = default_model
        self._lock = threading.Lock()
        self._days: dict[str, DailyUsage] = {}
        self._models: dict[str, ModelUsage] = {}

    @property
    def pricing(self) -> Pricing:
        return self._pricing

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        model: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> DailyUsage:
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must be non-negative")
        model = model or self._default_model
        key = _day(now).isoformat()
        cost = self._pricing.cost(input_tokens, output_tokens)
        with self._lock:
            bucket = self._days.get(key)
            if bucket is None:
                bucket = DailyUsage(date=key)
                self._days[key] = bucket
            bucket.input_tokens += input_tokens
            bucket.output_tokens += output_tokens
            bucket.estimated_cost += cost

            mb = self._models.get(model)
            if mb is None:
                mb = ModelUsage(model=model)
                self._models[model] = mb
            mb.input_tokens += input_tokens
            mb.output_tokens += output_tokens

            self._prune_locked(_day(now))
            return copy.copy(bucket)

    def note_session(self, *, now: Optional[datetime] = None) -> None:
        key = _day(now).isoformat()
        with self._lock:
            bucket = self._days.get(key)
            if bucket is None:
                bucket = DailyUsage(date=key)
                self._days[key] = bucket
            bucket.sessions += 1
            self._prune_locked(_day(now))

    def today(self, *, now: Optional[datetime] = None) -> Optional[DailyUsage]:
        key = _day(now).isoformat()
        with self._lock:
            bucket = self._days.get(key)
            return copy.copy(bucket) if bucket is not None else None

    def week_total(self, *, now: Optional[datetime] = None) -> UsageTotals:
        cutoff = _day(now) - timedelta(days=WEEK_DAYS)
        input_tokens = output_tokens = 0
        cost = 0.0
        with self._lock:
            for bucket in self._days.values():
                if date.fromisoformat(bucket.date) >= cutoff:
                    input_tokens += bucket.input_tokens
                    output_tokens += bucket.output_tokens
                    cost += bucket.estimated_cost
        return UsageTotals(input_tokens=input_tokens, output_tokens=output_tokens, estimated_cost=cost)

    def days(self) -> list[DailyUsage]:
        with self._lock:
            return [copy.copy(b) for b in sorted(self._days.values(), key=lambda b: b.date)]

    def models(self) -> list[ModelUsage]:
        with self._lock:
            return [copy.copy(m) for m in sorted(self._models.values(), key=lambda m: m.model)]

    def restore(self, days: Iterable[DailyUsage], models: Iterable[ModelUsage]) -> None:
        with self._lock:
            self._days = {d.date: copy.copy(d) for d in days}
            self._models = {m.model: copy.copy(m) for m in models}

    def _prune_locked(self, today: date) -> None:
        if self._retention_days <= 0:
            return
        horizon = today - timedelta(days=self._retention_days)
        # ISO dates sort chronologically, so oldest go first.
        for key in sorted(self._days):
            if date.fromisoformat(key) >= horizon:
                break
            del self._days[key]

    def over_daily_alert(self, threshold: int, *, now: Optional[datetime] = None) -> bool:
        """True once today's tokens reach `threshold`; a threshold of 0 disables the alert."""
        if threshold <= 0:
            return False
        bucket = self.today(now=now)
        if bucket is None:
            return False
        return bucket.input_tokens + bucket.output_tokens >= threshold
