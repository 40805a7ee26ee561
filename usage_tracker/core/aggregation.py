"""
Usage aggregation by calendar window.

Groups usage entries into daily and monthly buckets with per-model cost
breakdowns. Every pass builds fresh objects; input entries are never mutated.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .pricing import PricingResolver, normalize_model_name
from .token_counter import TokenCounts
from usage_tracker.storage.models import UsageEntry


@dataclass(frozen=True)
class ModelBreakdown:
    """Token and cost totals for one model inside a bucket."""
    model_name: str
    token_counts: TokenCounts
    cost: float

    @property
    def display_name(self) -> str:
        """Model name without its release date, e.g. ``claude-opus-4``."""
        if len(self.model_name.split("-")) >= 3:
            return normalize_model_name(self.model_name)
        return self.model_name


@dataclass(frozen=True)
class DailyUsage:
    """Aggregated usage for a single local calendar day."""
    id: str  # YYYY-MM-DD
    date: date
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    total_cost: float = 0.0
    model_breakdowns: Tuple[ModelBreakdown, ...] = ()

    @classmethod
    def empty(cls, day: date) -> "DailyUsage":
        return cls(id=day.strftime("%Y-%m-%d"), date=day)


@dataclass(frozen=True)
class MonthlyUsage:
    """Aggregated usage for a single local calendar month."""
    id: str  # YYYY-MM
    month: date  # first day of the month
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    total_cost: float = 0.0
    model_breakdowns: Tuple[ModelBreakdown, ...] = ()

    @classmethod
    def empty(cls, day: date) -> "MonthlyUsage":
        return cls(id=day.strftime("%Y-%m"), month=day.replace(day=1))


@dataclass
class _Bucket:
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    total_cost: float = 0.0
    per_model: Dict[str, Tuple[TokenCounts, float]] = field(default_factory=dict)

    def add(self, entry: UsageEntry, cost: float) -> None:
        self.token_counts.add_entry(entry)
        self.total_cost += cost
        if entry.model:
            tokens, model_cost = self.per_model.get(entry.model, (TokenCounts(), 0.0))
            tokens.add_entry(entry)
            self.per_model[entry.model] = (tokens, model_cost + cost)

    def breakdowns(self) -> Tuple[ModelBreakdown, ...]:
        items = [
            ModelBreakdown(model_name=model, token_counts=tokens, cost=cost)
            for model, (tokens, cost) in self.per_model.items()
        ]
        # Stable tie-break on name keeps equal-cost models in a fixed order
        items.sort(key=lambda b: b.model_name)
        items.sort(key=lambda b: b.cost, reverse=True)
        return tuple(items)


def local_date(timestamp: datetime) -> date:
    """Calendar day of a timestamp in the local timezone."""
    return timestamp.astimezone().date()


def day_key(timestamp: datetime) -> str:
    return local_date(timestamp).strftime("%Y-%m-%d")


def month_key(timestamp: datetime) -> str:
    return local_date(timestamp).strftime("%Y-%m")


def _group(
    entries: Iterable[UsageEntry],
    resolver: PricingResolver,
    key_fn: Callable[[datetime], str],
) -> Dict[str, _Bucket]:
    buckets: Dict[str, _Bucket] = {}
    for entry in entries:
        key = key_fn(entry.timestamp)
        bucket = buckets.setdefault(key, _Bucket())
        bucket.add(entry, resolver.calculate_cost(entry))
    return buckets


def aggregate_by_day(entries: Iterable[UsageEntry], resolver: PricingResolver) -> List[DailyUsage]:
    """Aggregate entries into one bucket per local calendar day.

    Args:
        entries: Usage entries in any order
        resolver: Pricing resolver holding the resident pricing table

    Returns:
        Daily buckets, newest day first
    """
    daily = []
    for key, bucket in _group(entries, resolver, day_key).items():
        daily.append(DailyUsage(
            id=key,
            date=date.fromisoformat(key),
            token_counts=bucket.token_counts,
            total_cost=bucket.total_cost,
            model_breakdowns=bucket.breakdowns(),
        ))
    daily.sort(key=lambda d: d.date, reverse=True)
    return daily


def aggregate_by_month(entries: Iterable[UsageEntry], resolver: PricingResolver) -> List[MonthlyUsage]:
    """Aggregate entries into one bucket per local calendar month.

    Args:
        entries: Usage entries in any order
        resolver: Pricing resolver holding the resident pricing table

    Returns:
        Monthly buckets, newest month first
    """
    monthly = []
    for key, bucket in _group(entries, resolver, month_key).items():
        monthly.append(MonthlyUsage(
            id=key,
            month=date.fromisoformat(f"{key}-01"),
            token_counts=bucket.token_counts,
            total_cost=bucket.total_cost,
            model_breakdowns=bucket.breakdowns(),
        ))
    monthly.sort(key=lambda m: m.month, reverse=True)
    return monthly


def aggregate_today(
    entries: Iterable[UsageEntry],
    resolver: PricingResolver,
    now: Optional[datetime] = None,
) -> DailyUsage:
    """Aggregate only the entries from the current local day.

    Args:
        entries: Usage entries in any order
        resolver: Pricing resolver holding the resident pricing table
        now: Current time (defaults to the system clock)

    Returns:
        Today's bucket, empty when nothing was used today
    """
    today = local_date(now or datetime.now().astimezone())
    bucket = _Bucket()
    for entry in entries:
        if local_date(entry.timestamp) == today:
            bucket.add(entry, resolver.calculate_cost(entry))

    return DailyUsage(
        id=today.strftime("%Y-%m-%d"),
        date=today,
        token_counts=bucket.token_counts,
        total_cost=bucket.total_cost,
        model_breakdowns=bucket.breakdowns(),
    )
