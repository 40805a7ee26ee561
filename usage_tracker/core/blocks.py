"""
Session block reconstruction.

Derives the current 5-hour billing window from recent usage. The window
floats: it starts at the oldest entry inside the trailing 5 hours rather
than on a clock-aligned boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Tuple

from .pricing import PricingResolver
from .token_counter import TokenCounts
from usage_tracker.storage.models import UsageEntry

BLOCK_DURATION = timedelta(hours=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionBlock:
    """The currently open 5-hour accounting window."""
    start_time: datetime
    end_time: datetime
    is_active: bool
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    cost_usd: float = 0.0
    models: Tuple[str, ...] = ()

    @property
    def id(self) -> str:
        """ISO timestamp of the block start."""
        return self.start_time.isoformat()

    def elapsed_progress(self, now: Optional[datetime] = None) -> float:
        """Fraction of the window that has elapsed, clamped to [0, 1]."""
        now = now or _utcnow()
        total = (self.end_time - self.start_time).total_seconds()
        if total <= 0:
            return 1.0
        elapsed = (now - self.start_time).total_seconds()
        return min(max(elapsed / total, 0.0), 1.0)

    def time_remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Time left in the window, or None once it has closed."""
        if not self.is_active:
            return None
        remaining = self.end_time - (now or _utcnow())
        return remaining if remaining > timedelta(0) else None


def calculate_current_block(
    entries: Iterable[UsageEntry],
    resolver: PricingResolver,
    now: Optional[datetime] = None,
) -> Optional[SessionBlock]:
    """Reconstruct the session block from entries in the trailing 5 hours.

    Args:
        entries: Usage entries in any order
        resolver: Pricing resolver holding the resident pricing table
        now: Current time, timezone-aware (defaults to the system clock)

    Returns:
        The current block, or None when nothing was used in the last 5 hours
    """
    now = now or _utcnow()
    window_start = now - BLOCK_DURATION

    recent = [entry for entry in entries if entry.timestamp >= window_start]
    if not recent:
        return None

    block_start = min(entry.timestamp for entry in recent)
    block_end = block_start + BLOCK_DURATION

    token_counts = TokenCounts()
    total_cost = 0.0
    models = set()
    for entry in recent:
        token_counts.add_entry(entry)
        total_cost += resolver.calculate_cost(entry)
        if entry.model:
            models.add(entry.model)

    return SessionBlock(
        start_time=block_start,
        end_time=block_end,
        is_active=now < block_end,
        token_counts=token_counts,
        cost_usd=total_cost,
        models=tuple(sorted(models)),
    )
