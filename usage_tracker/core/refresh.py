"""
Refresh orchestration and published usage state.

Runs the pricing → entries → aggregates pipeline on startup, on a timer and
on debounced file changes, and publishes the results as one snapshot.

Refresh Sequence:
1. Load (or refresh) the pricing table
2. Load every usage entry from disk
3. Compute today, current block, last 14 days, monthly and this month
4. Publish all results together
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Coroutine, List, Optional, Set, Tuple

from .aggregation import (
    DailyUsage,
    MonthlyUsage,
    aggregate_by_day,
    aggregate_by_month,
    aggregate_today,
    local_date,
)
from .blocks import SessionBlock, calculate_current_block
from .pricing import PricingResolver
from .watcher import DirectoryWatcher
from usage_tracker.config.loader import TrackerSettings
from usage_tracker.storage.loader import EntryLoader
from usage_tracker.storage.models import UsageEntry

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.5
DAILY_WINDOW_DAYS = 14


class RefreshState(Enum):
    """Lifecycle of the orchestrator."""
    IDLE = "idle"
    REFRESHING = "refreshing"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageSnapshot:
    """Everything the presentation layer reads, published atomically."""
    today_usage: DailyUsage
    this_month_usage: MonthlyUsage
    current_block: Optional[SessionBlock] = None
    daily_usage: Tuple[DailyUsage, ...] = ()
    monthly_usage: Tuple[MonthlyUsage, ...] = ()
    state: RefreshState = RefreshState.IDLE
    last_updated: Optional[datetime] = None
    last_error: Optional[Exception] = field(default=None, compare=False)

    @property
    def is_loading(self) -> bool:
        return self.state == RefreshState.REFRESHING

    @classmethod
    def empty(cls, now: datetime) -> "UsageSnapshot":
        today = local_date(now)
        return cls(
            today_usage=DailyUsage.empty(today),
            this_month_usage=MonthlyUsage.empty(today),
        )


SnapshotListener = Callable[[UsageSnapshot], None]


def compute_snapshot(
    entries: List[UsageEntry],
    resolver: PricingResolver,
    now: datetime,
) -> UsageSnapshot:
    """Run every aggregation pass over one entry list.

    Args:
        entries: Deduplicated usage entries
        resolver: Pricing resolver with the table already loaded
        now: Current time, timezone-aware

    Returns:
        Fully populated snapshot in the IDLE state
    """
    today = local_date(now)
    today_usage = aggregate_today(entries, resolver, now)
    block = calculate_current_block(entries, resolver, now)

    window_start = datetime.combine(today - timedelta(days=DAILY_WINDOW_DAYS), time.min).astimezone()
    recent = [entry for entry in entries if entry.timestamp >= window_start]
    daily = aggregate_by_day(recent, resolver)

    monthly = aggregate_by_month(entries, resolver)
    this_month_id = today.strftime("%Y-%m")
    this_month = next(
        (month for month in monthly if month.id == this_month_id),
        MonthlyUsage.empty(today),
    )

    return UsageSnapshot(
        today_usage=today_usage,
        this_month_usage=this_month,
        current_block=block,
        daily_usage=tuple(daily),
        monthly_usage=tuple(monthly),
        state=RefreshState.IDLE,
        last_updated=now,
    )


class RefreshOrchestrator:
    """Single owner of the published usage snapshot.

    Refreshes are serialized: a trigger that fires while a refresh is running
    waits for it and then runs again. Debounced file changes can be cancelled
    before their refresh starts; a started refresh always runs to completion.
    """

    def __init__(
        self,
        resolver: PricingResolver,
        loader: EntryLoader,
        settings: Optional[TrackerSettings] = None,
        watcher: Optional[DirectoryWatcher] = None,
        clock: Callable[[], datetime] = _utcnow,
        debounce_seconds: float = DEBOUNCE_SECONDS,
    ):
        """Initialize the orchestrator.

        Args:
            resolver: Pricing resolver
            loader: Usage entry loader
            settings: User preferences (refresh interval is read from here)
            watcher: Optional directory watcher feeding change notifications
            clock: Source of the current time, injectable for tests
            debounce_seconds: Quiet period before a file change triggers a refresh
        """
        self.resolver = resolver
        self.loader = loader
        self.watcher = watcher
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._refresh_interval = (settings or TrackerSettings()).auto_refresh_interval
        self._snapshot = UsageSnapshot.empty(clock())
        self._listeners: List[SnapshotListener] = []
        self._refresh_lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._change_generation = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def snapshot(self) -> UsageSnapshot:
        return self._snapshot

    @property
    def state(self) -> RefreshState:
        return self._snapshot.state

    @property
    def refresh_interval(self) -> int:
        return self._refresh_interval

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener called with every published snapshot.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, snapshot: UsageSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    async def refresh(self) -> UsageSnapshot:
        """Run one full refresh cycle.

        Failures are captured in the published snapshot; previously
        published aggregates stay in place.

        Returns:
            The snapshot published at the end of the cycle
        """
        async with self._refresh_lock:
            return await self._refresh_locked()

    async def _refresh_for_change(self, generation: int) -> UsageSnapshot:
        async with self._refresh_lock:
            # A newer burst arrived while this refresh was queued; its own
            # debounce will refresh instead
            if generation != self._change_generation:
                logger.debug("Skipping refresh superseded by a newer file change")
                return self._snapshot
            return await self._refresh_locked()

    async def _refresh_locked(self) -> UsageSnapshot:
        self._publish(replace(self._snapshot, state=RefreshState.REFRESHING))
        try:
            await self.resolver.load_pricing()
            entries = await self.loader.load_all_entries()
            snapshot = compute_snapshot(entries, self.resolver, self._clock())
        except Exception as e:
            logger.warning("Refresh failed: %s", e)
            self._publish(replace(
                self._snapshot,
                state=RefreshState.ERROR,
                last_error=e,
            ))
            return self._snapshot

        self._publish(snapshot)
        logger.debug("Refreshed usage from %d entries", len(entries))
        return snapshot

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_refresh_task(self, refresh: Coroutine) -> None:
        # Shielded so cancelling the trigger never interrupts a started refresh
        await asyncio.shield(self._spawn(refresh))

    def notify_files_changed(self) -> None:
        """Schedule a debounced refresh, restarting any pending debounce."""
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._change_generation += 1
        self._debounce_task = self._spawn(self._debounced_refresh(self._change_generation))

    async def _debounced_refresh(self, generation: int) -> None:
        await asyncio.sleep(self.debounce_seconds)
        await self._run_refresh_task(self._refresh_for_change(generation))

    async def _timer_loop(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._run_refresh_task(self.refresh())

    def set_refresh_interval(self, seconds: int) -> None:
        """Change the periodic refresh interval; 0 disables the timer."""
        if seconds < 0:
            raise ValueError("refresh interval must be >= 0")
        self._refresh_interval = seconds
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        if seconds > 0:
            self._timer_task = self._spawn(self._timer_loop(seconds))

    async def start(self) -> UsageSnapshot:
        """Perform the initial load, then start the timer and watcher.

        Returns:
            The snapshot from the initial refresh
        """
        snapshot = await self.refresh()
        self.set_refresh_interval(self._refresh_interval)
        if self.watcher is not None:
            await self.watcher.start(self.notify_files_changed)
        return snapshot

    async def stop(self) -> None:
        """Stop all triggers and wait for in-flight refreshes to finish."""
        if self.watcher is not None:
            await self.watcher.stop()
        for task in (self._timer_task, self._debounce_task):
            if task is not None:
                task.cancel()
        self._timer_task = None
        self._debounce_task = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
