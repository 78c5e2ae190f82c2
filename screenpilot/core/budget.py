"""Daily spend tracking and priority gating for model calls."""

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, List, Literal, Optional

from loguru import logger

from .configs import BudgetConfig
from .datastore import DailyUsage, UsageStore
from .events import EventBus, Events
from .timing import Clock, RepeatingTimer, Scheduler, SystemClock, seconds_until_midnight

Priority = Literal["high", "medium", "low"]
PRIORITIES = ("high", "medium", "low")


@dataclass
class UsageRecord:
    """Spend and counters for one calendar day."""
    date: date
    total_cost: float = 0.0
    analysis_count: int = 0
    cached_count: int = 0
    priority_breakdown: Dict[str, int] = field(default_factory=lambda: {p: 0 for p in PRIORITIES})

    def copy(self) -> "UsageRecord":
        return UsageRecord(
            date=self.date,
            total_cost=self.total_cost,
            analysis_count=self.analysis_count,
            cached_count=self.cached_count,
            priority_breakdown=dict(self.priority_breakdown),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data

    def to_row(self) -> DailyUsage:
        return DailyUsage(
            day=self.date,
            total_cost=self.total_cost,
            analysis_count=self.analysis_count,
            cached_count=self.cached_count,
            high_count=self.priority_breakdown.get("high", 0),
            medium_count=self.priority_breakdown.get("medium", 0),
            low_count=self.priority_breakdown.get("low", 0),
        )

    @classmethod
    def from_row(cls, row: DailyUsage) -> "UsageRecord":
        return cls(
            date=row.day,
            total_cost=row.total_cost or 0.0,
            analysis_count=row.analysis_count or 0,
            cached_count=row.cached_count or 0,
            priority_breakdown={
                "high": row.high_count or 0,
                "medium": row.medium_count or 0,
                "low": row.low_count or 0,
            },
        )


@dataclass(frozen=True)
class QualitySettings:
    """Capture and encoding settings derived from remaining budget."""
    image_quality: int
    max_width: int
    max_height: int
    capture_rate: float
    diff_threshold: float
    enable_diff_detection: bool = True


# (minimum remaining percent, settings); the last tier catches everything else
QUALITY_TIERS: List[tuple] = [
    (70.0, QualitySettings(image_quality=85, max_width=1024, max_height=1024, capture_rate=5.0, diff_threshold=0.5)),
    (40.0, QualitySettings(image_quality=75, max_width=800, max_height=800, capture_rate=3.0, diff_threshold=1.0)),
    (20.0, QualitySettings(image_quality=65, max_width=640, max_height=640, capture_rate=2.0, diff_threshold=2.0)),
    (None, QualitySettings(image_quality=50, max_width=512, max_height=512, capture_rate=1.0, diff_threshold=5.0)),
]


class BudgetGovernor:
    """Tracks daily spend and decides which frames may be analyzed."""

    def __init__(
        self,
        config: Optional[BudgetConfig] = None,
        store: Optional[UsageStore] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        """Initialize budget governor.

        Args:
            config: Budget configuration
            store: Persistent usage store; in-memory only when omitted
            clock: Time source for day boundaries
            scheduler: Scheduler for the midnight reset timer
            events: Bus for budget and cost events
        """
        self.config = config or BudgetConfig()
        self.store = store
        self.clock = clock or SystemClock()
        self.events = events
        self._lock = threading.RLock()
        self._history: Dict[date, UsageRecord] = {}
        self._current = self._load_day(self._today())

        self._reset_timer: Optional[RepeatingTimer] = None
        if scheduler is not None:
            self._reset_timer = RepeatingTimer(
                scheduler,
                lambda: seconds_until_midnight(self.clock.now()),
                self.reset_daily_usage,
                name="daily-reset",
            )

    def start(self) -> None:
        """Arm the midnight reset timer."""
        if self._reset_timer is not None:
            self._reset_timer.start()

    def stop(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()

    def _today(self) -> date:
        return self.clock.now().date()

    def _load_day(self, day: date) -> UsageRecord:
        record = None
        if self.store is not None:
            row = self.store.load(day)
            if row is not None:
                record = UsageRecord.from_row(row)
        if record is None:
            record = self._history.get(day)
        if record is None:
            record = UsageRecord(date=day)
        self._history[day] = record
        return record

    def _persist(self) -> None:
        self._history[self._current.date] = self._current
        # Keep the in-memory mirror inside the same window as the database
        while len(self._history) > self.config.history_days:
            del self._history[min(self._history)]
        if self.store is not None:
            self.store.save(self._current.to_row())

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def budget_percentage(self) -> float:
        """Remaining share of today's budget, 0-100."""
        with self._lock:
            remaining = self.config.daily_budget - self._current.total_cost
            return max(0.0, (remaining / self.config.daily_budget) * 100.0)

    def should_process(self, priority: Priority) -> bool:
        """Decide whether a frame of the given priority may be analyzed.

        High priority always proceeds, with a warning event once the budget is
        spent. Medium and low need their configured remaining percentage.
        """
        with self._lock:
            self._roll_over_if_needed()
            over_budget = self._current.total_cost >= self.config.daily_budget
            percentage = self.budget_percentage()
            total_cost = self._current.total_cost
            thresholds = self.config.priority_thresholds

        if not over_budget:
            if priority == "high":
                return True
            if priority == "medium":
                return percentage >= thresholds.medium
            return percentage >= thresholds.low

        if priority == "high":
            logger.warning(f"Daily budget exceeded ({total_cost:.3f}/{self.config.daily_budget:.2f}); "
                           f"processing high priority only")
            self._emit(Events.BUDGET_WARNING, {
                "daily_budget": self.config.daily_budget,
                "current_cost": total_cost,
                "message": "Daily budget exceeded - processing high priority only",
            })
            return True
        return False

    def record_analysis(self, priority: Priority, was_cached: bool = False) -> UsageRecord:
        """Account for one frame that was analyzed or served from cache.

        Args:
            priority: Frame priority
            was_cached: True when the result came from the cache (no cost)

        Returns:
            Snapshot of today's record after the update
        """
        with self._lock:
            self._roll_over_if_needed()
            record = self._current
            if was_cached:
                record.cached_count += 1
            else:
                record.total_cost += self.config.cost_per_analysis
                record.analysis_count += 1
            record.priority_breakdown[priority] = record.priority_breakdown.get(priority, 0) + 1
            self._persist()

            snapshot = record.copy()
            percentage = self.budget_percentage()

        remaining = max(0.0, self.config.daily_budget - snapshot.total_cost)
        self._emit(Events.COST_UPDATE, {
            "total_cost": snapshot.total_cost,
            "remaining_budget": remaining,
            "analysis_count": snapshot.analysis_count,
        })
        if not was_cached:
            self._check_alerts(snapshot, percentage)
        return snapshot

    def _check_alerts(self, record: UsageRecord, percentage: float) -> None:
        payload = {
            "remaining_budget": self.config.daily_budget - record.total_cost,
            "remaining_percentage": percentage,
        }
        # Throttled by analysis count so a tight loop does not flood listeners
        if (percentage <= self.config.critical_percent
                and record.analysis_count % self.config.critical_alert_every == 0):
            logger.warning(f"Budget critical: {percentage:.1f}% remaining")
            self._emit(Events.BUDGET_CRITICAL, payload)
        elif (percentage <= self.config.low_percent
                and record.analysis_count % self.config.low_alert_every == 0):
            logger.warning(f"Budget low: {percentage:.1f}% remaining")
            self._emit(Events.BUDGET_LOW, payload)

    def get_adaptive_quality_settings(self) -> QualitySettings:
        """Step down quality and capture rate as the budget drains."""
        if not self.config.adaptive_quality:
            return QUALITY_TIERS[0][1]

        percentage = self.budget_percentage()
        for floor, settings in QUALITY_TIERS:
            if floor is None or percentage > floor:
                return settings
        return QUALITY_TIERS[-1][1]

    # ------------------------------------------------------------------
    # Day boundaries
    # ------------------------------------------------------------------

    def _roll_over_if_needed(self) -> bool:
        today = self._today()
        if today == self._current.date:
            return False
        previous = self._current
        self._current = self._load_day(today)
        logger.info(f"New usage day {today} (previous day cost {previous.total_cost:.3f})")
        self._emit(Events.DAILY_RESET, {"date": today.isoformat(), "previous_day_cost": previous.total_cost})
        return True

    def reset_daily_usage(self) -> None:
        """Switch to the current day's record (runs from the midnight timer)."""
        with self._lock:
            if self._roll_over_if_needed():
                return
            day = self._current.date
        logger.debug(f"Daily reset fired but day {day} is unchanged")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def today_usage(self) -> UsageRecord:
        with self._lock:
            self._roll_over_if_needed()
            return self._current.copy()

    def usage_history(self, days: int = 30) -> List[UsageRecord]:
        """Most recent daily records, oldest first."""
        with self._lock:
            if self.store is not None:
                records = [UsageRecord.from_row(row) for row in self.store.history(days)]
            else:
                records = [r.copy() for r in self._history.values()]
        records.sort(key=lambda r: r.date)
        return records[-days:]

    def update_config(self, **changes: Any) -> BudgetConfig:
        """Apply configuration changes, validating the merged result.

        Raises:
            ValueError: If the merged configuration is invalid
        """
        with self._lock:
            merged = {**self.config.model_dump(), **changes}
            self.config = BudgetConfig(**merged)
            if self.store is not None:
                self.store.history_days = self.config.history_days
            config = self.config

        logger.info(f"Budget configuration updated: {sorted(changes)}")
        self._emit(Events.CONFIG_UPDATED, config.model_dump())
        return config

    def export_report(self, days: int = 30) -> str:
        """JSON cost report over the most recent days."""
        history = self.usage_history(days)
        total_cost = sum(r.total_cost for r in history)
        total_analyses = sum(r.analysis_count for r in history)
        total_cached = sum(r.cached_count for r in history)
        lookups = total_analyses + total_cached

        report = {
            "period": f"{days} days",
            "total_cost": round(total_cost, 2),
            "total_analyses": total_analyses,
            "total_cached": total_cached,
            "average_daily_cost": round(total_cost / days, 2) if days else 0.0,
            "cache_hit_rate": (total_cached / lookups) if lookups else 0.0,
            "history": [r.to_dict() for r in history],
        }
        return json.dumps(report, indent=2)

    def _emit(self, event: str, payload: Any) -> None:
        if self.events is not None:
            self.events.emit(event, payload)
