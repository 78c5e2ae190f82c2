"""Unit tests for the budget governor."""

import json
from datetime import date, datetime

import pytest

from screenpilot.core.budget import QUALITY_TIERS, BudgetGovernor
from screenpilot.core.configs import BudgetConfig
from screenpilot.core.datastore import UsageStore
from screenpilot.core.events import EventBus, Events

from conftest import ManualClock, ManualScheduler


class EventRecorder:
    """Collects payloads per event name."""

    def __init__(self, bus: EventBus, *names: str):
        self.received = {name: [] for name in names}
        for name in names:
            bus.on(name, self.received[name].append)

    def __getitem__(self, name):
        return self.received[name]


class TestBudgetGating:
    """Priority gating against the remaining budget."""

    def setup_method(self):
        self.events = EventBus()
        self.recorder = EventRecorder(
            self.events, Events.BUDGET_WARNING, Events.BUDGET_CRITICAL, Events.BUDGET_LOW, Events.COST_UPDATE
        )
        self.clock = ManualClock()
        self.governor = BudgetGovernor(
            BudgetConfig(daily_budget=10, cost_per_analysis=1), clock=self.clock, events=self.events
        )

    def test_fresh_budget_allows_everything(self):
        assert self.governor.budget_percentage() == 100.0
        for priority in ("high", "medium", "low"):
            assert self.governor.should_process(priority)

    def test_nine_analyses_block_low_but_not_high(self):
        for _ in range(9):
            self.governor.record_analysis("medium")

        assert self.governor.budget_percentage() == pytest.approx(10.0)
        assert not self.governor.should_process("low")
        assert not self.governor.should_process("medium")
        assert self.governor.should_process("high")
        assert self.recorder[Events.BUDGET_WARNING] == []

    def test_exhausted_budget_only_admits_high_with_warning(self):
        for _ in range(10):
            self.governor.record_analysis("high")

        assert self.governor.budget_percentage() == 0.0
        assert not self.governor.should_process("medium")
        assert not self.governor.should_process("low")
        assert self.governor.should_process("high")
        assert len(self.recorder[Events.BUDGET_WARNING]) == 1

    def test_medium_threshold_boundary(self):
        for _ in range(5):
            self.governor.record_analysis("low")
        # Exactly 50% remaining meets the medium threshold
        assert self.governor.should_process("medium")
        self.governor.record_analysis("low")
        assert not self.governor.should_process("medium")

    def test_cached_hits_cost_nothing(self):
        usage = self.governor.record_analysis("low", was_cached=True)
        assert usage.total_cost == 0.0
        assert usage.cached_count == 1
        assert usage.analysis_count == 0
        assert usage.priority_breakdown == {"high": 0, "medium": 0, "low": 1}

    def test_cost_update_events(self):
        self.governor.record_analysis("high")
        payload = self.recorder[Events.COST_UPDATE][-1]
        assert payload == {"total_cost": 1.0, "remaining_budget": 9.0, "analysis_count": 1}

    def test_critical_alert_is_throttled(self):
        for _ in range(10):
            self.governor.record_analysis("high")
        assert len(self.recorder[Events.BUDGET_CRITICAL]) == 1
        assert self.recorder[Events.BUDGET_CRITICAL][0]["remaining_percentage"] == 0.0
        assert self.recorder[Events.BUDGET_LOW] == []

    def test_cached_hits_do_not_repeat_alerts(self):
        for _ in range(10):
            self.governor.record_analysis("high")
        for _ in range(5):
            self.governor.record_analysis("high", was_cached=True)

        assert len(self.recorder[Events.BUDGET_CRITICAL]) == 1
        assert len(self.recorder[Events.COST_UPDATE]) == 15

    def test_low_alert(self):
        governor = BudgetGovernor(
            BudgetConfig(daily_budget=25, cost_per_analysis=1), clock=self.clock, events=self.events
        )
        for _ in range(20):
            governor.record_analysis("medium")
        # 5 of 25 left = 20%
        assert len(self.recorder[Events.BUDGET_LOW]) == 1


class TestAdaptiveQuality:
    """Quality tiers as the budget drains."""

    def test_quality_is_monotonic_across_tiers(self):
        governor = BudgetGovernor(BudgetConfig(daily_budget=100, cost_per_analysis=1), clock=ManualClock())
        seen = [governor.get_adaptive_quality_settings()]
        for spend in (40, 30, 15):
            for _ in range(spend):
                governor.record_analysis("high")
            seen.append(governor.get_adaptive_quality_settings())

        assert seen == [tier for _, tier in QUALITY_TIERS]
        for higher, lower in zip(seen, seen[1:]):
            assert lower.capture_rate < higher.capture_rate
            assert lower.image_quality < higher.image_quality
            assert lower.max_width < higher.max_width
            assert lower.diff_threshold > higher.diff_threshold

    def test_adaptive_quality_disabled_returns_top_tier(self):
        governor = BudgetGovernor(
            BudgetConfig(daily_budget=10, cost_per_analysis=1, adaptive_quality=False), clock=ManualClock()
        )
        for _ in range(9):
            governor.record_analysis("high")
        assert governor.get_adaptive_quality_settings() == QUALITY_TIERS[0][1]


class TestDailyReset:
    """Midnight reset and day roll-over."""

    def test_reset_fires_at_midnight_and_rearms(self):
        clock = ManualClock(datetime(2024, 3, 14, 23, 59, 0))
        scheduler = ManualScheduler(clock)
        events = EventBus()
        resets = []
        events.on(Events.DAILY_RESET, resets.append)

        governor = BudgetGovernor(BudgetConfig(daily_budget=10, cost_per_analysis=1),
                                  clock=clock, scheduler=scheduler, events=events)
        governor.start()
        governor.record_analysis("high")
        governor.record_analysis("high")

        scheduler.advance(61)
        assert len(resets) == 1
        assert resets[0] == {"date": "2024-03-15", "previous_day_cost": 2.0}
        assert governor.today_usage().date == date(2024, 3, 15)
        assert governor.today_usage().total_cost == 0.0
        assert scheduler.pending == 1

        scheduler.advance(24 * 3600)
        assert len(resets) == 2
        assert scheduler.pending == 1

        governor.stop()
        assert scheduler.pending == 0

    def test_day_rolls_over_lazily_without_timer(self):
        clock = ManualClock(datetime(2024, 3, 14, 22, 0, 0))
        governor = BudgetGovernor(BudgetConfig(daily_budget=10, cost_per_analysis=1), clock=clock)
        governor.record_analysis("high")

        clock.advance(3 * 3600)
        usage = governor.record_analysis("low")
        assert usage.date == date(2024, 3, 15)
        assert usage.total_cost == 1.0
        assert [r.date for r in governor.usage_history()] == [date(2024, 3, 14), date(2024, 3, 15)]


class TestBudgetPersistence:
    """Usage records in SQLite and reporting."""

    def test_usage_survives_restart(self, tmp_path):
        clock = ManualClock()
        store = UsageStore(tmp_path / "usage.sqlite3")
        governor = BudgetGovernor(BudgetConfig(daily_budget=10, cost_per_analysis=1), store=store, clock=clock)
        governor.record_analysis("high")
        governor.record_analysis("low", was_cached=True)

        restarted = BudgetGovernor(BudgetConfig(daily_budget=10, cost_per_analysis=1), store=store, clock=clock)
        usage = restarted.today_usage()
        assert usage.total_cost == 1.0
        assert usage.analysis_count == 1
        assert usage.cached_count == 1
        assert usage.priority_breakdown == {"high": 1, "medium": 0, "low": 1}
        store.close()

    def test_export_report(self, tmp_path):
        clock = ManualClock(datetime(2024, 3, 14, 10, 0, 0))
        store = UsageStore(tmp_path / "usage.sqlite3")
        governor = BudgetGovernor(BudgetConfig(daily_budget=10, cost_per_analysis=1), store=store, clock=clock)
        governor.record_analysis("high")
        clock.advance(24 * 3600)
        governor.record_analysis("high")
        governor.record_analysis("high", was_cached=True)

        report = json.loads(governor.export_report(days=30))
        assert report["total_cost"] == 2.0
        assert report["total_analyses"] == 2
        assert report["total_cached"] == 1
        assert report["cache_hit_rate"] == pytest.approx(1 / 3)
        assert [day["date"] for day in report["history"]] == ["2024-03-14", "2024-03-15"]
        store.close()

    def test_update_config(self):
        events = EventBus()
        updates = []
        events.on(Events.CONFIG_UPDATED, updates.append)
        governor = BudgetGovernor(BudgetConfig(daily_budget=10, cost_per_analysis=1),
                                  clock=ManualClock(), events=events)

        governor.update_config(daily_budget=20)
        assert governor.config.daily_budget == 20
        assert updates[-1]["daily_budget"] == 20

        with pytest.raises(ValueError):
            governor.update_config(critical_percent=50, low_percent=25)
        assert governor.config.critical_percent == 10
