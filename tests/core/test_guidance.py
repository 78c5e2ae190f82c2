"""Unit tests for the guidance engine."""

import pytest

from screenpilot.core.configs import GuidanceConfig
from screenpilot.core.guidance import GuidanceCategory, GuidanceEngine
from screenpilot.core.stream_parser import Analysis

from conftest import ManualClock


@pytest.fixture
def engine(clock):
    return GuidanceEngine(GuidanceConfig(), clock=clock)


def test_errors_win_over_every_other_signal(engine, clock):
    clock.advance(120)  # also stuck
    guidance = engine.process(Analysis(
        summary="Confirm deployment", application_name="Xcode",
        actions=["Click Retry"], errors=["Build failed"],
    ))

    assert guidance.priority == "high"
    assert guidance.category is GuidanceCategory.ERROR_HELP
    assert guidance.title == "Error Detected"
    assert guidance.summary == "Fix the error in Xcode to continue"
    assert guidance.suggestions[0].text == "Fix the error to continue"
    assert guidance.suggestions[0].confidence == 1.0


def test_critical_keyword_raises_priority(engine):
    guidance = engine.process(Analysis(summary="Confirm payment dialog", application_name="Shop"))

    assert guidance.priority == "high"
    assert guidance.category is GuidanceCategory.WORKFLOW_OPTIMIZATION
    assert guidance.summary == "Confirm payment dialog"


def test_long_idle_is_stuck(engine, clock):
    clock.advance(45)
    guidance = engine.process(Analysis(summary="Reading docs", application_name="Browser"))

    assert guidance.priority == "high"
    assert guidance.category is GuidanceCategory.NAVIGATION_HELP
    assert guidance.context.user_activity.is_stuck
    assert guidance.context.user_activity.stuck_duration_sec == pytest.approx(45)
    assert guidance.summary == "You've been on this screen for 45s"
    assert any(s.shortcut == "Cmd+F" for s in guidance.suggestions)


def test_identical_summaries_count_as_stuck(engine):
    results = [engine.process(Analysis(summary="Same dialog", application_name="App")) for _ in range(5)]

    assert all(g.category is GuidanceCategory.WORKFLOW_OPTIMIZATION for g in results[:4])
    assert results[4].category is GuidanceCategory.NAVIGATION_HELP
    # Not idle long enough for high priority
    assert results[4].priority == "low"


def test_repeated_action_is_repetitive(engine):
    for _ in range(2):
        engine.process(Analysis(summary="Editing text", application_name="Notes", actions=["Click Apply"]))
    guidance = engine.process(Analysis(summary="Editing text", application_name="Notes", actions=["Click Apply"]))

    assert guidance.priority == "medium"
    assert guidance.category is GuidanceCategory.EFFICIENCY_TIP
    assert [s.text for s in guidance.suggestions] == [
        "Click Apply",
        "Consider using keyboard shortcuts for faster navigation",
    ]


def test_suggestions_are_deduplicated_and_capped(engine):
    guidance = engine.process(Analysis(
        summary="Working on a document", application_name="Writer",
        actions=["Open file", "open FILE", "Close tab", "Rename", "Print"],
        shortcuts=["Cmd+O"],
    ))

    assert [s.text for s in guidance.suggestions] == ["Open file", "Close tab", "Rename"]
    assert guidance.suggestions[0].shortcut == "Cmd+O"
    assert all(s.confidence == pytest.approx(0.8) for s in guidance.suggestions)
    # Shortcuts on offer but never used
    assert guidance.priority == "medium"


def test_unused_shortcuts_in_known_app_suggest_feature_discovery(engine):
    engine.process(Analysis(summary="Canvas open", application_name="Figma"))
    guidance = engine.process(Analysis(
        summary="Layer panel", application_name="Figma", shortcuts=["Cmd+G"]
    ))

    assert guidance.category is GuidanceCategory.FEATURE_DISCOVERY
    assert guidance.priority == "medium"


def test_slow_screen_compared_with_average_is_inefficient(engine, clock):
    engine.process(Analysis(summary="Step one", application_name="Sheets", actions=["Click A1"]))
    clock.advance(10)
    engine.process(Analysis(summary="Step two", application_name="Sheets", actions=["Click B1"]))
    assert engine.user_patterns()["Sheets"].average_time_on_screen == pytest.approx(2.0)

    clock.advance(5)
    guidance = engine.process(Analysis(summary="Step three", application_name="Sheets"))

    assert guidance.priority == "medium"
    assert guidance.category is GuidanceCategory.WORKFLOW_OPTIMIZATION


def test_last_action_time_only_moves_with_actions(engine, clock):
    start = engine.last_action_time
    clock.advance(5)
    engine.process(Analysis(summary="Idle", application_name="App"))
    assert engine.last_action_time == start

    clock.advance(5)
    engine.process(Analysis(summary="Busy", application_name="App", actions=["Click OK"]))
    assert engine.last_action_time == pytest.approx(start + 10)


def test_history_accessors_and_clear(engine):
    first = engine.process(Analysis(summary="One", application_name="App"))
    second = engine.process(Analysis(summary="Two", application_name="App", errors=["boom"]))

    assert first.id != second.id
    assert first.id.startswith("guidance_")
    assert [a.summary for a in engine.recent_insights()] == ["One", "Two"]
    assert engine.recent_guidance(limit=1) == [second]
    assert [r.had_errors for r in engine.context_history()] == [False, True]

    engine.clear_history()
    assert engine.recent_insights() == []
    assert engine.recent_guidance() == []
    assert engine.context_history() == []


def test_recent_insights_window_is_bounded():
    engine = GuidanceEngine(GuidanceConfig(recent_insights=3), clock=ManualClock())
    for i in range(5):
        engine.process(Analysis(summary=f"Screen {i}", application_name="App"))

    assert [a.summary for a in engine.recent_insights()] == ["Screen 2", "Screen 3", "Screen 4"]
