"""Unit tests for the known error pattern library."""

import re

import pytest

from screenpilot.core.error_patterns import DEFAULT_PATTERNS, ErrorDetector, ErrorPattern


@pytest.fixture
def detector(clock):
    return ErrorDetector(clock=clock)


def test_python_name_error_at_start(detector, clock):
    detected = detector.detect("NameError: name 'pandas' is not defined")

    assert len(detected) == 1
    error = detected[0]
    assert error.pattern.id == "py-name-error"
    assert error.matched_text == "NameError: name 'pandas' is not defined"
    assert error.confidence == pytest.approx(1.0)
    assert error.suggested_fixes[0] == "Import or define 'pandas'"
    assert error.suggested_fixes[1] == "Quick fix: Import missing module: import module_name"
    assert error.timestamp == clock.time()


def test_one_detection_per_pattern(detector):
    detected = detector.detect("Console: TypeError: foo is not a function")

    assert [d.pattern.id for d in detected] == ["js-type-error"]
    assert detected[0].confidence == pytest.approx(0.9)
    assert detected[0].suggested_fixes[0].startswith("Check if 'foo")


def test_short_match_keeps_base_confidence(detector):
    detected = detector.detect("cell shows #REF!")

    assert [d.pattern.id for d in detected] == ["excel-ref-error"]
    assert detected[0].confidence == pytest.approx(0.8)


def test_analyze_reports_top_priority_and_quickest_fix(detector):
    analysis = detector.analyze("#DIV/0! in C3 and #REF! in D4")

    assert analysis.has_errors
    assert [e.pattern.id for e in analysis.errors] == ["excel-ref-error", "excel-div-zero"]
    assert analysis.top_priority == "medium"
    assert analysis.quickest_fix == "Click on cell and check formula bar for issues"


def test_quickest_fix_skips_patterns_without_one(detector):
    analysis = detector.analyze("500 Internal Server Error\nPermission denied while writing log")

    assert analysis.top_priority == "high"
    assert analysis.quickest_fix == "Try: sudo <command> (macOS/Linux)"


@pytest.mark.parametrize("text", ["", "Everything compiled cleanly"])
def test_no_errors(detector, text):
    assert detector.detect(text) == []
    analysis = detector.analyze(text)
    assert not analysis.has_errors
    assert analysis.top_priority is None


def test_add_pattern(detector):
    custom = ErrorPattern(
        id="docker-daemon",
        name="Docker Daemon Unavailable",
        patterns=[re.compile(r"Cannot connect to the Docker daemon", re.IGNORECASE)],
        context="docker",
        priority="high",
        solutions=["Start Docker Desktop"],
    )
    detector.add_pattern(custom)

    detected = detector.detect("Cannot connect to the Docker daemon at unix:///var/run/docker.sock")
    assert [d.pattern.id for d in detected] == ["docker-daemon"]
    assert detected[0].suggested_fixes == ["Start Docker Desktop"]

    with pytest.raises(ValueError):
        detector.add_pattern(custom)


def test_filters(detector):
    assert [p.id for p in detector.patterns_by_context("python")] == ["py-syntax-error", "py-name-error"]
    medium = {p.id for p in detector.patterns_by_priority("medium")}
    assert medium == {"excel-ref-error", "excel-div-zero", "http-404"}


def test_default_table_is_not_mutated_by_instances():
    before = len(DEFAULT_PATTERNS)
    ErrorDetector().add_pattern(ErrorPattern(
        id="x", name="X", patterns=[re.compile("x")], context="t", priority="low", solutions=[]
    ))
    assert len(DEFAULT_PATTERNS) == before
