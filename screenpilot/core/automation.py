"""Detection of repeated workflows that could be automated."""

import sys
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Literal, Optional, Sequence, Tuple

from loguru import logger

from .events import EventBus, Events
from .timing import Clock, RepeatingTimer, Scheduler, SystemClock

Potential = Literal["high", "medium", "low"]

PATTERN_THRESHOLD = 3
TIME_WINDOW_SEC = 3600.0
MAX_HISTORY = 1000
MIN_TIME_SAVED_SEC = 30.0
ANALYZE_INTERVAL_SEC = 60.0
RECENT_WINDOW = 20

PLATFORM_TOOLS: Dict[str, List[str]] = {
    "darwin": ["Keyboard Maestro", "Automator", "Shortcuts", "BetterTouchTool"],
    "win32": ["AutoHotkey", "Power Automate", "PowerShell"],
    "linux": ["AutoKey", "xdotool", "Shell Script"],
}


@dataclass(frozen=True)
class WorkflowStep:
    action: str
    target: str
    timestamp: float

    @property
    def key(self) -> Tuple[str, str]:
        return (self.action, self.target)


@dataclass
class DetectedPattern:
    """A step sequence seen repeatedly within the analysis window."""
    steps: List[WorkflowStep]
    frequency: int
    time_spent_sec: float
    automation_potential: Potential
    suggested_automation: str

    @property
    def key(self) -> Tuple[Tuple[str, str], ...]:
        return tuple(step.key for step in self.steps)


@dataclass
class AutomationSuggestion:
    pattern: DetectedPattern
    implementation: str
    estimated_time_saved_sec: float
    difficulty: Literal["easy", "medium", "hard"]
    tools: List[str]


def tools_for_platform(platform: Optional[str] = None) -> List[str]:
    platform = platform or sys.platform
    for prefix, tools in PLATFORM_TOOLS.items():
        if platform.startswith(prefix):
            return list(tools)
    return ["Custom Script"]


def quick_suggestion(steps: Sequence[WorkflowStep]) -> str:
    """Rule-based automation hint for a step sequence."""
    actions = " -> ".join(step.action.lower() for step in steps)
    if "click" in actions and "type" in actions:
        return "Create a keyboard shortcut or macro for this form filling"
    if "navigate" in actions:
        return "Bookmark frequently visited pages or create quick links"
    if all(step.action.lower().startswith("click") for step in steps):
        return "Use keyboard navigation instead of multiple clicks"
    return "Consider automating this repetitive task"


class WorkflowAutomationDetector:
    """Records workflow steps and reports repetition.

    Immediate repetition (the last N steps equal the N before them) is
    reported on every recorded step. Longer-term repeated sequences are
    searched for periodically within a sliding time window.
    """

    def __init__(
        self,
        events: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        platform: Optional[str] = None,
    ) -> None:
        self.events = events
        self.clock = clock or SystemClock()
        self.platform = platform or sys.platform
        self._history: Deque[WorkflowStep] = deque(maxlen=MAX_HISTORY)
        self._patterns: Dict[Tuple[Tuple[str, str], ...], DetectedPattern] = {}
        self._lock = threading.RLock()

        self._timer: Optional[RepeatingTimer] = None
        if scheduler is not None:
            self._timer = RepeatingTimer(
                scheduler, lambda: ANALYZE_INTERVAL_SEC, self.analyze_patterns, name="automation-analysis"
            )

    def start(self) -> None:
        if self._timer is not None:
            self._timer.start()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()

    @property
    def history(self) -> List[WorkflowStep]:
        with self._lock:
            return list(self._history)

    def record_step(self, action: str, target: str, timestamp: Optional[float] = None) -> WorkflowStep:
        """Append a step and check for immediate repetition."""
        step = WorkflowStep(action=action, target=target,
                            timestamp=self.clock.time() if timestamp is None else timestamp)
        with self._lock:
            self._history.append(step)
            repeated = self._check_recent_pattern()

        if repeated:
            length = len(repeated)
            logger.info(f"Repeated {length}-step sequence detected")
            self._emit(Events.REPETITIVE_PATTERN, {
                "steps": repeated,
                "message": f"You've repeated this {length}-step sequence",
            })
        return step

    def _check_recent_pattern(self) -> Optional[List[WorkflowStep]]:
        recent = list(self._history)[-RECENT_WINDOW:]
        if len(recent) < 6:
            return None

        for length in range(2, 6):
            last = recent[-length:]
            previous = recent[-length * 2:-length]
            if [s.key for s in last] == [s.key for s in previous]:
                return last
        return None

    def find_repeated_sequences(self, steps: Sequence[WorkflowStep]) -> List[DetectedPattern]:
        """All sequences of 2-10 steps occurring at least PATTERN_THRESHOLD times."""
        occurrences: Dict[Tuple[Tuple[str, str], ...], List[List[WorkflowStep]]] = {}
        max_length = min(10, len(steps) // 2)
        for length in range(2, max_length + 1):
            for i in range(len(steps) - length + 1):
                sequence = list(steps[i:i + length])
                occurrences.setdefault(tuple(s.key for s in sequence), []).append(sequence)

        patterns = []
        for sequences in occurrences.values():
            if len(sequences) >= PATTERN_THRESHOLD:
                patterns.append(self._analyze_sequence(sequences))
        return patterns

    @staticmethod
    def _analyze_sequence(sequences: List[List[WorkflowStep]]) -> DetectedPattern:
        total = sum(seq[-1].timestamp - seq[0].timestamp for seq in sequences)
        if total > 300:
            potential: Potential = "high"
        elif total > 120:
            potential = "medium"
        else:
            potential = "low"
        return DetectedPattern(
            steps=sequences[0],
            frequency=len(sequences),
            time_spent_sec=total,
            automation_potential=potential,
            suggested_automation=quick_suggestion(sequences[0]),
        )

    def analyze_patterns(self) -> List[AutomationSuggestion]:
        """Search the recent window and report patterns worth automating.

        Returns:
            Suggestions emitted by this run (new or more frequent patterns only)
        """
        now = self.clock.time()
        with self._lock:
            recent = [s for s in self._history if now - s.timestamp < TIME_WINDOW_SEC]
            if len(recent) < PATTERN_THRESHOLD * 2:
                return []

            emitted = []
            for pattern in self.find_repeated_sequences(recent):
                if pattern.time_spent_sec < MIN_TIME_SAVED_SEC:
                    continue
                known = self._patterns.get(pattern.key)
                self._patterns[pattern.key] = pattern
                if known is not None and known.frequency >= pattern.frequency:
                    continue
                emitted.append(self._suggest(pattern))

        for suggestion in emitted:
            logger.info(f"Automation opportunity: {suggestion.implementation} "
                        f"(x{suggestion.pattern.frequency})")
            self._emit(Events.AUTOMATION_DETECTED, suggestion)
        return emitted

    def _suggest(self, pattern: DetectedPattern) -> AutomationSuggestion:
        difficulty = "easy" if len(pattern.steps) <= 3 else "medium"
        return AutomationSuggestion(
            pattern=pattern,
            implementation=pattern.suggested_automation,
            # Assumes the pattern recurs about ten times a day
            estimated_time_saved_sec=pattern.time_spent_sec * 10,
            difficulty=difficulty,
            tools=tools_for_platform(self.platform),
        )

    def automation_suggestions(self) -> List[AutomationSuggestion]:
        """Known patterns above low potential, largest time saving first."""
        with self._lock:
            suggestions = [
                self._suggest(p) for p in self._patterns.values() if p.automation_potential != "low"
            ]
        return sorted(suggestions, key=lambda s: s.estimated_time_saved_sec, reverse=True)

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
            self._patterns.clear()
        logger.info("Workflow history cleared")

    def _emit(self, event: str, payload) -> None:
        if self.events is not None:
            self.events.emit(event, payload)
