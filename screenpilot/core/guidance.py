"""Turns finalized analyses into prioritized, categorized guidance."""

import threading
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .configs import GuidanceConfig
from .stream_parser import Analysis
from .timing import Clock, SystemClock

GuidancePriority = Literal["low", "medium", "high"]

CRITICAL_KEYWORDS = (
    "save", "delete", "remove", "destroy", "drop", "truncate",
    "payment", "checkout", "confirm", "submit", "deploy", "publish",
)


class GuidanceCategory(str, Enum):
    ERROR_HELP = "error-help"
    EFFICIENCY_TIP = "efficiency-tip"
    NAVIGATION_HELP = "navigation-help"
    FEATURE_DISCOVERY = "feature-discovery"
    WORKFLOW_OPTIMIZATION = "workflow-optimization"


TITLES: Dict[GuidanceCategory, str] = {
    GuidanceCategory.ERROR_HELP: "Error Detected",
    GuidanceCategory.EFFICIENCY_TIP: "Efficiency Tip",
    GuidanceCategory.NAVIGATION_HELP: "Navigation Help",
    GuidanceCategory.FEATURE_DISCOVERY: "Feature Discovery",
    GuidanceCategory.WORKFLOW_OPTIMIZATION: "Workflow Optimization",
}


class Suggestion(BaseModel):
    text: str
    shortcut: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)


class UserActivity(BaseModel):
    is_stuck: bool = False
    stuck_duration_sec: Optional[float] = None
    has_errors: bool = False
    is_repetitive: bool = False
    last_action_time: float = 0.0


class GuidanceContext(BaseModel):
    application: str
    screen_state: str
    user_activity: UserActivity
    timestamp: float


class Guidance(BaseModel):
    """User-facing recommendation for one processed analysis."""
    id: str
    timestamp: float
    title: str
    summary: str
    priority: GuidancePriority
    suggestions: List[Suggestion] = Field(default_factory=list)
    category: GuidanceCategory
    context: GuidanceContext


@dataclass
class ContextRecord:
    timestamp: float
    application: str
    screen_state: str
    had_errors: bool
    actions: List[str]


@dataclass
class UserPattern:
    """Per-application behaviour summary."""
    application: str
    common_actions: List[str] = field(default_factory=list)
    average_time_on_screen: float = 0.0
    error_rate: float = 0.0


class GuidanceEngine:
    """Keeps short-term context and derives guidance from each analysis."""

    def __init__(self, config: Optional[GuidanceConfig] = None, clock: Optional[Clock] = None) -> None:
        """Initialize guidance engine.

        Args:
            config: Guidance thresholds and history sizes
            clock: Time source for stuck detection
        """
        self.config = config or GuidanceConfig()
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._recent: Deque[Analysis] = deque(maxlen=self.config.recent_insights)
        self._history: Deque[ContextRecord] = deque(maxlen=self.config.history_size)
        self._guidance: Deque[Guidance] = deque(maxlen=self.config.history_size)
        self._patterns: Dict[str, UserPattern] = {}
        self.last_action_time = self.clock.time()

    def process(self, analysis: Analysis) -> Guidance:
        """Derive guidance for one analysis and update the rolling context.

        Args:
            analysis: Finalized analysis (errors may already include known-error matches)

        Returns:
            Guidance ready for the UI layer
        """
        with self._lock:
            self._recent.append(analysis)

            context = self._build_context(analysis)
            priority = self._priority(analysis, context)
            category = self._category(analysis, context)
            guidance = Guidance(
                id=f"guidance_{uuid.uuid4().hex[:12]}",
                timestamp=context.timestamp,
                title=TITLES[category],
                summary=self._summary(analysis, context),
                priority=priority,
                suggestions=self._suggestions(analysis, context, category),
                category=category,
                context=context,
            )

            self._update_history(analysis, context)
            self._update_pattern(analysis, context.timestamp)
            if analysis.actions:
                self.last_action_time = context.timestamp
            self._guidance.append(guidance)

        logger.debug(f"Guidance [{priority}/{category.value}]: {guidance.summary}")
        return guidance

    def _build_context(self, analysis: Analysis) -> GuidanceContext:
        now = self.clock.time()
        since_action = now - self.last_action_time
        stuck = self._is_stuck(since_action)
        return GuidanceContext(
            application=analysis.application_name,
            screen_state=analysis.summary,
            user_activity=UserActivity(
                is_stuck=stuck,
                stuck_duration_sec=since_action if stuck else None,
                has_errors=bool(analysis.errors),
                is_repetitive=self._is_repetitive(),
                last_action_time=self.last_action_time,
            ),
            timestamp=now,
        )

    def _is_stuck(self, since_action: float) -> bool:
        if since_action > self.config.stuck_threshold_sec:
            return True
        count = self.config.stuck_repeat_count
        summaries = [a.summary for a in list(self._recent)[-count:]]
        return len(summaries) >= count and len(set(summaries)) == 1

    def _is_repetitive(self) -> bool:
        counts = Counter(action for a in self._recent for action in a.actions)
        return any(n >= self.config.repetition_threshold for n in counts.values())

    @staticmethod
    def is_critical_workflow(analysis: Analysis) -> bool:
        summary = analysis.summary.lower()
        return any(keyword in summary for keyword in CRITICAL_KEYWORDS)

    def _is_inefficient(self, analysis: Analysis, now: float) -> bool:
        pattern = self._patterns.get(analysis.application_name)
        if pattern is None or pattern.average_time_on_screen <= 0:
            return False
        return (now - self.last_action_time) > pattern.average_time_on_screen * 1.5

    def _has_unused_features(self, analysis: Analysis) -> bool:
        """Shortcuts are on offer but no past suggestion mentioned a key chord."""
        if not analysis.shortcuts:
            return False
        return not any(
            "Cmd" in action or "Ctrl" in action for record in self._history for action in record.actions
        )

    def _priority(self, analysis: Analysis, context: GuidanceContext) -> GuidancePriority:
        activity = context.user_activity
        if activity.has_errors:
            return "high"
        if activity.is_stuck and (activity.stuck_duration_sec or 0.0) > self.config.stuck_threshold_sec:
            return "high"
        if self.is_critical_workflow(analysis):
            return "high"

        if activity.is_repetitive:
            return "medium"
        if self._is_inefficient(analysis, context.timestamp):
            return "medium"
        if self._has_unused_features(analysis):
            return "medium"
        return "low"

    def _category(self, analysis: Analysis, context: GuidanceContext) -> GuidanceCategory:
        activity = context.user_activity
        if activity.has_errors:
            return GuidanceCategory.ERROR_HELP
        if activity.is_stuck:
            return GuidanceCategory.NAVIGATION_HELP
        if activity.is_repetitive:
            return GuidanceCategory.EFFICIENCY_TIP
        if context.application in self._patterns and self._has_unused_features(analysis):
            return GuidanceCategory.FEATURE_DISCOVERY
        return GuidanceCategory.WORKFLOW_OPTIMIZATION

    def _suggestions(self, analysis: Analysis, context: GuidanceContext,
                     category: GuidanceCategory) -> List[Suggestion]:
        candidates: List[Suggestion] = []
        for i, text in enumerate(analysis.actions):
            shortcut = analysis.shortcuts[i] if i < len(analysis.shortcuts) else None
            candidates.append(Suggestion(text=text, shortcut=shortcut, confidence=self.config.default_confidence))

        if category is GuidanceCategory.ERROR_HELP:
            candidates.insert(0, Suggestion(text="Fix the error to continue", confidence=1.0))
        elif category is GuidanceCategory.NAVIGATION_HELP:
            candidates.append(Suggestion(text="Try using the search function", shortcut="Cmd+F", confidence=0.8))
        elif category is GuidanceCategory.EFFICIENCY_TIP:
            candidates.append(Suggestion(
                text="Consider using keyboard shortcuts for faster navigation", confidence=0.7
            ))

        # Case-insensitive dedupe keeping the most confident copy
        best: Dict[str, Suggestion] = {}
        for suggestion in candidates:
            key = suggestion.text.strip().lower()
            if key not in best or suggestion.confidence > best[key].confidence:
                best[key] = suggestion

        ranked = sorted(best.values(), key=lambda s: s.confidence, reverse=True)
        return ranked[:self.config.max_suggestions]

    @staticmethod
    def _summary(analysis: Analysis, context: GuidanceContext) -> str:
        activity = context.user_activity
        if activity.has_errors:
            return f"Fix the error in {context.application} to continue"
        if activity.is_stuck and activity.stuck_duration_sec is not None:
            return f"You've been on this screen for {round(activity.stuck_duration_sec)}s"
        return analysis.summary

    def _update_history(self, analysis: Analysis, context: GuidanceContext) -> None:
        self._history.append(ContextRecord(
            timestamp=context.timestamp,
            application=context.application,
            screen_state=context.screen_state,
            had_errors=context.user_activity.has_errors,
            actions=list(analysis.actions),
        ))

    def _update_pattern(self, analysis: Analysis, now: float) -> None:
        app = analysis.application_name
        pattern = self._patterns.setdefault(app, UserPattern(application=app))
        for action in analysis.actions:
            if action not in pattern.common_actions:
                pattern.common_actions.append(action)

        elapsed = now - self.last_action_time
        pattern.average_time_on_screen = pattern.average_time_on_screen * 0.8 + elapsed * 0.2
        pattern.error_rate = pattern.error_rate * 0.9 + (0.1 if analysis.errors else 0.0)

    def recent_insights(self, limit: Optional[int] = None) -> List[Analysis]:
        with self._lock:
            items = list(self._recent)
        return items[-limit:] if limit else items

    def recent_guidance(self, limit: Optional[int] = None) -> List[Guidance]:
        with self._lock:
            items = list(self._guidance)
        return items[-limit:] if limit else items

    def context_history(self) -> List[ContextRecord]:
        with self._lock:
            return list(self._history)

    def user_patterns(self) -> Dict[str, UserPattern]:
        with self._lock:
            return dict(self._patterns)

    def clear_history(self) -> None:
        with self._lock:
            self._recent.clear()
            self._history.clear()
            self._guidance.clear()
            self.last_action_time = self.clock.time()
        logger.info("Guidance history cleared")
