"""Incremental parser for the vision model's token stream.

The model is prompted to answer in a fixed line grammar::

    SUMMARY: <one line>
    APP: <application>
    SUGGESTIONS:
    - <action>
    ERRORS: <error or None>
    SHORTCUTS: <comma separated or None>

While tokens arrive the parser emits low-latency signals (first actionable
phrase, first error phrase, newly seen shortcuts, periodic partial text).
``finalize`` then parses the whole buffer into an immutable ``Analysis``.
"""

import re
from enum import Enum
from typing import Callable, Dict, Iterable, List, Literal, Optional, Pattern

from loguru import logger
from pydantic import BaseModel, Field

from .events import EventBus, Events
from .timing import Clock, SystemClock


class Analysis(BaseModel):
    """Structured result of one analyzed frame."""
    model_config = {"frozen": True}

    summary: str = ""
    application_name: str = "Unknown"
    actions: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    shortcuts: List[str] = Field(default_factory=list)
    raw_response_text: str = ""
    processing_time_ms: float = 0.0


class StreamingInsight(BaseModel):
    """Signal detected before the response is complete."""
    type: Literal["action", "error", "suggestion", "shortcut"]
    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    is_partial: bool = True


class ParserState(Enum):
    ACCUMULATING = "accumulating"
    FINALIZED = "finalized"


# Captured text stops at quotes, newlines and sentence punctuation
_TARGET = r"[\"']?([^\"'\n.!?]+)[\"']?"

ACTION_PATTERNS: List[Pattern[str]] = [
    re.compile(rf"\bclick[ \t]+(?:on[ \t]+)?{_TARGET}", re.IGNORECASE),
    re.compile(rf"\bpress[ \t]+(?:the[ \t]+)?{_TARGET}", re.IGNORECASE),
    re.compile(rf"\btype[ \t]+{_TARGET}", re.IGNORECASE),
    re.compile(rf"\bnavigate[ \t]+to[ \t]+{_TARGET}", re.IGNORECASE),
    re.compile(rf"\bopen[ \t]+{_TARGET}", re.IGNORECASE),
]

ERROR_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\berrors?:(?![ \t]*none\b)[ \t]*([^\n]+)", re.IGNORECASE),
    re.compile(r"\bwarning:[ \t]*([^\n]+)", re.IGNORECASE),
    re.compile(r"\bfailed[ \t]+to[ \t]+([^\n]+)", re.IGNORECASE),
    re.compile(r"\bcannot[ \t]+([^\n]+)", re.IGNORECASE),
    re.compile(r"\bexception:[ \t]*([^\n]+)", re.IGNORECASE),
]

_MODIFIER = r"(?:(?:command|cmd|control|ctrl|option|opt|shift|alt|win|meta)\b|[⌘⌃⌥⇧])"

SHORTCUT_PATTERNS: List[Pattern[str]] = [
    re.compile(rf"(?<!\w)({_MODIFIER}(?:\+{_MODIFIER})*\+\w+)(?![\w+])", re.IGNORECASE),
    re.compile(r"keyboard\s+shortcut:[ \t]*([^\n]+)", re.IGNORECASE),
]

_SENTENCE_END = re.compile(r"[.!?]")


class StreamingAnalysisParser:
    """State machine: ACCUMULATING until ``finalize`` moves it to FINALIZED."""

    def __init__(
        self,
        events: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        partial_update_chars: int = 20,
        error_confidence: float = 0.95,
        incomplete_sentence_factor: float = 0.7,
    ) -> None:
        """Initialize parser.

        Args:
            events: Bus receiving instant/partial/shortcut events
            clock: Time source for processing time
            partial_update_chars: Emit a partial update each time the buffer
                grows past another multiple of this many characters
            error_confidence: Confidence attached to instant errors
            incomplete_sentence_factor: Confidence multiplier when no sentence
                terminator follows an action match
        """
        self.events = events
        self.clock = clock or SystemClock()
        self.partial_update_chars = partial_update_chars
        self.error_confidence = error_confidence
        self.incomplete_sentence_factor = incomplete_sentence_factor

        self._line_handlers: Dict[str, Callable[[Dict, str], None]] = {
            "SUMMARY:": self._set_summary,
            "APP:": self._set_application,
            "ERRORS:": self._add_errors,
            "SHORTCUTS:": self._set_shortcuts,
        }
        self.reset()

    def reset(self) -> None:
        """Return to an empty ACCUMULATING state."""
        self.buffer = ""
        self.state = ParserState.ACCUMULATING
        self.action_detected = False
        self.error_detected = False
        self._seen_shortcuts: List[str] = []
        self._partial_marks = 0
        self._start_time: Optional[float] = None
        self._analysis: Optional[Analysis] = None

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def feed(self, token: str) -> None:
        """Append one token and run the instant detectors."""
        if self.state is ParserState.FINALIZED:
            raise RuntimeError("Cannot feed a finalized parser; call reset() first")
        if self._start_time is None:
            self._start_time = self.clock.time()
        if not token:
            return

        self.buffer += token
        self._run_detectors(streaming=True)

        marks = len(self.buffer) // self.partial_update_chars
        if marks > self._partial_marks:
            self._partial_marks = marks
            self._emit(Events.PARTIAL_UPDATE, {"content": self.buffer, "length": len(self.buffer)})

    def _run_detectors(self, streaming: bool) -> None:
        if not self.action_detected:
            action = self.detect_action(self.buffer, streaming)
            if action:
                self.action_detected = True
                logger.debug(f"Instant action: {action.content} ({action.confidence:.2f})")
                self._emit(Events.INSTANT_ACTION, action)

        if not self.error_detected:
            error = self.detect_error(self.buffer, streaming)
            if error:
                self.error_detected = True
                logger.debug(f"Instant error: {error.content}")
                self._emit(Events.INSTANT_ERROR, error)

        new_shortcuts = [s for s in self.detect_shortcuts(self.buffer, streaming) if s not in self._seen_shortcuts]
        if new_shortcuts:
            self._seen_shortcuts.extend(new_shortcuts)
            self._emit(Events.SHORTCUTS, new_shortcuts)

    def process_stream(self, tokens: Iterable[str]) -> Analysis:
        """Feed every token of a stream, then finalize."""
        for token in tokens:
            self.feed(token)
        return self.finalize()

    @staticmethod
    def _complete_matches(pattern: Pattern[str], text: str, streaming: bool):
        for match in pattern.finditer(text):
            # A match touching the end of a growing buffer may still be extended
            if streaming and match.end() >= len(text):
                continue
            yield match

    def confidence(self, text: str, position: int) -> float:
        """Earlier matches followed by a sentence terminator score higher."""
        if not text:
            return 0.0
        position_score = 1.0 - (position / len(text))
        complete = _SENTENCE_END.search(text[position:position + 50]) is not None
        return max(0.0, min(1.0, position_score * (1.0 if complete else self.incomplete_sentence_factor)))

    def detect_action(self, text: str, streaming: bool = True) -> Optional[StreamingInsight]:
        for pattern in ACTION_PATTERNS:
            for match in self._complete_matches(pattern, text, streaming):
                return StreamingInsight(
                    type="action",
                    content=match.group(0).strip(),
                    confidence=self.confidence(text, match.start()),
                )
        return None

    def detect_error(self, text: str, streaming: bool = True) -> Optional[StreamingInsight]:
        for pattern in ERROR_PATTERNS:
            for match in self._complete_matches(pattern, text, streaming):
                return StreamingInsight(
                    type="error",
                    content=(match.group(1) or match.group(0)).strip(),
                    confidence=self.error_confidence,
                )
        return None

    def detect_shortcuts(self, text: str, streaming: bool = True) -> List[str]:
        shortcuts: List[str] = []
        for pattern in SHORTCUT_PATTERNS:
            for match in self._complete_matches(pattern, text, streaming):
                shortcut = (match.group(1) or match.group(0)).strip()
                if shortcut and shortcut not in shortcuts:
                    shortcuts.append(shortcut)
        return shortcuts

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self) -> Analysis:
        """Parse the full buffer. Repeated calls return the same Analysis."""
        if self._analysis is not None:
            return self._analysis

        # The stream is complete, so matches at the end of the buffer are final
        self._run_detectors(streaming=False)

        now = self.clock.time()
        started = self._start_time if self._start_time is not None else now
        fields: Dict = {
            "summary": "",
            "application_name": "Unknown",
            "actions": [],
            "errors": [],
            "shortcuts": [],
        }

        for raw_line in self.buffer.split("\n"):
            line = raw_line.strip()
            if not line or line.startswith("SUGGESTIONS:"):
                continue
            if line.startswith("- ") or line.startswith("• "):
                item = line[2:].strip()
                if item:
                    fields["actions"].append(item)
                continue
            for prefix, handler in self._line_handlers.items():
                if line.startswith(prefix):
                    handler(fields, line[len(prefix):].strip())
                    break

        # Inline phrasing the line grammar did not capture
        for pattern in ACTION_PATTERNS:
            for match in self._complete_matches(pattern, self.buffer, streaming=False):
                action = match.group(0).strip()
                if not any(action in existing for existing in fields["actions"]):
                    fields["actions"].append(action)

        self._analysis = Analysis(
            raw_response_text=self.buffer,
            processing_time_ms=max(0.0, (now - started) * 1000.0),
            **fields,
        )
        self.state = ParserState.FINALIZED
        logger.debug(
            f"Finalized analysis: app={self._analysis.application_name}, "
            f"{len(self._analysis.actions)} actions, {len(self._analysis.errors)} errors"
        )
        return self._analysis

    @staticmethod
    def _is_none(value: str) -> bool:
        return not value or value.lower() == "none"

    def _set_summary(self, fields: Dict, value: str) -> None:
        fields["summary"] = value

    def _set_application(self, fields: Dict, value: str) -> None:
        if value:
            fields["application_name"] = value

    def _add_errors(self, fields: Dict, value: str) -> None:
        if not self._is_none(value):
            fields["errors"].append(value)

    def _set_shortcuts(self, fields: Dict, value: str) -> None:
        if not self._is_none(value):
            fields["shortcuts"] = [s.strip() for s in value.split(",") if s.strip()]

    def _emit(self, event: str, payload) -> None:
        if self.events is not None:
            self.events.emit(event, payload)
