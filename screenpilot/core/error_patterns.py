"""Library of known error signatures found in screen text."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Pattern

from loguru import logger

from .timing import Clock, SystemClock

ErrorPriority = Literal["high", "medium", "low"]


@dataclass
class ErrorPattern:
    """Named error signature with remediation hints."""
    id: str
    name: str
    patterns: List[Pattern[str]]
    context: str
    priority: ErrorPriority
    solutions: List[str]
    quick_fix: Optional[str] = None


@dataclass
class DetectedError:
    pattern: ErrorPattern
    matched_text: str
    confidence: float
    suggested_fixes: List[str]
    timestamp: float


@dataclass
class ErrorAnalysis:
    has_errors: bool
    errors: List[DetectedError] = field(default_factory=list)
    top_priority: Optional[ErrorPriority] = None
    quickest_fix: Optional[str] = None


def _rx(expr: str, flags: int = re.IGNORECASE) -> Pattern[str]:
    return re.compile(expr, flags)


DEFAULT_PATTERNS: List[ErrorPattern] = [
    ErrorPattern(
        id="js-type-error",
        name="JavaScript Type Error",
        patterns=[
            _rx(r"TypeError:\s*([^\n]+)"),
            _rx(r"Cannot\s+read\s+propert(?:y|ies)\s+(?:of\s+)?[\"']?(\w+)[\"']?\s+of\s+(null|undefined)"),
            _rx(r"(\w+)\s+is\s+not\s+a\s+function"),
        ],
        context="javascript",
        priority="high",
        solutions=[
            "Check if the variable is defined before accessing properties",
            "Use optional chaining (?.) for safe property access",
            "Verify the function exists on the object",
        ],
        quick_fix="Add null check: if (variable && variable.property)",
    ),
    ErrorPattern(
        id="js-reference-error",
        name="JavaScript Reference Error",
        patterns=[
            _rx(r"ReferenceError:\s*([^\n]+)"),
            _rx(r"Cannot\s+access\s+[\"']?(\w+)[\"']?\s+before\s+initialization"),
        ],
        context="javascript",
        priority="high",
        solutions=[
            "Ensure the variable is declared before use",
            "Check import statements for missing modules",
            "Verify variable scope and hoisting",
        ],
        quick_fix="Declare the variable: const variableName = ...",
    ),
    ErrorPattern(
        id="py-syntax-error",
        name="Python Syntax Error",
        patterns=[
            _rx(r"SyntaxError:\s*([^\n]+)"),
            _rx(r"IndentationError:\s*([^\n]+)"),
            _rx(r"invalid\s+syntax"),
        ],
        context="python",
        priority="high",
        solutions=[
            "Check indentation (use 4 spaces)",
            "Verify parentheses, brackets, and quotes are balanced",
            "Ensure colons are present after if/for/def statements",
        ],
        quick_fix="Fix indentation to match surrounding code",
    ),
    ErrorPattern(
        id="py-name-error",
        name="Python Name Error",
        patterns=[
            _rx(r"NameError:\s*name\s+[\"']?(\w+)[\"']?\s+is\s+not\s+defined"),
            _rx(r"AttributeError:\s*[\"']?(\w+)[\"']?\s+object\s+has\s+no\s+attribute"),
        ],
        context="python",
        priority="high",
        solutions=[
            "Import the missing module or function",
            "Check variable spelling and case",
            "Ensure the variable is defined in the current scope",
        ],
        quick_fix="Import missing module: import module_name",
    ),
    ErrorPattern(
        id="excel-ref-error",
        name="Excel Reference Error",
        patterns=[_rx(r"#REF!", 0), _rx(r"#NAME\?", 0), _rx(r"#VALUE!", 0)],
        context="excel",
        priority="medium",
        solutions=[
            "#REF!: Check for deleted cells or invalid references",
            "#NAME?: Verify function names and named ranges",
            "#VALUE!: Check data types in formula arguments",
        ],
        quick_fix="Click on cell and check formula bar for issues",
    ),
    ErrorPattern(
        id="excel-div-zero",
        name="Excel Division by Zero",
        patterns=[_rx(r"#DIV/0!", 0)],
        context="excel",
        priority="medium",
        solutions=[
            "Use IFERROR to handle division by zero",
            "Check denominator values before division",
            "Use IF statement to check for zero",
        ],
        quick_fix="=IFERROR(A1/B1, 0)",
    ),
    ErrorPattern(
        id="http-404",
        name="HTTP 404 Not Found",
        patterns=[
            _rx(r"404\s*(?:Error|Not\s+Found)"),
            _rx(r"The\s+requested\s+URL\s+.*\s+was\s+not\s+found"),
        ],
        context="web",
        priority="medium",
        solutions=[
            "Check the URL for typos",
            "Verify the resource exists on the server",
            "Check for case sensitivity in the URL path",
        ],
        quick_fix="Verify URL in address bar",
    ),
    ErrorPattern(
        id="http-500",
        name="HTTP 500 Server Error",
        patterns=[
            _rx(r"500\s*(?:Error|Internal\s+Server\s+Error)"),
            _rx(r"The\s+server\s+encountered\s+an\s+error"),
        ],
        context="web",
        priority="high",
        solutions=[
            "Check server logs for detailed error",
            "Verify server configuration",
            "Contact system administrator if persistent",
        ],
    ),
    ErrorPattern(
        id="sql-syntax",
        name="SQL Syntax Error",
        patterns=[
            _rx(r"SQL\s+syntax\s+error"),
            _rx(r"You\s+have\s+an\s+error\s+in\s+your\s+SQL\s+syntax"),
            _rx(r"ORA-\d+:", 0),
        ],
        context="database",
        priority="high",
        solutions=[
            "Check SQL query syntax",
            "Verify table and column names",
            "Ensure quotes are properly used for strings",
        ],
        quick_fix="Check for missing commas or quotes",
    ),
    ErrorPattern(
        id="git-merge-conflict",
        name="Git Merge Conflict",
        patterns=[
            _rx(r"CONFLICT\s*\([\w\s]+\):"),
            _rx(r"<<<<<<+\s*HEAD", 0),
            _rx(r"Automatic\s+merge\s+failed"),
        ],
        context="git",
        priority="high",
        solutions=[
            "Open conflicted files and resolve manually",
            "Choose between HEAD and incoming changes",
            "Use git status to see conflicted files",
        ],
        quick_fix="git status to see conflicts",
    ),
    ErrorPattern(
        id="permission-denied",
        name="Permission Denied",
        patterns=[
            _rx(r"Permission\s+denied"),
            _rx(r"Access\s+denied"),
            _rx(r"Operation\s+not\s+permitted"),
        ],
        context="general",
        priority="high",
        solutions=[
            "Check file/folder permissions",
            "Run with administrator/sudo privileges",
            "Verify user has necessary access rights",
        ],
        quick_fix="Try: sudo <command> (macOS/Linux)",
    ),
]

_PRIORITY_ORDER: Dict[str, int] = {"high": 0, "medium": 1, "low": 2}


class ErrorDetector:
    """Matches text against the known error pattern table."""

    def __init__(self, patterns: Optional[List[ErrorPattern]] = None, clock: Optional[Clock] = None):
        self.patterns: List[ErrorPattern] = list(DEFAULT_PATTERNS if patterns is None else patterns)
        self.clock = clock or SystemClock()

    def detect(self, text: str) -> List[DetectedError]:
        """Find known errors; at most one detection per pattern.

        Args:
            text: Screen or model response text

        Returns:
            Detected errors in pattern table order
        """
        detected: List[DetectedError] = []
        if not text:
            return detected

        for pattern in self.patterns:
            for regex in pattern.patterns:
                match = regex.search(text)
                if match:
                    detected.append(DetectedError(
                        pattern=pattern,
                        matched_text=match.group(0),
                        confidence=self._confidence(match),
                        suggested_fixes=self._fixes(pattern, match),
                        timestamp=self.clock.time(),
                    ))
                    break

        if detected:
            logger.debug(f"Detected known errors: {[d.pattern.id for d in detected]}")
        return detected

    @staticmethod
    def _confidence(match: re.Match) -> float:
        confidence = 0.8
        if match.start() == 0:
            confidence += 0.1
        if len(match.group(0)) > 20:
            confidence += 0.1
        return min(confidence, 1.0)

    @staticmethod
    def _fixes(pattern: ErrorPattern, match: re.Match) -> List[str]:
        fixes = list(pattern.solutions)
        if pattern.quick_fix:
            fixes.insert(0, f"Quick fix: {pattern.quick_fix}")

        subject = match.group(1) if match.re.groups >= 1 else None
        if subject:
            if pattern.id == "js-type-error":
                fixes.insert(0, f"Check if '{subject}' is defined")
            elif pattern.id == "py-name-error":
                fixes.insert(0, f"Import or define '{subject}'")
        return fixes

    def analyze(self, text: str) -> ErrorAnalysis:
        """Summarize detections with the top priority and its quickest fix."""
        errors = self.detect(text)
        if not errors:
            return ErrorAnalysis(has_errors=False)

        top = min((e.pattern.priority for e in errors), key=lambda p: _PRIORITY_ORDER[p])
        quickest = next(
            (e.pattern.quick_fix for e in errors if e.pattern.priority == top and e.pattern.quick_fix),
            None,
        )
        return ErrorAnalysis(has_errors=True, errors=errors, top_priority=top, quickest_fix=quickest)

    def add_pattern(self, pattern: ErrorPattern) -> None:
        if any(p.id == pattern.id for p in self.patterns):
            raise ValueError(f"Error pattern already registered: {pattern.id}")
        self.patterns.append(pattern)
        logger.info(f"Added error pattern: {pattern.id}")

    def patterns_by_context(self, context: str) -> List[ErrorPattern]:
        return [p for p in self.patterns if p.context == context]

    def patterns_by_priority(self, priority: str) -> List[ErrorPattern]:
        return [p for p in self.patterns if p.priority == priority]
