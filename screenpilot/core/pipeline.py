"""Capture loop: capture -> fingerprint -> cache -> budget -> model -> guidance."""

import hashlib
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .automation import WorkflowAutomationDetector
from .budget import BudgetGovernor, Priority
from .cache import FrameCache
from .capture import Frame, FrameSource, optimize_frame
from .configs import AppConfig, SettingsStore
from .error_patterns import ErrorDetector
from .events import EventBus, Events
from .guidance import GuidanceEngine
from .hashing import ChangeDetector, PerceptualHasher, decode_image
from .llm_client import VisionModel, get_prompt
from .loggingx import TelemetryTracker
from .stream_parser import Analysis, StreamingAnalysisParser
from .timing import Clock, RepeatingTimer, Scheduler, SystemClock

# tick() outcomes
NO_FRAME = "no-frame"
DECODE_ERROR = "decode-error"
UNCHANGED = "unchanged"
CACHED = "cached"
SKIPPED = "skipped"
BUSY = "busy"
MODEL_ERROR = "model-error"
ANALYZED = "analyzed"


@dataclass
class PipelineMetrics:
    """Running counters for one pipeline instance."""
    frames_captured: int = 0
    frames_unchanged: int = 0
    frames_skipped: int = 0
    cache_hits: int = 0
    analyses: int = 0
    insights: int = 0
    errors: int = 0
    total_cost: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "frames_captured": self.frames_captured,
            "frames_unchanged": self.frames_unchanged,
            "frames_skipped": self.frames_skipped,
            "cache_hits": self.cache_hits,
            "analyses": self.analyses,
            "insights": self.insights,
            "errors": self.errors,
            "total_cost": self.total_cost,
        }


def assign_priority(frame: Frame) -> Priority:
    """Frame priority from change size and capture regions."""
    if frame.change_percent > 20:
        return "high"
    cursor = next((r for r in frame.regions if r.kind == "cursor_region"), None)
    if cursor is not None and cursor.priority > 8:
        return "high"
    if frame.change_percent > 5:
        return "medium"
    return "low"


class CapturePipeline:
    """Periodic capture-to-insight loop.

    Capture, hashing, cache lookup and budget checks run sequentially per
    tick. At most one model call is in flight; its cache insert and usage
    record are applied together once the result is known.
    """

    def __init__(
        self,
        config: AppConfig,
        source: FrameSource,
        model: Optional[VisionModel],
        cache: FrameCache,
        budget: BudgetGovernor,
        guidance: GuidanceEngine,
        events: Optional[EventBus] = None,
        hasher: Optional[PerceptualHasher] = None,
        error_detector: Optional[ErrorDetector] = None,
        automation: Optional[WorkflowAutomationDetector] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        telemetry: Optional[TelemetryTracker] = None,
        snapshot_path: Optional[Path] = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Application configuration
            source: Screenshot provider
            model: Vision model client; frames needing analysis are skipped without one
            cache: Analysis cache
            budget: Spend governor
            guidance: Guidance engine
            events: Bus receiving every pipeline event
            hasher: Perceptual hasher (8x8 average hash by default)
            error_detector: Known-error matcher
            automation: Workflow repetition detector
            clock: Time source
            scheduler: Runs the cache prune timer
            telemetry: Counter and timing sink
            snapshot_path: Cache snapshot file loaded on start and saved on stop
        """
        self.config = config
        self.source = source
        self.model = model
        self.cache = cache
        self.budget = budget
        self.guidance = guidance
        self.events = events or EventBus()
        self.hasher = hasher or PerceptualHasher()
        self.error_detector = error_detector or ErrorDetector()
        self.automation = automation
        self.clock = clock or SystemClock()
        self.telemetry = telemetry or TelemetryTracker()
        self.snapshot_path = snapshot_path
        self.metrics = PipelineMetrics()

        capture_cfg = config.capture
        self.change_detector = ChangeDetector(capture_cfg.change_threshold, capture_cfg.enable_diff_detection)
        self.capture_rate = capture_cfg.capture_rate
        self.max_width = capture_cfg.max_width
        self.max_height = capture_cfg.max_height
        self.jpeg_quality = capture_cfg.jpeg_quality
        self.budget_critical = False

        self._analysis_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

        self._prune_timer: Optional[RepeatingTimer] = None
        if scheduler is not None:
            self._prune_timer = RepeatingTimer(
                scheduler, lambda: self.config.cache.prune_interval_sec, self.cache.prune_expired, name="cache-prune"
            )

        self.events.on(Events.BUDGET_CRITICAL, self._on_budget_critical)
        self.events.on(Events.DAILY_RESET, self._on_daily_reset)

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Load the cache snapshot, arm timers and start the capture thread."""
        if self._running:
            logger.warning("Pipeline already running")
            return

        if self.config.features.caching and self.snapshot_path is not None:
            self.cache.load(self.snapshot_path)
        if self._prune_timer is not None:
            self._prune_timer.start()
        self.budget.start()
        if self.automation is not None:
            self.automation.start()

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run, name="capture-pipeline", daemon=True)
        self._thread.start()

        logger.info(f"Capture pipeline started at {self.capture_rate:.1f} FPS")
        self._emit(Events.STARTED, {"capture_rate": self.capture_rate})

    def stop(self, timeout: float = 10.0) -> None:
        """Stop capturing; an in-flight analysis finishes and is recorded."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Capture thread did not stop within timeout")
            self._thread = None
        self._running = False

        if self._prune_timer is not None:
            self._prune_timer.cancel()
        self.budget.stop()
        if self.automation is not None:
            self.automation.stop()
        if self.config.features.caching and self.snapshot_path is not None:
            self.cache.save(self.snapshot_path)

        logger.info("Capture pipeline stopped")
        self.telemetry.log_stats()
        self._emit(Events.STOPPED, self.stats())

    def _run(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Unexpected pipeline failure: {e}")
                self._report_error("pipeline", e)
            interval = 1.0 / max(self.capture_rate, 0.01)
            self._stop_event.wait(max(0.0, interval - (time.monotonic() - started)))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def tick(self) -> str:
        """Run one capture cycle.

        Returns:
            Outcome label (``analyzed``, ``cached``, ``unchanged``, ``skipped``, ...)
        """
        try:
            with self.telemetry.timed("capture"):
                frame = self.source.capture_frame()
        except Exception as e:
            logger.warning(f"Frame capture raised: {e}")
            self._report_error("capture", e)
            frame = None

        if frame is None:
            self.telemetry.increment("capture_failures")
            return NO_FRAME
        self.metrics.frames_captured += 1

        try:
            with self.telemetry.timed("hash"):
                image = decode_image(frame.image_bytes)
                fingerprint = self.hasher.fingerprint(image)
        except Exception as e:
            logger.error(f"Dropping undecodable frame: {e}")
            self._report_error("decode", e)
            return DECODE_ERROR

        changed, change_percent = self.change_detector.check(fingerprint)
        if not changed:
            self.metrics.frames_unchanged += 1
            logger.debug(f"Frame unchanged ({change_percent:.2f}%)")
            return UNCHANGED
        frame.change_percent = change_percent

        priority = assign_priority(frame)
        try:
            optimized = optimize_frame(image, self.max_width, self.max_height, self.jpeg_quality)
        except ValueError as e:
            self._report_error("decode", e)
            return DECODE_ERROR
        content_hash = hashlib.sha256(optimized).hexdigest()

        if self.config.features.caching:
            entry = self.cache.lookup(content_hash, fingerprint)
            if entry is not None:
                with self._state_lock:
                    self.budget.record_analysis(priority, was_cached=True)
                self.metrics.cache_hits += 1
                self._deliver(frame, entry.analysis, priority, cached=True, cost=0.0)
                return CACHED

        if self.model is None:
            logger.debug("No vision model configured; skipping analysis")
            self._skip(frame, priority, "no-model")
            return SKIPPED

        if not self.budget.should_process(priority):
            self._skip(frame, priority, "budget")
            return SKIPPED

        if not self._analysis_lock.acquire(blocking=False):
            logger.debug("Analysis already in flight; dropping frame")
            self._skip(frame, priority, "busy")
            return BUSY

        try:
            analysis = self._analyze(optimized, priority)
            if analysis is None:
                return MODEL_ERROR

            cost = self.budget.config.cost_per_analysis
            with self._state_lock:
                if self.config.features.caching:
                    self.cache.store(content_hash, fingerprint, analysis, cost)
                self.budget.record_analysis(priority, was_cached=False)
            self.metrics.analyses += 1
            self.metrics.total_cost += cost
        finally:
            self._analysis_lock.release()

        self._deliver(frame, analysis, priority, cached=False, cost=cost)
        return ANALYZED

    def _analyze(self, image_bytes: bytes, priority: Priority) -> Optional[Analysis]:
        parser_cfg = self.config.parser
        parser = StreamingAnalysisParser(
            events=self.events if self.config.features.streaming else None,
            clock=self.clock,
            partial_update_chars=parser_cfg.partial_update_chars,
            error_confidence=parser_cfg.error_confidence,
            incomplete_sentence_factor=parser_cfg.incomplete_sentence_factor,
        )

        try:
            with self.telemetry.timed("analysis"):
                tokens = self.model.stream_completion(image_bytes, get_prompt(priority), priority)
                return parser.process_stream(tokens)
        except Exception as e:
            logger.error(f"Model analysis failed: {e}")
            self._report_error("model", e)
            return None

    def _deliver(self, frame: Frame, analysis: Analysis, priority: Priority, cached: bool, cost: float) -> None:
        known_errors: List[str] = []
        if self.config.features.error_detection:
            for detected in self.error_detector.detect(analysis.raw_response_text):
                label = f"{detected.pattern.name}: {detected.matched_text}"
                if label not in analysis.errors and label not in known_errors:
                    known_errors.append(label)
        enriched = analysis
        if known_errors:
            enriched = analysis.model_copy(update={"errors": list(analysis.errors) + known_errors})

        if self.automation is not None and self.config.features.automation_detection:
            action = analysis.actions[0] if analysis.actions else "view"
            self.automation.record_step(action, analysis.application_name, frame.ts)

        with self._state_lock:
            guidance = self.guidance.process(enriched)

        self.metrics.insights += 1
        self._emit(Events.INSIGHT, {
            "analysis": enriched,
            "priority": priority,
            "cached": cached,
            "cost": cost,
            "known_errors": known_errors,
            "change_percent": frame.change_percent,
            "timestamp": frame.ts,
        })
        self._emit(Events.GUIDANCE, guidance)
        self._emit(Events.FRAME_PROCESSED, {
            "timestamp": frame.ts,
            "priority": priority,
            "cached": cached,
            "change_percent": frame.change_percent,
        })
        self._apply_adaptive_quality()

    def _skip(self, frame: Frame, priority: Priority, reason: str) -> None:
        self.metrics.frames_skipped += 1
        logger.debug(f"Skipped {priority} priority frame ({reason})")
        self._emit(Events.SKIPPED, {"reason": reason, "priority": priority, "timestamp": frame.ts})

    def _report_error(self, stage: str, error: Exception) -> None:
        self.metrics.errors += 1
        self.telemetry.increment(f"{stage}_errors")
        self._emit(Events.ERROR, {"stage": stage, "error": str(error), "timestamp": self.clock.time()})

    # ------------------------------------------------------------------
    # Adaptation
    # ------------------------------------------------------------------

    def _apply_adaptive_quality(self) -> None:
        if not self.budget.config.adaptive_quality:
            return
        settings = self.budget.get_adaptive_quality_settings()
        self.jpeg_quality = min(self.config.capture.jpeg_quality, settings.image_quality)
        self.max_width = min(self.config.capture.max_width, settings.max_width)
        self.max_height = min(self.config.capture.max_height, settings.max_height)
        self.change_detector.threshold_percent = max(self.config.capture.change_threshold, settings.diff_threshold)
        if not self.budget_critical:
            self.capture_rate = min(self.config.capture.capture_rate, settings.capture_rate)

    def _on_budget_critical(self, payload: Any) -> None:
        if not self.budget_critical:
            logger.warning(f"Budget critical; capture rate reduced to {self.config.capture.critical_capture_rate} FPS")
        self.budget_critical = True
        self.capture_rate = self.config.capture.critical_capture_rate

    def _on_daily_reset(self, payload: Any) -> None:
        self.budget_critical = False
        self.capture_rate = self.config.capture.capture_rate
        self.jpeg_quality = self.config.capture.jpeg_quality
        self.max_width = self.config.capture.max_width
        self.max_height = self.config.capture.max_height
        self.change_detector.threshold_percent = self.config.capture.change_threshold
        logger.info(f"New budget day; capture rate restored to {self.capture_rate} FPS")

    def apply_settings(self, store: SettingsStore) -> None:
        """Read host settings (capture rate, daily budget, feature toggles)."""
        capture_rate = store.get("capture_rate")
        if capture_rate is not None:
            self.config.capture.capture_rate = float(capture_rate)
            if not self.budget_critical:
                self.capture_rate = self.config.capture.capture_rate

        daily_budget = store.get("daily_budget")
        if daily_budget is not None and float(daily_budget) != self.budget.config.daily_budget:
            self.budget.update_config(daily_budget=float(daily_budget))

        features = self.config.features
        features.caching = bool(store.get("enable_caching", features.caching))
        features.streaming = bool(store.get("enable_streaming", features.streaming))
        features.error_detection = bool(store.get("enable_error_detection", features.error_detection))
        features.automation_detection = bool(
            store.get("enable_automation_detection", features.automation_detection)
        )
        logger.info(f"Applied settings: rate={self.capture_rate} FPS, budget={self.budget.config.daily_budget}, "
                    f"features={features.model_dump()}")

    def stats(self) -> Dict[str, Any]:
        """Snapshot of running state and counters."""
        return {
            "running": self._running,
            "capture_rate": self.capture_rate,
            "budget_critical": self.budget_critical,
            "metrics": self.metrics.to_dict(),
            "cache": self.cache.stats().to_dict(),
            "cache_hit_rate": self.cache.hit_rate(),
            "today": self.budget.today_usage().to_dict(),
            "budget_percentage": self.budget.budget_percentage(),
            "telemetry": self.telemetry.get_stats(),
        }

    def _emit(self, event: str, payload: Any) -> None:
        self.events.emit(event, payload)
