"""Bootstrap and component initialization."""

import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from loguru import logger

from .automation import WorkflowAutomationDetector
from .budget import BudgetGovernor
from .cache import FrameCache
from .capture import FrameSource, ScreenCapture
from .configs import AppConfig, SettingsStore, YamlSettingsStore, create_default_config, load_config
from .datastore import UsageStore
from .error_patterns import ErrorDetector
from .events import EventBus
from .guidance import GuidanceEngine
from .hashing import PerceptualHasher
from .llm_client import VisionClient, VisionModel
from .loggingx import TelemetryTracker
from .pipeline import CapturePipeline
from .timing import Clock, Scheduler, SystemClock, ThreadScheduler

DEFAULT_CONFIG_PATH = "./config/screenpilot.yaml"


def resolve_config(config_path: Optional[str | Path] = None) -> AppConfig:
    """Load config from a path, the SCREENPILOT_CONFIG env var, or defaults."""
    if config_path:
        return load_config(config_path)

    config_path_str = os.getenv("SCREENPILOT_CONFIG", DEFAULT_CONFIG_PATH)
    if Path(config_path_str).exists():
        return load_config(config_path_str)

    logger.warning(f"Config not found at {config_path_str}, using defaults")
    return create_default_config()


def bootstrap_from_config(config_path: Optional[str | Path] = None, **overrides: Any) -> Dict[str, Any]:
    """Load config from file and wire core components.

    Args:
        config_path: Path to config file, or None to use default
        **overrides: Passed through to ``bootstrap_from_config_object``

    Returns:
        Dictionary of initialized components
    """
    return bootstrap_from_config_object(resolve_config(config_path), **overrides)


def bootstrap_from_config_object(
    config: AppConfig,
    source: Optional[FrameSource] = None,
    model: Optional[VisionModel] = None,
    clock: Optional[Clock] = None,
    scheduler: Optional[Scheduler] = None,
    events: Optional[EventBus] = None,
    settings: Optional[SettingsStore] = None,
    cursor_provider: Optional[Callable[[], tuple[int, int]]] = None,
    require_model: bool = True,
) -> Dict[str, Any]:
    """Wire core components based on an AppConfig object.

    Returns:
        Dictionary of initialized components with keys:
        - config, events, clock, scheduler, telemetry
        - settings: SettingsStore applied to the pipeline and re-applied on change
        - usage_store: UsageStore
        - budget: BudgetGovernor
        - cache: FrameCache
        - guidance: GuidanceEngine
        - error_detector: ErrorDetector
        - automation: WorkflowAutomationDetector
        - model: vision client (None when not required and unavailable)
        - source: frame source
        - pipeline: CapturePipeline

    Raises:
        ValueError: If the model is required and its API key is missing
    """
    logger.info("Bootstrapping ScreenPilot components...")

    clock = clock or SystemClock()
    scheduler = scheduler or ThreadScheduler()
    events = events or EventBus()
    telemetry = TelemetryTracker()

    data_dir = config.data_dir
    data_dir.mkdir(parents=True, exist_ok=True)

    logger.info("Initializing usage store...")
    usage_store = UsageStore(data_dir / config.data.usage_db, history_days=config.budget.history_days)

    budget = BudgetGovernor(config.budget, store=usage_store, clock=clock, scheduler=scheduler, events=events)
    cache = FrameCache(
        max_entries=config.cache.max_entries,
        similarity_threshold=config.cache.similarity_threshold,
        ttl_sec=config.cache.ttl_sec,
        clock=clock,
        events=events,
    )
    guidance = GuidanceEngine(config.guidance, clock=clock)
    error_detector = ErrorDetector(clock=clock)
    automation = WorkflowAutomationDetector(events=events, clock=clock, scheduler=scheduler)

    if model is None:
        try:
            logger.info(f"Initializing vision model ({config.llm.provider}/{config.llm.model})...")
            model = VisionClient(config.llm, api_key=config.llm_api_key)
        except ValueError as e:
            if require_model:
                raise
            logger.warning(f"Vision model not available: {e}")

    if source is None:
        logger.info(f"Initializing screen capture (monitor {config.capture.monitor})...")
        source = ScreenCapture(
            monitor=config.capture.monitor,
            focus_areas=list(config.capture.focus_areas),
            cursor_region_size=config.capture.cursor_region_size,
            cursor_region_priority=config.capture.cursor_region_priority,
            cursor_provider=cursor_provider,
        )

    pipeline = CapturePipeline(
        config=config,
        source=source,
        model=model,
        cache=cache,
        budget=budget,
        guidance=guidance,
        events=events,
        hasher=PerceptualHasher(),
        error_detector=error_detector,
        automation=automation,
        clock=clock,
        scheduler=scheduler,
        telemetry=telemetry,
        snapshot_path=data_dir / config.cache.snapshot_file,
    )

    if settings is None:
        settings = YamlSettingsStore(data_dir / config.data.settings_file)
    pipeline.apply_settings(settings)
    settings.on_change(lambda key, value: pipeline.apply_settings(settings))

    components: Dict[str, Any] = {
        "config": config,
        "events": events,
        "clock": clock,
        "scheduler": scheduler,
        "telemetry": telemetry,
        "settings": settings,
        "usage_store": usage_store,
        "budget": budget,
        "cache": cache,
        "guidance": guidance,
        "error_detector": error_detector,
        "automation": automation,
        "model": model,
        "source": source,
        "pipeline": pipeline,
    }

    logger.info(f"Bootstrapped {len(components)} components")
    return components
