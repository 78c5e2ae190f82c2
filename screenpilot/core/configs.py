"""Configuration management for ScreenPilot."""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class CaptureConfig(BaseModel):
    """Screen capture and frame preparation configuration."""
    model_config = {"validate_assignment": True}

    capture_rate: float = Field(default=5.0, gt=0.0, le=60.0, description="Target frames per second for capture")
    critical_capture_rate: float = Field(default=1.0, gt=0.0, le=60.0, description="Capture rate while budget is critical")
    max_width: int = Field(default=1024, ge=64, le=10000)
    max_height: int = Field(default=1024, ge=64, le=10000)
    jpeg_quality: int = Field(default=85, ge=1, le=100)
    change_threshold: float = Field(default=0.5, ge=0.0, le=100.0, description="Minimum percent of changed fingerprint bits")
    enable_diff_detection: bool = True
    focus_areas: List[Literal["active_window", "cursor_region", "change_area", "full_screen"]] = Field(
        default_factory=lambda: ["active_window", "cursor_region"]
    )
    cursor_region_size: int = Field(default=400, ge=16, le=4000)
    cursor_region_priority: int = Field(default=9, ge=1, le=10, description="Above 8 a cursor region makes the frame high priority")
    monitor: int = Field(default=1, ge=0, description="mss monitor index (0 = all monitors)")


class CacheConfig(BaseModel):
    """Analysis cache configuration."""
    max_entries: int = Field(default=1000, ge=1, le=1_000_000)
    similarity_threshold: int = Field(default=5, ge=0, le=64, description="Max Hamming distance for a near-duplicate")
    ttl_sec: float = Field(default=3600.0, gt=0.0)
    prune_interval_sec: float = Field(default=300.0, gt=0.0)
    snapshot_file: str = "cache.json"


class PriorityThresholds(BaseModel):
    """Percent of daily budget that must remain before a priority is analyzed."""
    high: float = Field(default=20.0, ge=0.0, le=100.0)
    medium: float = Field(default=50.0, ge=0.0, le=100.0)
    low: float = Field(default=80.0, ge=0.0, le=100.0)


class BudgetConfig(BaseModel):
    """Daily spend configuration."""
    model_config = {"validate_assignment": True}

    daily_budget: float = Field(default=10.0, gt=0.0, description="Daily budget in currency units")
    cost_per_analysis: float = Field(default=0.001, ge=0.0)
    adaptive_quality: bool = True
    priority_thresholds: PriorityThresholds = Field(default_factory=PriorityThresholds)
    critical_percent: float = Field(default=10.0, ge=0.0, le=100.0)
    low_percent: float = Field(default=25.0, ge=0.0, le=100.0)
    critical_alert_every: int = Field(default=10, ge=1)
    low_alert_every: int = Field(default=20, ge=1)
    history_days: int = Field(default=90, ge=1)

    @model_validator(mode="after")
    def check_alert_levels(self) -> "BudgetConfig":
        """Critical level must not sit above the low level."""
        if self.critical_percent > self.low_percent:
            raise ValueError("critical_percent must be <= low_percent")
        return self


class ParserConfig(BaseModel):
    """Streaming response parser configuration."""
    partial_update_chars: int = Field(default=20, ge=1)
    error_confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    incomplete_sentence_factor: float = Field(default=0.7, ge=0.0, le=1.0)


class GuidanceConfig(BaseModel):
    """Guidance engine configuration."""
    stuck_threshold_sec: float = Field(default=30.0, gt=0.0)
    stuck_repeat_count: int = Field(default=5, ge=2)
    recent_insights: int = Field(default=10, ge=1)
    repetition_threshold: int = Field(default=3, ge=2)
    max_suggestions: int = Field(default=3, ge=1)
    history_size: int = Field(default=100, ge=1)
    default_confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class FeatureToggles(BaseModel):
    """Optional pipeline stages."""
    streaming: bool = True
    caching: bool = True
    error_detection: bool = True
    automation_detection: bool = True


class LLMConfig(BaseModel):
    """Vision model client configuration."""
    provider: Literal["gemini"] = "gemini"
    model: str = "gemini-1.5-flash-latest"
    api_key_env: str = "GEMINI_API_KEY"
    max_tokens_high: int = Field(default=300, ge=16, le=100000, description="Output tokens for high priority frames")
    max_tokens: int = Field(default=150, ge=16, le=100000, description="Output tokens for medium/low priority frames")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)


class DataConfig(BaseModel):
    """Data storage configuration."""
    base_dir: str = "~/.screenpilot"
    usage_db: str = "usage.sqlite3"
    settings_file: str = "settings.yaml"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[str] = None

    @field_validator("log_file")
    @classmethod
    def validate_log_file(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty strings as no log file."""
        if v is not None and not v.strip():
            return None
        return v


class AppConfig(BaseModel):
    """Main application configuration."""
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    parser: ParserConfig = Field(default_factory=ParserConfig)
    guidance: GuidanceConfig = Field(default_factory=GuidanceConfig)
    features: FeatureToggles = Field(default_factory=FeatureToggles)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def data_dir(self) -> Path:
        """Get expanded data directory path."""
        return Path(self.data.base_dir).expanduser()

    @property
    def llm_api_key(self) -> str:
        """Get LLM API key from environment."""
        key = os.getenv(self.llm.api_key_env)
        if not key:
            raise ValueError(f"LLM API key not found in environment variable: {self.llm.api_key_env}")
        return key


def load_config(config_path: str | Path) -> AppConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration YAML file

    Returns:
        Parsed configuration object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If YAML parsing or validation fails, with field-level errors
    """
    _load_dotenv()

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Create one with: python -m screenpilot init-config {config_path}"
        )

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML configuration file {config_path}: {e}")

    if config_data is None:
        raise ValueError(f"Configuration file {config_path} is empty")

    try:
        return AppConfig(**config_data)
    except Exception as e:
        error_msg = f"Configuration validation failed for {config_path}:\n"

        if hasattr(e, 'errors'):
            for err in e.errors():  # type: ignore[attr-defined]
                field_path = ' -> '.join(str(loc) for loc in err['loc'])
                error_msg += f"  - Field '{field_path}': {err['msg']}\n"
                if 'input' in err:
                    error_msg += f"    Got value: {err['input']}\n"
        else:
            error_msg += f"  {str(e)}\n"

        raise ValueError(error_msg) from e


def _load_dotenv() -> None:
    """Load environment variables from .env file if present."""
    try:
        from dotenv import load_dotenv
        load_dotenv(verbose=False)
    except ImportError:
        # python-dotenv not installed, skip
        pass


def create_default_config() -> AppConfig:
    """Create default configuration."""
    return AppConfig()


def save_config(config: AppConfig, config_path: str | Path) -> None:
    """Save configuration to YAML file.

    Args:
        config: Configuration object to save
        config_path: Path where to save the configuration
    """
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.model_dump()

    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config_dict, f, default_flow_style=False, indent=2)


class SettingsStore(Protocol):
    """Persisted key/value settings owned by the host application."""
    def get(self, key: str, default: Any = None) -> Any: ...
    def set(self, key: str, value: Any) -> None: ...
    def on_change(self, callback: Callable[[str, Any], None]) -> None: ...


class YamlSettingsStore:
    """Flat key/value settings persisted to a YAML file.

    Callbacks registered with ``on_change`` run after each ``set``.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._values: Dict[str, Any] = {}
        self._listeners: List[Callable[[str, Any], None]] = []
        if self.path.exists():
            with open(self.path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f)
            if loaded is not None and not isinstance(loaded, dict):
                raise ValueError(f"Settings file {self.path} must contain a mapping")
            self._values = loaded or {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self._values, f, default_flow_style=False)
        for callback in list(self._listeners):
            callback(key, value)

    def on_change(self, callback: Callable[[str, Any], None]) -> None:
        self._listeners.append(callback)
