"""Test configuration validation."""

import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from screenpilot.core.configs import (
    AppConfig,
    BudgetConfig,
    CaptureConfig,
    YamlSettingsStore,
    create_default_config,
    load_config,
    save_config,
)


def test_valid_config():
    """Test that valid config round-trips through YAML."""
    config = create_default_config()

    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        temp_path = Path(f.name)

    try:
        save_config(config, temp_path)
        loaded = load_config(temp_path)
        assert loaded.capture.capture_rate == 5.0
        assert loaded.cache.similarity_threshold == 5
        assert loaded.budget.priority_thresholds.medium == 50.0
        assert loaded.llm.model == "gemini-1.5-flash-latest"
    finally:
        temp_path.unlink()


def test_partial_yaml_uses_defaults(tmp_path):
    path = tmp_path / "screenpilot.yaml"
    path.write_text("budget:\n  daily_budget: 2.5\nfeatures:\n  caching: false\n")

    config = load_config(path)
    assert config.budget.daily_budget == 2.5
    assert config.features.caching is False
    assert config.capture.jpeg_quality == 85


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError, match="init-config"):
        load_config(tmp_path / "absent.yaml")


def test_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    with pytest.raises(ValueError, match="is empty"):
        load_config(path)


def test_validation_errors_name_the_field(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("capture:\n  jpeg_quality: 500\n")

    with pytest.raises(ValueError) as excinfo:
        load_config(path)
    message = str(excinfo.value)
    assert "capture -> jpeg_quality" in message
    assert "Got value: 500" in message


def test_malformed_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("capture: [unclosed\n")
    with pytest.raises(ValueError, match="Failed to parse YAML"):
        load_config(path)


def test_threshold_validation():
    """Test range validation on budget and capture settings."""
    with pytest.raises(ValidationError):
        BudgetConfig(daily_budget=0)
    with pytest.raises(ValidationError):
        BudgetConfig(critical_percent=30, low_percent=25)

    capture = CaptureConfig()
    capture.capture_rate = 2.0
    assert capture.capture_rate == 2.0
    with pytest.raises(ValidationError):
        capture.capture_rate = 0


def test_api_key_from_environment(monkeypatch):
    config = AppConfig()
    monkeypatch.setenv("GEMINI_API_KEY", "secret")
    assert config.llm_api_key == "secret"

    monkeypatch.delenv("GEMINI_API_KEY")
    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        _ = config.llm_api_key


def test_data_dir_expands_home():
    config = AppConfig()
    assert "~" not in str(config.data_dir)


def test_yaml_settings_store(tmp_path):
    path = tmp_path / "nested" / "settings.yaml"
    store = YamlSettingsStore(path)
    assert store.get("capture_rate", 3) == 3

    store.set("capture_rate", 2)
    store.set("enable_streaming", False)

    reloaded = YamlSettingsStore(path)
    assert reloaded.get("capture_rate") == 2
    assert reloaded.get("enable_streaming") is False


def test_yaml_settings_store_rejects_non_mapping(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        YamlSettingsStore(path)


def test_yaml_settings_store_notifies_on_set(tmp_path):
    store = YamlSettingsStore(tmp_path / "settings.yaml")
    changes = []
    store.on_change(lambda key, value: changes.append((key, value)))

    store.set("daily_budget", 5)
    assert changes == [("daily_budget", 5)]
