"""Tests for the command line entry point and component bootstrap."""

import json

import pytest

from screenpilot.__main__ import main
from screenpilot.core.bootstrap import bootstrap_from_config_object
from screenpilot.core.configs import AppConfig, DataConfig, YamlSettingsStore, load_config, save_config

from conftest import ManualClock, ManualScheduler


@pytest.fixture
def config(tmp_path):
    return AppConfig(data=DataConfig(base_dir=str(tmp_path / "data")))


class NullSource:
    def capture_frame(self, region=None):
        return None


def test_init_config_writes_defaults(tmp_path):
    path = tmp_path / "config" / "screenpilot.yaml"

    assert main(["init-config", str(path)]) == 0
    assert load_config(path).budget.daily_budget == 10.0

    assert main(["init-config", str(path)]) == 1
    assert main(["init-config", str(path), "--force"]) == 0


def test_report_prints_json(tmp_path, config, capsys):
    path = tmp_path / "screenpilot.yaml"
    save_config(config, path)

    assert main(["report", "--config", str(path), "--days", "7"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["period"] == "7 days"
    assert report["total_analyses"] == 0
    assert report["history"] == []


def test_bootstrap_without_model(config, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    clock = ManualClock()

    components = bootstrap_from_config_object(
        config, source=NullSource(), clock=clock, scheduler=ManualScheduler(clock), require_model=False
    )
    try:
        assert components["model"] is None
        pipeline = components["pipeline"]
        assert pipeline.tick() == "no-frame"
        assert components["budget"].store is components["usage_store"]
        assert (config.data_dir / config.data.usage_db).exists()
    finally:
        components["usage_store"].close()


def test_bootstrap_requires_model_by_default(config, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    clock = ManualClock()

    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        bootstrap_from_config_object(config, source=NullSource(), clock=clock, scheduler=ManualScheduler(clock))


def test_bootstrap_applies_settings_and_follows_changes(config, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    config.data_dir.mkdir(parents=True, exist_ok=True)
    seeded = YamlSettingsStore(config.data_dir / config.data.settings_file)
    seeded.set("daily_budget", 3)
    seeded.set("enable_streaming", False)
    clock = ManualClock()

    components = bootstrap_from_config_object(
        config, source=NullSource(), clock=clock, scheduler=ManualScheduler(clock), require_model=False
    )
    try:
        pipeline = components["pipeline"]
        settings = components["settings"]
        assert components["budget"].config.daily_budget == 3.0
        assert config.features.streaming is False

        settings.set("capture_rate", 1.5)
        assert pipeline.capture_rate == 1.5
        settings.set("enable_caching", False)
        assert config.features.caching is False
    finally:
        components["usage_store"].close()
