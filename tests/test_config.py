"""
Unit Tests for watcher configuration loading.
"""

import pytest
from pydantic import ValidationError

from watcher.config import (
    AnalyzerThresholds,
    ComplianceSettings,
    WatcherSettings,
    load_settings,
)


class TestDefaults:
    """Defaults match the documented thresholds."""

    def test_analyzer_defaults(self):
        thresholds = AnalyzerThresholds()
        assert thresholds.stuck_timeout_seconds == 240
        assert thresholds.agent_silence_timeout_seconds == 50
        assert thresholds.agent_abandoned_timeout_seconds == 90
        assert thresholds.abrupt_stop_timeout_seconds == 150
        assert thresholds.loop_threshold == 3
        assert thresholds.expected_milestones["build"] == 4

    def test_paths_under_oss_dir(self, temp_dir):
        settings = WatcherSettings(oss_dir=temp_dir)
        assert settings.log_file == temp_dir / "workflow.log"
        assert settings.queue_file == temp_dir / "queue.json"
        assert settings.queue_archive_file == temp_dir / "queue-archive.json"
        assert settings.state_file == temp_dir / "workflow-state.json"
        assert settings.compliance_state_file == temp_dir / "iron-law-state.json"

    def test_field_bounds(self):
        with pytest.raises(ValidationError):
            AnalyzerThresholds(stuck_timeout_seconds=0)
        with pytest.raises(ValidationError):
            ComplianceSettings(mode="sometimes")


class TestLoadSettings:
    """YAML loading with fallbacks."""

    def test_missing_file_uses_defaults(self, temp_dir):
        settings = load_settings(temp_dir / "nope.yaml", oss_dir=temp_dir)
        assert settings.oss_dir == temp_dir
        assert settings.queue.max_size == 50

    def test_yaml_overrides(self, temp_dir):
        config = temp_dir / "watcher.yaml"
        config.write_text(
            "analyzer:\n"
            "  stuck_timeout_seconds: 120\n"
            "queue:\n"
            "  max_size: 10\n"
            "compliance:\n"
            "  mode: manual\n"
            "  protected_branches: [main, release]\n"
        )
        settings = load_settings(config, oss_dir=temp_dir)
        assert settings.analyzer.stuck_timeout_seconds == 120
        assert settings.analyzer.loop_threshold == 3
        assert settings.queue.max_size == 10
        assert settings.compliance.mode == "manual"
        assert settings.compliance.protected_branches == ["main", "release"]

    def test_default_location_in_oss_dir(self, temp_dir):
        (temp_dir / "watcher.yaml").write_text("supervisor:\n  poll_interval_seconds: 2.5\n")
        settings = load_settings(oss_dir=temp_dir)
        assert settings.supervisor.poll_interval_seconds == 2.5

    def test_invalid_values_fall_back(self, temp_dir):
        config = temp_dir / "watcher.yaml"
        config.write_text("queue:\n  max_size: -5\n")
        settings = load_settings(config, oss_dir=temp_dir)
        assert settings.queue.max_size == 50
        assert settings.oss_dir == temp_dir

    def test_malformed_yaml_falls_back(self, temp_dir):
        config = temp_dir / "watcher.yaml"
        config.write_text("queue: [unclosed\n")
        settings = load_settings(config, oss_dir=temp_dir)
        assert settings.queue.max_size == 50

    def test_non_mapping_falls_back(self, temp_dir):
        config = temp_dir / "watcher.yaml"
        config.write_text("- just\n- a list\n")
        settings = load_settings(config, oss_dir=temp_dir)
        assert settings.analyzer.loop_threshold == 3

    def test_empty_file(self, temp_dir):
        config = temp_dir / "watcher.yaml"
        config.write_text("")
        assert load_settings(config, oss_dir=temp_dir).queue.max_size == 50
