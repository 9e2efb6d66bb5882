"""
Tests for environment-driven configuration.
"""

from pathlib import Path

import pytest

from integrity_monitoring.config import MonitoringOptions


def test_defaults_keep_log_in_memory():
    options = MonitoringOptions()
    assert options.log_dir is None
    assert options.frame_interval_ms == 5000
    assert options.match_threshold == pytest.approx(0.6)


def test_from_env_coerces_types(tmp_path):
    options = MonitoringOptions.from_env(
        {
            "INTEGRITY_FRAME_INTERVAL_MS": "250",
            "INTEGRITY_MATCH_THRESHOLD": "0.75",
            "INTEGRITY_LOG_DIR": str(tmp_path / "log"),
            "INTEGRITY_INSIGHTFACE_MODEL": "buffalo_s",
            "INTEGRITY_GAZE_THRESHOLD": "",
            "UNRELATED": "x",
        }
    )
    assert options.frame_interval_ms == 250
    assert options.match_threshold == pytest.approx(0.75)
    assert options.log_dir == (tmp_path / "log").resolve()
    assert isinstance(options.log_dir, Path)
    assert options.insightface_model == "buffalo_s"
    assert options.gaze_threshold == pytest.approx(0.2)


@pytest.mark.parametrize(
    "overrides",
    [
        {"recovery_window_events": 0},
        {"focus_loss_critical_count": 0},
        {"observer_queue_size": 0},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValueError):
        MonitoringOptions(**overrides)
