"""
Centralised configuration helpers for the integrity monitoring service.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


BASE_DIR = Path(__file__).resolve().parent.parent

# Default artefact locations constructed relative to the repository root.
DEFAULT_EVIDENCE_DIR = BASE_DIR / "var" / "evidence"
DEFAULT_INSIGHTFACE_MODEL = "buffalo_l"

ENV_PREFIX = "INTEGRITY_"

# Biometric classification thresholds.
DEFAULT_BIOMETRIC_THRESHOLDS: Dict[str, float] = {
    "detection_score": 0.6,
    "match": 0.6,
    "ear": 0.2,
    "gaze": 0.2,
}


def resolve_path(path_like: Any) -> Path:
    """
    Convert a configuration value to a pathlib.Path, expanding user and vars.
    """
    if isinstance(path_like, Path):
        return path_like
    return Path(os.path.expandvars(str(path_like))).expanduser().resolve()


@dataclass
class MonitoringOptions:
    """
    Tunables shared by the server pipeline and the capture client.
    """

    # Capture cadence.
    frame_interval_ms: int = 5000
    local_check_interval_ms: int = 500

    # Biometrics.
    detection_score_threshold: float = DEFAULT_BIOMETRIC_THRESHOLDS["detection_score"]
    match_threshold: float = DEFAULT_BIOMETRIC_THRESHOLDS["match"]
    ear_threshold: float = DEFAULT_BIOMETRIC_THRESHOLDS["ear"]
    gaze_threshold: float = DEFAULT_BIOMETRIC_THRESHOLDS["gaze"]
    insightface_model: str = DEFAULT_INSIGHTFACE_MODEL

    # Risk escalation.
    recovery_window_events: int = 3
    focus_loss_critical_count: int = 3
    risk_window_events: int = 10

    # Queues and retries.
    observer_queue_size: int = 100
    frame_queue_size: int = 4
    analysis_retry_attempts: int = 3
    analysis_retry_base_delay: float = 0.5
    capture_retry_base_delay: float = 1.0
    capture_retry_max_delay: float = 30.0

    # Storage. A missing log_dir keeps the event log in memory.
    log_dir: Optional[Path] = None
    evidence_dir: Path = field(
        default_factory=lambda: resolve_path(DEFAULT_EVIDENCE_DIR)
    )
    exam_catalog_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.log_dir is not None:
            self.log_dir = resolve_path(self.log_dir)
        self.evidence_dir = resolve_path(self.evidence_dir)
        if self.exam_catalog_path is not None:
            self.exam_catalog_path = resolve_path(self.exam_catalog_path)
        if self.recovery_window_events < 1:
            raise ValueError("recovery_window_events must be at least 1")
        if self.focus_loss_critical_count < 1:
            raise ValueError("focus_loss_critical_count must be at least 1")
        if self.observer_queue_size < 1 or self.frame_queue_size < 1:
            raise ValueError("queue sizes must be positive")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "MonitoringOptions":
        """
        Build options from ``INTEGRITY_<FIELD>`` environment variables.
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for option in fields(cls):
            raw = environ.get(ENV_PREFIX + option.name.upper())
            if raw is None or raw == "":
                continue
            overrides[option.name] = _coerce(option.name, raw)
        return cls(**overrides)


_PATH_FIELDS = {"log_dir", "evidence_dir", "exam_catalog_path"}


def _coerce(name: str, raw: str) -> Any:
    if name in _PATH_FIELDS:
        return resolve_path(raw)
    default = getattr(MonitoringOptions, name, None)
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
