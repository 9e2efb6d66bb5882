"""
Shared fixtures: a deterministic face backend, a recording transport and a
fully wired service stack that runs without model downloads.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

import numpy as np
import pytest

from integrity_monitoring.biometrics import BiometricAnalyzer, FaceBackend, RawFace
from integrity_monitoring.config import MonitoringOptions
from integrity_monitoring.evidence import EvidenceStore
from integrity_monitoring.fanout import FanoutHub, Transport
from integrity_monitoring.lifecycle import SessionLifecycleController
from integrity_monitoring.log_store import InMemoryEventLog
from integrity_monitoring.monitor import MonitorRegistry
from integrity_monitoring.normalizer import EventNormalizer
from integrity_monitoring.risk import RiskEngine, RiskPolicy
from integrity_monitoring.scoring import AnswerSheet, ExamCatalog

DESCRIPTOR_SIZE = 8


def identity(index: int) -> np.ndarray:
    vector = np.zeros(DESCRIPTOR_SIZE, dtype=np.float32)
    vector[index] = 1.0
    return vector


def eye_landmarks(width: int, height: int, openness: float = 4.0) -> np.ndarray:
    """68 points with both eyes level and centred in the frame."""
    points = np.zeros((68, 2), dtype=np.float64)
    cy = height / 2.0
    for start, cx in ((36, width / 2.0 - 20), (42, width / 2.0 + 20)):
        points[start : start + 6] = [
            (cx - 10, cy),
            (cx - 4, cy - openness),
            (cx + 4, cy - openness),
            (cx + 10, cy),
            (cx + 4, cy + openness),
            (cx - 4, cy + openness),
        ]
    return points


class FakeFaceBackend(FaceBackend):
    """
    Decides what it "sees" from the frame's first pixel, in bands wide
    enough to survive JPEG round trips.
    """

    NO_FACE = 20
    SUBJECT = 60
    IMPOSTOR = 100
    TWO_FACES = 140
    EYES_CLOSED = 180
    NO_DESCRIPTOR = 230

    def __init__(self) -> None:
        self.is_ready = True
        self.calls = 0

    @property
    def ready(self) -> bool:
        return self.is_ready

    def detect(self, image_bgr: np.ndarray) -> List[RawFace]:
        self.calls += 1
        height, width = image_bgr.shape[:2]
        band = int(image_bgr[0, 0, 0]) // 40
        box = (width * 0.25, height * 0.2, width * 0.75, height * 0.8)
        if band == 0:
            return [RawFace(box, 0.3, eye_landmarks(width, height), identity(0))]
        if band == 1:
            return [RawFace(box, 0.95, eye_landmarks(width, height), identity(0))]
        if band == 2:
            return [RawFace(box, 0.93, eye_landmarks(width, height), identity(1))]
        if band == 3:
            return [
                RawFace(box, 0.8, eye_landmarks(width, height), identity(2)),
                RawFace(box, 0.9, eye_landmarks(width, height), identity(0)),
            ]
        if band == 4:
            return [
                RawFace(box, 0.9, eye_landmarks(width, height, openness=0.5), identity(0))
            ]
        return [RawFace(box, 0.9, eye_landmarks(width, height), None)]


class RecordingTransport(Transport):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def send(self, observer_id: str, kind: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append((observer_id, kind, payload))

    def kinds(self, observer_id: str) -> List[str]:
        return [kind for oid, kind, _ in self.sent if oid == observer_id]


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_frame(value: int, shape: Tuple[int, int, int] = (120, 160, 3)) -> np.ndarray:
    return np.full(shape, value, dtype=np.uint8)


@pytest.fixture
def frame():
    return make_frame


@pytest.fixture
def options(tmp_path):
    return MonitoringOptions(
        evidence_dir=tmp_path / "evidence",
        analysis_retry_attempts=2,
        analysis_retry_base_delay=0.0,
    )


@pytest.fixture
def backend():
    return FakeFaceBackend()


@pytest.fixture
def analyzer(backend):
    return BiometricAnalyzer(backend)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryEventLog()


@pytest.fixture
def risk_engine(options):
    return RiskEngine(RiskPolicy.from_options(options))


@pytest.fixture
def hub(transport):
    return FanoutHub(transport, exam_lookup=lambda session_id: "exam-1", queue_size=100)


@pytest.fixture
def normalizer(store, risk_engine, hub, clock):
    return EventNormalizer(store, risk_engine, hub, clock=clock)


@pytest.fixture
def stack(options, analyzer, store, risk_engine, transport, clock):
    """
    Lifecycle controller with every collaborator, monitors not auto-started
    so tests drive frames synchronously.
    """
    controller = None
    hub = FanoutHub(
        transport,
        exam_lookup=lambda session_id: controller.exam_id_for(session_id),
        queue_size=options.observer_queue_size,
    )
    normalizer = EventNormalizer(
        store,
        risk_engine,
        hub,
        clock=clock,
        on_degraded=lambda sid, reason: controller.mark_degraded(sid, reason),
    )
    evidence = EvidenceStore(options.evidence_dir)
    monitors = MonitorRegistry(analyzer, normalizer, evidence, options, autostart=False)
    controller = SessionLifecycleController(
        ExamCatalog.load(),
        AnswerSheet(),
        normalizer,
        hub,
        monitors,
        analyzer,
        evidence,
        clock=clock,
    )
    return controller
