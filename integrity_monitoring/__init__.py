"""
High-level package exports for the integrity monitoring service.
"""

from .biometrics import BiometricAnalyzer, FaceBackend, load_default_analyzer
from .config import MonitoringOptions
from .events import EventType, IntegrityEvent
from .evidence import EvidenceStore
from .fanout import FanoutHub, SocketIOTransport
from .lifecycle import SessionLifecycleController, SessionState
from .log_store import build_log_store
from .monitor import MonitorRegistry
from .normalizer import EventNormalizer
from .risk import RiskEngine, RiskLevel, RiskPolicy
from .scoring import AnswerSheet, ExamCatalog

__all__ = [
    "AnswerSheet",
    "BiometricAnalyzer",
    "EventNormalizer",
    "EventType",
    "EvidenceStore",
    "ExamCatalog",
    "FaceBackend",
    "FanoutHub",
    "IntegrityEvent",
    "MonitorRegistry",
    "MonitoringOptions",
    "RiskEngine",
    "RiskLevel",
    "RiskPolicy",
    "SessionLifecycleController",
    "SessionState",
    "SocketIOTransport",
    "build_log_store",
    "load_default_analyzer",
]
