"""
Session lifecycle: registered -> active -> completed | abandoned.

The controller is the only component allowed to move a session into a
terminal state. Terminal states are final.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np

from .biometrics import BiometricAnalyzer
from .errors import AlreadyActive, InvalidState, UnknownSession
from .evidence import EvidenceStore
from .fanout import SESSION_ENDED, SESSION_STARTED, FanoutHub, FanoutMessage
from .monitor import MonitorRegistry
from .normalizer import EventNormalizer
from .risk import RiskLevel, RiskState
from .scoring import AnswerSheet, ExamCatalog, ScoreResult, score_answers
from .utils import ImageLike

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    REGISTERED = "registered"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABANDONED)


@dataclass
class Session:
    id: str
    exam_id: str
    subject_name: str
    subject_contact: Optional[str] = None
    reference_handle: Optional[str] = None
    state: SessionState = SessionState.REGISTERED
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    score: Optional[int] = None
    total_points: Optional[int] = None
    percentage: Optional[int] = None
    final_risk: Optional[RiskState] = None
    degraded: bool = False
    degraded_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "examId": self.exam_id,
            "subjectName": self.subject_name,
            "subjectContact": self.subject_contact,
            "referenceHandle": self.reference_handle,
            "state": self.state.value,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "score": self.score,
            "totalPoints": self.total_points,
            "percentage": self.percentage,
            "finalRisk": self.final_risk.to_dict() if self.final_risk else None,
            "degraded": self.degraded,
            "degradedReason": self.degraded_reason,
        }


@dataclass(frozen=True)
class CompletionResult:
    session_id: str
    state: SessionState
    score: Optional[int]
    total_points: Optional[int]
    percentage: Optional[int]
    final_risk: Optional[RiskState]
    ended_at: Optional[float]

    @classmethod
    def of(cls, session: Session) -> "CompletionResult":
        return cls(
            session_id=session.id,
            state=session.state,
            score=session.score,
            total_points=session.total_points,
            percentage=session.percentage,
            final_risk=session.final_risk,
            ended_at=session.ended_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "score": self.score,
            "totalPoints": self.total_points,
            "percentage": self.percentage,
            "level": self.final_risk.level.value if self.final_risk else None,
            "warningCount": self.final_risk.warning_count if self.final_risk else None,
            "endedAt": self.ended_at,
        }


class SessionLifecycleController:
    def __init__(
        self,
        catalog: ExamCatalog,
        answers: AnswerSheet,
        normalizer: EventNormalizer,
        hub: FanoutHub,
        monitors: MonitorRegistry,
        analyzer: BiometricAnalyzer,
        evidence: EvidenceStore,
        state_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.catalog = catalog
        self.answers = answers
        self.normalizer = normalizer
        self.hub = hub
        self.monitors = monitors
        self.analyzer = analyzer
        self.evidence = evidence
        self.state_path = Path(state_path) if state_path is not None else None
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._references: Dict[str, np.ndarray] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
        self._save_lock = threading.Lock()

    # Lookups -------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        with self._guard:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def exam_id_for(self, session_id: str) -> Optional[str]:
        with self._guard:
            session = self._sessions.get(session_id)
        return session.exam_id if session is not None else None

    def sessions_for_exam(self, exam_id: str) -> List[Session]:
        with self._guard:
            sessions = [s for s in self._sessions.values() if s.exam_id == exam_id]
        return sorted(sessions, key=lambda s: s.created_at)

    def _lock(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            return lock

    def current_risk(self, session: Session) -> RiskState:
        live = self.normalizer.risk.snapshot(session.id)
        if live is not None:
            return live
        return session.final_risk or RiskState.initial()

    # Transitions ---------------------------------------------------------

    def register(
        self,
        exam_id: str,
        subject_name: str,
        subject_contact: Optional[str] = None,
    ) -> Session:
        if self.catalog.get(exam_id) is None:
            raise LookupError(f"Unknown exam '{exam_id}'")
        if not subject_name or not subject_name.strip():
            raise ValueError("Subject name must be provided")
        session = Session(
            id=uuid.uuid4().hex,
            exam_id=exam_id,
            subject_name=subject_name.strip(),
            subject_contact=subject_contact,
            created_at=self.clock(),
        )
        with self._guard:
            self._sessions[session.id] = session
        self._save()
        LOGGER.info("Session %s registered for exam %s", session.id, exam_id)
        return session

    def attach_reference(self, session_id: str, frame: ImageLike) -> Session:
        """
        Validate and store the subject's reference frame.

        Raises:
            InvalidState: Session is no longer ``registered``.
            NoFaceInReference / ValueError: Frame is unusable as reference.
            AnalysisUnavailable: Models are not loaded yet.
        """
        with self._lock(session_id):
            session = self.get(session_id)
            if session.state is not SessionState.REGISTERED:
                raise InvalidState(
                    f"Reference can only be set while registered (is {session.state.value})"
                )
            descriptor = self.analyzer.describe_reference(frame)
            session.reference_handle = self.evidence.put(frame)
            with self._guard:
                self._references[session_id] = descriptor
        self._save()
        LOGGER.info("Reference biometric stored for session %s", session_id)
        return session

    def reference_descriptor(self, session_id: str) -> Optional[np.ndarray]:
        with self._guard:
            descriptor = self._references.get(session_id)
        if descriptor is not None:
            return descriptor
        session = self.get(session_id)
        if session.reference_handle is None:
            return None
        # Rebuilt after a restart from the stored reference frame.
        descriptor = self.analyzer.describe_reference(
            self.evidence.read(session.reference_handle)
        )
        with self._guard:
            self._references[session_id] = descriptor
        return descriptor

    def activate(self, session_id: str) -> Session:
        with self._lock(session_id):
            session = self.get(session_id)
            if session.state is SessionState.ACTIVE:
                raise AlreadyActive(f"Session {session_id} is already active")
            if session.state is not SessionState.REGISTERED:
                raise InvalidState(
                    f"Cannot activate session in state {session.state.value}"
                )
            self.normalizer.open_session(session_id)
            session.state = SessionState.ACTIVE
            session.started_at = self.clock()
            self.monitors.start(session_id, lambda: self.reference_descriptor(session_id))
        self._save()
        LOGGER.info("Session %s active", session_id)
        self.hub.publish(
            FanoutMessage(
                SESSION_STARTED,
                session_id,
                {
                    "sessionId": session_id,
                    "examId": session.exam_id,
                    "subjectName": session.subject_name,
                    "startTime": session.started_at,
                },
            )
        )
        return session

    def complete(self, session_id: str) -> CompletionResult:
        """
        Finish the session. Idempotent: a second call (e.g. time expiry
        racing a manual submit) returns the same result.
        """
        with self._lock(session_id):
            session = self.get(session_id)
            if session.state is SessionState.COMPLETED:
                return CompletionResult.of(session)
            if session.state is not SessionState.ACTIVE:
                raise InvalidState(
                    f"Cannot complete session in state {session.state.value}"
                )
            result = self._score(session)
            self._finish(session, SessionState.COMPLETED)
            session.score = result.score
            session.total_points = result.total_points
            session.percentage = result.percentage
            completion = CompletionResult.of(session)
        self._save()
        LOGGER.info(
            "Session %s completed: score=%s/%s risk=%s",
            session_id,
            session.score,
            session.total_points,
            completion.final_risk.level.value if completion.final_risk else "n/a",
        )
        self._publish_end(session)
        return completion

    def abandon(self, session_id: str, reason: str = "disconnect timeout") -> Session:
        with self._lock(session_id):
            session = self.get(session_id)
            if session.state is SessionState.ABANDONED:
                return session
            if session.state is not SessionState.ACTIVE:
                raise InvalidState(
                    f"Cannot abandon session in state {session.state.value}"
                )
            self._finish(session, SessionState.ABANDONED)
        self._save()
        LOGGER.warning("Session %s abandoned: %s", session_id, reason)
        self._publish_end(session)
        return session

    def mark_degraded(self, session_id: str, reason: str) -> None:
        # Called from inside the normalizer's session lock; must not take
        # the lifecycle lock.
        with self._guard:
            session = self._sessions.get(session_id)
        if session is None:
            return
        session.degraded = True
        session.degraded_reason = reason
        LOGGER.error("Session %s integrity degraded: %s", session_id, reason)
        try:
            self._save()
        except OSError:
            LOGGER.exception("Could not persist degraded flag for session %s", session_id)

    def _score(self, session: Session) -> ScoreResult:
        exam = self.catalog.get(session.exam_id)
        if exam is None:
            raise LookupError(f"Unknown exam '{session.exam_id}'")
        return score_answers(exam, self.answers.answers(session.id))

    def _finish(self, session: Session, state: SessionState) -> None:
        self.monitors.stop(session.id)
        final = self.normalizer.close_session(session.id)
        session.final_risk = final or RiskState.initial()
        session.state = state
        session.ended_at = self.clock()

    def _publish_end(self, session: Session) -> None:
        risk = session.final_risk or RiskState.initial()
        self.hub.publish(
            FanoutMessage(
                SESSION_ENDED,
                session.id,
                {
                    "sessionId": session.id,
                    "examId": session.exam_id,
                    "state": session.state.value,
                    "score": session.score,
                    "totalPoints": session.total_points,
                    "percentage": session.percentage,
                    "level": risk.level.value,
                },
            )
        )

    # Read model ----------------------------------------------------------

    def snapshot(self, session_id: str, since: Optional[float] = None) -> Dict[str, Any]:
        """
        Explicit state fetch for observers that missed live updates.
        """
        session = self.get(session_id)
        # Risk and events must describe the same prefix of the log.
        with self.normalizer.session_lock(session_id):
            risk = self.current_risk(session)
            events = [event.to_dict() for event in self.normalizer.query(session_id, since)]
        return {
            "session": session.to_dict(),
            "risk": risk.to_dict(),
            "events": events,
        }

    def summary(self, session: Session) -> Dict[str, Any]:
        risk = self.current_risk(session)
        return {
            "sessionId": session.id,
            "subjectName": session.subject_name,
            "state": session.state.value,
            "level": risk.level.value,
            "warningCount": risk.warning_count,
            "eventCount": self.normalizer.store.count(session.id),
            "degraded": session.degraded,
            "startedAt": session.started_at,
            "endedAt": session.ended_at,
        }

    # Persistence ---------------------------------------------------------

    def _save(self) -> None:
        if self.state_path is None:
            return
        with self._guard:
            records = [_session_record(s) for s in self._sessions.values()]
        with self._save_lock:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(records, handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.state_path)

    def restore(self) -> int:
        """
        Reload sessions and resume active ones by replaying their event log.
        """
        if self.state_path is None or not self.state_path.exists():
            return 0
        with self.state_path.open("r", encoding="utf-8") as handle:
            records = json.load(handle)
        active = []
        for record in records:
            session = _session_from_record(record)
            with self._guard:
                self._sessions[session.id] = session
            if session.state is SessionState.ACTIVE:
                self.normalizer.open_session(session.id)
                active.append(session.id)
        self.normalizer.risk.rebuild_from(self.normalizer.store, active)
        for session_id in active:
            self.monitors.start(
                session_id, lambda sid=session_id: self.reference_descriptor(sid)
            )
        resumed = len(active)
        LOGGER.info(
            "Restored %d sessions (%d resumed as active)", len(records), resumed
        )
        return len(records)


def _session_record(session: Session) -> Dict[str, Any]:
    record = asdict(session)
    record["state"] = session.state.value
    if session.final_risk is not None:
        record["final_risk"] = dict(
            asdict(session.final_risk),
            level=session.final_risk.level.value,
            recent=list(session.final_risk.recent),
        )
    return record


def _session_from_record(record: Mapping[str, Any]) -> Session:
    data = dict(record)
    data["state"] = SessionState(data["state"])
    risk = data.get("final_risk")
    if risk is not None:
        data["final_risk"] = RiskState(
            level=RiskLevel(risk["level"]),
            warning_count=risk["warning_count"],
            last_transition_at=risk.get("last_transition_at"),
            clean_streak=risk.get("clean_streak", 0),
            focus_loss_count=risk.get("focus_loss_count", 0),
            events_seen=risk.get("events_seen", 0),
            recent=tuple(risk.get("recent", ())),
        )
    return Session(**data)
