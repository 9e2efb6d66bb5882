"""
Server-side frame pipeline: one inbound frame channel and one worker per
active session.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Dict, Optional

import numpy as np

from .biometrics import BiometricAnalyzer, VerificationOutcome
from .config import MonitoringOptions
from .errors import (
    AnalysisUnavailable,
    InvalidState,
    NoFaceInReference,
    PersistenceFailure,
)
from .events import EventType
from .evidence import EvidenceStore
from .normalizer import EventNormalizer
from .utils import ImageLike

LOGGER = logging.getLogger(__name__)

ReferenceProvider = Callable[[], Optional[np.ndarray]]

_STOP = object()


class SessionMonitor:
    """
    Runs authoritative verification for one session's sampled frames.

    ``submit`` never blocks: when the channel is full the oldest frame is
    dropped, since a newer frame supersedes it.
    """

    def __init__(
        self,
        session_id: str,
        analyzer: BiometricAnalyzer,
        normalizer: EventNormalizer,
        evidence: EvidenceStore,
        reference_provider: ReferenceProvider,
        options: MonitoringOptions | None = None,
    ) -> None:
        self.session_id = session_id
        self.analyzer = analyzer
        self.normalizer = normalizer
        self.evidence = evidence
        self.reference_provider = reference_provider
        self.options = options or MonitoringOptions()
        self._frames: "queue.Queue[object]" = queue.Queue(
            maxsize=self.options.frame_queue_size
        )
        self._stopped = threading.Event()
        self._reference_warned = False
        self._thread: Optional[threading.Thread] = None
        self.frames_dropped = 0

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"monitor-{self.session_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """
        Cancel pending frames. An analysis already running finishes, but its
        results are discarded.
        """
        self._stopped.set()
        while True:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                break
        try:
            self._frames.put_nowait(_STOP)
        except queue.Full:
            pass

    def submit(self, frame: ImageLike) -> bool:
        if self.stopped:
            return False
        while True:
            try:
                self._frames.put_nowait(frame)
                return True
            except queue.Full:
                try:
                    self._frames.get_nowait()
                    self.frames_dropped += 1
                except queue.Empty:
                    pass

    def _run(self) -> None:
        while not self.stopped:
            item = self._frames.get()
            if item is _STOP or self.stopped:
                break
            try:
                self.process_frame(item)
            except Exception:  # keep the worker alive for the next frame
                LOGGER.exception("Frame processing failed for session %s", self.session_id)
        LOGGER.info("Frame monitor for session %s stopped", self.session_id)

    def process_frame(self, frame: ImageLike) -> Optional[VerificationOutcome]:
        reference = self._reference()
        outcome = self._verify_with_retry(frame, reference)
        if self.stopped:
            LOGGER.debug("Discarding late analysis for session %s", self.session_id)
            return None
        if outcome is None:
            return None

        evidence_handle = None
        if not outcome.clean:
            label = ", ".join(kind.value for kind, _ in outcome.events)
            try:
                evidence_handle = self.evidence.put(
                    frame, label=label, analysis=outcome.analysis
                )
            except (OSError, ValueError) as exc:
                LOGGER.warning(
                    "Evidence frame for session %s not stored: %s", self.session_id, exc
                )

        for kind, detail in outcome.events:
            self._record(kind, detail, evidence_handle)
        return outcome

    def _reference(self) -> Optional[np.ndarray]:
        try:
            return self.reference_provider()
        except NoFaceInReference as exc:
            if not self._reference_warned:
                self._reference_warned = True
                self._record(EventType.REFERENCE_MISSING_FACE, {"reason": str(exc)})
            return None
        except AnalysisUnavailable:
            return None

    def _verify_with_retry(
        self, frame: ImageLike, reference: Optional[np.ndarray]
    ) -> Optional[VerificationOutcome]:
        attempts = max(1, self.options.analysis_retry_attempts)
        delay = self.options.analysis_retry_base_delay
        for attempt in range(1, attempts + 1):
            try:
                return self.analyzer.verify(frame, reference)
            except AnalysisUnavailable as exc:
                LOGGER.info(
                    "Analysis unavailable for session %s (attempt %d/%d): %s",
                    self.session_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt == attempts:
                    self._record(
                        EventType.ANALYSIS_UNAVAILABLE,
                        {"attempts": attempts, "reason": str(exc)},
                    )
                    return None
                if self._stopped.wait(delay):
                    return None
                delay *= 2
            except ValueError as exc:
                LOGGER.warning(
                    "Rejected undecodable frame for session %s: %s", self.session_id, exc
                )
                return None
        return None

    def _record(self, kind: EventType, detail: dict, evidence: Optional[str] = None) -> None:
        if self.stopped:
            return
        try:
            self.normalizer.record(self.session_id, kind, detail, evidence)
        except PersistenceFailure:
            # Already surfaced as degraded integrity to lifecycle and observers.
            LOGGER.error(
                "Lost %s for session %s after persistence failure",
                kind.value,
                self.session_id,
            )


class MonitorRegistry:
    """
    Active ``SessionMonitor`` per session id.
    """

    def __init__(
        self,
        analyzer: BiometricAnalyzer,
        normalizer: EventNormalizer,
        evidence: EvidenceStore,
        options: MonitoringOptions | None = None,
        autostart: bool = True,
    ) -> None:
        self.analyzer = analyzer
        self.normalizer = normalizer
        self.evidence = evidence
        self.options = options or MonitoringOptions()
        self.autostart = autostart
        self._lock = threading.Lock()
        self._monitors: Dict[str, SessionMonitor] = {}

    def start(self, session_id: str, reference_provider: ReferenceProvider) -> SessionMonitor:
        with self._lock:
            monitor = self._monitors.get(session_id)
            if monitor is not None and not monitor.stopped:
                return monitor
            monitor = SessionMonitor(
                session_id,
                self.analyzer,
                self.normalizer,
                self.evidence,
                reference_provider,
                self.options,
            )
            self._monitors[session_id] = monitor
        if self.autostart:
            monitor.start()
        LOGGER.info("Frame monitor for session %s started", session_id)
        return monitor

    def stop(self, session_id: str) -> None:
        with self._lock:
            monitor = self._monitors.pop(session_id, None)
        if monitor is not None:
            monitor.stop()

    def get(self, session_id: str) -> Optional[SessionMonitor]:
        with self._lock:
            return self._monitors.get(session_id)

    def submit(self, session_id: str, frame: ImageLike) -> bool:
        monitor = self.get(session_id)
        if monitor is None:
            raise InvalidState(f"Session {session_id} is not accepting frames")
        return monitor.submit(frame)

    def stop_all(self) -> None:
        with self._lock:
            monitors = list(self._monitors.values())
            self._monitors.clear()
        for monitor in monitors:
            monitor.stop()
