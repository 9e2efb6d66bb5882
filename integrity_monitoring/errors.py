"""
Exception taxonomy for the integrity monitoring pipeline.
"""

from __future__ import annotations


class IntegrityMonitoringError(Exception):
    """
    Base class for every error raised by the pipeline.
    """

    code = "integrity_error"


class CaptureUnavailable(IntegrityMonitoringError):
    """Camera could not be opened or stopped delivering frames."""

    code = "capture_unavailable"


class AnalysisUnavailable(IntegrityMonitoringError):
    """
    The biometric backend is not initialised yet.

    Transient: callers retry and must never read it as "no face".
    """

    code = "analysis_unavailable"


class NoFaceInReference(IntegrityMonitoringError):
    code = "no_face_in_reference"


class NoFaceInCandidate(IntegrityMonitoringError):
    code = "no_face_in_candidate"


class InvalidState(IntegrityMonitoringError):
    """Lifecycle operation is not allowed from the session's current state."""

    code = "invalid_state"


class AlreadyActive(InvalidState):
    code = "already_active"


class PersistenceFailure(IntegrityMonitoringError):
    """
    Appending to the event log (or the chain right after it) failed.

    Fatal for the event concerned; surfaced to the caller and the session
    is marked as degraded.
    """

    code = "persistence_failure"


class UnknownSession(IntegrityMonitoringError, LookupError):
    code = "unknown_session"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session '{session_id}'")
        self.session_id = session_id
