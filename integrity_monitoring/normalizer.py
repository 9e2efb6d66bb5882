"""
Single choke point turning raw signals into ordered integrity events.

For each session, ``record`` runs append -> escalate -> publish as one
critical section, so log order, risk order and fan-out order agree.
Sessions never share a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from .errors import PersistenceFailure
from .events import EventType, IntegrityEvent
from .fanout import FanoutHub, event_created, integrity_degraded, risk_changed
from .log_store import EventLogStore
from .risk import RiskEngine, RiskState

LOGGER = logging.getLogger(__name__)


class EventNormalizer:
    def __init__(
        self,
        store: EventLogStore,
        risk: RiskEngine,
        hub: FanoutHub,
        clock: Callable[[], float] = time.time,
        on_degraded: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.store = store
        self.risk = risk
        self.hub = hub
        self.clock = clock
        self.on_degraded = on_degraded
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def open_session(self, session_id: str) -> RiskState:
        """Start accepting events for a session."""
        with self.session_lock(session_id):
            return self.risk.enable(session_id)

    def close_session(self, session_id: str) -> Optional[RiskState]:
        """
        Stop accepting events and return the frozen risk state. Anything
        recorded afterwards for this session is discarded.
        """
        with self.session_lock(session_id):
            return self.risk.disable(session_id)

    def accepting(self, session_id: str) -> bool:
        return self.risk.is_enabled(session_id)

    def record(
        self,
        session_id: str,
        event_type: EventType | str,
        detail: Optional[Mapping[str, Any]] = None,
        evidence: Optional[str] = None,
    ) -> Optional[IntegrityEvent]:
        """
        Append one event, escalate and enqueue fan-out before returning.

        Returns None when the session is not active (late results are
        dropped).

        Raises:
            ValueError: Unknown event type.
            PersistenceFailure: The append or the chain after it failed.
        """
        kind = EventType.coerce(event_type)
        with self.session_lock(session_id):
            if not self.risk.is_enabled(session_id):
                LOGGER.debug(
                    "Discarding %s for inactive session %s", kind.value, session_id
                )
                return None

            last = self.store.last_event(session_id)
            timestamp = self.clock()
            if last is not None and timestamp < last.timestamp:
                # Wall clock stepped back; keep arrival order.
                timestamp = last.timestamp
            event = IntegrityEvent(
                session_id=session_id,
                event_type=kind,
                timestamp=timestamp,
                sequence=(last.sequence + 1) if last is not None else 1,
                detail=dict(detail or {}),
                evidence=evidence,
            )

            try:
                self.store.append(event)
            except Exception as exc:
                LOGGER.exception(
                    "Failed to append %s for session %s", kind.value, session_id
                )
                self._degrade(session_id, f"event log append failed: {exc}")
                raise PersistenceFailure(
                    f"Could not persist {kind.value} for session {session_id}"
                ) from exc

            try:
                before, after = self.risk.apply(event)
                self.hub.publish(event_created(event))
                if (
                    after.level is not before.level
                    or after.warning_count != before.warning_count
                ):
                    self.hub.publish(risk_changed(session_id, after))
            except Exception as exc:
                LOGGER.exception(
                    "Escalation chain failed after logging %s for session %s",
                    event.id,
                    session_id,
                )
                self._degrade(session_id, f"escalation failed after append: {exc}")
                raise PersistenceFailure(
                    f"Event {event.id} was logged but not escalated"
                ) from exc

        return event

    def query(
        self, session_id: str, since: Optional[float] = None
    ) -> Iterator[IntegrityEvent]:
        """
        Lazy, restartable view of a session's events in arrival order.
        """
        return self.store.iter_events(session_id, since)

    def _degrade(self, session_id: str, reason: str) -> None:
        if self.on_degraded is not None:
            self.on_degraded(session_id, reason)
        self.hub.publish(integrity_degraded(session_id, reason))
