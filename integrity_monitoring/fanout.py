"""
Best-effort, at-most-once delivery of pipeline updates to observers.

The hub is not a system of record: an observer that joins late has to fetch
a snapshot explicitly.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .events import IntegrityEvent
from .risk import RiskState

LOGGER = logging.getLogger(__name__)

EVENT_CREATED = "event-created"
RISK_CHANGED = "risk-changed"
SESSION_STARTED = "session-started"
SESSION_ENDED = "session-ended"
INTEGRITY_DEGRADED = "integrity-degraded"

_STOP = object()


@dataclass(frozen=True)
class FanoutMessage:
    kind: str
    session_id: str
    payload: Dict[str, Any]


def event_created(event: IntegrityEvent) -> FanoutMessage:
    return FanoutMessage(
        EVENT_CREATED,
        event.session_id,
        {
            "sessionId": event.session_id,
            "eventType": event.event_type.value,
            "timestamp": event.timestamp,
            "detail": dict(event.detail),
        },
    )


def risk_changed(session_id: str, state: RiskState) -> FanoutMessage:
    return FanoutMessage(
        RISK_CHANGED,
        session_id,
        {
            "sessionId": session_id,
            "level": state.level.value,
            "warningCount": state.warning_count,
        },
    )


def integrity_degraded(session_id: str, reason: str) -> FanoutMessage:
    return FanoutMessage(
        INTEGRITY_DEGRADED, session_id, {"sessionId": session_id, "reason": reason}
    )


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"


def exam_channel(exam_id: str) -> str:
    return f"exam:{exam_id}"


class Transport:
    """
    Pushes one message to one observer. Implementations may be slow or
    fail; the hub never calls them while recording an event.
    """

    def send(self, observer_id: str, kind: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class SocketIOTransport(Transport):
    """Deliver through Flask-SocketIO, addressing each observer by sid."""

    def __init__(self, socketio) -> None:
        self.socketio = socketio

    def send(self, observer_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.socketio.emit(kind, payload, to=observer_id)


@dataclass
class Observer:
    observer_id: str
    outbox: "queue.Queue[Any]"
    channels: Set[str] = field(default_factory=set)
    dropped: int = 0
    delivered: int = 0


class FanoutHub:
    """
    Session-keyed subscription map plus one bounded outbox per observer.

    ``publish`` only ever does ``put_nowait``; a full outbox loses the
    message for that observer alone.
    """

    def __init__(
        self,
        transport: Transport,
        exam_lookup: Callable[[str], Optional[str]],
        queue_size: int = 100,
        start_pump: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.transport = transport
        self.exam_lookup = exam_lookup
        self.queue_size = queue_size
        self._start_pump = start_pump
        self._lock = threading.Lock()
        self._observers: Dict[str, Observer] = {}
        self._channels: Dict[str, Set[str]] = {}

    # Subscriptions -----------------------------------------------------

    def _observer(self, observer_id: str) -> Observer:
        observer = self._observers.get(observer_id)
        if observer is None:
            observer = Observer(observer_id, queue.Queue(maxsize=self.queue_size))
            self._observers[observer_id] = observer
            if self._start_pump is not None:
                self._start_pump(self._pump, observer)
        return observer

    def _join(self, observer_id: str, channel: str) -> None:
        with self._lock:
            observer = self._observer(observer_id)
            observer.channels.add(channel)
            self._channels.setdefault(channel, set()).add(observer_id)
        LOGGER.info("Observer %s joined %s", observer_id, channel)

    def _leave(self, observer_id: str, channel: str) -> None:
        with self._lock:
            observer = self._observers.get(observer_id)
            if observer is not None:
                observer.channels.discard(channel)
            members = self._channels.get(channel)
            if members is not None:
                members.discard(observer_id)
                if not members:
                    del self._channels[channel]

    def subscribe_session(self, observer_id: str, session_id: str) -> None:
        self._join(observer_id, session_channel(session_id))

    def subscribe_exam(self, observer_id: str, exam_id: str) -> None:
        self._join(observer_id, exam_channel(exam_id))

    def unsubscribe_session(self, observer_id: str, session_id: str) -> None:
        self._leave(observer_id, session_channel(session_id))

    def unsubscribe_exam(self, observer_id: str, exam_id: str) -> None:
        self._leave(observer_id, exam_channel(exam_id))

    def remove(self, observer_id: str) -> None:
        """Forget an observer entirely, e.g. on disconnect."""
        with self._lock:
            observer = self._observers.pop(observer_id, None)
            if observer is None:
                return
            for channel in observer.channels:
                members = self._channels.get(channel)
                if members is None:
                    continue
                members.discard(observer_id)
                if not members:
                    del self._channels[channel]
        try:
            observer.outbox.put_nowait(_STOP)
        except queue.Full:
            # Pump exits on its next pass once it sees the observer is gone.
            pass
        LOGGER.info("Observer %s removed", observer_id)

    def observer(self, observer_id: str) -> Optional[Observer]:
        with self._lock:
            return self._observers.get(observer_id)

    def subscribers(self, session_id: str) -> Tuple[str, ...]:
        exam_id = self.exam_lookup(session_id)
        with self._lock:
            members = set(self._channels.get(session_channel(session_id), ()))
            if exam_id is not None:
                members |= self._channels.get(exam_channel(exam_id), set())
        return tuple(sorted(members))

    # Publishing --------------------------------------------------------

    def publish(self, message: FanoutMessage) -> int:
        """
        Queue a message for every interested observer. Returns how many
        observers accepted it.
        """
        accepted = 0
        for observer_id in self.subscribers(message.session_id):
            with self._lock:
                observer = self._observers.get(observer_id)
            if observer is None:
                continue
            try:
                observer.outbox.put_nowait(message)
                accepted += 1
            except queue.Full:
                observer.dropped += 1
                LOGGER.warning(
                    "Dropping %s for slow observer %s (dropped=%d)",
                    message.kind,
                    observer_id,
                    observer.dropped,
                )
        return accepted

    # Delivery ----------------------------------------------------------

    def deliver_pending(self, observer_id: str) -> int:
        """
        Drain an observer's outbox synchronously. Used by pumps and tests.
        """
        observer = self.observer(observer_id)
        if observer is None:
            return 0
        sent = 0
        while True:
            try:
                message = observer.outbox.get_nowait()
            except queue.Empty:
                return sent
            if message is _STOP:
                return sent
            if self._send(observer, message):
                sent += 1

    def _send(self, observer: Observer, message: FanoutMessage) -> bool:
        try:
            self.transport.send(observer.observer_id, message.kind, message.payload)
        except Exception:  # transport failures must not travel upstream
            LOGGER.exception(
                "Delivery of %s to %s failed; message dropped",
                message.kind,
                observer.observer_id,
            )
            return False
        observer.delivered += 1
        return True

    def _pump(self, observer: Observer) -> None:
        while True:
            message = observer.outbox.get()
            if message is _STOP:
                return
            with self._lock:
                alive = self._observers.get(observer.observer_id) is observer
            if not alive:
                return
            self._send(observer, message)

