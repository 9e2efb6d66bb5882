"""
Per-session risk escalation.

``transition`` is a pure function of the previous state and one event, so a
session's risk can always be rebuilt by replaying its log from
``RiskState.initial()``. ``RiskEngine`` only caches the live result.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from .events import EventType, IntegrityEvent
from .log_store import EventLogStore

LOGGER = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    NOMINAL = "nominal"
    ELEVATED = "elevated"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def step_down(self) -> "RiskLevel":
        return _ORDER[max(self.rank - 1, 0)]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_ORDER = (RiskLevel.NOMINAL, RiskLevel.ELEVATED, RiskLevel.CRITICAL)
_RANKS = {level: idx for idx, level in enumerate(_ORDER)}


@dataclass(frozen=True)
class RiskPolicy:
    recovery_window_events: int = 3
    focus_loss_critical_count: int = 3
    window_events: int = 10

    @classmethod
    def from_options(cls, options) -> "RiskPolicy":
        return cls(
            recovery_window_events=options.recovery_window_events,
            focus_loss_critical_count=options.focus_loss_critical_count,
            window_events=options.risk_window_events,
        )


@dataclass(frozen=True)
class RiskState:
    level: RiskLevel = RiskLevel.NOMINAL
    warning_count: int = 0
    last_transition_at: Optional[float] = None
    clean_streak: int = 0
    focus_loss_count: int = 0
    events_seen: int = 0
    recent: Tuple[str, ...] = ()

    @classmethod
    def initial(cls) -> "RiskState":
        return cls()

    def to_dict(self) -> Dict[str, object]:
        return {
            "level": self.level.value,
            "warningCount": self.warning_count,
            "lastTransitionAt": self.last_transition_at,
            "cleanStreak": self.clean_streak,
            "focusLossCount": self.focus_loss_count,
            "eventsSeen": self.events_seen,
            "recent": list(self.recent),
        }


# Events that count as a warning and lift a nominal session to elevated.
_ELEVATING = frozenset({EventType.FACE_NOT_DETECTED, EventType.MULTIPLE_FACES})
_FOCUS_LOSS = frozenset({EventType.FULLSCREEN_EXIT, EventType.TAB_SWITCH})
# Events that add a warning without moving the level.
_WARNING_ONLY = frozenset(
    {
        EventType.SUSPICIOUS_EYE_MOVEMENT,
        EventType.COPY_ATTEMPT,
        EventType.PASTE_ATTEMPT,
        EventType.CONTEXT_MENU,
        EventType.CAPTURE_UNAVAILABLE,
    }
)


def transition(
    state: RiskState, event: IntegrityEvent, policy: RiskPolicy = RiskPolicy()
) -> RiskState:
    """
    Fold one event into a risk state. Pure: no clock, no I/O.
    """
    kind = event.event_type
    recent = (state.recent + (kind.value,))[-policy.window_events :]
    base = replace(state, events_seen=state.events_seen + 1, recent=recent)

    if kind is EventType.VERIFICATION_CLEAN:
        streak = base.clean_streak + 1
        if base.level > RiskLevel.NOMINAL and streak >= policy.recovery_window_events:
            return replace(
                base,
                level=base.level.step_down(),
                clean_streak=0,
                last_transition_at=event.timestamp,
            )
        return replace(base, clean_streak=streak)

    target = base.level
    focus_losses = base.focus_loss_count
    if kind is EventType.FACE_MISMATCH:
        target = RiskLevel.CRITICAL
    elif kind in _FOCUS_LOSS:
        focus_losses += 1
        if focus_losses >= policy.focus_loss_critical_count:
            target = RiskLevel.CRITICAL
        else:
            target = max(target, RiskLevel.ELEVATED)
    elif kind in _ELEVATING:
        target = max(target, RiskLevel.ELEVATED)
    elif kind not in _WARNING_ONLY:
        # Operational events (analysis outages, missing reference face).
        return base

    return replace(
        base,
        level=target,
        warning_count=base.warning_count + 1,
        clean_streak=0,
        focus_loss_count=focus_losses,
        last_transition_at=(
            event.timestamp if target is not base.level else base.last_transition_at
        ),
    )


def replay(
    events: Iterable[IntegrityEvent], policy: RiskPolicy = RiskPolicy()
) -> RiskState:
    state = RiskState.initial()
    for event in events:
        state = transition(state, event, policy)
    return state


class RiskEngine:
    """
    Live risk state for every active session.
    """

    def __init__(self, policy: RiskPolicy | None = None) -> None:
        self.policy = policy or RiskPolicy()
        self._lock = threading.Lock()
        self._states: Dict[str, RiskState] = {}

    def enable(self, session_id: str) -> RiskState:
        with self._lock:
            state = self._states.setdefault(session_id, RiskState.initial())
        return state

    def is_enabled(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._states

    def apply(self, event: IntegrityEvent) -> Tuple[RiskState, RiskState]:
        """
        Advance the session's state and return ``(before, after)``.

        Raises:
            KeyError: When escalation is not enabled for the session.
        """
        with self._lock:
            before = self._states[event.session_id]
            after = transition(before, event, self.policy)
            self._states[event.session_id] = after
        if after.level is not before.level:
            log = LOGGER.warning if after.level is RiskLevel.CRITICAL else LOGGER.info
            log(
                "Session %s risk %s -> %s after %s (warnings=%d)",
                event.session_id,
                before.level.value,
                after.level.value,
                event.event_type.value,
                after.warning_count,
            )
        return before, after

    def snapshot(self, session_id: str) -> Optional[RiskState]:
        with self._lock:
            return self._states.get(session_id)

    def disable(self, session_id: str) -> Optional[RiskState]:
        """
        Stop tracking a session and return its final state.
        """
        with self._lock:
            return self._states.pop(session_id, None)

    def rebuild(self, session_id: str, events: Iterable[IntegrityEvent]) -> RiskState:
        state = replay(events, self.policy)
        with self._lock:
            self._states[session_id] = state
        return state

    def rebuild_from(self, store: EventLogStore, session_ids: Iterable[str]) -> None:
        """
        Recompute live state for the given sessions by replaying the log.
        """
        for session_id in session_ids:
            state = self.rebuild(session_id, store.iter_events(session_id))
            LOGGER.info(
                "Rebuilt risk for session %s: %s (%d events)",
                session_id,
                state.level.value,
                state.events_seen,
            )
