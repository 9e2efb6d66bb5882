"""
Append-only storage for integrity events.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .events import IntegrityEvent

LOGGER = logging.getLogger(__name__)


class EventLogStore:
    """
    Append-only event log keyed by session.

    Sub-classes decide where events are persisted; ordering and snapshot
    reads are handled here.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, List[IntegrityEvent]] = {}

    def append(self, event: IntegrityEvent) -> None:
        """
        Persist one event. Raises ``OSError`` (or similar) on failure, in
        which case the event is not visible to readers.
        """
        self._persist(event)
        with self._lock:
            self._events.setdefault(event.session_id, []).append(event)

    def iter_events(
        self, session_id: str, since: Optional[float] = None
    ) -> Iterator[IntegrityEvent]:
        """
        Lazily yield a session's events in arrival order.

        The per-session list is snapshotted when iteration starts, so
        concurrent appends never tear a read.
        """
        with self._lock:
            snapshot: Tuple[IntegrityEvent, ...] = tuple(
                self._events.get(session_id, ())
            )
        for event in snapshot:
            if since is not None and event.timestamp < since:
                continue
            yield event

    def last_event(self, session_id: str) -> Optional[IntegrityEvent]:
        with self._lock:
            events = self._events.get(session_id)
            return events[-1] if events else None

    def count(self, session_id: str) -> int:
        with self._lock:
            return len(self._events.get(session_id, ()))

    def sessions(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._events.keys())

    def _persist(self, event: IntegrityEvent) -> None:
        raise NotImplementedError


class InMemoryEventLog(EventLogStore):
    """Keeps events in process memory only."""

    def _persist(self, event: IntegrityEvent) -> None:
        return None


class JsonlEventLog(EventLogStore):
    """
    One JSON line per event under ``<log_dir>/<session_id>.jsonl``.

    Existing files are loaded on start so the risk engine can be rebuilt by
    replay after a restart.
    """

    def __init__(self, log_dir: Path) -> None:
        super().__init__()
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._file_lock = threading.Lock()
        self._load()

    def _path_for(self, session_id: str) -> Path:
        safe = "".join(ch for ch in session_id if ch.isalnum() or ch in "-_")
        if not safe:
            raise ValueError(f"Unusable session id for log file: {session_id!r}")
        return self.log_dir / f"{safe}.jsonl"

    def _load(self) -> None:
        loaded = 0
        for path in sorted(self.log_dir.glob("*.jsonl")):
            with path.open("r", encoding="utf-8") as handle:
                for line_no, line in enumerate(handle, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = IntegrityEvent.from_dict(json.loads(line))
                    except (ValueError, KeyError) as exc:
                        # A torn final line from a crash mid-write.
                        LOGGER.warning(
                            "Skipping unreadable log line %s:%d (%s)", path, line_no, exc
                        )
                        continue
                    self._events.setdefault(event.session_id, []).append(event)
                    loaded += 1
        for events in self._events.values():
            events.sort(key=lambda item: item.sequence)
        if loaded:
            LOGGER.info(
                "Loaded %d events for %d sessions from %s",
                loaded,
                len(self._events),
                self.log_dir,
            )

    def _persist(self, event: IntegrityEvent) -> None:
        line = json.dumps(event.to_dict(), separators=(",", ":"))
        path = self._path_for(event.session_id)
        with self._file_lock:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())


def build_log_store(log_dir: Optional[Path]) -> EventLogStore:
    if log_dir is None:
        return InMemoryEventLog()
    return JsonlEventLog(log_dir)
