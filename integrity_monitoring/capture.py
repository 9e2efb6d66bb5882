"""
Test-taker side signal capture.

Everything here only *reports*: environment signals and sampled frames go to
the service, which alone decides escalation. The local face-presence check
and the live status exist purely for the test-taker's own display.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np
import requests
import socketio

from .config import MonitoringOptions
from .errors import CaptureUnavailable
from .events import EventType
from .utils import bgr_to_rgb, encode_jpeg

LOGGER = logging.getLogger(__name__)

RawSignal = Tuple[EventType, Dict[str, Any]]

REMEDIATION_PROMPTS: Dict[EventType, str] = {
    EventType.FACE_NOT_DETECTED: "Move back into the camera frame.",
    EventType.MULTIPLE_FACES: "Make sure nobody else is in view of the camera.",
    EventType.FACE_MISMATCH: "Only the registered test-taker may sit this exam.",
    EventType.SUSPICIOUS_EYE_MOVEMENT: "Keep your eyes on the exam screen.",
    EventType.FULLSCREEN_EXIT: "Return to full screen mode.",
    EventType.TAB_SWITCH: "Stay on the exam window.",
    EventType.COPY_ATTEMPT: "Copying is disabled during the exam.",
    EventType.PASTE_ATTEMPT: "Pasting is disabled during the exam.",
    EventType.CONTEXT_MENU: "Right-click is disabled during the exam.",
    EventType.CAPTURE_UNAVAILABLE: "Re-enable your camera.",
}


@dataclass
class LiveStatus:
    """What the test-taker sees about their own session."""

    level: str = "nominal"
    warning_count: int = 0
    camera_ok: bool = True
    local_face_count: Optional[int] = None
    last_event: Optional[str] = None
    prompt: Optional[str] = None
    seconds_remaining: Optional[int] = None
    ended: bool = False
    history: List[str] = field(default_factory=list)

    def apply_event(self, event_type: str) -> None:
        self.last_event = event_type
        self.history.append(event_type)
        try:
            kind = EventType.coerce(event_type)
        except ValueError:
            return
        prompt = REMEDIATION_PROMPTS.get(kind)
        if prompt is not None:
            self.prompt = prompt

    def apply_risk(self, level: str, warning_count: int) -> None:
        self.level = level
        self.warning_count = warning_count


class EnvironmentWatcher:
    """
    Synchronous hooks for the host UI. Each firing queues exactly one raw
    signal and returns immediately.
    """

    def __init__(
        self,
        signals: "asyncio.Queue[RawSignal]",
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.signals = signals
        self.loop = loop
        self.dropped = 0

    def fullscreen_changed(self, is_fullscreen: bool) -> None:
        if not is_fullscreen:
            self._emit(EventType.FULLSCREEN_EXIT)

    def focus_changed(self, focused: bool) -> None:
        if not focused:
            self._emit(EventType.TAB_SWITCH)

    def clipboard_attempt(self, action: str) -> None:
        if action == "copy":
            self._emit(EventType.COPY_ATTEMPT)
        elif action == "paste":
            self._emit(EventType.PASTE_ATTEMPT)
        else:
            raise ValueError(f"Unknown clipboard action '{action}'")

    def context_menu_attempt(self) -> None:
        self._emit(EventType.CONTEXT_MENU)

    def capture_unavailable(self, reason: str) -> None:
        self._emit(EventType.CAPTURE_UNAVAILABLE, {"reason": reason})

    def _emit(self, kind: EventType, detail: Optional[Dict[str, Any]] = None) -> None:
        signal: RawSignal = (kind, dict(detail or {}))
        if self.loop is not None and not _running_in(self.loop):
            # Hook fired from a UI thread.
            self.loop.call_soon_threadsafe(self._put, signal)
        else:
            self._put(signal)

    def _put(self, signal: RawSignal) -> None:
        try:
            self.signals.put_nowait(signal)
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.warning("Signal queue full; dropped %s", signal[0].value)


def _running_in(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class CameraSource:
    """
    Sole owner of the capture device. Reads are serialised by a lock and
    are blocking, so callers run them in a worker thread.
    """

    def __init__(
        self,
        device: int = 0,
        capture_factory: Callable[[int], Any] = cv2.VideoCapture,
    ) -> None:
        self.device = device
        self.capture_factory = capture_factory
        self._capture = None
        self._lock = threading.Lock()

    def _open(self) -> Any:
        if self._capture is None:
            capture = self.capture_factory(self.device)
            if not capture.isOpened():
                capture.release()
                raise CaptureUnavailable(
                    f"Unable to open camera (device {self.device})"
                )
            self._capture = capture
        return self._capture

    def read(self) -> np.ndarray:
        with self._lock:
            capture = self._open()
            ret, frame = capture.read()
            if not ret or frame is None:
                # Reopen on the next attempt; the device may have gone away.
                capture.release()
                self._capture = None
                raise CaptureUnavailable(f"Failed to read from camera {self.device}")
            return frame

    def release(self) -> None:
        with self._lock:
            if self._capture is not None:
                self._capture.release()
                self._capture = None


class LocalPresenceCheck:
    """
    Cheap face-count check for live feedback only.
    """

    def __init__(self, min_detection_confidence: float = 0.5) -> None:
        try:
            import mediapipe as mp
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise ImportError(
                "mediapipe is required for the local presence check. "
                "Install it with `pip install mediapipe`."
            ) from exc
        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=0,
            min_detection_confidence=min_detection_confidence,
        )

    def count(self, frame_bgr: np.ndarray) -> int:
        rgb = bgr_to_rgb(frame_bgr)
        results = self._detector.process(rgb)
        return len(results.detections or [])

    def close(self) -> None:
        self._detector.close()


class ApiClient:
    """
    Thin blocking wrapper over the service's HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        http: Optional[requests.Session] = None,
        timeout: float = 10.0,
        role: str = "subject",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()
        self.http.headers.update({"X-Role": role})
        self.timeout = timeout

    def _post(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = self.http.post(
            f"{self.base_url}{path}", timeout=self.timeout, **kwargs
        )
        response.raise_for_status()
        return response.json()

    def get_exam(self, exam_id: str) -> Dict[str, Any]:
        response = self.http.get(
            f"{self.base_url}/api/exams/{exam_id}", timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def register(
        self, exam_id: str, subject_name: str, subject_contact: Optional[str] = None
    ) -> Dict[str, Any]:
        return self._post(
            "/api/sessions",
            json={
                "examId": exam_id,
                "subjectName": subject_name,
                "subjectContact": subject_contact,
            },
        )

    def upload_reference(self, session_id: str, jpeg: bytes) -> Dict[str, Any]:
        files = {"file": ("reference.jpg", jpeg, "image/jpeg")}
        return self._post(f"/api/sessions/{session_id}/reference", files=files)

    def activate(self, session_id: str) -> Dict[str, Any]:
        return self._post(f"/api/sessions/{session_id}/activate")

    def send_signal(
        self, session_id: str, event_type: EventType, detail: Dict[str, Any]
    ) -> Dict[str, Any]:
        return self._post(
            f"/api/sessions/{session_id}/signals",
            json={"eventType": event_type.value, "detail": detail},
        )

    def upload_frame(self, session_id: str, jpeg: bytes) -> Dict[str, Any]:
        files = {"file": ("frame.jpg", jpeg, "image/jpeg")}
        return self._post(f"/api/sessions/{session_id}/frames", files=files)

    def submit_answer(
        self, session_id: str, question_id: str, option_id: str
    ) -> Dict[str, Any]:
        return self._post(
            f"/api/sessions/{session_id}/answers",
            json={"questionId": question_id, "optionId": option_id},
        )

    def complete(self, session_id: str) -> Dict[str, Any]:
        return self._post(f"/api/sessions/{session_id}/complete")

    def get_session(self, session_id: str) -> Dict[str, Any]:
        response = self.http.get(
            f"{self.base_url}/api/sessions/{session_id}", timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()


class StatusListener:
    """
    Mirrors the session's own fan-out into ``LiveStatus``.
    """

    def __init__(
        self,
        server_url: str,
        session_id: str,
        status: LiveStatus,
        client=None,
        on_ended: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self.server_url = server_url
        self.session_id = session_id
        self.status = status
        self.on_ended = on_ended
        self.client = client or socketio.Client(reconnection=True)
        self.client.on("connect", self._on_connect)
        self.client.on("risk-changed", self._on_risk)
        self.client.on("event-created", self._on_event)
        self.client.on("session-ended", self._on_ended)

    def connect(self) -> None:
        self.client.connect(self.server_url, headers={"X-Role": "subject"})

    def disconnect(self) -> None:
        self.client.disconnect()

    def _on_connect(self) -> None:
        # Runs again after every reconnect.
        self.client.emit("join-session", {"sessionId": self.session_id})

    def _on_risk(self, data: Dict[str, Any]) -> None:
        self.status.apply_risk(data.get("level", "nominal"), int(data.get("warningCount", 0)))

    def _on_event(self, data: Dict[str, Any]) -> None:
        self.status.apply_event(str(data.get("eventType", "")))

    def _on_ended(self, data: Dict[str, Any]) -> None:
        LOGGER.info("Session %s ended (%s)", self.session_id, data.get("state"))
        self.status.ended = True
        if self.on_ended is not None:
            self.on_ended(data)


class ExamCountdown:
    """
    Exam timer, independent of capture and network health. ``on_expire``
    fires exactly once.
    """

    def __init__(
        self,
        duration_seconds: int,
        on_expire: Callable[[], Any],
        tick_seconds: float = 1.0,
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.remaining = int(duration_seconds)
        self.on_expire = on_expire
        self.tick_seconds = tick_seconds
        self.on_tick = on_tick
        self.expired = False

    async def run(self) -> None:
        while self.remaining > 0:
            await asyncio.sleep(self.tick_seconds)
            self.remaining -= 1
            if self.on_tick is not None:
                self.on_tick(self.remaining)
        await self._expire()

    async def _expire(self) -> None:
        if self.expired:
            return
        self.expired = True
        LOGGER.info("Exam time expired")
        result = self.on_expire()
        if inspect.isawaitable(result):
            await result


class CaptureClient:
    """
    Runs the capture tasks for one session: frame sampling, local presence
    checks, signal sending and frame upload, plus an optional countdown.
    """

    def __init__(
        self,
        api: ApiClient,
        session_id: str,
        camera: CameraSource,
        options: MonitoringOptions | None = None,
        presence: Optional[LocalPresenceCheck] = None,
        status: Optional[LiveStatus] = None,
        signal_queue_size: int = 256,
    ) -> None:
        self.api = api
        self.session_id = session_id
        self.camera = camera
        self.options = options or MonitoringOptions()
        self.presence = presence
        self.status = status or LiveStatus()
        self.signals: "asyncio.Queue[RawSignal]" = asyncio.Queue(maxsize=signal_queue_size)
        self.frames: "asyncio.Queue[np.ndarray]" = asyncio.Queue(maxsize=1)
        self.watcher = EnvironmentWatcher(self.signals)
        self.frames_dropped = 0
        self._tasks: List[asyncio.Task] = []
        self._done: Optional[asyncio.Event] = None
        self._in_outage = False

    def start(self, countdown: Optional[ExamCountdown] = None) -> None:
        loop = asyncio.get_running_loop()
        self.watcher.loop = loop
        self._done = asyncio.Event()
        runners = [self._sample_frames(), self._send_signals(), self._upload_frames()]
        if self.presence is not None:
            runners.append(self._check_presence())
        if countdown is not None:
            runners.append(self._count_down(countdown))
        self._tasks = [loop.create_task(runner) for runner in runners]

    async def run(self, countdown: Optional[ExamCountdown] = None) -> None:
        """
        Run until ``request_stop`` is called or the countdown expires.
        """
        self.start(countdown)
        try:
            await self._done.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        if self._done is not None:
            self._done.set()

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.to_thread(self.camera.release)
        if self.presence is not None:
            self.presence.close()
        LOGGER.info("Capture for session %s stopped", self.session_id)

    async def _count_down(self, countdown: ExamCountdown) -> None:
        previous = countdown.on_tick

        def on_tick(remaining: int) -> None:
            self.status.seconds_remaining = remaining
            if previous is not None:
                previous(remaining)

        countdown.on_tick = on_tick
        await countdown.run()
        self.request_stop()

    async def _grab(self) -> Optional[np.ndarray]:
        try:
            frame = await asyncio.to_thread(self.camera.read)
        except CaptureUnavailable as exc:
            self.status.camera_ok = False
            if not self._in_outage:
                self._in_outage = True
                LOGGER.warning("Camera unavailable: %s", exc)
                self.watcher.capture_unavailable(str(exc))
                self.status.prompt = REMEDIATION_PROMPTS[EventType.CAPTURE_UNAVAILABLE]
            return None
        if self._in_outage:
            self._in_outage = False
            LOGGER.info("Camera recovered")
        self.status.camera_ok = True
        return frame

    async def _sample_frames(self) -> None:
        interval = self.options.frame_interval_ms / 1000.0
        base_delay = self.options.capture_retry_base_delay
        delay = base_delay
        while True:
            frame = await self._grab()
            if frame is None:
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.options.capture_retry_max_delay)
                continue
            delay = base_delay
            self._offer_frame(frame)
            await asyncio.sleep(interval)

    def _offer_frame(self, frame: np.ndarray) -> None:
        if self.frames.full():
            # A newer frame supersedes one the network has not taken yet.
            self.frames.get_nowait()
            self.frames_dropped += 1
        self.frames.put_nowait(frame)

    async def _check_presence(self) -> None:
        interval = self.options.local_check_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            if self._in_outage:
                continue
            frame = await self._grab()
            if frame is None:
                continue
            count = await asyncio.to_thread(self.presence.count, frame)
            self.status.local_face_count = count
            if count == 0:
                self.status.prompt = REMEDIATION_PROMPTS[EventType.FACE_NOT_DETECTED]
            elif count > 1:
                self.status.prompt = REMEDIATION_PROMPTS[EventType.MULTIPLE_FACES]

    async def _send_signals(self) -> None:
        while True:
            kind, detail = await self.signals.get()
            await self._deliver_signal(kind, detail)

    async def _deliver_signal(self, kind: EventType, detail: Dict[str, Any]) -> None:
        """
        Send one signal, retrying transport errors and 5xx responses with
        backoff. Later signals wait behind it so arrival order is kept.
        """
        delay = self.options.capture_retry_base_delay
        while True:
            try:
                await asyncio.to_thread(self.api.send_signal, self.session_id, kind, detail)
                return
            except requests.HTTPError as exc:
                status = _status_code(exc)
                if status is not None and status < 500:
                    LOGGER.warning("Server rejected %s signal: HTTP %s", kind.value, status)
                    if status == 409:
                        self._session_closed()
                    return
                LOGGER.warning("Sending %s signal failed, retrying: %s", kind.value, exc)
            except requests.RequestException as exc:
                LOGGER.warning("Sending %s signal failed, retrying: %s", kind.value, exc)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.options.capture_retry_max_delay)

    async def _upload_frames(self) -> None:
        while True:
            frame = await self.frames.get()
            try:
                payload = encode_jpeg(frame)
                await asyncio.to_thread(self.api.upload_frame, self.session_id, payload)
            except ValueError as exc:
                LOGGER.warning("Could not encode sampled frame: %s", exc)
            except requests.HTTPError as exc:
                LOGGER.warning("Frame upload failed: %s", exc)
                if _status_code(exc) == 409:
                    self._session_closed()
            except requests.RequestException as exc:
                LOGGER.warning("Frame upload failed: %s", exc)

    def _session_closed(self) -> None:
        LOGGER.info("Session %s is no longer active on the server", self.session_id)
        self.request_stop()


def _status_code(exc: requests.HTTPError) -> Optional[int]:
    if exc.response is None:
        return None
    return exc.response.status_code
