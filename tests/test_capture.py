"""
Tests for the capture client: watchers, camera outages and the countdown.
"""

import asyncio

import numpy as np
import pytest
import requests

from integrity_monitoring.capture import (
    REMEDIATION_PROMPTS,
    CameraSource,
    CaptureClient,
    EnvironmentWatcher,
    ExamCountdown,
    LiveStatus,
    StatusListener,
)
from integrity_monitoring.config import MonitoringOptions
from integrity_monitoring.errors import CaptureUnavailable
from integrity_monitoring.events import EventType
from integrity_monitoring.utils import bgr_to_rgb


class FakeApi:
    def __init__(self):
        self.signals = []
        self.frames = []

    def send_signal(self, session_id, event_type, detail):
        self.signals.append((event_type, detail))
        return {}

    def upload_frame(self, session_id, jpeg):
        self.frames.append(jpeg)
        return {}


def _http_error(status):
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"HTTP {status}", response=response)


class FlakyApi(FakeApi):
    """Fails the first `failures` signal sends with the given errors."""

    def __init__(self, *failures):
        super().__init__()
        self.failures = list(failures)
        self.attempts = []

    def send_signal(self, session_id, event_type, detail):
        self.attempts.append(event_type)
        if self.failures:
            raise self.failures.pop(0)
        return super().send_signal(session_id, event_type, detail)


class BrokenCamera:
    def __init__(self):
        self.reads = 0
        self.released = False

    def read(self):
        self.reads += 1
        raise CaptureUnavailable("camera permission denied")

    def release(self):
        self.released = True


class StaticCamera(BrokenCamera):
    def read(self):
        self.reads += 1
        return np.full((120, 160, 3), 60, dtype=np.uint8)


class FakeSocket:
    def __init__(self):
        self.handlers = {}
        self.emitted = []

    def on(self, event, handler):
        self.handlers[event] = handler

    def emit(self, event, data):
        self.emitted.append((event, data))


class FakeCapture:
    def __init__(self, opened=True, frames=()):
        self.opened = opened
        self.frames = list(frames)
        self.released = False

    def isOpened(self):
        return self.opened

    def read(self):
        if not self.frames:
            return False, None
        return True, self.frames.pop(0)

    def release(self):
        self.released = True


def _options():
    return MonitoringOptions(
        frame_interval_ms=10,
        local_check_interval_ms=10,
        capture_retry_base_delay=0.01,
        capture_retry_max_delay=0.02,
    )


async def _drain(api, until, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not until() and asyncio.get_running_loop().time() < deadline:
        await asyncio.sleep(0.01)


class TestCameraSource:
    def test_unopened_device_raises(self):
        capture = FakeCapture(opened=False)
        camera = CameraSource(capture_factory=lambda device: capture)
        with pytest.raises(CaptureUnavailable):
            camera.read()
        assert capture.released

    def test_failed_read_reopens_next_time(self):
        captures = [FakeCapture(frames=[]), FakeCapture(frames=[np.zeros((2, 2, 3))])]
        camera = CameraSource(capture_factory=lambda device: captures.pop(0))
        with pytest.raises(CaptureUnavailable):
            camera.read()
        assert camera.read().shape == (2, 2, 3)
        camera.release()


class TestWatcher:
    def test_each_hook_queues_one_signal(self):
        queue = asyncio.Queue()
        watcher = EnvironmentWatcher(queue)
        watcher.fullscreen_changed(False)
        watcher.fullscreen_changed(True)
        watcher.focus_changed(False)
        watcher.clipboard_attempt("copy")
        watcher.clipboard_attempt("paste")
        watcher.context_menu_attempt()
        kinds = [queue.get_nowait()[0] for _ in range(queue.qsize())]
        assert kinds == [
            EventType.FULLSCREEN_EXIT,
            EventType.TAB_SWITCH,
            EventType.COPY_ATTEMPT,
            EventType.PASTE_ATTEMPT,
            EventType.CONTEXT_MENU,
        ]

    def test_unknown_clipboard_action(self):
        with pytest.raises(ValueError):
            EnvironmentWatcher(asyncio.Queue()).clipboard_attempt("cut")

    def test_full_queue_drops_without_blocking(self):
        watcher = EnvironmentWatcher(asyncio.Queue(maxsize=1))
        watcher.focus_changed(False)
        watcher.focus_changed(False)
        assert watcher.dropped == 1


class TestCaptureClient:
    def test_outage_emits_one_signal_and_watchers_keep_working(self):
        api = FakeApi()
        camera = BrokenCamera()

        async def scenario():
            client = CaptureClient(api, "s1", camera, _options())
            client.start()
            await _drain(api, lambda: camera.reads >= 3)
            client.watcher.focus_changed(False)
            await _drain(api, lambda: len(api.signals) >= 2)
            await client.stop()
            return client

        client = asyncio.run(scenario())
        kinds = [kind for kind, _ in api.signals]
        assert kinds == [EventType.CAPTURE_UNAVAILABLE, EventType.TAB_SWITCH]
        assert api.signals[0][1] == {"reason": "camera permission denied"}
        assert client.status.camera_ok is False
        assert client.status.prompt == REMEDIATION_PROMPTS[EventType.CAPTURE_UNAVAILABLE]
        assert camera.released
        assert api.frames == []

    def test_countdown_keeps_ticking_while_capture_fails(self):
        api = FakeApi()
        expired = []

        async def scenario():
            client = CaptureClient(api, "s1", BrokenCamera(), _options())
            countdown = ExamCountdown(3, on_expire=lambda: expired.append(True), tick_seconds=0.01)
            await asyncio.wait_for(client.run(countdown), timeout=5)
            return client, countdown

        client, countdown = asyncio.run(scenario())
        assert expired == [True]
        assert countdown.remaining == 0
        assert client.status.seconds_remaining == 0

    def test_sampled_frames_are_uploaded(self):
        api = FakeApi()

        async def scenario():
            client = CaptureClient(api, "s1", StaticCamera(), _options())
            client.start()
            await _drain(api, lambda: len(api.frames) >= 2)
            await client.stop()

        asyncio.run(scenario())
        assert len(api.frames) >= 2
        assert api.frames[0][:2] == b"\xff\xd8"
        assert api.signals == []

    def test_single_slot_frame_queue_keeps_newest(self):
        async def scenario():
            client = CaptureClient(FakeApi(), "s1", StaticCamera(), _options())
            first = np.zeros((2, 2, 3), dtype=np.uint8)
            second = np.ones((2, 2, 3), dtype=np.uint8)
            client._offer_frame(first)
            client._offer_frame(second)
            return client, client.frames.get_nowait()

        client, kept = asyncio.run(scenario())
        assert client.frames_dropped == 1
        assert kept.max() == 1

    def test_presence_check_updates_live_status_only(self):
        api = FakeApi()

        class NobodyThere:
            closed = False

            def count(self, frame):
                return 0

            def close(self):
                self.closed = True

        presence = NobodyThere()

        async def scenario():
            client = CaptureClient(api, "s1", StaticCamera(), _options(), presence=presence)
            client.start()
            await _drain(api, lambda: client.status.local_face_count == 0)
            await client.stop()
            return client

        client = asyncio.run(scenario())
        assert client.status.local_face_count == 0
        assert client.status.prompt == REMEDIATION_PROMPTS[EventType.FACE_NOT_DETECTED]
        assert presence.closed
        assert api.signals == []


    def test_signal_is_retried_after_network_errors(self):
        api = FlakyApi(requests.ConnectionError("blip"), _http_error(503))

        async def scenario():
            client = CaptureClient(api, "s1", StaticCamera(), _options())
            client.start()
            client.watcher.focus_changed(False)
            client.watcher.clipboard_attempt("copy")
            await _drain(api, lambda: len(api.signals) >= 2)
            await client.stop()

        asyncio.run(scenario())
        assert api.attempts == [
            EventType.TAB_SWITCH,
            EventType.TAB_SWITCH,
            EventType.TAB_SWITCH,
            EventType.COPY_ATTEMPT,
        ]
        assert [kind for kind, _ in api.signals] == [EventType.TAB_SWITCH, EventType.COPY_ATTEMPT]

    def test_rejected_signal_is_dropped(self):
        api = FlakyApi(_http_error(400))

        async def scenario():
            client = CaptureClient(api, "s1", StaticCamera(), _options())
            client.start()
            client.watcher.context_menu_attempt()
            client.watcher.focus_changed(False)
            await _drain(api, lambda: len(api.signals) >= 1)
            await client.stop()

        asyncio.run(scenario())
        assert api.attempts == [EventType.CONTEXT_MENU, EventType.TAB_SWITCH]
        assert [kind for kind, _ in api.signals] == [EventType.TAB_SWITCH]

    def test_closed_session_stops_capture(self):
        api = FlakyApi(_http_error(409))

        async def scenario():
            client = CaptureClient(api, "s1", StaticCamera(), _options())
            client.watcher.focus_changed(False)
            await asyncio.wait_for(client.run(), timeout=5)
            return client

        client = asyncio.run(scenario())
        assert api.attempts == [EventType.TAB_SWITCH]
        assert client.camera.released


class TestCountdown:
    def test_on_expire_fires_once(self):
        calls = []

        async def on_expire():
            calls.append(1)

        countdown = ExamCountdown(2, on_expire, tick_seconds=0.0)
        asyncio.run(countdown.run())
        asyncio.run(countdown.run())
        assert calls == [1]
        assert countdown.expired


class TestLiveStatus:
    def test_event_maps_to_prompt(self):
        status = LiveStatus()
        status.apply_event("tab_switch")
        status.apply_risk("elevated", 1)
        assert status.prompt == REMEDIATION_PROMPTS[EventType.TAB_SWITCH]
        assert (status.level, status.warning_count) == ("elevated", 1)

    def test_listener_mirrors_fanout(self):
        socket = FakeSocket()
        status = LiveStatus()
        StatusListener("http://localhost:8000", "s1", status, client=socket)
        socket.handlers["connect"]()
        socket.handlers["risk-changed"]({"level": "critical", "warningCount": 3})
        socket.handlers["event-created"]({"eventType": "capture_unavailable"})
        assert socket.emitted == [("join-session", {"sessionId": "s1"})]
        assert status.level == "critical"
        assert status.prompt == "Re-enable your camera."

    def test_session_ended_stops_capture(self):
        socket = FakeSocket()
        ended = []

        async def scenario():
            client = CaptureClient(FakeApi(), "s1", StaticCamera(), _options())
            loop = asyncio.get_running_loop()

            def on_ended(data):
                ended.append(data["state"])
                loop.call_soon_threadsafe(client.request_stop)

            StatusListener(
                "http://localhost:8000", "s1", client.status, client=socket, on_ended=on_ended
            )
            loop.call_later(0.05, socket.handlers["session-ended"], {"state": "abandoned"})
            await asyncio.wait_for(client.run(), timeout=5)
            return client

        client = asyncio.run(scenario())
        assert ended == ["abandoned"]
        assert client.status.ended
        assert client.camera.released


class TestFinishSession:
    class Api:
        def __init__(self, error=None):
            self.error = error

        def complete(self, session_id):
            if self.error is not None:
                raise self.error
            return {"sessionId": session_id, "state": "completed", "score": 3}

        def get_session(self, session_id):
            return {
                "session": {
                    "state": "abandoned",
                    "score": None,
                    "totalPoints": None,
                    "percentage": None,
                    "finalRisk": {"level": "critical", "warningCount": 4},
                    "endedAt": 12.0,
                }
            }

    def test_completes_active_session(self):
        from camera_client import finish_session

        assert finish_session(self.Api(), "s1")["state"] == "completed"

    def test_already_ended_session_is_reported(self):
        from camera_client import finish_session

        result = finish_session(self.Api(_http_error(409)), "s1")
        assert result["state"] == "abandoned"
        assert result["level"] == "critical"

    def test_other_errors_propagate(self):
        from camera_client import finish_session

        with pytest.raises(requests.HTTPError):
            finish_session(self.Api(_http_error(500)), "s1")


def test_bgr_to_rgb_swaps_channels():
    image = np.zeros((2, 2, 3), dtype=np.uint8)
    image[..., 0] = 255
    assert bgr_to_rgb(image)[0, 0].tolist() == [0, 0, 255]
