"""
Sit an exam from this machine: register, upload a reference frame, stream
environment signals and sampled frames, and submit when time runs out.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

import requests
import socketio

from integrity_monitoring.capture import (
    ApiClient,
    CameraSource,
    CaptureClient,
    ExamCountdown,
    LiveStatus,
    LocalPresenceCheck,
    StatusListener,
)
from integrity_monitoring.config import MonitoringOptions
from integrity_monitoring.utils import encode_jpeg

LOGGER = logging.getLogger(__name__)

SERVER_URL = "http://localhost:8000"
STATUS_EVERY_SECONDS = 60


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--server", default=SERVER_URL)
    parser.add_argument("--exam", default="sample-cs", help="exam id to sit")
    parser.add_argument("--name", required=True, help="test-taker name")
    parser.add_argument("--contact", default=None)
    parser.add_argument("--device", type=int, default=0, help="camera index")
    parser.add_argument(
        "--skip-reference",
        action="store_true",
        help="do not upload a reference frame (identity checks are skipped)",
    )
    parser.add_argument(
        "--no-local-check",
        action="store_true",
        help="disable the local face-presence feedback",
    )
    return parser.parse_args(argv)


async def run_session(args: argparse.Namespace, options: MonitoringOptions) -> dict:
    api = ApiClient(args.server)
    exam = await asyncio.to_thread(api.get_exam, args.exam)
    session = await asyncio.to_thread(api.register, args.exam, args.name, args.contact)
    session_id = session["id"]
    LOGGER.info("Registered session %s for '%s'", session_id, exam["title"])

    camera = CameraSource(args.device)
    if not args.skip_reference:
        frame = await asyncio.to_thread(camera.read)
        await asyncio.to_thread(api.upload_reference, session_id, encode_jpeg(frame))
        LOGGER.info("Reference frame accepted")

    await asyncio.to_thread(api.activate, session_id)

    status = LiveStatus()
    presence = None if args.no_local_check else LocalPresenceCheck()
    client = CaptureClient(api, session_id, camera, options, presence, status)
    loop = asyncio.get_running_loop()

    def on_ended(data: dict) -> None:
        # Socket.IO callbacks run on the client's own thread.
        loop.call_soon_threadsafe(client.request_stop)

    listener = StatusListener(args.server, session_id, status, on_ended=on_ended)
    try:
        await asyncio.to_thread(listener.connect)
    except socketio.exceptions.ConnectionError as exc:
        # Live status is a convenience; monitoring continues without it.
        LOGGER.warning("Live status unavailable: %s", exc)
        listener = None

    def on_tick(remaining: int) -> None:
        if remaining % STATUS_EVERY_SECONDS == 0:
            LOGGER.info(
                "%d s left | risk=%s warnings=%d | %s",
                remaining,
                status.level,
                status.warning_count,
                status.prompt or "ok",
            )

    countdown = ExamCountdown(
        int(exam.get("duration", 3600)), on_expire=client.request_stop, on_tick=on_tick
    )

    try:
        loop.add_signal_handler(signal.SIGINT, client.request_stop)
    except NotImplementedError:  # Windows event loops
        pass

    try:
        await client.run(countdown)
    finally:
        if listener is not None:
            await asyncio.to_thread(listener.disconnect)
    return await asyncio.to_thread(finish_session, api, session_id)


def finish_session(api: ApiClient, session_id: str) -> dict:
    """
    Complete the session, or report how it ended if the server already
    closed it.
    """
    try:
        return api.complete(session_id)
    except requests.HTTPError as exc:
        if exc.response is None or exc.response.status_code != 409:
            raise
    session = api.get_session(session_id)["session"]
    final_risk = session.get("finalRisk") or {}
    LOGGER.warning("Session %s had already ended as %s", session_id, session["state"])
    return {
        "sessionId": session_id,
        "state": session["state"],
        "score": session.get("score"),
        "totalPoints": session.get("totalPoints"),
        "percentage": session.get("percentage"),
        "level": final_risk.get("level"),
        "warningCount": final_risk.get("warningCount"),
        "endedAt": session.get("endedAt"),
    }


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    options = MonitoringOptions.from_env()
    result = asyncio.run(run_session(args, options))
    LOGGER.info(
        "Exam submitted: %s/%s points (%s%%), risk %s",
        result.get("score"),
        result.get("totalPoints"),
        result.get("percentage"),
        result.get("level"),
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
