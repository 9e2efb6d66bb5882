"""
Flask entry-point exposing the integrity monitoring service over HTTP and
Socket.IO.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request, send_file
from flask_socketio import SocketIO, emit

from integrity_monitoring import (
    AnswerSheet,
    BiometricAnalyzer,
    EventNormalizer,
    EventType,
    EvidenceStore,
    ExamCatalog,
    FanoutHub,
    MonitoringOptions,
    MonitorRegistry,
    RiskEngine,
    RiskPolicy,
    SessionLifecycleController,
    SessionState,
    SocketIOTransport,
    build_log_store,
    load_default_analyzer,
)
from integrity_monitoring.errors import (
    AnalysisUnavailable,
    IntegrityMonitoringError,
    InvalidState,
    NoFaceInReference,
    PersistenceFailure,
    UnknownSession,
)
from integrity_monitoring.events import CLIENT_SIGNAL_TYPES
from integrity_monitoring.log_store import EventLogStore
from integrity_monitoring.utils import decode_image_from_base64, decode_image_from_bytes

LOGGER = logging.getLogger(__name__)

SUBJECT = "subject"
SUPERVISOR = "supervisor"
ROLES = (SUBJECT, SUPERVISOR)


@dataclass
class Services:
    options: MonitoringOptions
    store: EventLogStore
    risk: RiskEngine
    hub: FanoutHub
    normalizer: EventNormalizer
    monitors: MonitorRegistry
    lifecycle: SessionLifecycleController
    evidence: EvidenceStore
    catalog: ExamCatalog
    answers: AnswerSheet
    analyzer: BiometricAnalyzer

    def shutdown(self) -> None:
        self.monitors.stop_all()


def current_role() -> str:
    """
    Role asserted by the upstream identity layer; no login happens here.
    """
    role = request.headers.get("X-Role") or request.args.get("role") or SUBJECT
    return role.strip().lower()


def require_role(*roles: str):
    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            role = current_role()
            if role not in roles:
                return (
                    jsonify(
                        {
                            "error": f"Role '{role}' is not allowed here",
                            "code": "forbidden",
                        }
                    ),
                    403,
                )
            return view(*args, **kwargs)

        return wrapper

    return decorator


def _error(exc: Exception, status: int, code: Optional[str] = None):
    return (
        jsonify({"error": str(exc), "code": code or getattr(exc, "code", "error")}),
        status,
    )


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True) if request.is_json else None
    return payload or {}


def _extract_image_payload():
    """
    Load an image from a ``file`` upload or an ``image_base64`` JSON field.
    """
    if request.files:
        file_storage = request.files.get("file")
        if not file_storage or not file_storage.filename:
            raise ValueError("Missing uploaded file")
        return decode_image_from_bytes(file_storage.read())

    payload = _json_body()
    if "image_base64" in payload:
        return decode_image_from_base64(payload["image_base64"])

    raise ValueError(
        "Unsupported request payload. Provide 'file' via form-data "
        "or 'image_base64' within a JSON body."
    )


def build_services(
    options: MonitoringOptions,
    analyzer: Optional[BiometricAnalyzer],
    socketio: SocketIO,
    background_delivery: bool = True,
) -> Services:
    analyzer = analyzer or load_default_analyzer(options)
    store = build_log_store(options.log_dir)
    risk = RiskEngine(RiskPolicy.from_options(options))
    lifecycle: Optional[SessionLifecycleController] = None

    def exam_lookup(session_id: str) -> Optional[str]:
        return lifecycle.exam_id_for(session_id) if lifecycle is not None else None

    def on_degraded(session_id: str, reason: str) -> None:
        if lifecycle is not None:
            lifecycle.mark_degraded(session_id, reason)

    hub = FanoutHub(
        SocketIOTransport(socketio),
        exam_lookup,
        queue_size=options.observer_queue_size,
        start_pump=socketio.start_background_task if background_delivery else None,
    )
    normalizer = EventNormalizer(store, risk, hub, on_degraded=on_degraded)
    evidence = EvidenceStore(options.evidence_dir)
    monitors = MonitorRegistry(analyzer, normalizer, evidence, options)
    catalog = ExamCatalog.load(options.exam_catalog_path)
    answers = AnswerSheet()
    lifecycle = SessionLifecycleController(
        catalog,
        answers,
        normalizer,
        hub,
        monitors,
        analyzer,
        evidence,
        state_path=(options.log_dir / "sessions.json") if options.log_dir else None,
    )
    lifecycle.restore()
    return Services(
        options=options,
        store=store,
        risk=risk,
        hub=hub,
        normalizer=normalizer,
        monitors=monitors,
        lifecycle=lifecycle,
        evidence=evidence,
        catalog=catalog,
        answers=answers,
        analyzer=analyzer,
    )


def create_app(
    options: MonitoringOptions | None = None,
    analyzer: BiometricAnalyzer | None = None,
    background_delivery: bool = True,
) -> Tuple[Flask, SocketIO]:
    options = options or MonitoringOptions()
    app = Flask(__name__)
    socketio = SocketIO(app, async_mode="threading", cors_allowed_origins="*")
    services = build_services(options, analyzer, socketio, background_delivery)
    app.extensions["integrity_monitoring"] = services
    lifecycle = services.lifecycle
    normalizer = services.normalizer
    hub = services.hub

    backend = services.analyzer.backend
    if hasattr(backend, "prepare"):
        socketio.start_background_task(_warm_up, backend)

    # Error translation ---------------------------------------------------

    @app.errorhandler(InvalidState)
    def _invalid_state(exc):
        return _error(exc, 409)

    @app.errorhandler(UnknownSession)
    def _unknown_session(exc):
        return _error(exc, 404)

    @app.errorhandler(LookupError)
    def _not_found(exc):
        return _error(exc, 404, "not_found")

    @app.errorhandler(NoFaceInReference)
    def _no_face_in_reference(exc):
        return _error(exc, 400)

    @app.errorhandler(AnalysisUnavailable)
    def _analysis_unavailable(exc):
        return _error(exc, 503)

    @app.errorhandler(PersistenceFailure)
    def _persistence_failure(exc):
        return _error(exc, 500)

    @app.errorhandler(IntegrityMonitoringError)
    def _integrity_error(exc):
        return _error(exc, 400)

    @app.errorhandler(ValueError)
    def _bad_request(exc):
        return _error(exc, 400, "bad_request")

    # Routes ----------------------------------------------------------------

    @app.route("/health", methods=["GET"])
    def health() -> Any:
        return jsonify({"status": "ok", "analyzerReady": services.analyzer.ready})

    @app.route("/api/exams", methods=["GET"])
    def list_exams() -> Any:
        include_answers = current_role() == SUPERVISOR
        return jsonify(
            [exam.to_dict(include_answers) for exam in services.catalog.all()]
        )

    @app.route("/api/exams/<exam_id>", methods=["GET"])
    def get_exam(exam_id: str) -> Any:
        exam = services.catalog.get(exam_id)
        if exam is None:
            return jsonify({"error": f"Unknown exam '{exam_id}'", "code": "not_found"}), 404
        return jsonify(exam.to_dict(current_role() == SUPERVISOR))

    @app.route("/api/exams/<exam_id>/sessions", methods=["GET"])
    @require_role(SUPERVISOR)
    def exam_sessions(exam_id: str) -> Any:
        if services.catalog.get(exam_id) is None:
            return jsonify({"error": f"Unknown exam '{exam_id}'", "code": "not_found"}), 404
        return jsonify(
            [lifecycle.summary(session) for session in lifecycle.sessions_for_exam(exam_id)]
        )

    @app.route("/api/sessions", methods=["POST"])
    @require_role(SUBJECT)
    def register_session() -> Any:
        payload = _json_body()
        exam_id = payload.get("examId")
        name = payload.get("subjectName")
        if not exam_id or not name:
            return (
                jsonify({"error": "Missing 'examId' or 'subjectName'", "code": "bad_request"}),
                400,
            )
        session = lifecycle.register(exam_id, name, payload.get("subjectContact"))
        return jsonify(session.to_dict()), 201

    @app.route("/api/sessions/<session_id>/reference", methods=["POST"])
    @require_role(SUBJECT)
    def upload_reference(session_id: str) -> Any:
        lifecycle.get(session_id)
        image = _extract_image_payload()
        session = lifecycle.attach_reference(session_id, image)
        return jsonify(session.to_dict())

    @app.route("/api/sessions/<session_id>/activate", methods=["POST"])
    @require_role(SUBJECT)
    def activate_session(session_id: str) -> Any:
        session = lifecycle.activate(session_id)
        return jsonify(session.to_dict())

    @app.route("/api/sessions/<session_id>/signals", methods=["POST"])
    @require_role(SUBJECT)
    def record_signal(session_id: str) -> Any:
        session = lifecycle.get(session_id)
        payload = _json_body()
        kind = EventType.coerce(payload.get("eventType"))
        if kind not in CLIENT_SIGNAL_TYPES:
            raise ValueError(f"'{kind.value}' cannot be reported by the client")
        detail = payload.get("detail") or {}
        if not isinstance(detail, dict):
            raise ValueError("'detail' must be an object")
        if session.state is not SessionState.ACTIVE:
            raise InvalidState(f"Session is {session.state.value}")
        event = normalizer.record(session_id, kind, detail)
        if event is None:
            raise InvalidState("Session is no longer accepting events")
        return jsonify(event.to_dict()), 201

    @app.route("/api/sessions/<session_id>/frames", methods=["POST"])
    @require_role(SUBJECT)
    def submit_frame(session_id: str) -> Any:
        session = lifecycle.get(session_id)
        if session.state is not SessionState.ACTIVE:
            raise InvalidState(f"Session is {session.state.value}")
        image = _extract_image_payload()
        queued = services.monitors.submit(session_id, image)
        return jsonify({"sessionId": session_id, "queued": queued}), 202

    @app.route("/api/sessions/<session_id>/answers", methods=["POST"])
    @require_role(SUBJECT)
    def submit_answer(session_id: str) -> Any:
        session = lifecycle.get(session_id)
        if session.state is not SessionState.ACTIVE:
            raise InvalidState(f"Session is {session.state.value}")
        payload = _json_body()
        question_id = payload.get("questionId")
        option_id = payload.get("optionId")
        question = services.catalog.get(session.exam_id).question(question_id or "")
        if question is None or question.option(option_id or "") is None:
            raise ValueError("Unknown question or option")
        services.answers.submit(session_id, question_id, option_id)
        return jsonify({"sessionId": session_id, "questionId": question_id, "optionId": option_id})

    @app.route("/api/sessions/<session_id>/complete", methods=["POST"])
    @require_role(SUBJECT, SUPERVISOR)
    def complete_session(session_id: str) -> Any:
        result = lifecycle.complete(session_id)
        return jsonify(result.to_dict())

    @app.route("/api/sessions/<session_id>/abandon", methods=["POST"])
    @require_role(SUPERVISOR)
    def abandon_session(session_id: str) -> Any:
        reason = _json_body().get("reason") or "abandoned by supervisor"
        session = lifecycle.abandon(session_id, reason)
        return jsonify(session.to_dict())

    @app.route("/api/sessions/<session_id>", methods=["GET"])
    def session_snapshot(session_id: str) -> Any:
        return jsonify(lifecycle.snapshot(session_id))

    @app.route("/api/sessions/<session_id>/events", methods=["GET"])
    def session_events(session_id: str) -> Any:
        lifecycle.get(session_id)
        since = request.args.get("since")
        since_value = float(since) if since not in (None, "") else None
        events = [event.to_dict() for event in normalizer.query(session_id, since_value)]
        return jsonify(events)

    @app.route("/evidence/<name>", methods=["GET"])
    @require_role(SUPERVISOR)
    def get_evidence(name: str) -> Any:
        try:
            path = services.evidence.resolve(f"evidence/{name}")
        except KeyError:
            return jsonify({"error": "Unknown evidence handle", "code": "not_found"}), 404
        return send_file(path, mimetype="image/jpeg")

    # Socket.IO -------------------------------------------------------------

    socket_roles: Dict[str, str] = {}

    @socketio.on("connect")
    def on_connect(auth=None):
        role = (auth or {}).get("role") if isinstance(auth, dict) else None
        socket_roles[request.sid] = (role or current_role()).lower()
        LOGGER.info("Observer %s connected as %s", request.sid, socket_roles[request.sid])

    @socketio.on("disconnect")
    def on_disconnect(reason=None):
        socket_roles.pop(request.sid, None)
        hub.remove(request.sid)

    @socketio.on("join-session")
    def on_join_session(data):
        session_id = (data or {}).get("sessionId")
        if lifecycle.exam_id_for(session_id or "") is None:
            emit("join-error", {"error": f"Unknown session '{session_id}'", "code": "unknown_session"})
            return {"ok": False}
        hub.subscribe_session(request.sid, session_id)
        return {"ok": True}

    @socketio.on("leave-session")
    def on_leave_session(data):
        hub.unsubscribe_session(request.sid, (data or {}).get("sessionId", ""))
        return {"ok": True}

    @socketio.on("join-exam")
    def on_join_exam(data):
        exam_id = (data or {}).get("examId")
        if socket_roles.get(request.sid) != SUPERVISOR:
            emit("join-error", {"error": "Supervisor role required", "code": "forbidden"})
            return {"ok": False}
        if services.catalog.get(exam_id or "") is None:
            emit("join-error", {"error": f"Unknown exam '{exam_id}'", "code": "not_found"})
            return {"ok": False}
        hub.subscribe_exam(request.sid, exam_id)
        return {"ok": True}

    @socketio.on("leave-exam")
    def on_leave_exam(data):
        hub.unsubscribe_exam(request.sid, (data or {}).get("examId", ""))
        return {"ok": True}

    return app, socketio


def _warm_up(backend) -> None:
    try:
        backend.prepare()
    except Exception:  # keep serving; analysis reports unavailable until ready
        LOGGER.exception("Face model preparation failed")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app, socketio = create_app(MonitoringOptions.from_env())
    socketio.run(app, host="0.0.0.0", port=8000, debug=False, allow_unsafe_werkzeug=True)
