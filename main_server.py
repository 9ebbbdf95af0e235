"""HTTP surface for the sign translator.

The browser runs hand tracking and posts per-frame classifications (or raw
landmarks) to a session; the server buffers, debounces and translates them.
The server-side camera loop is available too, for kiosk setups.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from history_store import TranslationHistoryStore
from log_utils import setup_logging
from sign_buffer import SignTranslationSession
from sign_classifier import HeuristicSignClassifier, classify_landmark_sets, map_gesture
from sign_config import AppSettings, ConfigurationError
from sign_vocabulary import (
    CATEGORIES,
    get_all_signs,
    get_sign_count,
    get_signs_by_category,
    is_known_sign,
    search_signs,
)
from speech_output import SpeechOutput
from translation_service import ChatCompletionsBackend, TranslationDispatcher, TranslationResult

logger = logging.getLogger(__name__)

RECENT_RESULTS = 20


class SessionRecord:
    """A session plus the caller-side record of its delivered results."""

    def __init__(self, session: SignTranslationSession, user_id: Optional[str], now: float):
        self.session = session
        self.user_id = user_id
        self.results: Deque[Dict[str, Any]] = deque(maxlen=RECENT_RESULTS)
        self.last_active = now


class SessionRegistry:
    """Live sessions by id.

    Sessions idle for longer than ``settings.session_idle_ttl_s`` are closed
    on the next create() or get(). When ``settings.max_sessions`` are live,
    create() closes the least recently used one.
    """

    def __init__(
        self,
        settings: AppSettings,
        dispatcher: TranslationDispatcher,
        history: Optional[TranslationHistoryStore] = None,
        speech: Optional[SpeechOutput] = None,
        scheduler_factory=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.history = history
        self.speech = speech
        self._scheduler_factory = scheduler_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def create(self, overrides: Optional[Dict[str, Any]] = None, user_id: Optional[str] = None) -> str:
        config = self.settings.pipeline.with_overrides(overrides or {})
        self._sweep()

        session_id = uuid.uuid4().hex
        record_holder: Dict[str, SessionRecord] = {}

        def on_result(result: TranslationResult) -> None:
            self._on_result(record_holder["record"], result)

        session = SignTranslationSession(
            config=config,
            dispatcher=self.dispatcher,
            on_result=on_result,
            scheduler=self._scheduler_factory() if self._scheduler_factory else None,
            session_id=session_id,
        )
        record = SessionRecord(session, user_id, self._clock())
        record_holder["record"] = record

        evicted = []
        with self._lock:
            while len(self._records) >= self.settings.max_sessions:
                oldest = min(self._records, key=lambda sid: self._records[sid].last_active)
                evicted.append((oldest, self._records.pop(oldest)))
            self._records[session_id] = record
        for old_id, old in evicted:
            logger.warning("⚠️ Session limit reached; closing least recently used session %s", old_id)
            old.session.close(wait_for_pending=False)

        logger.info("🆕 Session %s created (%s)", session_id, config.to_dict())
        return session_id

    def _on_result(self, record: SessionRecord, result: TranslationResult) -> None:
        record.results.append(result.to_dict())
        if self.speech is not None:
            self.speech.speak_async(result.translation)
        if self.history is not None and record.user_id:
            try:
                self.history.save_translation(record.user_id, result)
            except Exception as e:
                logger.error("❌ Could not save translation for %s: %s", record.user_id, e)

    def _sweep(self) -> None:
        cutoff = self._clock() - self.settings.session_idle_ttl_s
        with self._lock:
            expired = [(sid, r) for sid, r in self._records.items() if r.last_active < cutoff]
            for sid, _ in expired:
                del self._records[sid]
        for sid, record in expired:
            logger.info("⌛ Session %s expired after %.0fs idle", sid, self.settings.session_idle_ttl_s)
            record.session.close(wait_for_pending=False)

    def get(self, session_id: str) -> Optional[SessionRecord]:
        """Look up a live session and mark it active."""
        self._sweep()
        with self._lock:
            record = self._records.get(session_id)
            if record is not None:
                record.last_active = self._clock()
            return record

    def remove(self, session_id: str) -> bool:
        with self._lock:
            record = self._records.pop(session_id, None)
        if record is None:
            return False
        record.session.close(wait_for_pending=False)
        return True

    def close_all(self) -> None:
        with self._lock:
            ids = list(self._records)
        for session_id in ids:
            self.remove(session_id)


def _error(message: str, code: int):
    return jsonify(status="Error", message=message), code


def _is_number(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float))


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _session_state(session_id: str, record: SessionRecord) -> Dict[str, Any]:
    session = record.session
    return {
        "session_id": session_id,
        "signs": session.current_signs(),
        "generation": session.generation,
        "context_aware": session.context_aware,
        "flush_due_ms": session.flush_due_ms,
        "results": list(record.results),
        "config": session.config.to_dict(),
    }


def create_app(
    settings: Optional[AppSettings] = None,
    dispatcher: Optional[TranslationDispatcher] = None,
    history: Optional[TranslationHistoryStore] = None,
    speech: Optional[SpeechOutput] = None,
    scheduler_factory=None,
    controller_factory=None,
    clock: Optional[Callable[[], float]] = None,
) -> Flask:
    settings = settings or AppSettings.from_env()
    if dispatcher is None:
        dispatcher = TranslationDispatcher(ChatCompletionsBackend(settings.llm))
    if speech is None:
        speech = SpeechOutput(enabled=settings.tts_enabled)

    app = Flask(__name__)
    CORS(app)

    registry = SessionRegistry(settings, dispatcher, history, speech, scheduler_factory, clock=clock or time.monotonic)
    classifier = HeuristicSignClassifier(settings.pipeline.min_confidence_threshold)
    app.extensions["sign_sessions"] = registry

    controller_lock = threading.Lock()
    camera: Dict[str, Any] = {"controller": None}

    if controller_factory is None:

        def controller_factory():
            from sign_language_translator import SignLanguageTranslatorController

            return SignLanguageTranslatorController(
                config=settings.pipeline, dispatcher=dispatcher, speech=speech, history=history
            )

    def stop_active_controller() -> None:
        controller = camera["controller"]
        if controller is not None:
            logger.info("🛑 Stopping %s...", type(controller).__name__)
            controller.stop()
            camera["controller"] = None

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify(status="Success", llm_configured=settings.llm.is_configured, history=history is not None)

    # --- Sessions ---

    @app.route("/sessions", methods=["POST"])
    def create_session():
        body = _json_body()
        overrides = body.get("config") or {}
        if not isinstance(overrides, dict):
            return _error("config must be an object", 400)
        try:
            session_id = registry.create(overrides, user_id=body.get("user_id"))
        except (ConfigurationError, TypeError) as e:
            return _error(f"Invalid session config: {e}", 400)
        return jsonify(status="Success", session_id=session_id), 201

    @app.route("/sessions/<session_id>", methods=["GET"])
    def session_state(session_id):
        record = registry.get(session_id)
        if record is None:
            return _error("Unknown session", 404)
        return jsonify(status="Success", data=_session_state(session_id, record))

    @app.route("/sessions/<session_id>", methods=["DELETE"])
    def delete_session(session_id):
        if not registry.remove(session_id):
            return _error("Unknown session", 404)
        return jsonify(status="Success", message="Session closed.")

    @app.route("/sessions/<session_id>/detections", methods=["POST"])
    def add_detection(session_id):
        record = registry.get(session_id)
        if record is None:
            return _error("Unknown session", 404)

        body = _json_body()
        label = body.get("label")
        confidence = body.get("confidence")
        timestamp_ms = body.get("timestamp_ms")
        if label is not None and not isinstance(label, str):
            return _error("label must be a string or null", 400)
        if label and not is_known_sign(label):
            return _error(f"Unknown sign: {label}", 400)
        if not _is_number(confidence) or not 0 <= confidence <= 1:
            return _error("confidence must be a number in [0, 1]", 400)
        if timestamp_ms is not None and not _is_number(timestamp_ms):
            return _error("timestamp_ms must be a number", 400)

        signs, accepted = record.session.submit(label, float(confidence), timestamp_ms)
        return jsonify(status="Success", signs=signs, accepted=accepted)

    @app.route("/sessions/<session_id>/landmarks", methods=["POST"])
    def add_landmarks(session_id):
        record = registry.get(session_id)
        if record is None:
            return _error("Unknown session", 404)

        body = _json_body()
        hands = body.get("hands")
        timestamp_ms = body.get("timestamp_ms")
        if not isinstance(hands, list):
            return _error("hands must be a list of 21-point landmark lists", 400)
        if timestamp_ms is not None and not _is_number(timestamp_ms):
            return _error("timestamp_ms must be a number", 400)

        predictions = classify_landmark_sets(hands, classifier)
        signs = record.session.current_signs()
        accepted = []
        for pred in predictions:
            signs, ok = record.session.submit(pred.label, pred.confidence, timestamp_ms)
            if ok:
                accepted.append(pred.label)
        return jsonify(
            status="Success",
            signs=signs,
            accepted=accepted,
            predictions=[{"label": p.label, "confidence": p.confidence} for p in predictions],
        )

    @app.route("/sessions/<session_id>/gestures", methods=["POST"])
    def add_gesture(session_id):
        record = registry.get(session_id)
        if record is None:
            return _error("Unknown session", 404)

        body = _json_body()
        name = body.get("name")
        score = body.get("score")
        timestamp_ms = body.get("timestamp_ms")
        if not isinstance(name, str):
            return _error("name must be a gesture category string", 400)
        if not _is_number(score) or not 0 <= score <= 1:
            return _error("score must be a number in [0, 1]", 400)
        if timestamp_ms is not None and not _is_number(timestamp_ms):
            return _error("timestamp_ms must be a number", 400)

        pred = map_gesture(name, float(score))
        if pred is None:
            return jsonify(status="Success", signs=record.session.current_signs(), label=None, accepted=False)
        signs, accepted = record.session.submit(pred.label, pred.confidence, timestamp_ms)
        return jsonify(status="Success", signs=signs, label=pred.label, accepted=accepted)

    @app.route("/sessions/<session_id>/clear", methods=["POST"])
    def clear_session(session_id):
        record = registry.get(session_id)
        if record is None:
            return _error("Unknown session", 404)
        record.session.clear()
        return jsonify(status="Success", signs=[])

    @app.route("/sessions/<session_id>/mode", methods=["PUT"])
    def set_mode(session_id):
        record = registry.get(session_id)
        if record is None:
            return _error("Unknown session", 404)
        enabled = _json_body().get("context_aware")
        if not isinstance(enabled, bool):
            return _error("context_aware must be a boolean", 400)
        record.session.set_context_aware(enabled)
        return jsonify(status="Success", context_aware=enabled)

    # --- One-shot translation helpers ---

    @app.route("/translate", methods=["POST"])
    def translate():
        body = _json_body()
        signs = body.get("signs")
        if not isinstance(signs, list) or not signs or not all(isinstance(s, str) and s for s in signs):
            return _error("signs must be a non-empty list of strings", 400)
        context_aware = body.get("context_aware", False)
        if not isinstance(context_aware, bool):
            return _error("context_aware must be a boolean", 400)
        result = dispatcher.dispatch(signs, context_aware=context_aware)
        return jsonify(status="Success", data=result.to_dict())

    @app.route("/text_to_sign", methods=["POST"])
    def text_to_sign():
        text = _json_body().get("text")
        if not isinstance(text, str) or not text.strip():
            return _error("text is required", 400)
        return jsonify(status="Success", data=dispatcher.text_to_signs(text))

    @app.route("/signs", methods=["GET"])
    def list_signs():
        category = request.args.get("category")
        query = request.args.get("q")
        if category:
            signs = get_signs_by_category(category)
        elif query:
            signs = search_signs(query)
        else:
            signs = get_all_signs()
        return jsonify(
            status="Success",
            categories=CATEGORIES,
            total=get_sign_count(),
            signs=[
                {"key": s.key, "name": s.name, "description": s.description, "category": s.category}
                for s in signs
            ],
        )

    @app.route("/signs/<key>/explanation", methods=["GET"])
    def explain_sign(key):
        return jsonify(status="Success", data=dispatcher.explain_sign(key.upper()))

    @app.route("/history/<user_id>", methods=["GET"])
    def user_history(user_id):
        if history is None:
            return _error("Translation history is not configured", 503)
        limit = request.args.get("limit", default=10, type=int)
        return jsonify(status="Success", data=history.get_user_translations(user_id, limit=max(1, min(limit, 100))))

    # --- Server-side camera loop ---

    @app.route("/start_sign_language_translator", methods=["GET"])
    def start_sign_language_translator():
        with controller_lock:
            try:
                stop_active_controller()
                controller = controller_factory()
                controller.user_id = request.args.get("user_id")
                controller.start()
                camera["controller"] = controller
            except Exception as e:
                logger.error("❌ Error starting Sign Language Translator: %s", e)
                return _error(f"Failed to start Sign Language Translator: {e}", 500)
        return jsonify(status="Success", message="Sign Language Translator started.")

    @app.route("/sign_language_translator_state", methods=["GET"])
    def sign_language_translator_state():
        controller = camera["controller"]
        if controller is None:
            return jsonify(status="Success", data={"running": False})
        return jsonify(status="Success", data=controller.get_snapshot())

    @app.route("/sign_language_translator/clear", methods=["POST"])
    def clear_sign_language_translator():
        controller = camera["controller"]
        if controller is None:
            return _error("Sign Language Translator is not running", 409)
        controller.clear()
        return jsonify(status="Success", message="Cleared.")

    @app.route("/stop_control", methods=["GET"])
    def stop_control():
        with controller_lock:
            stop_active_controller()
        return jsonify(status="Success", message="All controls stopped.")

    return app


def main() -> None:
    setup_logging()
    settings = AppSettings.from_env()
    history = TranslationHistoryStore.from_settings(settings.firebase)
    app = create_app(settings=settings, history=history)
    logger.info("--- Starting Sign Translator Server on port %d ---", settings.server_port)
    app.run(host="0.0.0.0", port=settings.server_port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
