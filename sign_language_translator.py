"""Server-side camera loop for the sign translator.

Frames come from OpenCV and go through MediaPipe and the heuristic
classifier. Every per-hand prediction feeds one SignTranslationSession.
Finished translations are spoken and, when a user id is set, written to
history. The web UI polls get_snapshot().
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Dict, List, Optional

import cv2

from history_store import TranslationHistoryStore
from sign_buffer import SignTranslationSession
from sign_classifier import FrameClassifier, HandLandmarkExtractor, HeuristicSignClassifier
from sign_config import PipelineConfig
from speech_output import SpeechOutput
from translation_service import TranslationDispatcher, TranslationResult

logger = logging.getLogger(__name__)


class SignLanguageTranslatorController:
    """Camera loop + translation session + snapshot for polling."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        dispatcher: Optional[TranslationDispatcher] = None,
        speech: Optional[SpeechOutput] = None,
        history: Optional[TranslationHistoryStore] = None,
        user_id: Optional[str] = None,
        frame_classifier: Optional[FrameClassifier] = None,
    ):
        self.config = config or PipelineConfig.from_env()
        self.speech = speech or SpeechOutput(enabled=False)
        self.history = history
        self.user_id = user_id
        self.cap = None

        self._stop_event = threading.Event()
        self._snapshot_lock = threading.Lock()
        self._snapshot: Dict[str, object] = {
            "running": False,
            "detection_status": "NO_HAND",
            "gesture": "Detecting...",
            "hands": 0,
            "signs": [],
            "translation": "",
            "last_result": None,
            "updated_at": time.time(),
        }

        self.session = SignTranslationSession(
            config=self.config,
            dispatcher=dispatcher,
            on_result=self._handle_translation,
            session_id="camera",
        )
        self._frame_classifier = frame_classifier
        self._owns_frame_classifier = frame_classifier is None
        self.current_gesture = "Detecting..."

    @property
    def frame_classifier(self) -> FrameClassifier:
        if self._frame_classifier is None:
            self._frame_classifier = FrameClassifier(
                HandLandmarkExtractor(),
                HeuristicSignClassifier(self.config.min_confidence_threshold),
            )
        return self._frame_classifier

    def get_snapshot(self) -> Dict[str, object]:
        with self._snapshot_lock:
            snap = dict(self._snapshot)
        snap["signs"] = self.session.current_signs()
        return snap

    def _update_snapshot(self, **values) -> None:
        with self._snapshot_lock:
            self._snapshot.update(values)
            self._snapshot["updated_at"] = time.time()

    def _handle_translation(self, result: TranslationResult) -> None:
        self._update_snapshot(translation=result.translation, last_result=result.to_dict())
        self.speech.speak_async(result.translation)

        if self.history is not None and self.user_id:
            try:
                self.history.save_translation(self.user_id, result)
            except Exception as e:
                logger.error("❌ Could not save translation: %s", e)

    def clear(self) -> None:
        self.session.clear()
        self._update_snapshot(translation="", last_result=None)

    def process_frame(self, image_bgr) -> List[str]:
        """Classify one frame and feed the session. Returns the live buffer."""
        predictions = self.frame_classifier.classify_frame(image_bgr)
        now = self.session.scheduler.now_ms()

        if predictions:
            self.current_gesture = predictions[0].label or "Detecting..."
        else:
            self.current_gesture = "Detecting..."

        signs = self.session.current_signs()
        for pred in predictions:
            signs = self.session.on_detection(pred.label, pred.confidence, now)

        self._update_snapshot(
            running=True,
            detection_status=self.frame_classifier.detection_status,
            gesture=self.current_gesture,
            hands=len(self.frame_classifier.last_hands),
        )
        return signs

    def _draw_camera_text(self, image, signs: List[str]) -> None:
        height, width = image.shape[:2]

        overlay = image.copy()
        cv2.rectangle(overlay, (10, 10), (width - 10, 130), (0, 0, 0), -1)
        cv2.addWeighted(overlay, 0.7, image, 0.3, 0, image)

        with self._snapshot_lock:
            translation = str(self._snapshot.get("translation") or "")

        y_pos = 35
        texts = [
            f"STATUS: {self.frame_classifier.detection_status}",
            f"GESTURE: {self.current_gesture}",
            f"SIGNS: {' '.join(signs)[:40]}",
            f"TRANSLATION: {translation[:40]}",
        ]
        colors = [(200, 200, 200), (0, 255, 0), (255, 255, 0), (0, 255, 255)]
        for text, color in zip(texts, colors):
            cv2.putText(image, text, (20, y_pos), cv2.FONT_HERSHEY_SIMPLEX, 0.55, color, 2)
            y_pos += 24

        cv2.putText(
            image,
            "Hold each sign steady | pause to translate | ESC to quit",
            (20, height - 10),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.4,
            (150, 150, 150),
            1,
        )

    def run_camera(self) -> None:
        camera_index = int(os.environ.get("SIGN_CAMERA_INDEX", "0"))
        headless = os.environ.get("SIGN_TRANSLATOR_HEADLESS", "0") == "1"
        flip_camera = os.environ.get("SIGN_FLIP_CAMERA", "1") == "1"

        self.cap = cv2.VideoCapture(camera_index)
        self._update_snapshot(running=True)
        logger.info("📷 Sign translator camera %d started", camera_index)

        try:
            while self.cap.isOpened() and not self._stop_event.is_set():
                success, image = self.cap.read()
                if not success:
                    continue

                if flip_camera:
                    image = cv2.flip(image, 1)

                signs = self.process_frame(image)

                if not headless:
                    for hand in self.frame_classifier.last_hands:
                        self.frame_classifier.extractor.draw(image, hand)
                    self._draw_camera_text(image, signs)
                    cv2.imshow("ASL Sign Language Translator", image)
                    if cv2.waitKey(5) & 0xFF == 27:
                        break
        finally:
            self.cap.release()
            if not headless:
                cv2.destroyAllWindows()
            self._release_frame_classifier()
            self._update_snapshot(running=False)
            logger.info("📷 Sign translator camera stopped")

    def _release_frame_classifier(self) -> None:
        # Injected classifiers belong to the caller.
        if self._owns_frame_classifier and self._frame_classifier is not None:
            self._frame_classifier.extractor.close()
            self._frame_classifier = None

    def start(self) -> threading.Thread:
        self._stop_event.clear()
        thread = threading.Thread(target=self.run_camera, daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        self._stop_event.set()
        self.session.close(wait_for_pending=False)
        self._update_snapshot(running=False)
