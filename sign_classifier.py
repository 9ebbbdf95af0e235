"""Per-frame sign classification.

MediaPipe gives up to two hands per frame, 21 landmarks each. A fixed
decision table over finger-extension booleans turns each hand into a
vocabulary sign (or nothing). Classification errors are reported as "no
sign" and never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# MediaPipe Hands landmark indices
WRIST = 0
THUMB_MCP, THUMB_TIP = 2, 4
INDEX_MCP, INDEX_TIP = 5, 8
MIDDLE_MCP, MIDDLE_TIP = 9, 12
RING_MCP, RING_TIP = 13, 16
PINKY_MCP, PINKY_TIP = 17, 20

NUM_LANDMARKS = 21

# MediaPipe gesture recognizer category -> vocabulary sign
GESTURE_TO_SIGN = {
    "Thumb_Up": "YES",
    "Victory": "PEACE",
    "Open_Palm": "HELLO",
    "Closed_Fist": "STOP",
    "Pointing_Up": "ONE",
    "ILoveYou": "LOVE",
    "Thumb_Down": "NO",
}
GESTURE_MIN_SCORE = 0.7


@dataclass(frozen=True)
class SignPrediction:
    label: Optional[str]
    confidence: float
    method: str = "heuristic"  # heuristic | mediapipe-ai | none | error
    handedness: str = "Unknown"

    @property
    def is_sign(self) -> bool:
        return self.label is not None


NO_SIGN = SignPrediction(label=None, confidence=0.0, method="none")


def landmarks_to_array(landmarks: Any) -> np.ndarray:
    """Accept a MediaPipe hand, points with .x/.y/.z (objects or dicts), or an (N, 2|3) array."""
    points = getattr(landmarks, "landmark", landmarks)
    if isinstance(points, np.ndarray):
        pts = points.astype(np.float32)
    else:
        rows = []
        for p in points:
            if hasattr(p, "x"):
                rows.append((p.x, p.y, getattr(p, "z", 0.0) or 0.0))
            elif isinstance(p, dict):
                # Browser MediaPipe results: {"x": .., "y": .., "z": ..}
                rows.append((p["x"], p["y"], p.get("z") or 0.0))
            else:
                rows.append(tuple(p) + (0.0,) * (3 - len(p)))
        pts = np.array(rows, dtype=np.float32)
    if pts.ndim == 2 and pts.shape[1] == 2:
        pts = np.hstack([pts, np.zeros((pts.shape[0], 1), dtype=np.float32)])
    return pts


class HeuristicSignClassifier:
    """Decision table over which fingers are extended.

    A finger is extended when its tip is farther from the wrist than its
    MCP joint. Signs below ``min_confidence`` are dropped.
    """

    def __init__(self, min_confidence: float = 0.85):
        self.min_confidence = float(min_confidence)

    @staticmethod
    def _dist(a: np.ndarray, b: np.ndarray) -> float:
        return float(np.linalg.norm(a - b))

    def finger_states(self, pts: np.ndarray) -> Tuple[bool, bool, bool, bool, bool]:
        wrist = pts[WRIST]

        def extended(tip: int, mcp: int) -> bool:
            return self._dist(pts[tip], wrist) > self._dist(pts[mcp], wrist)

        return (
            extended(THUMB_TIP, THUMB_MCP),
            extended(INDEX_TIP, INDEX_MCP),
            extended(MIDDLE_TIP, MIDDLE_MCP),
            extended(RING_TIP, RING_MCP),
            extended(PINKY_TIP, PINKY_MCP),
        )

    def _detect(self, pts: np.ndarray) -> Tuple[Optional[str], float]:
        thumb, index, middle, ring, pinky = self.finger_states(pts)
        count = sum((thumb, index, middle, ring, pinky))
        wrist = pts[WRIST]
        # Image coordinates: y grows downwards.

        if count == 0:
            return "STOP", 0.90

        if thumb and not (index or middle or ring or pinky):
            if pts[THUMB_TIP][1] < wrist[1] - 0.12:
                return "YES", 0.95

        if index and not (thumb or middle or ring or pinky):
            return "ONE", 0.92

        if index and middle and not (thumb or ring or pinky):
            if self._dist(pts[INDEX_TIP], pts[MIDDLE_TIP]) > 0.09:
                return "PEACE", 0.93
            return "TWO", 0.90

        if thumb and index and middle and not (ring or pinky):
            return "THREE", 0.92

        if index and middle and ring and pinky and not thumb:
            return "FOUR", 0.92

        if count == 5:
            if pts[MIDDLE_TIP][1] < wrist[1] - 0.15:
                return "HELLO", 0.91
            return "FIVE", 0.90

        if thumb and index and not (middle or ring or pinky):
            if abs(float(pts[THUMB_TIP][0] - pts[INDEX_TIP][0])) > 0.12:
                return "L", 0.90

        if index and pinky and not (thumb or middle or ring):
            return "LOVE", 0.90

        if thumb and pinky and not (index or middle or ring):
            return "Y", 0.90

        if thumb and not (index or middle or ring or pinky):
            thumb_tip = pts[THUMB_TIP]
            if thumb_tip[1] > pts[THUMB_MCP][1] + 0.05 and thumb_tip[1] > wrist[1] + 0.08:
                return "NO", 0.88

        return None, 0.0

    def classify(self, landmarks: Any, handedness: str = "Unknown") -> SignPrediction:
        try:
            pts = landmarks_to_array(landmarks)
            if pts.shape != (NUM_LANDMARKS, 3):
                return NO_SIGN
            label, confidence = self._detect(pts)
        except Exception as e:
            logger.warning("⚠️ Sign classification error: %s", e)
            return SignPrediction(label=None, confidence=0.0, method="error")

        if label is None or confidence < self.min_confidence:
            return NO_SIGN
        return SignPrediction(label=label, confidence=confidence, method="heuristic", handedness=handedness)


def map_gesture(name: str, score: float) -> Optional[SignPrediction]:
    """Map a MediaPipe gesture-recognizer category onto the vocabulary."""
    sign = GESTURE_TO_SIGN.get(name)
    if sign is None or score <= GESTURE_MIN_SCORE:
        return None
    return SignPrediction(label=sign, confidence=float(score), method="mediapipe-ai")


class HandLandmarkExtractor:
    """MediaPipe wrapper: BGR image -> hand landmarks."""

    def __init__(
        self,
        max_num_hands: int = 2,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ):
        try:
            import mediapipe as mp  # type: ignore
        except Exception as e:
            raise RuntimeError("MediaPipe is not available. Install mediapipe to use the camera loop.") from e

        self._mp_hands = mp.solutions.hands
        self._hands = self._mp_hands.Hands(
            static_image_mode=False,
            max_num_hands=max_num_hands,
            model_complexity=0,
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence,
        )
        self._mp_drawing = mp.solutions.drawing_utils

    def draw(self, image_bgr, hand_landmarks) -> None:
        self._mp_drawing.draw_landmarks(image_bgr, hand_landmarks, self._mp_hands.HAND_CONNECTIONS)

    def extract(self, image_bgr) -> Tuple[List[Tuple[object, str]], str]:
        """Returns ([(hand_landmarks, handedness), ...], detection_status)."""
        try:
            rgb_image = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB)
            results = self._hands.process(rgb_image)
            if not results.multi_hand_landmarks:
                return [], "NO_HAND"
            handedness = results.multi_handedness or []
            hands = []
            for i, hand in enumerate(results.multi_hand_landmarks):
                label = "Unknown"
                if i < len(handedness):
                    label = handedness[i].classification[0].label
                hands.append((hand, label))
            return hands, "HAND_DETECTED"
        except Exception as e:
            logger.warning("⚠️ Hand landmark extraction error: %s", e)
            return [], "ERROR"

    def close(self) -> None:
        self._hands.close()


class FrameClassifier:
    """Landmark extraction + per-hand classification for one camera frame."""

    def __init__(self, extractor: HandLandmarkExtractor, classifier: Optional[HeuristicSignClassifier] = None):
        self.extractor = extractor
        self.classifier = classifier or HeuristicSignClassifier()
        self.detection_status = "NO_HAND"
        self.last_hands: List[object] = []

    def classify_frame(self, image_bgr) -> List[SignPrediction]:
        hands, status = self.extractor.extract(image_bgr)
        self.detection_status = status
        self.last_hands = [hand for hand, _ in hands]

        predictions = []
        for hand, handedness in hands:
            pred = self.classifier.classify(hand, handedness=handedness)
            if pred.is_sign:
                predictions.append(pred)
        return predictions


def classify_landmark_sets(
    hands: Sequence[Any], classifier: Optional[HeuristicSignClassifier] = None
) -> List[SignPrediction]:
    """Classify landmark sets that were extracted elsewhere (e.g. in the browser)."""
    classifier = classifier or HeuristicSignClassifier()
    return [p for p in (classifier.classify(h) for h in hands) if p.is_sign]
