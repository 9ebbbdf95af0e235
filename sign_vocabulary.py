"""The closed sign vocabulary recognised by the classifier.

Keys are the tokens that flow through the buffer; the display name and
description are what the sign guide shows.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class SignInfo:
    key: str
    name: str
    description: str
    category: str
    pattern: str


CATEGORIES: Dict[str, str] = {
    "number": "Numbers (1-5)",
    "gesture": "Common Gestures",
}


SIGN_LIBRARY: Dict[str, SignInfo] = {
    info.key: info
    for info in (
        # Numbers
        SignInfo("ONE", "1", "Index finger pointing up", "number", "one_finger"),
        SignInfo("TWO", "2", "Index and middle fingers up (together)", "number", "two_fingers"),
        SignInfo("THREE", "3", "Thumb, index, and middle fingers extended", "number", "three_fingers"),
        SignInfo("FOUR", "4", "Four fingers up (no thumb)", "number", "four_fingers"),
        SignInfo("FIVE", "5", "All five fingers extended (open hand)", "number", "open_hand"),
        # Gestures
        SignInfo("YES", "Yes", "Thumbs up gesture", "gesture", "thumbs_up"),
        SignInfo("NO", "No", "Thumbs down gesture", "gesture", "thumbs_down"),
        SignInfo("HELLO", "Hello", "Open hand raised (all fingers extended)", "gesture", "hand_wave"),
        SignInfo("STOP", "Stop", "Closed fist", "gesture", "fist"),
        SignInfo("PEACE", "Peace", "Index and middle fingers separated in V shape", "gesture", "peace_sign"),
        SignInfo("LOVE", "Love", "Index finger and pinky extended (I Love You)", "gesture", "i_love_you"),
        SignInfo("L", "L", "Thumb and index finger form L shape", "gesture", "l_shape"),
        SignInfo("Y", "Y", "Thumb and pinky extended (shaka/hang loose)", "gesture", "shaka"),
    )
}


def get_all_signs() -> List[SignInfo]:
    return list(SIGN_LIBRARY.values())


def get_signs_by_category(category: str) -> List[SignInfo]:
    return [s for s in SIGN_LIBRARY.values() if s.category == category]


def search_signs(query: str) -> List[SignInfo]:
    q = query.lower()
    return [s for s in SIGN_LIBRARY.values() if q in s.name.lower()]


def get_sign_count() -> int:
    return len(SIGN_LIBRARY)


def get_sign_details(key: str) -> Optional[SignInfo]:
    return SIGN_LIBRARY.get(key)


def is_known_sign(key: Optional[str]) -> bool:
    return key in SIGN_LIBRARY
