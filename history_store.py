"""Per-user translation history in the Firebase Realtime Database.

Layout: users/<uid>/translations/<push-id> -> {signs, translation, method,
generation, timestamp}.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, db

from sign_config import FirebaseSettings
from translation_service import TranslationResult

logger = logging.getLogger(__name__)


def init_firebase(settings: FirebaseSettings) -> None:
    if not firebase_admin._apps:
        cred = credentials.Certificate(settings.cred_path)
        firebase_admin.initialize_app(cred, {"databaseURL": settings.db_url})


class TranslationHistoryStore:
    def __init__(self, root_ref: Optional[Any] = None):
        """root_ref defaults to the database root; tests pass an in-memory stand-in."""
        self._root = root_ref

    @classmethod
    def from_settings(cls, settings: FirebaseSettings) -> Optional["TranslationHistoryStore"]:
        if not settings.enabled:
            logger.info("ℹ️ Firebase not configured; translation history disabled")
            return None
        init_firebase(settings)
        return cls(db.reference("/"))

    def _translations(self, user_id: str):
        if not user_id or "/" in user_id:
            raise ValueError(f"Invalid user id: {user_id!r}")
        root = self._root if self._root is not None else db.reference("/")
        return root.child("users").child(user_id).child("translations")

    def save_translation(self, user_id: str, result: TranslationResult) -> str:
        record = {
            "signs": list(result.original_signs),
            "translation": result.translation,
            "method": result.method.value,
            "generation": result.generation,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        ref = self._translations(user_id).push(record)
        logger.info("💾 Saved translation for %s: %s", user_id, result.translation)
        return ref.key

    def get_user_translations(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Newest first. Read errors are logged and give an empty list."""
        try:
            data = self._translations(user_id).order_by_child("timestamp").limit_to_last(limit).get()
        except Exception as e:
            logger.error("❌ Error getting translations for %s: %s", user_id, e)
            return []

        items = [dict(value, id=key) for key, value in (data or {}).items() if isinstance(value, dict)]
        items.sort(key=lambda item: item.get("timestamp", ""), reverse=True)
        return items[:limit]
