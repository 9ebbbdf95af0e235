"""Text-to-speech for finished translations."""

from __future__ import annotations

import logging
import threading

import pyttsx3

logger = logging.getLogger(__name__)


class SpeechOutput:
    def __init__(self, enabled: bool = True, rate_factor: float = 0.9):
        self.enabled = enabled
        self.rate_factor = rate_factor
        self._lock = threading.Lock()

    def speak(self, text: str) -> bool:
        """Speak text synchronously. Returns False when nothing was spoken."""
        if not self.enabled or not text or not text.strip():
            return False
        try:
            with self._lock:
                engine = pyttsx3.init()
                rate = engine.getProperty("rate")
                if rate:
                    engine.setProperty("rate", int(rate * self.rate_factor))
                engine.say(text)
                engine.runAndWait()
                engine.stop()
            return True
        except Exception as e:
            logger.warning("⚠️ Text-to-speech failed (%s); message was: %s", e, text)
            return False

    def speak_async(self, text: str) -> threading.Thread:
        thread = threading.Thread(target=self.speak, args=(text,), daemon=True)
        thread.start()
        return thread
