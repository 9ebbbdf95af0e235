"""Turns a flushed sign sequence into a sentence.

TranslationDispatcher owns the policy (direct join, context-aware LLM call,
fallback on failure). ChatCompletionsBackend is the HTTP client for any
OpenAI-compatible chat completions endpoint.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from sign_config import LLMSettings
from sign_vocabulary import get_sign_details

logger = logging.getLogger(__name__)


class TranslationMethod(str, Enum):
    DIRECT = "direct"
    CONTEXT_AWARE = "context-aware"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class TranslationResult:
    success: bool
    translation: str
    original_signs: Tuple[str, ...]
    method: TranslationMethod
    generation: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "translation": self.translation,
            "original_signs": list(self.original_signs),
            "method": self.method.value,
            "generation": self.generation,
            "error": self.error,
        }


class TranslationBackendError(RuntimeError):
    """Any failure talking to the translation backend."""


SENTENCE_PROMPT = (
    "You are a sign language translator. Convert these American Sign Language (ASL) signs "
    "into a natural, grammatically correct English sentence.\n\n"
    "Signs detected (in order): {signs}\n\n"
    "Rules:\n"
    "1. Produce ONE clear, natural sentence\n"
    "2. Add proper grammar (ASL doesn't have 'is', 'are', etc.)\n"
    "3. If signs don't form a complete thought, make the best interpretation\n"
    "4. Keep it concise (under 20 words)\n"
    "5. Do NOT explain, just translate\n\n"
    "Natural English translation:"
)

TEXT_TO_SIGN_PROMPT = (
    'Convert this English text to ASL signs: "{text}"\n\n'
    "Respond with ONLY a comma-separated list of ASL signs in the order they should be signed.\n"
    'Example: "I am happy" -> "I, HAPPY"\n'
    'Example: "What is your name?" -> "WHAT, YOUR, NAME"\n\n'
    'Signs for: "{text}"'
)

EXPLAIN_PROMPT = (
    'Explain how to make the ASL sign for "{sign}" in 1-2 simple sentences. '
    "Focus on hand shape and movement."
)


def _clean_response(text: str) -> str:
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text, flags=re.DOTALL)
    text = " ".join(line.strip() for line in text.splitlines() if line.strip())
    return text.strip().strip('"').strip()


def _fallback_signs(text: str) -> List[str]:
    cleaned = re.sub(r"[^\w\s]", "", text.upper())
    return [w for w in cleaned.split() if w]


class ChatCompletionsBackend:
    """Minimal client for an OpenAI-compatible /chat/completions endpoint."""

    def __init__(self, settings: LLMSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self._http = session

    @property
    def is_configured(self) -> bool:
        return self.settings.is_configured

    def complete(self, prompt: str) -> str:
        if not self.is_configured:
            raise TranslationBackendError("LLM API key is not configured")

        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.settings.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
        }

        post = self._http.post if self._http is not None else requests.post
        try:
            response = post(self.settings.api_url, headers=headers, json=payload, timeout=self.settings.timeout)
        except requests.exceptions.Timeout as e:
            raise TranslationBackendError(f"LLM request timed out after {self.settings.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise TranslationBackendError(f"LLM request failed: {e}") from e

        if response.status_code != 200:
            raise TranslationBackendError(f"LLM API error {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TranslationBackendError(f"Malformed LLM response: {e}") from e

        text = _clean_response(content or "")
        if not text:
            raise TranslationBackendError("LLM returned an empty response")
        return text

    def translate_signs(self, signs: Sequence[str]) -> str:
        return self.complete(SENTENCE_PROMPT.format(signs=", ".join(signs)))


class TranslationDispatcher:
    """Produces one TranslationResult per flushed snapshot. Never raises."""

    def __init__(self, backend: Optional[ChatCompletionsBackend] = None, separator: str = " "):
        self.backend = backend
        self.separator = separator

    def direct(self, signs: Sequence[str], generation: int = 0) -> TranslationResult:
        tokens = tuple(signs)
        return TranslationResult(
            success=True,
            translation=self.separator.join(tokens),
            original_signs=tokens,
            method=TranslationMethod.DIRECT,
            generation=generation,
        )

    def context_aware(self, signs: Sequence[str], generation: int = 0) -> TranslationResult:
        tokens = tuple(signs)
        try:
            if self.backend is None:
                raise TranslationBackendError("No translation backend configured")
            sentence = self.backend.translate_signs(tokens)
        except Exception as e:
            logger.warning("⚠️ Context-aware translation failed, using direct join: %s", e)
            return TranslationResult(
                success=False,
                translation=self.separator.join(tokens),
                original_signs=tokens,
                method=TranslationMethod.FALLBACK,
                generation=generation,
                error=str(e) or type(e).__name__,
            )

        return TranslationResult(
            success=True,
            translation=sentence,
            original_signs=tokens,
            method=TranslationMethod.CONTEXT_AWARE,
            generation=generation,
        )

    def dispatch(self, signs: Sequence[str], context_aware: bool = False, generation: int = 0) -> TranslationResult:
        if context_aware:
            return self.context_aware(signs, generation)
        return self.direct(signs, generation)

    def text_to_signs(self, text: str) -> Dict[str, Any]:
        """Suggest the sign sequence for an English phrase."""
        if self.backend is None or not self.backend.is_configured:
            return {"success": True, "signs": _fallback_signs(text), "original_text": text, "method": "fallback"}

        try:
            raw = self.backend.complete(TEXT_TO_SIGN_PROMPT.format(text=text))
            signs = [s.strip().upper() for s in raw.split(",") if s.strip()]
            if not signs:
                raise TranslationBackendError("LLM returned no signs")
            return {"success": True, "signs": signs, "original_text": text, "method": "llm"}
        except Exception as e:
            logger.warning("⚠️ Text to sign failed, using word split: %s", e)
            return {"success": True, "signs": _fallback_signs(text), "original_text": text, "method": "fallback-error"}

    def explain_sign(self, sign: str) -> Dict[str, Any]:
        info = get_sign_details(sign)
        default = info.description if info is not None else "Explanation unavailable"
        if self.backend is None or not self.backend.is_configured:
            return {"success": info is not None, "explanation": default}

        try:
            return {"success": True, "explanation": self.backend.complete(EXPLAIN_PROMPT.format(sign=sign))}
        except Exception as e:
            logger.warning("⚠️ Sign explanation failed for %s: %s", sign, e)
            return {"success": False, "explanation": default, "error": str(e)}
