"""Runtime configuration for the sign translation pipeline.

Every tunable can be overridden with an environment variable, mirroring the
SIGN_* switches the camera loop has always read. Invalid values are a
programmer error and fail at construction time with ConfigurationError.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Mapping, Optional


class ConfigurationError(ValueError):
    """Raised when a pipeline or service setting is invalid."""


_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean flag, got {raw!r}")


@dataclass(frozen=True)
class PipelineConfig:
    """Timing and dispatch settings for one translation session."""

    reject_window_ms: float = 3000.0
    flush_delay_ms: float = 4000.0
    use_context_aware_translation: bool = False
    min_confidence_threshold: float = 0.85

    def __post_init__(self) -> None:
        for name in ("reject_window_ms", "flush_delay_ms", "min_confidence_threshold"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")

        if self.reject_window_ms < 0:
            raise ConfigurationError(f"reject_window_ms must be >= 0, got {self.reject_window_ms}")
        if self.flush_delay_ms <= 0:
            raise ConfigurationError(f"flush_delay_ms must be > 0, got {self.flush_delay_ms}")
        if not 0.0 <= self.min_confidence_threshold <= 1.0:
            raise ConfigurationError(
                f"min_confidence_threshold must be within [0, 1], got {self.min_confidence_threshold}"
            )
        if not isinstance(self.use_context_aware_translation, bool):
            raise ConfigurationError("use_context_aware_translation must be a bool")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        env = os.environ if env is None else env
        return cls(
            reject_window_ms=_env_float(env, "SIGN_REJECT_WINDOW_MS", 3000.0),
            flush_delay_ms=_env_float(env, "SIGN_FLUSH_DELAY_MS", 4000.0),
            use_context_aware_translation=_env_bool(env, "SIGN_CONTEXT_AWARE", False),
            min_confidence_threshold=_env_float(env, "SIGN_MIN_CONFIDENCE", 0.85),
        )

    def with_overrides(self, overrides: Mapping[str, Any]) -> "PipelineConfig":
        """Return a copy with the given fields replaced (unknown keys are rejected)."""
        known = set(self.to_dict())
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"Unknown pipeline option(s): {', '.join(unknown)}")
        return replace(self, **dict(overrides))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LLMSettings:
    """OpenAI-compatible chat completions endpoint used for context-aware translation."""

    api_key: str = ""
    api_url: str = "https://api.novita.ai/v3/openai/chat/completions"
    model: str = "qwen/qwen-2.5-72b-instruct"
    timeout: float = 10.0
    max_tokens: int = 150
    temperature: float = 0.7

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ConfigurationError(f"LLM timeout must be > 0, got {self.timeout}")
        if self.max_tokens <= 0:
            raise ConfigurationError(f"LLM max_tokens must be > 0, got {self.max_tokens}")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key != "demo"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "LLMSettings":
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            api_key=env.get("SIGN_LLM_API_KEY", ""),
            api_url=env.get("SIGN_LLM_API_URL", defaults.api_url),
            model=env.get("SIGN_LLM_MODEL", defaults.model),
            timeout=_env_float(env, "SIGN_LLM_TIMEOUT", defaults.timeout),
        )


@dataclass(frozen=True)
class FirebaseSettings:
    cred_path: str = ""
    db_url: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.cred_path) and bool(self.db_url)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "FirebaseSettings":
        env = os.environ if env is None else env
        return cls(cred_path=env.get("FIREBASE_CRED_PATH", ""), db_url=env.get("FIREBASE_DB_URL", ""))


@dataclass(frozen=True)
class AppSettings:
    """Everything the server and the camera loop need, read in one place."""

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    llm: LLMSettings = field(default_factory=LLMSettings)
    firebase: FirebaseSettings = field(default_factory=FirebaseSettings)
    tts_enabled: bool = True
    server_port: int = 5001
    session_idle_ttl_s: float = 1800.0
    max_sessions: int = 100

    def __post_init__(self) -> None:
        if self.session_idle_ttl_s <= 0:
            raise ConfigurationError(f"session_idle_ttl_s must be > 0, got {self.session_idle_ttl_s}")
        if self.max_sessions < 1:
            raise ConfigurationError(f"max_sessions must be >= 1, got {self.max_sessions}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AppSettings":
        env = os.environ if env is None else env
        return cls(
            pipeline=PipelineConfig.from_env(env),
            llm=LLMSettings.from_env(env),
            firebase=FirebaseSettings.from_env(env),
            tts_enabled=_env_bool(env, "SIGN_TTS_ENABLED", True),
            server_port=int(_env_float(env, "SIGN_SERVER_PORT", 5001)),
            session_idle_ttl_s=_env_float(env, "SIGN_SESSION_TTL_S", 1800.0),
            max_sessions=int(_env_float(env, "SIGN_MAX_SESSIONS", 100)),
        )
