"""
config.py — Tutor Engine · Runtime Configuration
================================================
Pydantic models for every tunable parameter across the session engine and
its collaborators.  Serialises to / deserialises from JSON.  Used by:
  • server.py               — loads at startup, GET/PUT /config endpoints
  • apps/tutor/*            — each adapter reads its own section

API keys are NOT part of this file; they come from the environment
(DEEPGRAM_API_KEY, GROQ_API_KEY), loaded by python-dotenv.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("tutor_engine.config")

# ---------------------------------------------------------------------------
# Default prompts (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_WORDS_PROMPT = """\
You are an expert in child education and pronunciation teaching. \
Generate age-appropriate words for pronunciation practice. Return only valid JSON.\
"""

DEFAULT_FEEDBACK_PROMPT = """\
You are a warm, encouraging pronunciation tutor for young children. \
Provide clear, simple feedback using child-friendly language. \
Keep responses under 30 words. Always be positive and motivating.\
"""


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class DeepgramConfig(BaseModel):
    """Deepgram streaming STT parameters (query string of the /v1/listen socket)."""
    url: str = Field(default="wss://api.deepgram.com/v1/listen", description="Streaming endpoint")
    model: str = Field(default="nova-2", description="Deepgram model")
    language: str = Field(default="en-US", description="Recognition language")
    endpointing: int = Field(default=300, ge=0, le=5000, description="Silence endpointing (ms)")
    smart_format: bool = Field(default=True, description="Auto-formatting")
    interim_results: bool = Field(default=True, description="Stream partial results")
    keepalive_sec: float = Field(default=5.0, gt=0.0, le=9.0, description="KeepAlive interval while the mic is gated")
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, description="Socket open timeout")


class GroqConfig(BaseModel):
    """Groq LLM parameters for word lists and spoken feedback."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    words_per_session: int = Field(default=15, ge=1, le=50, description="Words requested per session")
    word_list_max_tokens: int = Field(default=2048, ge=1, description="Max tokens for the word list")
    feedback_max_tokens: int = Field(default=150, ge=1, description="Max tokens for feedback")
    word_list_timeout_sec: float = Field(default=15.0, gt=0.0, description="Word list request ceiling")
    feedback_timeout_sec: float = Field(default=4.0, gt=0.0, description="Feedback request ceiling")
    words_prompt: str = Field(default=DEFAULT_WORDS_PROMPT, description="System prompt for word lists")
    feedback_prompt: str = Field(default=DEFAULT_FEEDBACK_PROMPT, description="System prompt for feedback")


class TtsConfig(BaseModel):
    """Groq text-to-speech parameters."""
    model: str = Field(default="canopylabs/orpheus-v1-english", description="TTS model")
    voice: str = Field(default="troy", description="Voice name")
    max_chars: int = Field(default=200, ge=20, le=1000, description="Characters per synthesis request")
    timeout_sec: float = Field(default=5.0, gt=0.0, description="Per-request ceiling")


class AudioConfig(BaseModel):
    """Outbound framing and pacing (16 kHz mono linear16)."""
    sample_rate: int = Field(default=16000, description="PCM sample rate (Hz)")
    frame_bytes: int = Field(default=320, ge=2, description="Bytes per outbound frame (20 ms @ 16 kHz mono s16)")
    frame_pacing_ms: float = Field(default=15.0, ge=0.0, le=100.0, description="Yield between frames (ms)")


class GameConfig(BaseModel):
    """Session defaults and limits."""
    default_age: int = Field(default=7, ge=2, le=16, description="Age used for new child profiles")
    default_interests: list[str] = Field(default_factory=lambda: ["animals", "space", "nature"])
    max_sessions: int = Field(default=200, ge=1, description="Concurrent sessions per process")


class StorageConfig(BaseModel):
    database_path: str = Field(default="./data/tutor.db", description="SQLite database file")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class TutorConfig(BaseModel):
    """Complete runtime configuration for the tutor engine."""
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    groq: GroqConfig = Field(default_factory=GroqConfig)
    tts: TtsConfig = Field(default_factory=TtsConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    game: GameConfig = Field(default_factory=GameConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "TutorConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "TutorConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"audio": {"frame_pacing_ms": 10}}
        only changes audio.frame_pacing_ms, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return TutorConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
