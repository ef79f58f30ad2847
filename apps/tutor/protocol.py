"""
protocol.py — Tutor Engine · WebSocket Wire Format
==================================================
Every message in either direction is a JSON envelope ``{"event", "data"}``.

  client → server   start_game   {childName, interests[], age?}
                    audio_chunk  [int16 samples]   (or float samples, clamped to [-1, 1])
  server → client   game_state   GameSnapshot
                    transcript   {text, isFinal, confidence}
                    feedback     {text, success}
                    audio_chunk  [bytes as ints]   … then audio_end {}
                    error        {message}
"""

from __future__ import annotations

from typing import Any, Optional, Union

import numpy as np
from pydantic import BaseModel, Field, TypeAdapter

from apps.tutor.models import CamelModel

START_GAME  = "start_game"
AUDIO_CHUNK = "audio_chunk"
AUDIO_END   = "audio_end"
GAME_STATE  = "game_state"
TRANSCRIPT  = "transcript"
FEEDBACK    = "feedback"
ERROR       = "error"


class Envelope(BaseModel):
    event: str = Field(min_length=1)
    data:  Any = None


class StartGameData(CamelModel):
    child_name: str = Field(min_length=1)
    interests:  list[str] = Field(default_factory=list)
    age:        Optional[int] = Field(default=None, ge=2, le=16)


class TranscriptData(CamelModel):
    text:       str
    is_final:   bool
    confidence: float


class FeedbackData(CamelModel):
    text:    str
    success: bool


class ErrorData(CamelModel):
    message: str


_SAMPLES_ADAPTER = TypeAdapter(list[Union[int, float]])


def parse_audio_samples(data: Any) -> np.ndarray:
    """Microphone samples as an int16-range or float array.

    Any JSON float in the payload makes it a float frame (clamped to [-1, 1]
    on conversion); a payload of JSON integers is read as int16 samples.
    """
    samples = _SAMPLES_ADAPTER.validate_python(data)
    if not samples:
        return np.zeros(0, dtype=np.int16)
    if any(isinstance(s, float) for s in samples):
        return np.asarray(samples, dtype=np.float32)
    return np.asarray(samples, dtype=np.int64)


def encode(event: str, data: Any = None) -> dict:
    """Envelope ready for ``send_json``; pydantic payloads go out camelCased."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    return {"event": event, "data": {} if data is None else data}
