"""
models.py — Tutor Engine · Data Model
=====================================
pydantic models shared by the state machine, the orchestrator, the
collaborator adapters and the wire protocol.

Everything the client sees is dumped with camelCase aliases
(``model_dump(by_alias=True)``); inputs are accepted in either case.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MAX_ATTEMPTS = 3
POINTS_PER_WORD = 10
DEFAULT_INTERESTS = ["animals", "space", "nature"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WordItem(CamelModel):
    """One practice word. Immutable once it is in a session's list."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    word:       str = Field(min_length=1)
    difficulty: str = "easy"
    phonetic:   str = ""
    hint:       str = ""


class Attempt(CamelModel):
    """A single scored pronunciation attempt."""
    target_word:           str
    child_said:            str
    pronunciation_score:   int = Field(ge=0, le=100)
    attempt_number:        int = Field(ge=1, le=MAX_ATTEMPTS)
    max_attempts:          int = MAX_ATTEMPTS
    phoneme_errors:        list[str] = Field(default_factory=list, max_length=2)
    recognizer_confidence: float = Field(ge=0.0, le=1.0)
    success:               bool


class AttemptOutcome(CamelModel):
    advance:        bool
    points_awarded: int = 0


class ChildProfile(CamelModel):
    id:         str
    name:       str
    age:        int = 7
    interests:  list[str] = Field(default_factory=lambda: list(DEFAULT_INTERESTS))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Progress(CamelModel):
    current:    int
    total:      int
    percentage: float


class GameSnapshot(CamelModel):
    """Full session view sent as the ``game_state`` payload."""
    session_id:                str
    turn_state:                str
    bot_is_speaking:           bool
    bot_is_busy:               bool
    waiting_for_child_response: bool
    stt_ready:                 bool
    current_word:              Optional[str]
    word_list:                 list[WordItem]
    current_word_index:        int
    attempt_count:             int
    total_score:               int
    words_completed:           int
    is_complete:               bool
    progress:                  Progress
