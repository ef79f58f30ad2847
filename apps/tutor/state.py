"""
state.py — Tutor Engine · Session State Machine
===============================================
Owns one session's turn ownership, attempt counter, score/progress counters
and word cursor.  Every mutation goes through a method on
``GameStateMachine``; callers never poke fields directly.

Turn ownership
--------------
A single ``TurnState`` value says who holds the turn:

  IDLE      no one (before start, between phases, after the last word)
  SPEAKING  synthesized speech is streaming to the client
  BUSY      scoring / generating feedback; no audio in either direction
  WAITING   the microphone is open for the child's answer

The boolean setters (``set_bot_speaking`` & co.) are thin
wrappers over ``transition`` so the flags can never disagree.

Not thread-safe: one session is mutated from one event loop, serialised by
the orchestrator.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Sequence

from apps.tutor.errors import EmptyWordListError, SessionCompleteError
from apps.tutor.models import (
    MAX_ATTEMPTS,
    POINTS_PER_WORD,
    Attempt,
    AttemptOutcome,
    GameSnapshot,
    Progress,
    WordItem,
)

log = logging.getLogger("tutor_engine.state")


class TurnState(Enum):
    IDLE     = "IDLE"
    SPEAKING = "SPEAKING"
    BUSY     = "BUSY"
    WAITING  = "WAITING"


class GameStateMachine:
    """Turn-taking state for one tutoring session."""

    def __init__(self, session_id: str, word_list: Sequence[WordItem]) -> None:
        if not word_list:
            raise EmptyWordListError(f"session {session_id} needs at least one word")

        self._session_id = session_id
        self._word_list: tuple[WordItem, ...] = tuple(word_list)
        self._current_word_index = 0
        self._attempt_count = 0
        self._total_score = 0
        self._words_completed = 0
        self._turn = TurnState.IDLE
        self._recognizer_ready = False

    @classmethod
    def start_session(cls, session_id: str, word_list: Sequence[WordItem]) -> "GameStateMachine":
        """Create a session at cursor 0 with every counter zeroed."""
        machine = cls(session_id, word_list)
        log.info("event=session_started session=%s words=%d", session_id, len(machine._word_list))
        return machine

    # -- read-only view --------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def word_list(self) -> tuple[WordItem, ...]:
        return self._word_list

    @property
    def current_word_index(self) -> int:
        return self._current_word_index

    @property
    def attempt_count(self) -> int:
        return self._attempt_count

    @property
    def total_score(self) -> int:
        return self._total_score

    @property
    def words_completed(self) -> int:
        return self._words_completed

    @property
    def turn_state(self) -> TurnState:
        return self._turn

    @property
    def bot_is_speaking(self) -> bool:
        return self._turn is TurnState.SPEAKING

    @property
    def bot_is_busy(self) -> bool:
        return self._turn is TurnState.BUSY

    @property
    def waiting_for_response(self) -> bool:
        return self._turn is TurnState.WAITING

    @property
    def is_idle(self) -> bool:
        return self._turn is TurnState.IDLE

    @property
    def recognizer_ready(self) -> bool:
        return self._recognizer_ready

    # -- turn transitions ------------------------------------------------------

    def transition(self, new_state: TurnState) -> TurnState:
        """Hand the turn to *new_state*; returns the previous owner."""
        prev = self._turn
        self._turn = new_state
        if prev is not new_state:
            log.info(
                "event=turn_state session=%s from=%s to=%s",
                self._session_id, prev.value, new_state.value,
            )
        return prev

    def _set_flag(self, state: TurnState, on: bool) -> None:
        if on:
            self.transition(state)
        elif self._turn is state:
            self.transition(TurnState.IDLE)

    def set_bot_speaking(self, speaking: bool) -> None:
        self._set_flag(TurnState.SPEAKING, speaking)

    def set_bot_busy(self, busy: bool) -> None:
        self._set_flag(TurnState.BUSY, busy)

    def set_waiting_for_response(self, waiting: bool) -> None:
        self._set_flag(TurnState.WAITING, waiting)

    def set_recognizer_ready(self, ready: bool) -> None:
        if ready != self._recognizer_ready:
            log.info("event=recognizer_ready session=%s ready=%s", self._session_id, ready)
        self._recognizer_ready = ready

    def can_accept_transcript(self) -> bool:
        """Only a transcript heard while the microphone is open may be scored."""
        return (
            not self.bot_is_speaking
            and not self.bot_is_busy
            and self.waiting_for_response
        )

    # -- scoring & progress ----------------------------------------------------

    def record_attempt(self, attempt: Attempt) -> AttemptOutcome:
        """Apply one scored attempt.  A word gets at most three tries."""
        if attempt.success:
            self._total_score += POINTS_PER_WORD
            self._words_completed += 1
            self._attempt_count = 0
            outcome = AttemptOutcome(advance=True, points_awarded=POINTS_PER_WORD)
        else:
            self._attempt_count += 1
            if self._attempt_count >= MAX_ATTEMPTS:
                self._attempt_count = 0
                outcome = AttemptOutcome(advance=True, points_awarded=0)
            else:
                outcome = AttemptOutcome(advance=False, points_awarded=0)

        log.info(
            "event=attempt_recorded session=%s word=%s success=%s score=%d advance=%s attempts=%d total=%d",
            self._session_id, attempt.target_word, attempt.success, attempt.pronunciation_score,
            outcome.advance, self._attempt_count, self._total_score,
        )
        return outcome

    def advance_word(self) -> bool:
        """Move the cursor forward; False means the list is exhausted."""
        if self.is_complete():
            raise SessionCompleteError(f"session {self._session_id} has no words left")

        self._current_word_index += 1
        if self._current_word_index >= len(self._word_list):
            log.info(
                "event=session_complete session=%s total=%d completed=%d/%d",
                self._session_id, self._total_score, self._words_completed, len(self._word_list),
            )
            return False

        self._attempt_count = 0
        self.set_waiting_for_response(False)
        log.info(
            "event=word_advanced session=%s index=%d word=%s",
            self._session_id, self._current_word_index, self._word_list[self._current_word_index].word,
        )
        return True

    def current_word(self) -> Optional[WordItem]:
        if self.is_complete():
            return None
        return self._word_list[self._current_word_index]

    def is_complete(self) -> bool:
        return self._current_word_index >= len(self._word_list)

    def progress(self) -> Progress:
        total = len(self._word_list)
        return Progress(
            current=self._current_word_index + 1,
            total=total,
            percentage=self._current_word_index / total * 100,
        )

    def snapshot(self) -> GameSnapshot:
        word = self.current_word()
        return GameSnapshot(
            session_id=self._session_id,
            turn_state=self._turn.value,
            bot_is_speaking=self.bot_is_speaking,
            bot_is_busy=self.bot_is_busy,
            waiting_for_child_response=self.waiting_for_response,
            stt_ready=self._recognizer_ready,
            current_word=word.word if word else None,
            word_list=list(self._word_list),
            current_word_index=self._current_word_index,
            attempt_count=self._attempt_count,
            total_score=self._total_score,
            words_completed=self._words_completed,
            is_complete=self.is_complete(),
            progress=self.progress(),
        )
