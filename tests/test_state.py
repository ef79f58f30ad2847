from __future__ import annotations

import pytest

from apps.tutor.errors import EmptyWordListError, SessionCompleteError
from apps.tutor.models import Attempt
from apps.tutor.state import GameStateMachine, TurnState
from conftest import WORDS


def make_attempt(word: str = "cat", success: bool = False, number: int = 1) -> Attempt:
    return Attempt(
        target_word=word,
        child_said=word if success else "dog",
        pronunciation_score=100 if success else 20,
        attempt_number=number,
        recognizer_confidence=0.9,
        success=success,
    )


@pytest.fixture
def machine() -> GameStateMachine:
    return GameStateMachine.start_session("s1", WORDS)


def test_new_session_starts_idle_at_first_word(machine):
    assert machine.is_idle
    assert machine.current_word_index == 0
    assert machine.attempt_count == 0
    assert machine.total_score == 0
    assert machine.words_completed == 0
    assert machine.current_word() == WORDS[0]
    assert not machine.can_accept_transcript()


def test_empty_word_list_is_rejected():
    with pytest.raises(EmptyWordListError):
        GameStateMachine.start_session("s1", [])


@pytest.mark.parametrize("state", list(TurnState))
def test_exactly_one_turn_owner(machine, state):
    machine.transition(state)
    flags = [machine.bot_is_speaking, machine.bot_is_busy, machine.waiting_for_response, machine.is_idle]
    assert flags.count(True) == 1


def test_waiting_while_busy_hands_over_the_turn(machine):
    machine.set_bot_busy(True)
    machine.set_waiting_for_response(True)

    assert machine.waiting_for_response
    assert not machine.bot_is_busy


def test_clearing_a_flag_that_does_not_own_the_turn_is_a_no_op(machine):
    machine.set_waiting_for_response(True)
    machine.set_bot_speaking(False)
    assert machine.waiting_for_response

    machine.set_waiting_for_response(False)
    assert machine.is_idle


def test_transition_returns_previous_owner(machine):
    machine.transition(TurnState.BUSY)
    assert machine.transition(TurnState.SPEAKING) is TurnState.BUSY


def test_only_waiting_accepts_transcripts(machine):
    for state in TurnState:
        machine.transition(state)
        assert machine.can_accept_transcript() is (state is TurnState.WAITING)


def test_success_awards_points_and_resets_attempts(machine):
    machine.record_attempt(make_attempt())
    outcome = machine.record_attempt(make_attempt(success=True, number=2))

    assert outcome.advance
    assert outcome.points_awarded == 10
    assert machine.total_score == 10
    assert machine.words_completed == 1
    assert machine.attempt_count == 0


def test_third_failure_forces_advance(machine):
    first = machine.record_attempt(make_attempt(number=1))
    second = machine.record_attempt(make_attempt(number=2))
    third = machine.record_attempt(make_attempt(number=3))

    assert [first.advance, second.advance, third.advance] == [False, False, True]
    assert third.points_awarded == 0
    assert machine.attempt_count == 0
    assert machine.total_score == 0


def test_advance_returns_false_exactly_once(machine):
    results = [machine.advance_word() for _ in WORDS]

    assert results == [True, True, False]
    assert machine.is_complete()
    assert machine.current_word() is None
    with pytest.raises(SessionCompleteError):
        machine.advance_word()


def test_advance_resets_attempts_and_closes_microphone(machine):
    machine.set_waiting_for_response(True)
    machine.record_attempt(make_attempt())

    assert machine.advance_word()
    assert machine.attempt_count == 0
    assert not machine.waiting_for_response


def test_progress_and_snapshot(machine):
    machine.advance_word()
    machine.set_recognizer_ready(True)
    machine.set_waiting_for_response(True)

    progress = machine.progress()
    assert (progress.current, progress.total) == (2, 3)
    assert progress.percentage == pytest.approx(100 / 3)

    wire = machine.snapshot().model_dump(by_alias=True)
    assert wire["sessionId"] == "s1"
    assert wire["turnState"] == "WAITING"
    assert wire["waitingForChildResponse"] is True
    assert wire["sttReady"] is True
    assert wire["currentWord"] == "dog"
    assert wire["progress"]["current"] == 2
