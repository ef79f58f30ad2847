from __future__ import annotations

import numpy as np

from apps.tutor.content import completion_summary, greeting, word_introduction
from apps.tutor.orchestrator import TutorSession
from apps.tutor.protocol import StartGameData
from apps.tutor.state import TurnState
from conftest import WORDS, FakeContent, Recorder, settle


def start_request() -> StartGameData:
    return StartGameData(child_name="Ava", interests=["space"])


def turn_states(recorder: Recorder) -> list[str]:
    return [s["turnState"] for s in recorder.of("game_state")]


def is_subsequence(needle: list, haystack: list) -> bool:
    it = iter(haystack)
    return all(item in it for item in needle)


async def test_start_greets_introduces_first_word_and_listens(session, services, recorder):
    await session.start(start_request())

    state = session.state
    assert state.waiting_for_response
    assert state.recognizer_ready
    assert services.synthesizer.texts == [
        greeting("Ava", ["space"]),
        word_introduction(WORDS[0], first=True),
    ]
    assert recorder.events()[0] == "game_state"
    assert recorder.events().count("audio_end") == 2
    assert recorder.of("game_state")[-1]["waitingForChildResponse"] is True
    assert services.storage.sessions["session-1"] == {"child_id": "child-Ava", "words": 3}


async def test_start_streams_speech_as_frames_then_one_end_marker(session, recorder):
    await session.start(start_request())

    events = recorder.events()
    first_end = events.index("audio_end")
    # 640 bytes of speech → two 320-byte frames
    assert events[first_end - 2:first_end] == ["audio_chunk", "audio_chunk"]
    assert all(len(chunk) == 320 for chunk in recorder.of("audio_chunk"))


async def test_second_start_is_rejected(session, recorder):
    await session.start(start_request())
    await session.start(start_request())

    assert recorder.of("error") == [{"message": "Game already started"}]


async def test_empty_word_list_reports_error_and_allows_retry(session, services, recorder):
    services.content.words = []
    await session.start(start_request())

    assert session.state is None
    assert recorder.of("error") == [{"message": "No words available for this game"}]

    services.content.words = list(WORDS)
    await session.start(start_request())
    assert session.state.waiting_for_response


async def test_recognizer_failure_keeps_game_running_without_listening(session, recognizers, recorder):
    recognizers.fail = True
    await session.start(start_request())

    assert recorder.of("error") == [{"message": "Speech recognition unavailable"}]
    assert session.state.waiting_for_response
    assert not session.state.recognizer_ready
    assert recorder.of("game_state")[-1]["sttReady"] is False


async def test_synthesis_failure_reports_error_and_keeps_playing(session, services, recorder):
    services.synthesizer.fail = True
    await session.start(start_request())

    assert session.state.waiting_for_response
    assert "audio_chunk" not in recorder.events()
    # greeting and first word introduction
    assert recorder.of("error") == [{"message": "Speech synthesis failed"}] * 2


async def test_feedback_synthesis_failure_reports_error_and_finishes_turn(session, services, recorder):
    await session.start(start_request())
    services.synthesizer.fail = True
    recorder.messages.clear()

    await session.on_transcript("cat", True, 0.95)
    await settle(session)

    assert recorder.of("feedback") == [{"text": "Great, Ava! The word is cat.", "success": True}]
    assert {"message": "Speech synthesis failed"} in recorder.of("error")
    assert "audio_chunk" not in recorder.events()
    assert session.state.total_score == 10
    assert session.state.current_word_index == 1
    assert session.state.waiting_for_response


async def test_correct_answer_awards_points_and_moves_on(session, services, recorder):
    await session.start(start_request())
    await session.on_transcript("Cat.", True, 0.95)
    await settle(session)

    state = session.state
    assert state.total_score == 10
    assert state.words_completed == 1
    assert state.current_word_index == 1
    assert state.attempt_count == 0
    assert state.waiting_for_response

    assert recorder.of("transcript")[0] == {"text": "Cat.", "isFinal": True, "confidence": 0.95}
    assert recorder.of("feedback") == [{"text": "Great, Ava! The word is cat.", "success": True}]
    assert services.synthesizer.texts[-1] == word_introduction(WORDS[1], first=False)

    [(session_id, attempt)] = services.storage.attempts
    assert session_id == "session-1"
    assert attempt.pronunciation_score == 100
    assert attempt.attempt_number == 1
    assert services.storage.sessions["session-1"]["total_points"] == 10
    # feedback sees the total including this attempt
    assert services.content.feedback_calls[0][2] == 10


async def test_turn_holds_busy_around_feedback_speech(session, recorder):
    await session.start(start_request())
    recorder.messages.clear()

    await session.on_transcript("cat", True, 0.95)
    await settle(session)

    assert is_subsequence(["BUSY", "SPEAKING", "BUSY", "SPEAKING", "BUSY", "WAITING"], turn_states(recorder))


async def test_three_misses_force_next_word(session, services):
    await session.start(start_request())

    for expected_attempts in (1, 2):
        await session.on_transcript("dog", True, 0.5)
        await settle(session)
        assert session.state.current_word_index == 0
        assert session.state.attempt_count == expected_attempts
        assert session.state.waiting_for_response

    await session.on_transcript("dog", True, 0.5)
    await settle(session)

    state = session.state
    assert state.current_word_index == 1
    assert state.attempt_count == 0
    assert state.total_score == 0
    assert [a.attempt_number for _, a in services.storage.attempts] == [1, 2, 3]
    assert all(not a.success for _, a in services.storage.attempts)


async def test_interim_transcripts_are_relayed_but_not_scored(session, services, recorder):
    await session.start(start_request())
    await session.on_transcript("ca", False, 0.4)
    await settle(session)

    assert recorder.of("transcript") == [{"text": "ca", "isFinal": False, "confidence": 0.4}]
    assert services.storage.attempts == []
    assert session.state.waiting_for_response


async def test_final_transcript_while_not_listening_changes_nothing(session, services, recorder):
    await session.start(start_request())
    session.state.transition(TurnState.SPEAKING)
    before = session.state.snapshot()

    await session.on_transcript("cat", True, 0.99)
    await settle(session)

    assert session.state.snapshot() == before
    assert services.storage.attempts == []
    assert recorder.of("feedback") == []


async def test_second_final_during_a_turn_is_discarded(session, services):
    await session.start(start_request())

    await session.on_transcript("cat", True, 0.95)
    await session.on_transcript("cat", True, 0.95)
    await settle(session)

    assert len(services.storage.attempts) == 1
    assert session.state.total_score == 10


async def test_last_word_completes_and_releases_session(services, registry, recorder, recognizers):
    services.content = FakeContent(words=[WORDS[0]])
    session = TutorSession(services, registry, recorder, session_id="solo")
    registry.add(session)

    await session.start(start_request())
    await session.on_transcript("cat", True, 0.95)
    await settle(session)

    state = session.state
    assert state.is_complete()
    assert state.is_idle
    assert not state.recognizer_ready
    assert services.synthesizer.texts[-1] == completion_summary("Ava", 10)
    assert services.storage.completed == [("solo", 10, 1)]
    assert recognizers.instances[0].closed
    assert recorder.of("game_state")[-1]["isComplete"] is True
    # the connection is still open, so it still counts against capacity
    assert "solo" in registry

    await session.close()
    assert "solo" not in registry


async def test_turn_failure_reopens_listening(session, services, recorder):
    await session.start(start_request())
    services.content.feedback_error = RuntimeError("llm down")

    await session.on_transcript("dog", True, 0.5)
    await settle(session)

    assert session.state.waiting_for_response
    assert recorder.of("error") == [{"message": "Failed to process pronunciation"}]

    services.content.feedback_error = None
    await session.on_transcript("cat", True, 0.95)
    await settle(session)
    assert session.state.total_score == 10


async def test_microphone_frames_forwarded_while_listening(session, recognizers):
    await session.start(start_request())

    await session.handle_audio_chunk(np.array([100] * 160))
    await session.handle_audio_chunk(np.array([0.5] * 160, dtype=np.float32))

    sent = recognizers.instances[0].sent
    assert [len(pcm) for pcm in sent] == [320, 320]


async def test_microphone_frames_dropped_while_bot_speaks(services, registry, recognizers):
    holder: list[TutorSession] = []
    recorder = Recorder()

    async def send(event, data):
        await recorder(event, data)
        # the child keeps talking while the tutor's audio streams out
        if event == "audio_chunk" and holder[0].state.recognizer_ready:
            await holder[0].handle_audio_chunk(np.array([1000] * 160))

    session = TutorSession(services, registry, send, session_id="barge-in")
    holder.append(session)
    await session.start(start_request())

    assert recognizers.instances[0].sent == []
    assert session.audio.frames_dropped == recorder.events().count("audio_chunk")


async def test_close_releases_recognizer_and_stops_processing(session, registry, recognizers, recorder):
    await session.start(start_request())
    await session.close()

    assert session.closed
    assert recognizers.instances[0].closed
    assert "session-1" not in registry

    sent_before = len(recorder.messages)
    await session.on_transcript("cat", True, 0.95)
    await session.handle_audio_chunk(np.array([100] * 160))
    assert len(recorder.messages) == sent_before
    assert recognizers.instances[0].sent == []
