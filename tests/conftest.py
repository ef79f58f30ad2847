from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from apps.tutor import protocol
from apps.tutor.errors import SynthesisError
from apps.tutor.models import ChildProfile, WordItem
from apps.tutor.orchestrator import TutorServices, TutorSession
from apps.tutor.registry import SessionRegistry
from config import TutorConfig

WORDS = [
    WordItem(word="cat", difficulty="easy", phonetic="kæt", hint="Say 'c' like a hard 'k', then 'at'"),
    WordItem(word="dog", difficulty="easy", phonetic="dɔg", hint="Start with 'd', then 'og' like 'log'"),
    WordItem(word="sun", difficulty="easy", phonetic="sʌn", hint="Say 's' like a snake, then 'un'"),
]


class Recorder:
    """Stands in for the socket: keeps every outbound envelope in order."""

    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def __call__(self, event: str, data) -> None:
        self.messages.append(protocol.encode(event, data))

    def events(self) -> list[str]:
        return [m["event"] for m in self.messages]

    def of(self, event: str) -> list:
        return [m["data"] for m in self.messages if m["event"] == event]


class FakeSynthesizer:
    def __init__(self, pcm: bytes = b"\x01\x00" * 320, fail: bool = False) -> None:
        self.pcm = pcm
        self.fail = fail
        self.texts: list[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        if self.fail:
            raise SynthesisError("no audio")
        return self.pcm


class FakeContent:
    def __init__(self, words=None, feedback_error: Optional[Exception] = None) -> None:
        self.words = list(WORDS) if words is None else words
        self.feedback_error = feedback_error
        self.feedback_calls: list[tuple] = []

    async def generate_word_list(self, age, interests):
        return list(self.words)

    async def generate_feedback(self, attempt, child_name, current_score):
        self.feedback_calls.append((attempt, child_name, current_score))
        if self.feedback_error is not None:
            raise self.feedback_error
        verdict = "Great" if attempt.success else "Try again"
        return f"{verdict}, {child_name}! The word is {attempt.target_word}."


class FakeStorage:
    def __init__(self) -> None:
        self.initialized = False
        self.profiles: dict[str, ChildProfile] = {}
        self.sessions: dict[str, dict] = {}
        self.attempts: list[tuple] = []
        self.completed: list[tuple] = []

    async def initialize(self) -> None:
        self.initialized = True

    async def get_or_create_child_profile(self, name, age=7, interests=()):
        if name not in self.profiles:
            self.profiles[name] = ChildProfile(id=f"child-{name}", name=name, age=age, interests=list(interests))
        return self.profiles[name]

    async def create_game_session(self, child_id, word_list, session_id=None):
        self.sessions[session_id] = {"child_id": child_id, "words": len(word_list)}
        return session_id

    async def update_game_session(self, session_id, **updates):
        self.sessions.setdefault(session_id, {}).update(updates)

    async def complete_game_session(self, session_id, final_score, words_completed):
        self.completed.append((session_id, final_score, words_completed))

    async def create_word_attempt(self, session_id, attempt):
        self.attempts.append((session_id, attempt))
        return f"attempt-{len(self.attempts)}"


class FakeRecognizer:
    """Records forwarded PCM; optionally answers each frame with a scripted transcript."""

    def __init__(self, on_transcript, script=None) -> None:
        self.on_transcript = on_transcript
        self.script = list(script or [])
        self.sent: list[bytes] = []
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def send(self, pcm: bytes) -> None:
        self.sent.append(pcm)
        if self.script:
            await self.on_transcript(*self.script.pop(0))

    async def close(self) -> None:
        self.closed = True


class RecognizerFactory:
    def __init__(self, script=None, fail: bool = False) -> None:
        self.script = script
        self.fail = fail
        self.instances: list[FakeRecognizer] = []

    async def __call__(self, on_transcript):
        if self.fail:
            raise ConnectionError("deepgram unreachable")
        recognizer = FakeRecognizer(on_transcript, self.script)
        self.instances.append(recognizer)
        return recognizer


def fast_config(**game) -> TutorConfig:
    return TutorConfig().merge_patch({"audio": {"frame_pacing_ms": 0}, "game": game})


@pytest.fixture
def recognizers() -> RecognizerFactory:
    return RecognizerFactory()


@pytest.fixture
def services(recognizers) -> TutorServices:
    return TutorServices(
        config=fast_config(),
        content=FakeContent(),
        synthesizer=FakeSynthesizer(),
        storage=FakeStorage(),
        recognizer_factory=recognizers,
    )


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry(max_sessions=10)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def session(services, registry, recorder) -> TutorSession:
    s = TutorSession(services, registry, recorder, session_id="session-1")
    registry.add(s)
    return s


async def settle(session: TutorSession) -> None:
    await session.wait_idle()
    await asyncio.sleep(0)
