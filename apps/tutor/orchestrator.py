"""
orchestrator.py — Tutor Engine · Session Orchestrator
=====================================================
One ``TutorSession`` per client connection.  It wires the state machine,
the audio pipeline, the streaming recognizer, the spoken content and the
persistence layer into the tutoring loop:

  start_game  → profile → word list → greeting → first word → WAITING
  final transcript (while WAITING)
              → BUSY → score → feedback (text + speech) → next word / retry
              → WAITING (or IDLE once the list is exhausted)

Per-session work (start-up and each turn) is serialised by one
``asyncio.Lock``.  The accept-check on a final transcript and the hand-off
to BUSY happen with no await in between, so two finals can never both be
scored.  Persistence writes are fire-and-forget tasks; their failures are
logged and never reach the turn.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Coroutine, Optional, Sequence

from apps.tutor import content as lines
from apps.tutor.audio import AudioPipeline, SendFn
from apps.tutor.content import TutorContent
from apps.tutor.errors import EmptyWordListError, RecognizerError, SynthesisError
from apps.tutor.models import Attempt, ChildProfile
from apps.tutor.protocol import (
    ERROR,
    FEEDBACK,
    GAME_STATE,
    TRANSCRIPT,
    ErrorData,
    FeedbackData,
    StartGameData,
    TranscriptData,
)
from apps.tutor.recognizer import Recognizer, RecognizerFactory
from apps.tutor.registry import SessionRegistry
from apps.tutor.scoring import analyze
from apps.tutor.state import GameStateMachine, TurnState
from apps.tutor.storage import TutorStorage
from apps.tutor.synthesizer import Synthesizer
from config import TutorConfig

log = logging.getLogger("tutor_engine.orchestrator")


@dataclass
class TutorServices:
    """Process-wide collaborators shared by every session."""
    config:             TutorConfig
    content:            TutorContent
    synthesizer:        Synthesizer
    storage:            TutorStorage
    recognizer_factory: Optional[RecognizerFactory] = None


class TutorSession:
    """Drives one child's game over one connection."""

    def __init__(
        self,
        services: TutorServices,
        registry: SessionRegistry,
        send: SendFn,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self._services = services
        self._registry = registry
        self._send = send
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._writes: set[asyncio.Task] = set()
        self._state: Optional[GameStateMachine] = None
        self._audio: Optional[AudioPipeline] = None
        self._recognizer: Optional[Recognizer] = None
        self._child_name = ""
        self._started = False
        self._closed = False

    @property
    def state(self) -> Optional[GameStateMachine]:
        return self._state

    @property
    def audio(self) -> Optional[AudioPipeline]:
        return self._audio

    @property
    def closed(self) -> bool:
        return self._closed

    # -- task bookkeeping ------------------------------------------------------

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}_{self.session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _persist(self, coro: Awaitable[Any], what: str) -> None:
        task = asyncio.ensure_future(coro)
        self._writes.add(task)
        task.add_done_callback(partial(self._write_done, what))

    def _write_done(self, what: str, task: asyncio.Task) -> None:
        self._writes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("event=persist_failed session=%s what=%s error=%s", self.session_id, what, exc)

    async def wait_idle(self) -> None:
        """Wait for every outstanding turn and persistence write."""
        while self._tasks or self._writes:
            await asyncio.gather(*self._tasks, *self._writes, return_exceptions=True)

    # -- outbound helpers ------------------------------------------------------

    async def _send_state(self) -> None:
        if self._state is not None:
            await self._send(GAME_STATE, self._state.snapshot())

    async def _safe_send(self, event: str, data: Any) -> None:
        try:
            await self._send(event, data)
        except Exception as exc:
            log.warning("event=send_failed session=%s event_name=%s error=%s", self.session_id, event, exc)

    async def _send_error(self, message: str) -> None:
        await self._safe_send(ERROR, ErrorData(message=message))

    async def _speak(self, text: str) -> None:
        """Synthesize and stream *text*; on failure the client gets an error and play goes on silently."""
        try:
            pcm = await self._services.synthesizer.synthesize(text)
        except SynthesisError as exc:
            log.warning("event=speech_skipped session=%s error=%s", self.session_id, exc)
            await self._send_error("Speech synthesis failed")
            return
        await self._audio.play(pcm)

    # -- start -----------------------------------------------------------------

    async def start(self, request: StartGameData) -> None:
        if self._closed:
            return
        if self._started:
            await self._send_error("Game already started")
            return
        self._started = True

        async with self._lock:
            try:
                await self._start(request)
            except asyncio.CancelledError:
                raise
            except EmptyWordListError as exc:
                log.warning("event=start_rejected session=%s error=%s", self.session_id, exc)
                self._started = False
                await self._send_error("No words available for this game")
            except Exception as exc:
                log.error("event=start_error session=%s error=%s", self.session_id, exc, exc_info=True)
                self._reopen_listening()
                await self._safe_send_state()
                await self._send_error("Failed to start game")

    async def _start(self, request: StartGameData) -> None:
        game = self._services.config.game
        profile = await self._load_profile(
            request.child_name,
            request.age or game.default_age,
            request.interests or game.default_interests,
        )
        self._child_name = profile.name

        words = await self._services.content.generate_word_list(profile.age, profile.interests)
        state = GameStateMachine.start_session(self.session_id, words)
        audio_cfg = self._services.config.audio
        self._state = state
        self._audio = AudioPipeline(
            state,
            self._send,
            frame_bytes=audio_cfg.frame_bytes,
            pacing_sec=audio_cfg.frame_pacing_ms / 1000.0,
            on_state_change=self._send_state,
        )

        try:
            await self._services.storage.create_game_session(profile.id, words, session_id=self.session_id)
        except Exception as exc:
            log.error("event=persist_failed session=%s what=game_session error=%s", self.session_id, exc)

        await self._open_recognizer()
        await self._send_state()

        await self._speak(lines.greeting(profile.name, profile.interests))
        await self._speak(lines.word_introduction(state.current_word(), first=True))
        state.set_waiting_for_response(True)
        await self._send_state()
        log.info("event=game_started session=%s child=%s words=%d", self.session_id, profile.id, len(words))

    async def _load_profile(self, name: str, age: int, interests: Sequence[str]) -> ChildProfile:
        try:
            return await self._services.storage.get_or_create_child_profile(name, age, interests)
        except Exception as exc:
            log.error("event=profile_lookup_failed name=%s error=%s", name, exc)
            return ChildProfile(id=str(uuid.uuid4()), name=name, age=age, interests=list(interests))

    async def _open_recognizer(self) -> None:
        factory = self._services.recognizer_factory
        if factory is None:
            log.warning("event=recognizer_unavailable session=%s reason=not_configured", self.session_id)
            await self._send_error("Speech recognition unavailable")
            return
        try:
            self._recognizer = await factory(self.on_transcript)
        except Exception as exc:
            log.error("event=recognizer_open_failed session=%s error=%s", self.session_id, exc)
            await self._send_error("Speech recognition unavailable")
            return
        self._state.set_recognizer_ready(True)

    # -- inbound audio ---------------------------------------------------------

    async def handle_audio_chunk(self, samples: Any) -> None:
        """Forward one microphone frame unless the bot is talking."""
        state, recognizer = self._state, self._recognizer
        if self._closed or state is None or recognizer is None or not state.recognizer_ready:
            return
        pcm = self._audio.gate_microphone(samples)
        if pcm is None:
            return
        try:
            await recognizer.send(pcm)
        except RecognizerError as exc:
            log.error("event=recognizer_send_failed session=%s error=%s", self.session_id, exc)
            state.set_recognizer_ready(False)
            await self._safe_send_state()
            await self._send_error("Speech recognition connection lost")

    # -- transcripts & turns ---------------------------------------------------

    async def on_transcript(self, text: str, is_final: bool, confidence: float) -> None:
        if self._closed:
            return
        await self._send(TRANSCRIPT, TranscriptData(text=text, is_final=is_final, confidence=confidence))
        if not is_final:
            return

        state = self._state
        if state is None or not state.can_accept_transcript():
            log.info(
                "event=transcript_discarded session=%s turn=%s text=%.40s",
                self.session_id, state.turn_state.value if state else "NONE", text,
            )
            return
        # No await between the check above and taking the turn
        state.set_bot_busy(True)
        self.spawn(self._run_turn(text, confidence), name="turn")

    async def _run_turn(self, text: str, confidence: float) -> None:
        async with self._lock:
            try:
                await self._send_state()
                await self._process_attempt(text, confidence)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=turn_error session=%s error=%s", self.session_id, exc, exc_info=True)
                self._reopen_listening()
                await self._safe_send_state()
                await self._send_error("Failed to process pronunciation")

    async def _process_attempt(self, text: str, confidence: float) -> None:
        state = self._state
        word = state.current_word()
        confidence = min(1.0, max(0.0, confidence))
        result = analyze(word.word, text, confidence)
        attempt = Attempt(
            target_word=word.word,
            child_said=text,
            pronunciation_score=result.score,
            attempt_number=state.attempt_count + 1,
            phoneme_errors=result.phoneme_errors,
            recognizer_confidence=confidence,
            success=result.success,
        )
        self._persist(self._services.storage.create_word_attempt(self.session_id, attempt), "word_attempt")

        outcome = state.record_attempt(attempt)

        feedback = await self._services.content.generate_feedback(attempt, self._child_name, state.total_score)
        await self._send(FEEDBACK, FeedbackData(text=feedback, success=attempt.success))
        await self._speak(feedback)

        self._persist(
            self._services.storage.update_game_session(
                self.session_id,
                total_points=state.total_score,
                words_completed=state.words_completed,
                current_word_index=state.current_word_index,
            ),
            "session_progress",
        )

        if not outcome.advance:
            state.set_waiting_for_response(True)
        elif state.advance_word():
            await self._speak(lines.word_introduction(state.current_word(), first=False))
            state.set_waiting_for_response(True)
        else:
            await self._finish()
            return
        await self._send_state()

    async def _finish(self) -> None:
        state = self._state
        self._persist(
            self._services.storage.complete_game_session(self.session_id, state.total_score, state.words_completed),
            "session_complete",
        )
        await self._speak(lines.completion_summary(self._child_name, state.total_score))
        state.transition(TurnState.IDLE)
        await self._send_state()
        log.info(
            "event=game_finished session=%s score=%d completed=%d/%d",
            self.session_id, state.total_score, state.words_completed, len(state.word_list),
        )
        await self._release()

    def _reopen_listening(self) -> None:
        state = self._state
        if state is None:
            return
        state.transition(TurnState.IDLE if state.is_complete() else TurnState.WAITING)

    async def _safe_send_state(self) -> None:
        if self._state is not None:
            await self._safe_send(GAME_STATE, self._state.snapshot())

    # -- teardown --------------------------------------------------------------

    async def _release(self) -> None:
        recognizer, self._recognizer = self._recognizer, None
        if self._state is not None:
            self._state.set_recognizer_ready(False)
        if recognizer is not None:
            try:
                await recognizer.close()
            except Exception as exc:
                log.warning("event=recognizer_close_failed session=%s error=%s", self.session_id, exc)

    async def close(self) -> None:
        """Stop in-flight work, release the recognizer and leave the registry; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await self._release()
        self._registry.remove(self.session_id)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        log.info("event=session_closed session=%s", self.session_id)
