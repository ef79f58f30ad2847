"""
content.py — Tutor Engine · Spoken Content (Groq LLM + templates)
=================================================================
Everything the tutor says that is not a synthesized word list comes from
here: the per-session word list, the feedback after each attempt, and the
fixed greeting / word introduction / completion lines.

LLM calls are bounded by a timeout and never fail the caller: any error,
timeout, or unusable answer falls back to a static word list or a
deterministic feedback template.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Optional, Sequence

from groq import AsyncGroq
from pydantic import TypeAdapter, ValidationError

from apps.tutor.errors import ContentGenerationError
from apps.tutor.models import POINTS_PER_WORD, Attempt, WordItem
from config import GroqConfig

log = logging.getLogger("tutor_engine.content")

FALLBACK_WORDS: tuple[WordItem, ...] = (
    WordItem(word="cat", difficulty="easy", phonetic="kæt", hint="Say 'c' like a hard 'k', then 'at'"),
    WordItem(word="dog", difficulty="easy", phonetic="dɔg", hint="Start with 'd', then 'og' like 'log'"),
    WordItem(word="sun", difficulty="easy", phonetic="sʌn", hint="Say 's' like a snake, then 'un'"),
    WordItem(word="star", difficulty="easy", phonetic="stɑr", hint="Combine 'st' then say 'ar' like at the doctor"),
    WordItem(word="moon", difficulty="easy", phonetic="mun", hint="Say 'm' then 'oon' like 'soon'"),
    WordItem(word="tree", difficulty="easy", phonetic="tri", hint="Say 'tr' together, then 'ee'"),
    WordItem(word="bird", difficulty="medium", phonetic="bɜrd", hint="Start with 'b', then 'ird' like 'third'"),
    WordItem(word="flower", difficulty="medium", phonetic="flaʊər", hint="Say 'fl' then 'ow' like 'cow', then 'er'"),
    WordItem(word="rainbow", difficulty="medium", phonetic="reɪnboʊ", hint="Say 'rain' then 'bow' like bow and arrow"),
    WordItem(word="butterfly", difficulty="medium", phonetic="bʌtərflaɪ", hint="Break it: 'butter' then 'fly'"),
)

_WORD_LIST_ADAPTER = TypeAdapter(list[WordItem])

_WORDS_USER_PROMPT = (
    "Generate {count} pronunciation practice words for a {age}-year-old child "
    "interested in {interests}. Start with easy 3-4 letter words, then progress "
    "to medium difficulty. Return as JSON array: "
    '[{{"word": string, "difficulty": "easy"|"medium", "phonetic": string (IPA notation), '
    '"hint": string (simple pronunciation tip)}}]'
)


def parse_word_list(raw: str) -> list[WordItem]:
    """Word items from an LLM JSON answer: either ``{"words": [...]}`` or a bare array."""
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ContentGenerationError(f"word list is not JSON: {exc}") from exc

    if isinstance(parsed, dict):
        parsed = parsed.get("words", parsed)
    if not isinstance(parsed, list):
        raise ContentGenerationError("word list JSON has no array of words")

    try:
        words = _WORD_LIST_ADAPTER.validate_python(parsed)
    except ValidationError as exc:
        raise ContentGenerationError(f"word list failed validation: {exc.error_count()} errors") from exc
    if not words:
        raise ContentGenerationError("word list is empty")
    return words


# ---------------------------------------------------------------------------
# Fixed lines
# ---------------------------------------------------------------------------

def greeting(child_name: str, interests: Sequence[str]) -> str:
    return (
        f"Hi {child_name}! I'm your pronunciation buddy! "
        f"Today we'll practice fun words about {', '.join(interests)}. Ready to start?"
    )


def word_introduction(word: WordItem, first: bool) -> str:
    if first:
        return f"Let's practice the word '{word.word}'. Listen: {word.word}. {word.hint}. Now you try!"
    return f"Next word: '{word.word}'. Listen: {word.word}. {word.hint}. Your turn!"


def completion_summary(child_name: str, total_score: int) -> str:
    return (
        f"Amazing job, {child_name}! You completed all words and earned "
        f"{total_score} points! You're a pronunciation star!"
    )


def fallback_feedback(attempt: Attempt, current_score: int) -> str:
    """Template used when the model answered but said nothing; *current_score* already counts this attempt."""
    word = attempt.target_word
    if attempt.success:
        return (
            f"Wonderful! You said '{word}' perfectly! You earned {POINTS_PER_WORD} points! "
            f"Your total is now {current_score} points. Ready for the next word?"
        )
    if attempt.attempt_number < attempt.max_attempts:
        return f"Good try! The word is '{word}'. Let's try once more!"
    return f"Great effort! The word was '{word}'. Let's try a new word!"


def error_feedback(attempt: Attempt) -> str:
    """Template used when the model call itself failed."""
    word = attempt.target_word
    if attempt.success:
        return f"Perfect! You said '{word}' correctly! +{POINTS_PER_WORD} points!"
    if attempt.attempt_number < attempt.max_attempts:
        return f"Try again! Listen: {word}. You can do it!"
    return f"Good try! Let's practice '{word}' again later. Next word!"


# ---------------------------------------------------------------------------
# LLM-backed content
# ---------------------------------------------------------------------------

class TutorContent:
    """Word lists and feedback from Groq, with fallbacks."""

    def __init__(self, config: Optional[GroqConfig] = None, client: Optional[AsyncGroq] = None) -> None:
        self._config = config or GroqConfig()
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=os.environ["GROQ_API_KEY"])
        return self._client

    def _sampling(self) -> dict:
        if self._config.temperature is None:
            return {}
        return {"temperature": self._config.temperature}

    async def _request_word_list(self, age: int, interests: Sequence[str]) -> list[WordItem]:
        response = await self._get_client().chat.completions.create(
            model=self._config.model,
            messages=[
                {"role": "system", "content": self._config.words_prompt},
                {"role": "user", "content": _WORDS_USER_PROMPT.format(
                    count=self._config.words_per_session,
                    age=age,
                    interests=", ".join(interests),
                )},
            ],
            response_format={"type": "json_object"},
            max_tokens=self._config.word_list_max_tokens,
            stream=False,
            **self._sampling(),
        )
        return parse_word_list(response.choices[0].message.content or "{}")

    async def generate_word_list(self, age: int, interests: Sequence[str]) -> list[WordItem]:
        try:
            words = await asyncio.wait_for(
                self._request_word_list(age, interests),
                timeout=self._config.word_list_timeout_sec,
            )
        except asyncio.TimeoutError:
            log.warning("event=timeout scope=word_list limit=%.1fs fallback=static", self._config.word_list_timeout_sec)
            return list(FALLBACK_WORDS)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=word_list_error error=%s fallback=static", exc)
            return list(FALLBACK_WORDS)

        log.info("event=word_list_generated count=%d age=%d", len(words), age)
        return words

    async def _request_feedback(self, attempt: Attempt, child_name: str, current_score: int) -> str:
        payload = {
            "targetWord": attempt.target_word,
            "childSaid": attempt.child_said,
            "pronunciationScore": attempt.pronunciation_score,
            "attemptNumber": attempt.attempt_number,
            "maxAttempts": attempt.max_attempts,
            "success": attempt.success,
            "childName": child_name,
            "currentPoints": current_score,
        }
        response = await self._get_client().chat.completions.create(
            model=self._config.model,
            messages=[
                {"role": "system", "content": self._config.feedback_prompt},
                {"role": "user", "content": json.dumps(payload)},
            ],
            max_tokens=self._config.feedback_max_tokens,
            stream=False,
            **self._sampling(),
        )
        return (response.choices[0].message.content or "").strip()

    async def generate_feedback(self, attempt: Attempt, child_name: str, current_score: int) -> str:
        try:
            text = await asyncio.wait_for(
                self._request_feedback(attempt, child_name, current_score),
                timeout=self._config.feedback_timeout_sec,
            )
        except asyncio.TimeoutError:
            log.warning("event=timeout scope=feedback limit=%.1fs", self._config.feedback_timeout_sec)
            return error_feedback(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=feedback_error error=%s", exc)
            return error_feedback(attempt)

        if not text:
            log.info("event=feedback_empty word=%s", attempt.target_word)
            return fallback_feedback(attempt, current_score)
        return text
