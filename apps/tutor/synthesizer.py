"""
synthesizer.py — Tutor Engine · Groq Text-to-Speech
===================================================
``(text) -> 16 kHz mono linear16 PCM bytes``.

The Groq speech endpoint caps each request, so long prompts are split on
sentence boundaries (then on words) into pieces of at most ``max_chars``;
each piece is synthesized as WAV in a worker thread, decoded and resampled,
and the PCM is concatenated in order.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Optional, Protocol

from groq import Groq

from apps.tutor.audio import SAMPLE_RATE, decode_wav_to_pcm16
from apps.tutor.errors import SynthesisError
from config import TtsConfig

log = logging.getLogger("tutor_engine.synthesizer")

SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")


class Synthesizer(Protocol):
    async def synthesize(self, text: str) -> bytes: ...


def split_for_tts(text: str, max_chars: int) -> list[str]:
    """Sentence-sized pieces no longer than *max_chars*, order preserved."""
    pieces: list[str] = []
    for sentence in SENTENCE_END_RE.split(text.strip()):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) <= max_chars:
            pieces.append(sentence)
            continue
        current = ""
        for word in sentence.split():
            candidate = f"{current} {word}".strip()
            if len(candidate) > max_chars and current:
                pieces.append(current)
                current = word[:max_chars]
            else:
                current = candidate[:max_chars]
        if current:
            pieces.append(current)
    return pieces


class GroqSynthesizer:
    """Orpheus voice via the Groq speech API."""

    def __init__(
        self,
        config: Optional[TtsConfig] = None,
        client: Optional[Groq] = None,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self._config = config or TtsConfig()
        self._client = client
        self._sample_rate = sample_rate

    def _get_client(self) -> Groq:
        if self._client is None:
            self._client = Groq(api_key=os.environ["GROQ_API_KEY"])
        return self._client

    def _request(self, piece: str) -> bytes:
        return self._get_client().audio.speech.create(
            model=self._config.model,
            voice=self._config.voice,
            input=piece,
            response_format="wav",
        ).read()

    async def synthesize(self, text: str) -> bytes:
        pieces = split_for_tts(text, self._config.max_chars)
        if not pieces:
            raise SynthesisError("nothing to synthesize")

        loop = asyncio.get_running_loop()
        pcm = bytearray()
        for index, piece in enumerate(pieces, start=1):
            try:
                # Blocking Groq call offloaded to thread, guarded by timeout
                wav_bytes = await asyncio.wait_for(
                    loop.run_in_executor(None, self._request, piece),
                    timeout=self._config.timeout_sec,
                )
            except asyncio.TimeoutError as exc:
                log.warning("event=timeout scope=tts_piece piece=%d limit=%.1fs", index, self._config.timeout_sec)
                raise SynthesisError(f"TTS timed out on piece {index}") from exc
            except Exception as exc:
                log.error("event=tts_error piece=%d error=%s", index, exc)
                raise SynthesisError(str(exc)) from exc

            pcm += decode_wav_to_pcm16(wav_bytes, self._sample_rate)

        log.info("event=tts_complete pieces=%d bytes=%d", len(pieces), len(pcm))
        return bytes(pcm)
