"""
recognizer.py — Tutor Engine · Deepgram Streaming STT
=====================================================
One live Deepgram socket per session.  Microphone PCM goes in through
``send``; every non-empty transcript (interim and final) comes back through
the ``on_transcript(text, is_final, confidence)`` callback.

While the microphone is gated (the bot is talking) no audio flows, so a
KeepAlive message is sent on a timer to stop Deepgram from closing the
socket after ~10 s of silence.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Protocol
from urllib.parse import urlencode

import websockets

from apps.tutor.errors import RecognizerError
from config import DeepgramConfig

log = logging.getLogger("tutor_engine.recognizer")

TranscriptCallback = Callable[[str, bool, float], Awaitable[None]]


class Recognizer(Protocol):
    """What the orchestrator needs from a streaming speech-to-text session."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, pcm: bytes) -> None: ...

    async def close(self) -> None: ...


RecognizerFactory = Callable[[TranscriptCallback], Awaitable[Recognizer]]


def build_listen_url(config: DeepgramConfig, sample_rate: int = 16000) -> str:
    params = {
        "model": config.model,
        "language": config.language,
        "smart_format": str(config.smart_format).lower(),
        "interim_results": str(config.interim_results).lower(),
        "endpointing": config.endpointing,
        "encoding": "linear16",
        "sample_rate": sample_rate,
        "channels": 1,
    }
    return f"{config.url}?{urlencode(params)}"


def parse_result(msg: dict) -> Optional[tuple[str, bool, float]]:
    """Extract ``(text, is_final, confidence)`` from a Results message, if any."""
    if msg.get("type", "Results") != "Results":
        return None
    alternatives = msg.get("channel", {}).get("alternatives") or [{}]
    transcript = (alternatives[0].get("transcript") or "").strip()
    if not transcript:
        return None
    confidence = float(alternatives[0].get("confidence") or 0.0)
    return transcript, bool(msg.get("is_final", False)), confidence


class DeepgramRecognizer:
    """Live transcription socket with a receiver task and a keepalive task."""

    def __init__(
        self,
        api_key: str,
        on_transcript: TranscriptCallback,
        config: Optional[DeepgramConfig] = None,
        sample_rate: int = 16000,
    ) -> None:
        self._api_key = api_key
        self._on_transcript = on_transcript
        self._config = config or DeepgramConfig()
        self._sample_rate = sample_rate
        self._ws = None
        self._receiver_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._closed = False
        self._last_send = 0.0

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self) -> "DeepgramRecognizer":
        url = build_listen_url(self._config, self._sample_rate)
        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            self._ws = await websockets.connect(
                url,
                additional_headers=headers,
                open_timeout=self._config.connect_timeout_sec,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            raise RecognizerError(f"Deepgram connection failed: {exc}") from exc

        loop = asyncio.get_running_loop()
        self._last_send = loop.time()
        self._receiver_task = asyncio.create_task(self._receiver(), name="deepgram_receiver")
        self._keepalive_task = asyncio.create_task(self._keepalive(), name="deepgram_keepalive")
        log.info("event=stt_connected model=%s language=%s", self._config.model, self._config.language)
        return self

    async def _receiver(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                msg = json.loads(message)
                result = parse_result(msg)
                if result is None:
                    log.debug("event=stt_message type=%s", msg.get("type"))
                    continue
                text, is_final, confidence = result
                log.debug("event=stt_transcript final=%s confidence=%.2f text=%.60s", is_final, confidence, text)
                await self._on_transcript(text, is_final, confidence)
        except websockets.ConnectionClosed as exc:
            if not self._closed:
                log.warning("event=stt_connection_lost reason=%s", exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=stt_receiver_error error=%s", exc, exc_info=True)
        finally:
            self._closed = True

    async def _keepalive(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.keepalive_sec
        while not self._closed:
            await asyncio.sleep(interval)
            if loop.time() - self._last_send < interval:
                continue
            try:
                await self._ws.send(json.dumps({"type": "KeepAlive"}))
                log.debug("event=stt_keepalive")
            except websockets.ConnectionClosed:
                return

    async def send(self, pcm: bytes) -> None:
        if not self.is_open or not pcm:
            return
        try:
            await self._ws.send(pcm)
            self._last_send = asyncio.get_running_loop().time()
        except websockets.ConnectionClosed as exc:
            self._closed = True
            raise RecognizerError("Deepgram connection closed") from exc

    async def close(self) -> None:
        """Finish the stream and tear down both background tasks."""
        if self._ws is None:
            return
        already_closed = self._closed
        self._closed = True

        for task in (self._keepalive_task, self._receiver_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        if not already_closed:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except websockets.ConnectionClosed:
                pass
        await self._ws.close()
        for task in (self._keepalive_task, self._receiver_task):
            if task is not None and task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        log.info("event=stt_closed")


def deepgram_factory(api_key: str, config: DeepgramConfig, sample_rate: int = 16000) -> RecognizerFactory:
    """Recognizer factory bound to one API key and config."""

    async def _open(on_transcript: TranscriptCallback) -> Recognizer:
        return await DeepgramRecognizer(api_key, on_transcript, config, sample_rate).connect()

    return _open
