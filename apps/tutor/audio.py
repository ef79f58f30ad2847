"""
audio.py — Tutor Engine · Audio Pipeline Controller
===================================================
Outbound: slices synthesized 16 kHz mono linear16 speech into 20 ms frames
and streams them to the client with a small pacing yield, followed by one
end-of-stream marker.  The turn belongs to SPEAKING for the whole stream
and goes back to its previous owner afterwards.

Inbound: converts microphone samples to signed 16-bit PCM and drops (never
buffers) every frame that arrives while the bot is speaking, so the tutor's
own voice can never be heard back as the child's answer.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Awaitable, Callable, Iterator, Optional, Sequence, Union

import numpy as np
import scipy.signal
import soundfile as sf

from apps.tutor.state import GameStateMachine, TurnState

log = logging.getLogger("tutor_engine.audio")

SAMPLE_RATE = 16000
FRAME_BYTES = 320          # 20 ms @ 16 kHz mono s16le
FRAME_PACING_SEC = 0.015

# event name, payload → delivered to the client
SendFn = Callable[[str, object], Awaitable[None]]


# ---------------------------------------------------------------------------
# Sample conversion
# ---------------------------------------------------------------------------

def float_to_pcm16(samples: Union[np.ndarray, Sequence[float]]) -> np.ndarray:
    """Clamp to [-1, 1] then scale: negatives by 32768, positives by 32767."""
    data = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(data < 0, data * 32768.0, data * 32767.0)
    return scaled.astype(np.int16)


def samples_to_pcm16(samples: Union[np.ndarray, Sequence[Union[int, float]]]) -> bytes:
    """Little-endian s16 bytes from float samples or already-integer samples."""
    data = np.asarray(samples)
    if data.size == 0:
        return b""
    if data.dtype.kind == "f":
        pcm = float_to_pcm16(data)
    else:
        pcm = np.clip(data, -32768, 32767).astype(np.int16)
    return pcm.astype("<i2").tobytes()


def decode_wav_to_pcm16(wav_bytes: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Decode a WAV container to mono s16le PCM at *sample_rate*."""
    data, source_rate = sf.read(io.BytesIO(wav_bytes), dtype="float32")
    if data.ndim == 2:
        data = data.mean(axis=1)
    if source_rate != sample_rate and len(data):
        number_of_samples = round(len(data) * float(sample_rate) / source_rate)
        data = scipy.signal.resample(data, number_of_samples)
    return float_to_pcm16(data).astype("<i2").tobytes()


def iter_frames(pcm: bytes, frame_bytes: int = FRAME_BYTES) -> Iterator[bytes]:
    """Fixed-size frames in order; the last one may be short."""
    for offset in range(0, len(pcm), frame_bytes):
        yield pcm[offset:offset + frame_bytes]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class AudioPipeline:
    """Barge-in-safe audio in/out for one session."""

    def __init__(
        self,
        state: GameStateMachine,
        send: SendFn,
        *,
        frame_bytes: int = FRAME_BYTES,
        pacing_sec: float = FRAME_PACING_SEC,
        on_state_change: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._state = state
        self._send = send
        self._frame_bytes = frame_bytes
        self._pacing_sec = pacing_sec
        self._on_state_change = on_state_change
        self.frames_sent = 0
        self.frames_dropped = 0

    async def _notify(self) -> None:
        if self._on_state_change is not None:
            await self._on_state_change()

    async def play(self, pcm: bytes) -> int:
        """Stream *pcm* to the client; returns the number of frames sent.

        SPEAKING owns the turn until the end marker is out, then the
        previous owner gets it back (also on error / cancellation).
        """
        prev = self._state.transition(TurnState.SPEAKING)
        count = 0
        try:
            await self._notify()
            for frame in iter_frames(pcm, self._frame_bytes):
                await self._send("audio_chunk", list(frame))
                count += 1
                # Scheduling yield, keeps the loop free for close/cancel
                await asyncio.sleep(self._pacing_sec)
            await self._send("audio_end", {})
            log.debug("event=playback_complete frames=%d bytes=%d", count, len(pcm))
        finally:
            self.frames_sent += count
            self._state.transition(prev)
        await self._notify()
        return count

    def gate_microphone(self, samples: Union[np.ndarray, Sequence[Union[int, float]]]) -> Optional[bytes]:
        """PCM bytes to forward to the recognizer, or None if the frame is dropped."""
        if self._state.bot_is_speaking:
            self.frames_dropped += 1
            log.debug("event=mic_frame_dropped state=%s", self._state.turn_state.value)
            return None
        pcm = samples_to_pcm16(samples)
        return pcm or None
