"""
server.py — Tutor Engine · FastAPI Server
=========================================
Hosts the pronunciation tutor.  Each WebSocket connection on ``/ws`` gets
its own ``TutorSession``; sessions live in one process and share nothing
but the read-only collaborators in ``TutorServices``.

Endpoints
---------
  WS   /ws          Game protocol (JSON envelopes {event, data})
  GET  /health      Service liveness + session capacity
  GET  /sessions    Snapshot of every live session
  GET  /config      Current runtime configuration
  PUT  /config      Partial nested update, persisted to TUTOR_CONFIG_PATH

Environment
-----------
  DEEPGRAM_API_KEY   streaming speech-to-text (sessions run without it,
                     but cannot hear the child)
  GROQ_API_KEY       word lists, feedback and text-to-speech
  TUTOR_CONFIG_PATH  JSON config file (default: tutor_config.json)
  TUTOR_DEBUG        any value enables DEBUG logging
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from apps.tutor import protocol
from apps.tutor.content import TutorContent
from apps.tutor.errors import SessionLimitError
from apps.tutor.orchestrator import TutorServices, TutorSession
from apps.tutor.recognizer import deepgram_factory
from apps.tutor.registry import SessionRegistry
from apps.tutor.storage import TutorStorage
from apps.tutor.synthesizer import GroqSynthesizer
from config import TutorConfig

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("TUTOR_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("tutor_engine.server")

CONFIG_PATH = os.getenv("TUTOR_CONFIG_PATH", "tutor_config.json")


def _recognizer_factory(config: TutorConfig):
    deepgram_key = os.getenv("DEEPGRAM_API_KEY")
    if not deepgram_key:
        log.warning("event=deepgram_key_missing — sessions will run without speech recognition")
        return None
    return deepgram_factory(deepgram_key, config.deepgram, config.audio.sample_rate)


def build_services(config: TutorConfig) -> TutorServices:
    """Production collaborators for *config*, API keys from the environment."""
    return TutorServices(
        config=config,
        content=TutorContent(config.groq),
        synthesizer=GroqSynthesizer(config.tts, sample_rate=config.audio.sample_rate),
        storage=TutorStorage(config.storage.database_path),
        recognizer_factory=_recognizer_factory(config),
    )


def apply_config(services: TutorServices, config: TutorConfig) -> None:
    """Rebuild the Groq and Deepgram adapters from *config*; storage keeps its database."""
    services.config = config
    services.content = TutorContent(config.groq)
    services.synthesizer = GroqSynthesizer(config.tts, sample_rate=config.audio.sample_rate)
    services.recognizer_factory = _recognizer_factory(config)
    log.info("event=config_applied llm=%s voice=%s stt=%s", config.groq.model, config.tts.voice, config.deepgram.model)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(services: Optional[TutorServices] = None) -> FastAPI:

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = build_services(TutorConfig.load(CONFIG_PATH))
        svc: TutorServices = app.state.services
        app.state.registry.max_sessions = svc.config.game.max_sessions
        await svc.storage.initialize()
        log.info("event=server_start max_sessions=%d", svc.config.game.max_sessions)
        yield
        log.info("event=server_shutdown closing %d active sessions", len(app.state.registry))
        await app.state.registry.close_all()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Pronunciation Tutor Engine",
        version="1.0.0",
        description="Voice-driven pronunciation practice for children",
        lifespan=_lifespan,
    )
    app.state.services = services
    app.state.registry = SessionRegistry()

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # HTTP endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        registry: SessionRegistry = app.state.registry
        return JSONResponse({
            "status":          "ok",
            "active_sessions": len(registry),
            "max_sessions":    registry.max_sessions,
            "capacity_pct":    round(len(registry) / registry.max_sessions * 100, 1),
        })

    @app.get("/sessions")
    async def list_sessions() -> list[dict]:
        """Snapshot of every session that has started a game."""
        return [
            session.state.snapshot().model_dump(mode="json", by_alias=True)
            for session in app.state.registry
            if session.state is not None
        ]

    @app.get("/config")
    async def get_config() -> dict:
        return app.state.services.config.model_dump()

    @app.put("/config")
    async def put_config(patch: dict[str, Any]) -> dict:
        """Merge a partial update over the running config and rebuild the adapters from it."""
        svc: TutorServices = app.state.services
        try:
            updated = svc.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc
        try:
            updated.save(CONFIG_PATH)
        except OSError as exc:
            log.error("event=config_save_failed path=%s error=%s", CONFIG_PATH, exc)
            raise HTTPException(status_code=500, detail="Failed to persist config.") from exc
        apply_config(svc, updated)
        app.state.registry.max_sessions = updated.game.max_sessions
        return updated.model_dump()

    # -----------------------------------------------------------------------
    # Game socket
    # -----------------------------------------------------------------------

    @app.websocket("/ws")
    async def ws_game(ws: WebSocket) -> None:
        send_lock = asyncio.Lock()

        async def send(event: str, data: Any) -> None:
            async with send_lock:
                await ws.send_json(protocol.encode(event, data))

        session = TutorSession(app.state.services, app.state.registry, send)
        try:
            app.state.registry.add(session)
        except SessionLimitError as exc:
            await ws.accept()
            await send(protocol.ERROR, protocol.ErrorData(message=str(exc)))
            await ws.close(code=1013)
            return

        try:
            await ws.accept()
            log.info("event=ws_client_connected session=%s remote=%s", session.session_id, ws.client)
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("text") is not None:
                    await _dispatch(session, message["text"], send)
                else:
                    log.warning("event=binary_frame_rejected session=%s", session.session_id)
                    await send(protocol.ERROR, protocol.ErrorData(message="Invalid message"))
        except WebSocketDisconnect:
            pass
        finally:
            await session.close()
            log.info("event=ws_client_disconnected session=%s", session.session_id)

    return app


async def _dispatch(session: TutorSession, raw: str, send) -> None:
    try:
        envelope = protocol.Envelope.model_validate_json(raw)
        if envelope.event == protocol.START_GAME:
            request = protocol.StartGameData.model_validate(envelope.data or {})
            session.spawn(session.start(request), name="start_game")
        elif envelope.event == protocol.AUDIO_CHUNK:
            await session.handle_audio_chunk(protocol.parse_audio_samples(envelope.data))
        else:
            log.info("event=unknown_message session=%s name=%s", session.session_id, envelope.event)
    except ValidationError as exc:
        log.warning("event=invalid_message session=%s errors=%d", session.session_id, exc.error_count())
        await send(protocol.ERROR, protocol.ErrorData(message="Invalid message"))


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "server:app",
        host=os.getenv("TUTOR_HOST", "0.0.0.0"),
        port=int(os.getenv("TUTOR_PORT", "8000")),
        log_level="debug" if os.getenv("TUTOR_DEBUG") else "info",
    )
