"""
storage.py — Tutor Engine · SQLite Persistence
==============================================
Child profiles, game sessions and word attempts in one SQLite file, via
aiosqlite.  Every operation opens its own connection, so nothing here is
shared between sessions.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import aiosqlite

from apps.tutor.models import DEFAULT_INTERESTS, Attempt, ChildProfile, WordItem

log = logging.getLogger("tutor_engine.storage")

SCHEMA = """
CREATE TABLE IF NOT EXISTS child_profiles (
    id         TEXT PRIMARY KEY,
    name       TEXT NOT NULL UNIQUE,
    age        INTEGER NOT NULL,
    interests  TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS game_sessions (
    id                 TEXT PRIMARY KEY,
    child_id           TEXT NOT NULL REFERENCES child_profiles(id),
    total_points       INTEGER NOT NULL DEFAULT 0,
    words_completed    INTEGER NOT NULL DEFAULT 0,
    word_list          TEXT NOT NULL,
    current_word_index INTEGER NOT NULL DEFAULT 0,
    status             TEXT NOT NULL DEFAULT 'active',
    started_at         TEXT NOT NULL,
    completed_at       TEXT
);

CREATE TABLE IF NOT EXISTS word_attempts (
    id                  TEXT PRIMARY KEY,
    session_id          TEXT NOT NULL REFERENCES game_sessions(id),
    word                TEXT NOT NULL,
    attempt_number      INTEGER NOT NULL,
    transcript          TEXT NOT NULL,
    pronunciation_score INTEGER NOT NULL,
    deepgram_confidence INTEGER NOT NULL,
    success             INTEGER NOT NULL DEFAULT 0,
    phoneme_errors      TEXT NOT NULL,
    created_at          TEXT NOT NULL
);
"""

_SESSION_COLUMNS = frozenset({"total_points", "words_completed", "current_word_index", "status"})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TutorStorage:
    """Persistence for profiles, sessions and attempts."""

    def __init__(self, db_path: str = "./data/tutor.db") -> None:
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create the database file and tables if they do not exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA)
            await db.commit()
        log.info("event=storage_ready path=%s", self.db_path)

    # -- child profiles --------------------------------------------------------

    async def get_or_create_child_profile(
        self,
        name: str,
        age: int = 7,
        interests: Sequence[str] = (),
    ) -> ChildProfile:
        """Profiles are looked up by name; a new one gets the default interests if none given."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, name, age, interests, created_at FROM child_profiles WHERE name = ?",
                (name,),
            ) as cursor:
                row = await cursor.fetchone()
            if row:
                return ChildProfile(
                    id=row[0],
                    name=row[1],
                    age=row[2],
                    interests=json.loads(row[3]),
                    created_at=datetime.fromisoformat(row[4]),
                )

            profile = ChildProfile(
                id=str(uuid.uuid4()),
                name=name,
                age=age,
                interests=list(interests) or list(DEFAULT_INTERESTS),
            )
            await db.execute(
                "INSERT INTO child_profiles (id, name, age, interests, created_at) VALUES (?, ?, ?, ?, ?)",
                (profile.id, profile.name, profile.age, json.dumps(profile.interests),
                 profile.created_at.isoformat()),
            )
            await db.commit()

        log.info("event=profile_created child=%s age=%d", profile.id, profile.age)
        return profile

    # -- game sessions ---------------------------------------------------------

    async def create_game_session(
        self,
        child_id: str,
        word_list: Sequence[WordItem],
        session_id: Optional[str] = None,
    ) -> str:
        session_id = session_id or str(uuid.uuid4())
        words = json.dumps([w.model_dump() for w in word_list])
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO game_sessions (id, child_id, word_list, started_at)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, child_id, words, _now()),
            )
            await db.commit()
        log.info("event=game_session_created session=%s child=%s words=%d", session_id, child_id, len(word_list))
        return session_id

    async def update_game_session(self, session_id: str, **updates) -> None:
        """Set any of total_points, words_completed, current_word_index, status."""
        unknown = set(updates) - _SESSION_COLUMNS
        if unknown:
            raise ValueError(f"unknown game_sessions columns: {sorted(unknown)}")
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE game_sessions SET {assignments} WHERE id = ?",
                (*updates.values(), session_id),
            )
            await db.commit()

    async def complete_game_session(self, session_id: str, final_score: int, words_completed: int) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE game_sessions
                SET status = 'completed',
                    total_points = ?,
                    words_completed = ?,
                    completed_at = ?
                WHERE id = ?
                """,
                (final_score, words_completed, _now(), session_id),
            )
            await db.commit()
        log.info("event=game_session_completed session=%s score=%d words=%d", session_id, final_score, words_completed)

    async def get_game_session(self, session_id: str) -> Optional[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM game_sessions WHERE id = ?", (session_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        session = dict(row)
        session["word_list"] = json.loads(session["word_list"])
        return session

    # -- word attempts ---------------------------------------------------------

    async def create_word_attempt(self, session_id: str, attempt: Attempt) -> str:
        attempt_id = str(uuid.uuid4())
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO word_attempts
                (id, session_id, word, attempt_number, transcript, pronunciation_score,
                 deepgram_confidence, success, phoneme_errors, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt_id, session_id, attempt.target_word, attempt.attempt_number,
                    attempt.child_said, attempt.pronunciation_score,
                    round(attempt.recognizer_confidence * 100),
                    1 if attempt.success else 0,
                    json.dumps(attempt.phoneme_errors), _now(),
                ),
            )
            await db.commit()
        return attempt_id

    async def list_word_attempts(self, session_id: str) -> list[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM word_attempts WHERE session_id = ? ORDER BY created_at",
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        attempts = []
        for row in rows:
            attempt = dict(row)
            attempt["phoneme_errors"] = json.loads(attempt["phoneme_errors"])
            attempts.append(attempt)
        return attempts
