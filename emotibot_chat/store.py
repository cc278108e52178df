"""
Persistence for the EmotiBot Chat service.

This module provides the storage collaborator behind conversation sessions:
ordered turn lists keyed by session, append-only mood entries keyed by user,
and reviewer notes keyed by (reviewer, subject). An in-memory store serves
tests and single-process use; the SQLite store keeps data across restarts.
"""

import asyncio
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from loguru import logger

from .errors import StoreError
from .models import ConversationTurn, EmotionSample, MoodEntry, ReviewerNote


class ChatStore(Protocol):
    """Operations the chat service needs from a durable store."""

    async def load_turns(self, session_id: str) -> list[ConversationTurn]: ...

    async def save_turns(
        self, session_id: str, turns: list[ConversationTurn]
    ) -> None: ...

    async def record_mood(self, user_id: str, sample: EmotionSample) -> MoodEntry: ...

    async def list_moods(self, user_id: str, limit: int = 50) -> list[MoodEntry]:
        """Most recent ``limit`` entries, oldest first. A limit of 0 means all."""
        ...

    async def add_note(
        self, reviewer_id: str, subject_id: str, content: str
    ) -> ReviewerNote: ...

    async def list_notes(
        self, reviewer_id: str, subject_id: str
    ) -> list[ReviewerNote]: ...


class InMemoryChatStore:
    """
    Process-local store.

    Turn lists are replaced wholesale on save; mood entries and notes are
    append-only.
    """

    def __init__(self) -> None:
        self._turns: dict[str, list[ConversationTurn]] = {}
        self._moods: dict[str, list[MoodEntry]] = {}
        self._notes: dict[tuple[str, str], list[ReviewerNote]] = {}

    async def load_turns(self, session_id: str) -> list[ConversationTurn]:
        return list(self._turns.get(session_id, []))

    async def save_turns(self, session_id: str, turns: list[ConversationTurn]) -> None:
        self._turns[session_id] = list(turns)

    async def record_mood(self, user_id: str, sample: EmotionSample) -> MoodEntry:
        entry = MoodEntry(
            user_id=user_id,
            label=sample.label,
            intensity=sample.intensity,
            created_at=sample.observed_at,
        )
        self._moods.setdefault(user_id, []).append(entry)
        return entry

    async def list_moods(self, user_id: str, limit: int = 50) -> list[MoodEntry]:
        _check_limit(limit)
        entries = sorted(self._moods.get(user_id, []), key=lambda e: e.created_at)
        return entries[-limit:] if limit else entries

    async def add_note(
        self, reviewer_id: str, subject_id: str, content: str
    ) -> ReviewerNote:
        note = ReviewerNote(
            reviewer_id=reviewer_id, subject_id=subject_id, content=content
        )
        self._notes.setdefault((reviewer_id, subject_id), []).append(note)
        return note

    async def list_notes(self, reviewer_id: str, subject_id: str) -> list[ReviewerNote]:
        return sorted(
            self._notes.get((reviewer_id, subject_id), []), key=lambda n: n.created_at
        )


class SQLiteChatStore:
    """
    SQLite-backed store.

    Each operation opens its own connection on a worker thread so the event
    loop is never blocked on disk I/O. sqlite3 errors surface as StoreError.
    """

    def __init__(self, db_path: str | Path = "emotibot_chat.db") -> None:
        self.db_path = Path(db_path)
        self._init_db()
        logger.info(f"SQLiteChatStore initialized: {self.db_path}")

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success and is always closed."""
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        try:
            with self._connection() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS conversation_turns (
                        session_id TEXT NOT NULL,
                        position INTEGER NOT NULL,
                        payload TEXT NOT NULL,
                        PRIMARY KEY (session_id, position)
                    );
                    CREATE TABLE IF NOT EXISTS mood_entries (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        emotion TEXT NOT NULL,
                        intensity REAL NOT NULL,
                        created_at REAL NOT NULL
                    );
                    CREATE TABLE IF NOT EXISTS reviewer_notes (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        reviewer_id TEXT NOT NULL,
                        subject_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        created_at REAL NOT NULL
                    );
                    """
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreError(f"Failed to initialize database: {e}") from e

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    # MARK: - Turns

    def _load_turns(self, session_id: str) -> list[ConversationTurn]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT payload FROM conversation_turns "
                "WHERE session_id = ? ORDER BY position",
                (session_id,),
            ).fetchall()
        return [ConversationTurn.model_validate_json(row[0]) for row in rows]

    def _save_turns(self, session_id: str, turns: list[ConversationTurn]) -> None:
        with self._connection() as conn:
            conn.execute(
                "DELETE FROM conversation_turns WHERE session_id = ?", (session_id,)
            )
            conn.executemany(
                "INSERT INTO conversation_turns (session_id, position, payload) "
                "VALUES (?, ?, ?)",
                [
                    (session_id, position, turn.model_dump_json())
                    for position, turn in enumerate(turns)
                ],
            )

    async def load_turns(self, session_id: str) -> list[ConversationTurn]:
        return await self._run(self._load_turns, session_id)

    async def save_turns(self, session_id: str, turns: list[ConversationTurn]) -> None:
        await self._run(self._save_turns, session_id, list(turns))

    # MARK: - Mood entries

    def _record_mood(self, entry: MoodEntry) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO mood_entries (user_id, emotion, intensity, created_at) "
                "VALUES (?, ?, ?, ?)",
                (entry.user_id, entry.label, entry.intensity, entry.created_at),
            )

    def _list_moods(self, user_id: str, limit: int) -> list[MoodEntry]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT emotion, intensity, created_at FROM mood_entries "
                "WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit if limit else -1),
            ).fetchall()
        return [
            MoodEntry(user_id=user_id, label=label, intensity=intensity, created_at=ts)
            for label, intensity, ts in reversed(rows)
        ]

    async def record_mood(self, user_id: str, sample: EmotionSample) -> MoodEntry:
        entry = MoodEntry(
            user_id=user_id,
            label=sample.label,
            intensity=sample.intensity,
            created_at=sample.observed_at,
        )
        await self._run(self._record_mood, entry)
        return entry

    async def list_moods(self, user_id: str, limit: int = 50) -> list[MoodEntry]:
        _check_limit(limit)
        return await self._run(self._list_moods, user_id, limit)

    # MARK: - Reviewer notes

    def _add_note(self, note: ReviewerNote) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO reviewer_notes (reviewer_id, subject_id, content, created_at) "
                "VALUES (?, ?, ?, ?)",
                (note.reviewer_id, note.subject_id, note.content, note.created_at),
            )

    def _list_notes(self, reviewer_id: str, subject_id: str) -> list[ReviewerNote]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT content, created_at FROM reviewer_notes "
                "WHERE reviewer_id = ? AND subject_id = ? ORDER BY created_at, id",
                (reviewer_id, subject_id),
            ).fetchall()
        return [
            ReviewerNote(
                reviewer_id=reviewer_id,
                subject_id=subject_id,
                content=content,
                created_at=ts,
            )
            for content, ts in rows
        ]

    async def add_note(
        self, reviewer_id: str, subject_id: str, content: str
    ) -> ReviewerNote:
        note = ReviewerNote(
            reviewer_id=reviewer_id,
            subject_id=subject_id,
            content=content,
            created_at=time.time(),
        )
        await self._run(self._add_note, note)
        return note

    async def list_notes(self, reviewer_id: str, subject_id: str) -> list[ReviewerNote]:
        return await self._run(self._list_notes, reviewer_id, subject_id)


def _check_limit(limit: int) -> None:
    if limit < 0:
        raise ValueError(f"limit must not be negative, got {limit}")
