"""
Per-session state for the EmotiBot Chat service.

Each session id owns its own EmotionHistory, ConversationSession and, when an
emotion source is configured, a background EmotionSampler. Nothing mutable is
shared between sessions. Sessions are opened only by writes; reads use
``lookup``, so unknown ids never start samplers.
"""

import asyncio
from collections.abc import Callable

from loguru import logger

from .config import Settings
from .history import EmotionHistory
from .models import get_vocabulary
from .sampler import EmotionSampler, EmotionSource, build_source
from .session import ConversationSession
from .store import ChatStore

SourceFactory = Callable[[Settings], EmotionSource | None]


class SessionRegistry:
    """Creates, restores and tears down sessions by id."""

    def __init__(
        self,
        settings: Settings,
        store: ChatStore,
        source_factory: SourceFactory = build_source,
    ) -> None:
        self.settings = settings
        self.store = store
        self.source_factory = source_factory
        self.vocabulary = get_vocabulary(settings.vocabulary)
        self._sessions: dict[str, ConversationSession] = {}
        self._samplers: dict[str, EmotionSampler] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def sampler_for(self, session_id: str) -> EmotionSampler | None:
        return self._samplers.get(session_id)

    def lookup(self, session_id: str) -> ConversationSession | None:
        """Return the live session, or None. Never opens one."""
        return self._sessions.get(session_id)

    async def get(self, session_id: str) -> ConversationSession:
        """Return the live session, restoring it from the store on first use."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session

            # Nothing is registered until the source exists
            source = self.source_factory(self.settings)

            history = EmotionHistory(
                capacity=self.settings.history_capacity, vocabulary=self.vocabulary
            )
            session = ConversationSession(session_id, self.store, history)
            await session.restore()
            self._sessions[session_id] = session

            if source is not None:
                sampler = EmotionSampler(source, history)
                sampler.start()
                self._samplers[session_id] = sampler

            logger.info(f"Opened session {session_id}")
            return session

    async def close(self, session_id: str) -> bool:
        """
        Tear a session down. A reply still in flight for it is discarded.

        Returns:
            True if the session was open
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            sampler = self._samplers.pop(session_id, None)

        if sampler is not None:
            await sampler.stop()
        if session is None:
            return False

        session.close()
        logger.info(f"Closed session {session_id}")
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)
