"""
Conversation sessions for the EmotiBot Chat service.

A session is the ordered, append-only list of turns for one chat surface. It
tags user turns with the emotion that was active when they were sent, writes
the whole list to the store after every append, and guards against a second
submission while one is still in flight.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from loguru import logger

from .errors import (
    PersistenceWarning,
    SessionBusyError,
    SessionClosedError,
    StoreError,
    ValidationError,
)
from .history import EmotionHistory
from .models import ConversationTurn, EmotionSample
from .store import ChatStore

DEFAULT_NEUTRAL_INTENSITY = 0.5


class ConversationSession:
    """
    Append-only conversation owned by one chat surface.

    Persistence is best effort: a failed write is logged and remembered in
    ``last_warning`` but never stops the in-memory conversation.
    """

    def __init__(
        self, session_id: str, store: ChatStore, history: EmotionHistory
    ) -> None:
        self.session_id = session_id
        self.store = store
        self.history = history
        self.last_warning: PersistenceWarning | None = None
        self._turns: list[ConversationTurn] = []
        self._busy = False
        self._awaiting_reply = False
        self._closed = False

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    @property
    def busy(self) -> bool:
        """True while a submission's round trip is outstanding."""
        return self._busy

    @property
    def closed(self) -> bool:
        return self._closed

    def default_sample(self) -> EmotionSample:
        return EmotionSample(
            label=self.history.vocabulary.neutral,
            intensity=DEFAULT_NEUTRAL_INTENSITY,
        )

    def current_sample(self) -> EmotionSample:
        """The latest recorded sample, or the neutral default."""
        return self.history.latest() or self.default_sample()

    async def restore(self) -> tuple[ConversationTurn, ...]:
        """Load previously persisted turns, replacing the in-memory list."""
        try:
            self._turns = list(await self.store.load_turns(self.session_id))
        except StoreError as e:
            self._warn(f"Could not restore session {self.session_id}: {e}")
            self._turns = []
        self._awaiting_reply = False
        logger.debug(f"Restored {len(self._turns)} turns for session {self.session_id}")
        return self.turns

    def append_user(
        self, content: str, sample: EmotionSample | None = None
    ) -> ConversationTurn:
        """
        Append a user turn.

        Args:
            content: The message text
            sample: Emotion context; defaults to the history's latest sample

        Returns:
            The appended turn

        Raises:
            ValidationError: If the content is blank
            SessionBusyError: If the previous user turn is still unanswered
            SessionClosedError: If the session has been torn down
        """
        if self._closed:
            raise SessionClosedError(f"Session {self.session_id} is closed")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message must not be empty")
        if self._awaiting_reply:
            raise SessionBusyError("Previous message has not been answered yet")

        turn = ConversationTurn(
            role="user",
            content=content,
            emotion_context=sample or self.current_sample(),
        )
        self._turns.append(turn)
        self._awaiting_reply = True
        return turn

    def append_assistant(self, content: str) -> ConversationTurn | None:
        """
        Append an assistant turn.

        Returns None, appending nothing, once the session is closed.
        """
        if self._closed:
            logger.debug(f"Discarding reply for closed session {self.session_id}")
            return None

        turn = ConversationTurn(role="assistant", content=content)
        self._turns.append(turn)
        self._awaiting_reply = False
        return turn

    async def persist(self) -> bool:
        """
        Write the full turn list, replacing what the store held.

        Returns:
            True if the write succeeded
        """
        if self._closed:
            return False
        try:
            await self.store.save_turns(self.session_id, list(self._turns))
        except StoreError as e:
            self._warn(f"Could not persist session {self.session_id}: {e}")
            return False
        self.last_warning = None
        return True

    @asynccontextmanager
    async def submission(self) -> AsyncGenerator[None, None]:
        """
        Hold the busy flag for one submission.

        Raises:
            SessionBusyError: If another submission is outstanding
            SessionClosedError: If the session has been torn down
        """
        if self._closed:
            raise SessionClosedError(f"Session {self.session_id} is closed")
        if self._busy:
            raise SessionBusyError("A message is already being processed")

        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    def close(self) -> None:
        """Tear the session down; later replies are dropped."""
        self._closed = True

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.last_warning = PersistenceWarning(message)
