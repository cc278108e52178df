"""
Message submission pipeline for the EmotiBot Chat service.

One submission runs: compose -> append user turn -> complete -> append reply.
Any failure after validation becomes a single apology turn, so the
conversation always ends in a consistent state.
"""

import asyncio
import uuid
from dataclasses import dataclass

from loguru import logger

from .composer import compose
from .errors import ChatError, ConfigurationError
from .gateway import CompletionGateway
from .models import ConversationTurn, EmotionSample
from .session import ConversationSession

APOLOGY = "Sorry, I encountered an error. Please try again."


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of one submission."""

    correlation_id: str
    user_turn: ConversationTurn
    reply: ConversationTurn | None
    error: ChatError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.reply is not None

    @property
    def discarded(self) -> bool:
        """The session was torn down before the reply arrived."""
        return self.reply is None


class ChatPipeline:
    """Drives a message through the completion gateway into a session."""

    def __init__(self, gateway: CompletionGateway) -> None:
        self.gateway = gateway

    async def submit(
        self,
        session: ConversationSession,
        message: str,
        sample: EmotionSample | None = None,
    ) -> SubmissionResult:
        """
        Submit one user message.

        Args:
            session: The conversation to append to
            message: The user's message
            sample: Emotion context; defaults to the session's current sample

        Returns:
            The submission result. Gateway failures are reported in
            ``error`` alongside the apology turn, not raised.

        Raises:
            ValidationError: The message or sample is invalid; nothing is
                appended and no external call is made
            SessionBusyError: Another submission is in flight
            SessionClosedError: The session has been torn down

        A cancelled submission still closes the exchange with the apology
        turn before the cancellation propagates.
        """
        correlation_id = uuid.uuid4().hex[:8]
        log = logger.bind(correlation_id=correlation_id)

        sample = sample or session.current_sample()
        payload = compose(message, sample)

        async with session.submission():
            user_turn = session.append_user(message, sample)

            error: ChatError | None = None
            try:
                await session.persist()
                log.info(
                    f"Submitting message for session {session.session_id} "
                    f"({payload.emotion_label} {payload.intensity_percent}%)"
                )
                content = await self.gateway.complete(payload, correlation_id)
            except asyncio.CancelledError:
                log.warning("Submission cancelled before a reply arrived")
                if session.append_assistant(APOLOGY) is not None:
                    await session.persist()
                raise
            except ConfigurationError as e:
                log.error(f"Configuration error, cannot reach AI service: {e.message}")
                content, error = APOLOGY, e
            except ChatError as e:
                log.warning(f"{type(e).__name__}: {e.message}")
                content, error = APOLOGY, e
            except Exception as e:
                log.exception("Unexpected error while generating a reply")
                content, error = APOLOGY, ChatError(f"Unexpected error: {e}")

            reply = session.append_assistant(content)
            if reply is None:
                log.info(f"Session {session.session_id} closed, reply discarded")
                return SubmissionResult(correlation_id, user_turn, None, error)

            await session.persist()

        return SubmissionResult(correlation_id, user_turn, reply, error)
