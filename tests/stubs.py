"""
Test doubles shared by the EmotiBot Chat test suites.
"""

import asyncio

from emotibot_chat.errors import ChatError, StoreError
from emotibot_chat.models import (
    ConversationTurn,
    EmotionInterpretation,
    EmotionSample,
    PromptPayload,
)
from emotibot_chat.store import InMemoryChatStore


class StubGateway:
    """Completion gateway that returns fixed replies or raises a fixed error."""

    def __init__(
        self,
        reply: str = "Take a breath, tell me more about what's making you feel stuck?",
        error: ChatError | None = None,
    ) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[PromptPayload] = []
        self.release: asyncio.Event | None = None
        self.interpreted: list[EmotionSample] = []
        self.interpretation = EmotionInterpretation(
            message="That sounds heavy.",
            explanation="Sadness often follows a loss or a letdown.",
            suggestion="Reach out to someone you trust today.",
        )

    async def complete(self, payload: PromptPayload, correlation_id: str = "-") -> str:
        self.calls.append(payload)
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.reply

    async def interpret(
        self, sample: EmotionSample, correlation_id: str = "-"
    ) -> EmotionInterpretation:
        self.interpreted.append(sample)
        if self.error is not None:
            raise self.error
        return self.interpretation

    async def aclose(self) -> None:
        pass


class FailingStore(InMemoryChatStore):
    """Store whose turn writes always fail."""

    def __init__(self) -> None:
        super().__init__()
        self.save_attempts = 0

    async def save_turns(self, session_id: str, turns: list[ConversationTurn]) -> None:
        self.save_attempts += 1
        raise StoreError("disk full")

    async def load_turns(self, session_id: str) -> list[ConversationTurn]:
        raise StoreError("database unavailable")
