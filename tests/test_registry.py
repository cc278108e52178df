"""
Tests for the SessionRegistry.

Sessions here run a fast random emotion source, so each test can watch the
background sampler start, feed its own history and stop.
"""

import asyncio
import random

import pytest

from emotibot_chat.config import Settings
from emotibot_chat.models import BASIC, ConversationTurn
from emotibot_chat.registry import SessionRegistry
from emotibot_chat.sampler import RandomEmotionSource
from emotibot_chat.store import InMemoryChatStore


def fast_source(settings):
    return RandomEmotionSource(BASIC, period=0.01, rng=random.Random(7))


async def wait_for_samples(session, count: int = 1) -> None:
    while len(session.history.snapshot()) < count:
        await asyncio.sleep(0.005)


class TestSessionRegistry:
    def setup_method(self):
        """Set up a registry over a fresh store for each test."""
        self.settings = Settings(openai_api_key="sk-test")
        self.store = InMemoryChatStore()
        self.registry = SessionRegistry(self.settings, self.store, fast_source)

    async def test_each_session_gets_its_own_sampler(self):
        """Every opened session runs a sampler feeding only its own history."""
        a = await self.registry.get("a")
        b = await self.registry.get("b")

        assert self.registry.sampler_for("a").running
        assert self.registry.sampler_for("b").running
        assert a.history is not b.history

        await asyncio.wait_for(wait_for_samples(a, 2), timeout=2.0)
        await asyncio.wait_for(wait_for_samples(b, 2), timeout=2.0)

        await self.registry.close_all()

    async def test_get_returns_the_live_session(self):
        """Repeated lookups share one session and one sampler."""
        first = await self.registry.get("a")
        sampler = self.registry.sampler_for("a")

        assert await self.registry.get("a") is first
        assert self.registry.sampler_for("a") is sampler

        await self.registry.close_all()

    async def test_lookup_never_opens_a_session(self):
        """Looking up an unknown id opens nothing and starts no sampler."""
        assert self.registry.lookup("ghost") is None
        assert "ghost" not in self.registry
        assert self.registry.sampler_for("ghost") is None

    async def test_close_stops_the_sampler(self):
        """Closing tears the session down and stops its sampler."""
        session = await self.registry.get("a")
        sampler = self.registry.sampler_for("a")

        assert await self.registry.close("a") is True

        assert session.closed
        assert not sampler.running
        assert "a" not in self.registry

        # The stopped sampler records nothing more
        count = len(session.history.snapshot())
        await asyncio.sleep(0.05)
        assert len(session.history.snapshot()) == count

        assert await self.registry.close("a") is False

    async def test_close_all_stops_every_sampler(self):
        """Shutdown closes every open session."""
        for session_id in ("a", "b", "c"):
            await self.registry.get(session_id)
        samplers = [self.registry.sampler_for(s) for s in ("a", "b", "c")]

        await self.registry.close_all()

        assert not any(s.running for s in samplers)
        assert all(self.registry.lookup(s) is None for s in ("a", "b", "c"))

    async def test_opening_restores_stored_turns(self):
        """A session opened after a restart picks up its stored conversation."""
        await self.store.save_turns(
            "a", [ConversationTurn(role="user", content="hello", timestamp=1.0)]
        )

        session = await self.registry.get("a")

        assert [t.content for t in session.turns] == ["hello"]
        await self.registry.close_all()

    async def test_failing_source_factory_registers_nothing(self):
        """A source that cannot be built leaves no half-open session behind."""
        calls = []

        def broken_source(settings):
            calls.append(settings)
            raise FileNotFoundError("no such recording")

        registry = SessionRegistry(self.settings, self.store, broken_source)

        # 1. Every attempt fails cleanly
        for _ in range(2):
            with pytest.raises(FileNotFoundError):
                await registry.get("a")

        assert len(calls) == 2
        assert "a" not in registry

    async def test_manual_source_runs_no_sampler(self):
        """Without a source a session opens with no background task."""
        registry = SessionRegistry(self.settings, self.store, lambda settings: None)

        await registry.get("a")

        assert "a" in registry
        assert registry.sampler_for("a") is None
