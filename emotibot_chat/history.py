"""
Bounded emotion history for the EmotiBot Chat service.

This module keeps a sliding window of the most recent emotion samples for one
session, derives the dashboard statistics from it, and streams new samples to
any number of subscribers.
"""

import asyncio
from collections import Counter, deque
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from .models import BASIC, EmotionSample, EmotionVocabulary

DEFAULT_CAPACITY = 20
NO_DOMINANT_LABEL = "—"


class EmotionHistory:
    """
    Sliding window of recent emotion samples with real-time streaming.

    ``record`` is the only mutator. Reads (``latest``, ``snapshot`` and the
    derived statistics) never wait on the condition and may observe a sample
    that is one update stale.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        vocabulary: EmotionVocabulary = BASIC,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.vocabulary = vocabulary
        self._samples: deque[EmotionSample] = deque(maxlen=capacity)
        self._condition = asyncio.Condition()
        self._update_counter = 0

    def __len__(self) -> int:
        return len(self._samples)

    async def record(self, sample: EmotionSample) -> EmotionSample:
        """
        Append a sample, evicting the oldest once capacity is exceeded, and
        notify all subscribers.

        Args:
            sample: The sample to append

        Returns:
            The recorded sample
        """
        async with self._condition:
            self._samples.append(sample)
            self._update_counter += 1
            self._condition.notify_all()
            return sample

    def latest(self) -> EmotionSample | None:
        return self._samples[-1] if self._samples else None

    def snapshot(self) -> tuple[EmotionSample, ...]:
        """Return the current window, oldest first."""
        return tuple(self._samples)

    def average_intensity(self) -> float:
        """Mean intensity of the window, 0.0 when empty."""
        if not self._samples:
            return 0.0
        return sum(s.intensity for s in self._samples) / len(self._samples)

    def dominant_label(self) -> str:
        """
        Most frequent label in the window.

        Ties go to the label that comes first in the vocabulary; labels outside
        the vocabulary rank after it, in the order they were first seen.
        """
        if not self._samples:
            return NO_DOMINANT_LABEL

        counts = Counter(s.label for s in self._samples)
        order = {label: i for i, label in enumerate(self.vocabulary.labels)}
        for label in counts:
            order.setdefault(label, len(order))

        return min(counts, key=lambda label: (-counts[label], order[label]))

    def summary(self) -> dict:
        latest = self.latest()
        return {
            "count": len(self._samples),
            "average_intensity": self.average_intensity(),
            "dominant_label": self.dominant_label(),
            "latest": latest.model_dump() if latest else None,
        }

    @asynccontextmanager
    async def stream(
        self,
    ) -> AsyncGenerator[AsyncGenerator[EmotionSample, None], None]:
        """
        Stream samples to a subscriber.

        The yielded generator produces the latest sample (if any) immediately,
        then every sample recorded afterwards.

        Yields:
            An async generator of EmotionSample objects
        """

        async def sample_generator() -> AsyncGenerator[EmotionSample, None]:
            async with self._condition:
                last_seen_counter = self._update_counter
                current = self.latest()
            if current is not None:
                yield current

            try:
                while True:
                    async with self._condition:
                        await self._condition.wait_for(
                            lambda: self._update_counter > last_seen_counter
                        )
                        last_seen_counter = self._update_counter
                        current = self._samples[-1]
                    yield current

            except (asyncio.CancelledError, GeneratorExit):
                # Subscriber went away
                return

        yield sample_generator()
