"""
Emotion sources for the EmotiBot Chat service.

A source is anything with a ``samples()`` async generator producing
EmotionSample objects. Three sources are provided: a randomized generator,
scripted playback of a recorded sequence, and a live push channel read over
Server-Sent Events. ``EmotionSampler`` drains a source into an EmotionHistory
in the background.
"""

import asyncio
import json
import random
import time
from collections.abc import AsyncGenerator, Iterable
from importlib import resources
from pathlib import Path
from typing import Protocol

import httpx
from httpx_sse import aconnect_sse
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .errors import ValidationError
from .history import EmotionHistory
from .models import EmotionSample, EmotionVocabulary, get_vocabulary

# poorSignalLevel reported by headsets that are powered but not in contact
NOT_CONNECTED_SIGNAL_LEVEL = 200


class EmotionSource(Protocol):
    """Anything that can emit emotion samples."""

    def samples(self) -> AsyncGenerator[EmotionSample, None]: ...


# MARK: - Randomized


class RandomEmotionSource:
    """Draws a uniformly random label and intensity once per period."""

    def __init__(
        self,
        vocabulary: EmotionVocabulary,
        period: float = 5.0,
        low: float = 0.0,
        high: float = 1.0,
        rng: random.Random | None = None,
    ) -> None:
        if not 0.0 <= low <= high <= 1.0:
            raise ValueError("intensity range must satisfy 0 <= low <= high <= 1")
        self.vocabulary = vocabulary
        self.period = period
        self.low = low
        self.high = high
        self._rng = rng or random.Random()

    def draw(self) -> EmotionSample:
        label = self._rng.choice(self.vocabulary.labels)
        intensity = round(self._rng.uniform(self.low, self.high), 2)
        # Rounding may nudge the value past a narrowed bound
        intensity = min(max(intensity, self.low), self.high)
        return EmotionSample(label=label, intensity=intensity, observed_at=time.time())

    async def samples(self) -> AsyncGenerator[EmotionSample, None]:
        while True:
            yield self.draw()
            await asyncio.sleep(self.period)


# MARK: - Scripted playback


class PlaybackEmotionSource:
    """
    Replays a recorded sequence at a fixed cadence.

    Stops once the recording is exhausted unless ``loop`` is set. Replayed
    samples are re-stamped with the time they are emitted.
    """

    def __init__(
        self,
        recording: Iterable[EmotionSample],
        period: float = 5.0,
        loop: bool = False,
    ) -> None:
        self.recording = tuple(recording)
        self.period = period
        self.loop = loop

    @classmethod
    def from_file(
        cls,
        path: Path | None = None,
        period: float = 5.0,
        loop: bool = False,
        vocabulary: EmotionVocabulary | None = None,
    ) -> "PlaybackEmotionSource":
        """
        Load a recording of the form ``{"data": [{"emotion", "intensity",
        "timestamp"}, ...]}``. Without a path the bundled recording for the
        vocabulary is used. With a vocabulary, every recorded label must
        belong to it.
        """
        if path is None:
            name = vocabulary.name if vocabulary else "basic"
            raw = (
                resources.files("emotibot_chat")
                .joinpath(f"data/sample_{name}.json")
                .read_text(encoding="utf-8")
            )
        else:
            raw = Path(path).read_text(encoding="utf-8")

        entries = json.loads(raw).get("data", [])
        recording = [
            EmotionSample(
                label=vocabulary.normalize(entry["emotion"])
                if vocabulary
                else entry["emotion"],
                intensity=entry["intensity"],
            )
            for entry in entries
        ]
        return cls(recording, period=period, loop=loop)

    async def samples(self) -> AsyncGenerator[EmotionSample, None]:
        if not self.recording:
            return
        while True:
            for recorded in self.recording:
                yield recorded.model_copy(update={"observed_at": time.time()})
                await asyncio.sleep(self.period)
            if not self.loop:
                return


# MARK: - External push


def parse_frame(raw: str, vocabulary: EmotionVocabulary) -> EmotionSample | None:
    """
    Turn one push-channel frame into a sample.

    Returns None (after logging) for frames that are not valid JSON objects,
    lack an ``emotion``, carry a non-numeric or out-of-range ``intensity``,
    use a label outside the vocabulary, or report that the device is not
    actually connected.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Dropping unparseable emotion frame: {raw!r}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Dropping emotion frame that is not an object: {raw!r}")
        return None

    if data.get("poorSignalLevel") == NOT_CONNECTED_SIGNAL_LEVEL:
        logger.debug("Device reports no signal contact, skipping frame")
        return None

    emotion = data.get("emotion")
    intensity = data.get("intensity")
    if not isinstance(emotion, str) or not emotion:
        logger.warning(f"Dropping emotion frame without emotion: {raw!r}")
        return None
    if isinstance(intensity, bool) or not isinstance(intensity, (int, float)):
        logger.warning(f"Dropping emotion frame with non-numeric intensity: {raw!r}")
        return None

    try:
        return EmotionSample(
            label=vocabulary.normalize(emotion),
            intensity=float(intensity),
            observed_at=time.time(),
        )
    except (ValidationError, PydanticValidationError) as e:
        logger.warning(f"Dropping invalid emotion frame {raw!r}: {e}")
        return None


class PushEmotionSource:
    """
    Receives samples from a live channel that emits JSON frames as
    Server-Sent Events.

    Channel errors and read timeouts end the stream. With a reconnect delay
    the source waits and connects again instead.
    """

    def __init__(
        self,
        url: str,
        vocabulary: EmotionVocabulary,
        timeout: float = 15.0,
        reconnect_delay: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.vocabulary = vocabulary
        self.timeout = timeout
        self.reconnect_delay = reconnect_delay
        self._client = client

    async def _frames(self, client: httpx.AsyncClient) -> AsyncGenerator[str, None]:
        async with aconnect_sse(client, "GET", self.url) as event_source:
            event_source.response.raise_for_status()
            logger.info(f"Connected to emotion channel {self.url}")
            async for sse in event_source.aiter_sse():
                yield sse.data

    async def samples(self) -> AsyncGenerator[EmotionSample, None]:
        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout)
        )
        try:
            while True:
                try:
                    async for raw in self._frames(client):
                        sample = parse_frame(raw, self.vocabulary)
                        if sample is not None:
                            yield sample
                    logger.info(f"Emotion channel {self.url} closed")
                except httpx.TimeoutException:
                    logger.warning(
                        f"Emotion channel {self.url} timed out after {self.timeout}s"
                    )
                except httpx.HTTPError as e:
                    logger.warning(f"Emotion channel {self.url} failed: {e}")

                if self.reconnect_delay is None:
                    return
                await asyncio.sleep(self.reconnect_delay)
        finally:
            if self._client is None:
                await client.aclose()


# MARK: - Sampler


class EmotionSampler:
    """Feeds a source into a history as a background task."""

    def __init__(self, source: EmotionSource, history: EmotionHistory) -> None:
        self.source = source
        self.history = history
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        """Drain the source until it is exhausted."""
        async for sample in self.source.samples():
            await self.history.record(sample)

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError("sampler already started")
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


def build_source(settings: Settings) -> EmotionSource | None:
    """
    Select the emotion source named by the settings.

    Returns None for the ``manual`` source, where samples only arrive through
    the HTTP push endpoint.
    """
    vocabulary = get_vocabulary(settings.vocabulary)

    if settings.emotion_source == "random":
        return RandomEmotionSource(
            vocabulary,
            period=settings.sample_period,
            low=settings.random_intensity_low,
            high=settings.random_intensity_high,
        )
    if settings.emotion_source == "playback":
        return PlaybackEmotionSource.from_file(
            settings.playback_path,
            period=settings.sample_period,
            loop=settings.playback_loop,
            vocabulary=vocabulary,
        )
    if settings.emotion_source == "push":
        return PushEmotionSource(
            settings.push_url,
            vocabulary,
            timeout=settings.push_timeout,
            reconnect_delay=settings.push_reconnect_delay,
        )
    return None
