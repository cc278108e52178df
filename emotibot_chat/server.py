"""
FastAPI server for the EmotiBot Chat service.

This module implements the HTTP API: message submission, session history,
per-session emotion feeds (including Server-Sent Events streaming), emotion
interpretation, mood entries and reviewer notes. Authentication is enforced
by the hosting layer in front of this app.
"""

import asyncio
import json
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from .composer import compose
from .config import Settings
from .errors import ChatError, SessionClosedError, SessionNotFoundError, StoreError
from .gateway import CompletionGateway
from .history import EmotionHistory
from .models import (
    ConversationTurn,
    EmotionInterpretation,
    EmotionSample,
    MoodEntry,
    ReviewerNote,
    get_vocabulary,
)
from .pipeline import ChatPipeline
from .registry import SessionRegistry, SourceFactory
from .sampler import NOT_CONNECTED_SIGNAL_LEVEL, RandomEmotionSource, build_source
from .store import ChatStore, InMemoryChatStore, SQLiteChatStore


# API Request/Response Schemas
class ChatRequest(BaseModel):
    """Payload for message submission."""

    message: str = Field(..., strict=True, description="The user's message")
    emotion: str = Field(..., strict=True, description="Current emotion label")
    intensity: float = Field(
        ..., strict=True, ge=0.0, le=1.0, description="Current intensity in [0, 1]"
    )
    session_id: str = Field("default", min_length=1, description="Chat session id")


class ChatResponse(BaseModel):
    response: str = Field(..., description="The assistant's reply")


class EmotionPush(BaseModel):
    """A frame pushed by an emotion device or script."""

    emotion: str = Field(..., strict=True)
    intensity: float = Field(..., strict=True, ge=0.0, le=1.0)
    poor_signal_level: int | None = Field(None, alias="poorSignalLevel")

    model_config = {"extra": "allow", "populate_by_name": True}


class EmotionResponse(BaseModel):
    ready: bool = Field(True, description="False when the device reports no contact")
    sample: EmotionSample | None = Field(..., description="The latest sample")


class TurnsResponse(BaseModel):
    session_id: str
    turns: list[ConversationTurn]


class MoodRequest(BaseModel):
    emotion: str = Field(..., strict=True)
    intensity: float = Field(..., strict=True, ge=0.0, le=1.0)


class InterpretRequest(BaseModel):
    """An emotion sample to interpret."""

    emotion: str = Field(..., strict=True, description="Emotion label")
    intensity: float = Field(
        ..., strict=True, ge=0.0, le=1.0, description="Intensity in [0, 1]"
    )


class MoodsResponse(BaseModel):
    moods: list[MoodEntry]


class NoteRequest(BaseModel):
    content: str = Field(..., strict=True, min_length=1)


class NotesResponse(BaseModel):
    notes: list[ReviewerNote]


def build_store(settings: Settings) -> ChatStore:
    if settings.store_backend == "sqlite":
        return SQLiteChatStore(settings.store_path)
    return InMemoryChatStore()


def create_app(
    settings: Settings | None = None,
    store: ChatStore | None = None,
    gateway: CompletionGateway | None = None,
    source_factory: SourceFactory = build_source,
) -> FastAPI:
    """
    Create a FastAPI application.

    Args:
        settings: Service settings; read from the environment when omitted
        store: Persistence backend; chosen from the settings when omitted
        gateway: Text-generation gateway; built from the settings when omitted
        source_factory: Builds the background emotion source for new sessions

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings()
    store = store or build_store(settings)
    gateway = gateway or CompletionGateway(settings)
    vocabulary = get_vocabulary(settings.vocabulary)
    registry = SessionRegistry(settings, store, source_factory)
    pipeline = ChatPipeline(gateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan context manager for FastAPI application."""
        try:
            yield
        finally:
            await registry.close_all()
            await gateway.aclose()

    app = FastAPI(
        title="EmotiBot Chat",
        description="An emotion-aware chat service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.store = store

    # MARK: - Error handling

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        logger.warning(f"Invalid request to {request.url.path}: {errors}")
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": {"errors": errors}},
        )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        details = {"type": type(exc).__name__, "message": exc.message, **exc.details}
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.public_message, "details": details},
        )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error(f"Storage failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": "Storage error"})

    # MARK: - Chat

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "emotibot-chat"}

    @app.post("/chat")
    async def chat(chat_request: ChatRequest) -> ChatResponse:
        """
        Submit a message with the emotion active when it was written.

        Returns:
            The assistant's reply. On failure the session still receives an
            apology turn and the error is reported with a non-2xx status.
        """
        sample = EmotionSample(
            label=vocabulary.normalize(chat_request.emotion),
            intensity=chat_request.intensity,
        )
        # Reject bad input before touching the store or the session
        compose(chat_request.message, sample)

        session = await registry.get(chat_request.session_id)
        result = await pipeline.submit(session, chat_request.message, sample)

        if result.error is not None:
            result.error.details.setdefault("correlation_id", result.correlation_id)
            raise result.error
        if result.reply is None:
            raise SessionClosedError(
                f"Session {chat_request.session_id} closed before the reply arrived",
                details={"correlation_id": result.correlation_id},
            )
        return ChatResponse(response=result.reply.content)

    # MARK: - Sessions

    @app.get("/sessions/{session_id}/messages")
    async def get_messages(session_id: str) -> TurnsResponse:
        """Turns of the live session, or the stored turns of a closed one."""
        session = registry.lookup(session_id)
        if session is None:
            turns = await store.load_turns(session_id)
        else:
            turns = list(session.turns)
        return TurnsResponse(session_id=session_id, turns=turns)

    @app.delete("/sessions/{session_id}")
    async def close_session(session_id: str) -> dict[str, bool]:
        return {"closed": await registry.close(session_id)}

    # MARK: - Emotion

    @app.get("/emotion/random")
    async def random_emotion() -> dict[str, str | float]:
        """One simulated reading, for clients without a device."""
        source = RandomEmotionSource(
            vocabulary,
            low=settings.random_intensity_low,
            high=settings.random_intensity_high,
        )
        sample = source.draw()
        return {"emotion": sample.label, "intensity": sample.intensity}

    @app.post("/emotion/interpret")
    async def interpret_emotion(request: InterpretRequest) -> EmotionInterpretation:
        """Explain an emotion and suggest one way to manage it."""
        sample = EmotionSample(
            label=vocabulary.normalize(request.emotion), intensity=request.intensity
        )
        correlation_id = uuid.uuid4().hex[:8]
        try:
            return await gateway.interpret(sample, correlation_id)
        except ChatError as e:
            e.details.setdefault("correlation_id", correlation_id)
            raise

    @app.get("/sessions/{session_id}/emotion")
    async def get_emotion(session_id: str) -> EmotionResponse:
        session = registry.lookup(session_id)
        sample = session.history.latest() if session is not None else None
        return EmotionResponse(sample=sample)

    @app.put("/sessions/{session_id}/emotion")
    async def push_emotion(session_id: str, push: EmotionPush) -> EmotionResponse:
        """
        Record a frame pushed by a device. Frames reporting no signal contact
        are acknowledged but not recorded.
        """
        session = await registry.get(session_id)
        if push.poor_signal_level == NOT_CONNECTED_SIGNAL_LEVEL:
            return EmotionResponse(ready=False, sample=None)

        sample = EmotionSample(
            label=vocabulary.normalize(push.emotion), intensity=push.intensity
        )
        await session.history.record(sample)
        return EmotionResponse(sample=sample)

    @app.get("/sessions/{session_id}/emotion/summary")
    async def emotion_summary(session_id: str) -> dict:
        session = registry.lookup(session_id)
        if session is None:
            return EmotionHistory(vocabulary=vocabulary).summary()
        return session.history.summary()

    @app.get("/sessions/{session_id}/emotion/stream")
    async def stream_emotion(session_id: str) -> StreamingResponse:
        """
        Stream emotion samples via Server-Sent Events.

        The connection starts with the latest sample, if any, then carries
        every sample recorded for the session.

        Returns:
            StreamingResponse with text/event-stream content type

        Raises:
            SessionNotFoundError: No open session has this id
        """
        session = registry.lookup(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} is not open")

        async def event_generator() -> AsyncGenerator[str, None]:
            """Generate SSE events for emotion samples."""
            try:
                async with session.history.stream() as sample_stream:
                    async for sample in sample_stream:
                        data = json.dumps(
                            {"emotion": sample.label, **sample.model_dump()}
                        )
                        yield f"data: {data}\n\n"
            except asyncio.CancelledError:
                # Client disconnected
                pass
            except Exception as e:
                logger.exception("Emotion stream failed")
                error_data = json.dumps({"error": str(e)})
                yield f"event: error\ndata: {error_data}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Headers": "*",
            },
        )

    # MARK: - Mood entries and notes

    @app.post("/users/{user_id}/moods")
    async def record_mood(user_id: str, mood: MoodRequest) -> MoodEntry:
        sample = EmotionSample(
            label=vocabulary.normalize(mood.emotion), intensity=mood.intensity
        )
        return await store.record_mood(user_id, sample)

    @app.get("/users/{user_id}/moods")
    async def list_moods(user_id: str, limit: int = Query(50, ge=0)) -> MoodsResponse:
        return MoodsResponse(moods=await store.list_moods(user_id, limit))

    @app.post("/notes/{reviewer_id}/{subject_id}")
    async def add_note(
        reviewer_id: str, subject_id: str, note: NoteRequest
    ) -> ReviewerNote:
        return await store.add_note(reviewer_id, subject_id, note.content)

    @app.get("/notes/{reviewer_id}/{subject_id}")
    async def list_notes(reviewer_id: str, subject_id: str) -> NotesResponse:
        return NotesResponse(notes=await store.list_notes(reviewer_id, subject_id))

    return app


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    from .logs import setup_logging

    settings = Settings()
    setup_logging(settings.log_level)
    uvicorn.run(
        "emotibot_chat.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
