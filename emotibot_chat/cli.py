"""
Command-line interface tools for the EmotiBot Chat service.
"""

import asyncio
import json
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

import httpx
import typer
from httpx_sse import ServerSentEvent, aconnect_sse

from .composer import intensity_percent
from .models import ConversationTurn, EmotionInterpretation, EmotionSample

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_SESSION = "default"

app = typer.Typer(help="EmotiBot Chat CLI tools")


# MARK: - Commands


@app.command()
def serve() -> None:
    """Run the EmotiBot Chat server (configured through EMOTIBOT_* variables)."""
    from .server import main

    main()


@app.command()
def send(
    message: str = typer.Argument(..., help="The message to send"),
    emotion: str = typer.Option(..., "--emotion", "-e", help="Current emotion label"),
    intensity: float = typer.Option(
        ..., "--intensity", "-i", min=0.0, max=1.0, help="Intensity in [0, 1]"
    ),
    session_id: str = typer.Option(DEFAULT_SESSION, "--session", "-s"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the EmotiBot service"
    ),
) -> None:
    """Send a chat message and print the reply."""

    async def _send() -> None:
        async with httpx.AsyncClient(timeout=60.0) as client:
            response = await client.post(
                f"{base_url}/chat",
                json={
                    "message": message,
                    "emotion": emotion,
                    "intensity": intensity,
                    "session_id": session_id,
                },
            )
            if response.is_error:
                body = response.json()
                print(f"Error: {body.get('error', 'Unknown error')}")
                raise typer.Exit(1)
            print(response.json()["response"])

    _run_with_error_handling(_send(), base_url)


@app.command()
def push(
    emotion: str = typer.Argument(..., help="The emotion label to push"),
    intensity: float = typer.Argument(..., min=0.0, max=1.0, help="Intensity in [0, 1]"),
    session_id: str = typer.Option(DEFAULT_SESSION, "--session", "-s"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the EmotiBot service"
    ),
) -> None:
    """Push an emotion sample into a session."""

    async def _push() -> None:
        async with httpx.AsyncClient() as client:
            response = await client.put(
                f"{base_url}/sessions/{session_id}/emotion",
                json={"emotion": emotion, "intensity": intensity},
            )
            response.raise_for_status()
            sample_data = response.json()["sample"]
            if sample_data is None:
                print("No sample recorded (device not ready)")
            else:
                sample = EmotionSample.model_validate(sample_data)
                print(f"Recorded: {_format_sample(sample)}")

    _run_with_error_handling(_push(), base_url)


@app.command()
def interpret(
    emotion: str = typer.Argument(..., help="The emotion label to interpret"),
    intensity: float = typer.Argument(..., min=0.0, max=1.0, help="Intensity in [0, 1]"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the EmotiBot service"
    ),
) -> None:
    """Explain an emotion and suggest one way to manage it."""

    async def _interpret() -> None:
        async with httpx.AsyncClient(timeout=60.0) as client:
            response = await client.post(
                f"{base_url}/emotion/interpret",
                json={"emotion": emotion, "intensity": intensity},
            )
            if response.is_error:
                body = response.json()
                print(f"Error: {body.get('error', 'Unknown error')}")
                raise typer.Exit(1)
            result = EmotionInterpretation.model_validate(response.json())
            print(result.message)
            print(f"\nWhat it may mean: {result.explanation}")
            print(f"\nTry this: {result.suggestion}")

    _run_with_error_handling(_interpret(), base_url)


@app.command()
def history(
    session_id: str = typer.Option(DEFAULT_SESSION, "--session", "-s"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the EmotiBot service"
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output raw JSON"),
) -> None:
    """Print the conversation for a session."""

    async def _history() -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/sessions/{session_id}/messages")
            response.raise_for_status()
            result = response.json()

            if json_output:
                print(json.dumps(result, indent=2))
                return

            turns = [ConversationTurn.model_validate(t) for t in result["turns"]]
            if not turns:
                print("No messages yet")
            for turn in turns:
                print(_format_turn(turn))

    _run_with_error_handling(_history(), base_url)


@app.command()
def stream(
    session_id: str = typer.Option(DEFAULT_SESSION, "--session", "-s"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the EmotiBot service"
    ),
) -> None:
    """Stream emotion samples for a session in real-time."""

    async def _stream() -> None:
        url = f"{base_url}/sessions/{session_id}/emotion/stream"
        print(f"Streaming from {url}... (Ctrl+C to stop)")

        async with httpx.AsyncClient(timeout=None) as client:
            async with aconnect_sse(client, "GET", url) as event_source:
                async for sse in event_source.aiter_sse():
                    _handle_sse_event(sse)

    _run_with_error_handling(_stream(), base_url)


# MARK: - Private Helpers


def _format_sample(sample: EmotionSample) -> str:
    timestamp = datetime.fromtimestamp(sample.observed_at).strftime("%H:%M:%S")
    return f"{timestamp} > {sample.label} ({intensity_percent(sample.intensity)}%)"


def _format_turn(turn: ConversationTurn) -> str:
    speaker = "You" if turn.role == "user" else "Bot"
    if turn.emotion_context is None:
        return f"{speaker}: {turn.content}"
    context = turn.emotion_context
    return f"{speaker} [{context.label} {intensity_percent(context.intensity)}%]: {turn.content}"


def _handle_sse_event(sse: ServerSentEvent) -> None:
    """Handle a single SSE event."""
    try:
        if sse.event == "error":
            error_data = json.loads(sse.data)
            print(f"Server error: {error_data.get('error', 'Unknown error')}")
            return

        sample = EmotionSample.model_validate_json(sse.data)
        print(_format_sample(sample))

    except ValueError as e:
        print(f"Warning: Could not parse SSE data: {sse.data} - {e}")


def _run_with_error_handling(coro: Coroutine[Any, Any, Any], base_url: str) -> None:
    """Run an async coroutine with standardized error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        print("\nStopped")
        raise typer.Exit(0)
    except typer.Exit:
        raise
    except httpx.ConnectError:
        print(f"Error: Could not connect to {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        print(f"Error: HTTP {e.response.status_code}")
        raise typer.Exit(1)
    except Exception as e:
        error_msg = str(e) if str(e) else f"Unknown error of type {type(e).__name__}"
        print(f"Error: {error_msg}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
