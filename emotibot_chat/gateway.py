"""
Text-generation gateway for the EmotiBot Chat service.

This module sends a composed prompt to an OpenAI-compatible chat completions
endpoint and turns every way that can go wrong into one of the chat error
types. It never retries: whether to try again is the caller's decision.
"""

import enum
from typing import Any

import httpx
from loguru import logger

from .composer import interpretation_messages, parse_interpretation, to_messages
from .config import Settings
from .errors import (
    ChatError,
    ConfigurationError,
    EmptyResponse,
    MalformedResponse,
    ServiceError,
)
from .models import EmotionInterpretation, EmotionSample, PromptPayload


class CompletionState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CompletionAttempt:
    """
    State of a single ``complete`` call.

    Attempts move idle -> sending -> succeeded | failed and are never reused.
    """

    def __init__(self, correlation_id: str = "-") -> None:
        self.state = CompletionState.IDLE
        self.error: ChatError | None = None
        self.log = logger.bind(correlation_id=correlation_id)

    def send(self) -> None:
        self._move(CompletionState.IDLE, CompletionState.SENDING)

    def succeed(self) -> None:
        self._move(CompletionState.SENDING, CompletionState.SUCCEEDED)

    def fail(self, error: ChatError) -> ChatError:
        if self.state in (CompletionState.SUCCEEDED, CompletionState.FAILED):
            raise RuntimeError(f"completion attempt already {self.state.value}")
        self.state = CompletionState.FAILED
        self.error = error
        return error

    def _move(self, expected: CompletionState, target: CompletionState) -> None:
        if self.state is not expected:
            raise RuntimeError(
                f"cannot move completion attempt from {self.state.value} to {target.value}"
            )
        self.log.debug(f"Completion {expected.value} -> {target.value}")
        self.state = target


class CompletionGateway:
    """Client for the hosted text-generation service."""

    def __init__(
        self, settings: Settings, client: httpx.AsyncClient | None = None
    ) -> None:
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout)
        )

    def build_request(self, payload: PromptPayload) -> dict[str, Any]:
        """Request body for the chat completions endpoint."""
        body: dict[str, Any] = {
            "model": self.settings.model,
            "messages": to_messages(payload),
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
        }
        if self.settings.presence_penalty is not None:
            body["presence_penalty"] = self.settings.presence_penalty
        if self.settings.frequency_penalty is not None:
            body["frequency_penalty"] = self.settings.frequency_penalty
        return body

    def build_interpret_request(self, sample: EmotionSample) -> dict[str, Any]:
        """Request body for an emotion interpretation."""
        return {
            "model": self.settings.model,
            "messages": interpretation_messages(sample),
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.interpret_max_tokens,
        }

    async def complete(self, payload: PromptPayload, correlation_id: str = "-") -> str:
        """
        Generate a reply for the payload.

        Args:
            payload: The composed prompt
            correlation_id: Identifier carried into every log line

        Returns:
            The generated message, verbatim

        Raises:
            ConfigurationError: No API key is configured (raised before any
                network call)
            ServiceError: The service returned an error status, timed out, or
                could not be reached
            MalformedResponse: The body is not a chat completion
            EmptyResponse: The completion has no usable content
        """
        attempt = CompletionAttempt(correlation_id)
        content = await self._send(self.build_request(payload), attempt)
        attempt.succeed()
        attempt.log.info("Successfully generated response")
        return content

    async def interpret(
        self, sample: EmotionSample, correlation_id: str = "-"
    ) -> EmotionInterpretation:
        """
        Ask for a structured reading of one emotion sample.

        Raises:
            ValidationError: The sample is invalid (raised before any network call)
            MalformedResponse: The reply lacks one of its marked sections

        Every error ``complete`` raises is raised here the same way.
        """
        body = self.build_interpret_request(sample)
        attempt = CompletionAttempt(correlation_id)
        content = await self._send(body, attempt)
        try:
            interpretation = parse_interpretation(content)
        except MalformedResponse as e:
            raise attempt.fail(e)
        attempt.succeed()
        attempt.log.info(f"Interpreted {sample.label} sample")
        return interpretation

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, body: dict[str, Any], attempt: CompletionAttempt) -> str:
        """POST one chat completion request and return its content."""
        api_key = self.settings.openai_api_key
        if not api_key:
            raise attempt.fail(
                ConfigurationError("OPENAI_API_KEY is not set in environment variables")
            )

        attempt.send()
        url = f"{self.settings.openai_base_url.rstrip('/')}/chat/completions"
        attempt.log.info(f"Sending completion request to {self.settings.model}")

        try:
            response = await self._client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.settings.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise attempt.fail(
                ServiceError(
                    f"Text-generation request timed out after "
                    f"{self.settings.request_timeout}s"
                )
            ) from e
        except httpx.HTTPError as e:
            raise attempt.fail(
                ServiceError(f"Could not reach text-generation service: {e}")
            ) from e

        if response.is_error:
            raise attempt.fail(
                ServiceError(
                    f"Text-generation service returned HTTP {response.status_code}",
                    upstream_status=response.status_code,
                    details={"body": _error_detail(response)},
                )
            )

        try:
            data = response.json()
        except ValueError as e:
            raise attempt.fail(
                MalformedResponse("Text-generation response is not valid JSON")
            ) from e

        return _extract_content(data, attempt)


# MARK: - Private Helpers


def _extract_content(data: Any, attempt: CompletionAttempt) -> str:
    """Pull the first candidate's message content out of a completion body."""
    if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
        raise attempt.fail(MalformedResponse("Completion body has no choices list"))

    choices = data["choices"]
    if not choices:
        raise attempt.fail(EmptyResponse("No response generated from AI model"))

    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise attempt.fail(MalformedResponse("Completion choice has no message"))

    content = message.get("content")
    if content is None:
        raise attempt.fail(EmptyResponse("No response generated from AI model"))
    if not isinstance(content, str):
        raise attempt.fail(MalformedResponse("Completion content is not text"))
    if not content.strip():
        raise attempt.fail(EmptyResponse("No response generated from AI model"))
    return content


def _error_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
