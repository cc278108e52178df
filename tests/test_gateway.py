"""
Tests for the CompletionGateway.

The network boundary is an httpx.MockTransport that records every request,
so these tests also verify when no request is made at all.
"""

import json

import httpx
import pytest

from emotibot_chat.composer import compose
from emotibot_chat.config import Settings
from emotibot_chat.errors import (
    ConfigurationError,
    EmptyResponse,
    MalformedResponse,
    ServiceError,
    ValidationError,
)
from emotibot_chat.gateway import CompletionAttempt, CompletionGateway, CompletionState
from emotibot_chat.models import EmotionSample

BASE_URL = "https://llm.test/v1"

INTERPRETATION = (
    "MESSAGE: It makes sense to feel on edge right now.\n"
    "EXPLANATION: Anxiety often signals that something matters to you.\n"
    "It can also build up when rest is short.\n"
    "SUGGESTION: Try four slow breaths before your next task."
)


def completion(content):
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


class TestCompletionGateway:
    def setup_method(self):
        """Set up a composed payload and an empty request log for each test."""
        self.requests: list[httpx.Request] = []
        self.payload = compose(
            "I feel stuck", EmotionSample(label="anxious", intensity=0.7, observed_at=0.0)
        )

    def make_gateway(self, handler, api_key: str | None = "sk-test") -> CompletionGateway:
        def recording_handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        settings = Settings(openai_api_key=api_key, openai_base_url=BASE_URL)
        client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
        return CompletionGateway(settings, client=client)

    async def test_returns_content_verbatim(self):
        """Generated text is returned untouched, whitespace included."""
        reply = "  That sounds hard. What feels most stuck right now?  "
        gateway = self.make_gateway(lambda r: httpx.Response(200, json=completion(reply)))

        assert await gateway.complete(self.payload) == reply

    async def test_request_contract(self):
        """One authenticated POST carries the model, sampling settings and prompt."""
        gateway = self.make_gateway(lambda r: httpx.Response(200, json=completion("ok")))
        await gateway.complete(self.payload)

        assert len(self.requests) == 1
        request = self.requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{BASE_URL}/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"

        body = json.loads(request.content)
        assert body["model"] == "gpt-4-turbo-preview"
        assert 0 <= body["temperature"] <= 2
        assert body["max_tokens"] == 200
        assert body["presence_penalty"] == 0.6
        assert body["frequency_penalty"] == 0.3
        assert [m["role"] for m in body["messages"]] == ["system", "user"]
        assert "anxious" in body["messages"][1]["content"]
        assert "70%" in body["messages"][1]["content"]

    async def test_penalties_are_optional(self):
        """Unset penalties are left out of the request body."""
        settings = Settings(
            openai_api_key="sk-test", presence_penalty=None, frequency_penalty=None
        )
        gateway = CompletionGateway(settings)
        body = gateway.build_request(self.payload)
        await gateway.aclose()

        assert "presence_penalty" not in body
        assert "frequency_penalty" not in body

    @pytest.mark.parametrize("api_key", [None, ""])
    async def test_missing_credential_fails_before_network(self, api_key):
        """Without an API key every call fails fast and nothing is sent."""
        gateway = self.make_gateway(
            lambda r: httpx.Response(200, json=completion("ok")), api_key=api_key
        )

        for _ in range(3):
            with pytest.raises(ConfigurationError):
                await gateway.complete(self.payload)

        assert self.requests == []

    @pytest.mark.parametrize("status", [400, 401, 429, 500, 502])
    async def test_error_status_is_service_error(self, status):
        """Any non-2xx status becomes a ServiceError carrying that status."""
        gateway = self.make_gateway(
            lambda r: httpx.Response(status, json={"error": {"message": "nope"}})
        )

        with pytest.raises(ServiceError) as exc_info:
            await gateway.complete(self.payload)

        assert exc_info.value.upstream_status == status
        # No automatic retry
        assert len(self.requests) == 1

    async def test_timeout_is_service_error(self):
        """A timed-out request becomes a ServiceError after a single attempt."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = self.make_gateway(handler)

        with pytest.raises(ServiceError):
            await gateway.complete(self.payload)
        assert len(self.requests) == 1

    async def test_connection_failure_is_service_error(self):
        """An unreachable service becomes a ServiceError."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ServiceError):
            await self.make_gateway(handler).complete(self.payload)

    @pytest.mark.parametrize(
        "body",
        [
            completion(""),
            completion("   "),
            completion(None),
            {"choices": []},
        ],
    )
    async def test_empty_content_is_empty_response(self, body):
        """Well-formed completions without usable text are EmptyResponse."""
        gateway = self.make_gateway(lambda r: httpx.Response(200, json=body))

        with pytest.raises(EmptyResponse):
            await gateway.complete(self.payload)

    @pytest.mark.parametrize(
        "body",
        [
            {"unexpected": True},
            {"choices": "not a list"},
            {"choices": [{"text": "legacy shape"}]},
            completion(42),
            ["not", "an", "object"],
        ],
    )
    async def test_wrong_shape_is_malformed_response(self, body):
        """Bodies that are not chat completions are MalformedResponse."""
        gateway = self.make_gateway(lambda r: httpx.Response(200, json=body))

        with pytest.raises(MalformedResponse):
            await gateway.complete(self.payload)

    async def test_non_json_body_is_malformed_response(self):
        """A non-JSON body is MalformedResponse."""
        gateway = self.make_gateway(lambda r: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(MalformedResponse):
            await gateway.complete(self.payload)


class TestEmotionInterpretation:
    def setup_method(self):
        """Set up an empty request log and a sample for each test."""
        self.requests: list[httpx.Request] = []
        self.sample = EmotionSample(label="anxious", intensity=0.65)

    def make_gateway(self, content, api_key: str | None = "sk-test") -> CompletionGateway:
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(200, json=completion(content))

        settings = Settings(openai_api_key=api_key, openai_base_url=BASE_URL)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return CompletionGateway(settings, client=client)

    async def test_reply_is_split_into_sections(self):
        """The three marked sections come back trimmed, multi-line text kept."""
        gateway = self.make_gateway(INTERPRETATION)

        result = await gateway.interpret(self.sample)

        assert result.message == "It makes sense to feel on edge right now."
        assert result.explanation == (
            "Anxiety often signals that something matters to you.\n"
            "It can also build up when rest is short."
        )
        assert result.suggestion == "Try four slow breaths before your next task."

    async def test_request_contract(self):
        """The request asks for the marked format with its own token limit."""
        gateway = self.make_gateway(INTERPRETATION)
        await gateway.interpret(self.sample)

        body = json.loads(self.requests[0].content)
        assert body["max_tokens"] == 500
        assert "presence_penalty" not in body
        prompt = body["messages"][1]["content"]
        assert "anxious" in prompt
        assert "65%" in prompt
        for marker in ("MESSAGE:", "EXPLANATION:", "SUGGESTION:"):
            assert marker in prompt

    @pytest.mark.parametrize(
        "content",
        [
            "Just breathe, you'll be fine.",
            "MESSAGE: Hello\nSUGGESTION: Walk",
            "MESSAGE: Hello\nEXPLANATION:\nSUGGESTION: Walk",
        ],
    )
    async def test_unmarked_reply_is_malformed_response(self, content):
        """A reply missing a section is MalformedResponse."""
        gateway = self.make_gateway(content)

        with pytest.raises(MalformedResponse):
            await gateway.interpret(self.sample)

    async def test_missing_credential_fails_before_network(self):
        """Without an API key nothing is sent."""
        gateway = self.make_gateway(INTERPRETATION, api_key=None)

        with pytest.raises(ConfigurationError):
            await gateway.interpret(self.sample)
        assert self.requests == []

    async def test_invalid_sample_fails_before_network(self):
        """An out-of-range sample is rejected before anything is sent."""
        gateway = self.make_gateway(INTERPRETATION)
        sample = EmotionSample.model_construct(label="sad", intensity=1.5, observed_at=0.0)

        with pytest.raises(ValidationError):
            await gateway.interpret(sample)
        assert self.requests == []


class TestCompletionAttempt:
    def test_successful_path(self):
        """Attempts move idle, then sending, then succeeded."""
        attempt = CompletionAttempt()
        assert attempt.state is CompletionState.IDLE

        attempt.send()
        attempt.succeed()
        assert attempt.state is CompletionState.SUCCEEDED

    def test_failed_attempt_keeps_error(self):
        """A failed attempt remembers its error."""
        attempt = CompletionAttempt()
        attempt.send()
        error = attempt.fail(ServiceError("boom"))

        assert attempt.state is CompletionState.FAILED
        assert attempt.error is error

    def test_terminal_states_are_not_reused(self):
        """Finished attempts refuse further transitions."""
        attempt = CompletionAttempt()
        attempt.send()
        attempt.succeed()

        with pytest.raises(RuntimeError):
            attempt.send()
        with pytest.raises(RuntimeError):
            attempt.fail(ServiceError("late"))

    def test_cannot_succeed_without_sending(self):
        """Success requires a prior send."""
        with pytest.raises(RuntimeError):
            CompletionAttempt().succeed()
