"""
Completion Provider - Streaming chat completions over OpenAI-compatible APIs.

Every supported provider exposes an OpenAI-compatible /chat/completions
endpoint; the OpenAI SDK pointed at each base URL covers all of them.
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI
from openai.types.chat import ChatCompletionChunk

from chainchat.exceptions import ModelProviderError, NotConfiguredError
from chainchat.observability.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# Stream Events
# ============================================================================


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """A complete tool call; `arguments` is the raw JSON string from the model."""

    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class StepFinish:
    finish_reason: str
    usage: TokenUsage | None


StreamEvent = TextDelta | ReasoningDelta | ToolCallRequest | StepFinish


class CompletionModel(Protocol):
    """One model step: stream a completion for the given conversation."""

    provider: str
    model: str

    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


# ============================================================================
# Provider Registry
# ============================================================================


@dataclass(frozen=True)
class ProviderSpec:
    base_url: str
    # Emits delta.reasoning_content instead of inline <think> tags
    reasoning_content_field: bool = False


PROVIDERS: dict[str, ProviderSpec] = {
    "openai": ProviderSpec("https://api.openai.com/v1"),
    "anthropic": ProviderSpec("https://api.anthropic.com/v1"),
    "google": ProviderSpec("https://generativelanguage.googleapis.com/v1beta/openai"),
    "chutes": ProviderSpec("https://llm.chutes.ai/v1", reasoning_content_field=True),
}


class OpenAICompatibleModel:
    """Streams chat completions through the OpenAI SDK against a provider's base URL."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        model: str,
        base_url: str,
        reasoning_content_field: bool = False,
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.reasoning_content_field = reasoning_content_field
        self.timeout = timeout
        self._api_key = api_key
        self._http_client = http_client

    def __repr__(self) -> str:
        return f"OpenAICompatibleModel(provider={self.provider!r}, model={self.model!r})"

    def _client(self) -> AsyncOpenAI:
        # No SDK retries: a failed step goes to the configured fallback model instead
        return AsyncOpenAI(
            api_key=self._api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            http_client=self._http_client,
        )

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        client = self._client()
        options: dict[str, Any] = {}
        if tools:
            options["tools"] = tools

        try:
            chunks = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "system", "content": system}, *messages],
                stream=True,
                stream_options={"include_usage": True},
                **options,
            )
            async for event in self._parse_stream(chunks):
                yield event
        except APIStatusError as e:
            logger.warning(
                "model_provider_http_error",
                provider=self.provider,
                model=self.model,
                status=e.status_code,
            )
            raise ModelProviderError(self.provider, e.message, status_code=e.status_code) from e
        except APIError as e:
            # Connection failures, timeouts and error chunks sent mid-stream
            logger.warning(
                "model_provider_error",
                provider=self.provider,
                model=self.model,
                error=e.message,
            )
            raise ModelProviderError(self.provider, e.message or type(e).__name__) from e
        finally:
            if self._http_client is None:
                await client.close()

    async def _parse_stream(
        self, chunks: AsyncIterator[ChatCompletionChunk]
    ) -> AsyncIterator[StreamEvent]:
        tool_calls: dict[int, dict[str, str]] = {}
        finish_reason = "stop"
        usage: TokenUsage | None = None
        seen_reasoning = False
        reasoning_ended = False

        async for chunk in chunks:
            if chunk.usage is not None:
                usage = TokenUsage(
                    input_tokens=chunk.usage.prompt_tokens or 0,
                    output_tokens=chunk.usage.completion_tokens or 0,
                )

            for choice in chunk.choices:
                delta = choice.delta

                # Not part of the OpenAI schema; kept by the SDK as an extra field
                reasoning = getattr(delta, "reasoning_content", None)
                if self.reasoning_content_field and reasoning is not None:
                    # Re-inline as <think> so the tag middleware splits it out
                    yield TextDelta(("<think>" if not seen_reasoning else "") + reasoning)
                    seen_reasoning = True
                elif delta.content is not None:
                    content = delta.content
                    if seen_reasoning and not reasoning_ended:
                        content = "</think>" + content
                        reasoning_ended = True
                    if content:
                        yield TextDelta(content)

                for call in delta.tool_calls or []:
                    slot = tool_calls.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                    if call.id:
                        slot["id"] = call.id
                    if call.function is not None:
                        if call.function.name:
                            slot["name"] = call.function.name
                        if call.function.arguments:
                            slot["arguments"] += call.function.arguments

                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        if seen_reasoning and not reasoning_ended:
            yield TextDelta("</think>")

        for index in sorted(tool_calls):
            slot = tool_calls[index]
            yield ToolCallRequest(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=slot["arguments"] or "{}",
            )

        yield StepFinish(finish_reason=finish_reason, usage=usage)


def create_model(
    provider: str,
    api_key: str,
    model: str,
    timeout: float = 120.0,
    http_client: httpx.AsyncClient | None = None,
) -> CompletionModel:
    """
    Build a streaming model for a provider, wrapped in the reasoning-tag middleware.

    Raises:
        NotConfiguredError: Unknown provider name
    """
    from chainchat.llm.middleware import ReasoningTagMiddleware

    spec = PROVIDERS.get(provider)
    if spec is None:
        raise NotConfiguredError(f"Unsupported provider: {provider}")

    return ReasoningTagMiddleware(
        OpenAICompatibleModel(
            provider=provider,
            api_key=api_key,
            model=model,
            base_url=spec.base_url,
            reasoning_content_field=spec.reasoning_content_field,
            timeout=timeout,
            http_client=http_client,
        )
    )
