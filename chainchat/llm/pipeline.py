"""
Chat Pipeline - Provider resolution, admission, the tool loop and settlement.

RESOLVE_PROVIDER -> CHECK_ALLOWANCE (built-in only) -> OPTIMIZE_MESSAGES
  -> RUN_MODEL (primary, then fallback on a hard failure before any output)
  -> RECORD_USAGE (exactly once, in the background)
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainchat.config import Settings, settings
from chainchat.exceptions import (
    AccountMismatchError,
    ChainChatError,
    ModelProviderError,
    NotConfiguredError,
    QuotaExceededError,
)
from chainchat.llm.optimize import optimize_messages
from chainchat.llm.provider import (
    CompletionModel,
    ReasoningDelta,
    StepFinish,
    TextDelta,
    ToolCallRequest,
    create_model,
)
from chainchat.llm.tools import ToolRegistry, create_chain_tools
from chainchat.models.api import BillingMode, ChatMessage, ChatRequest, LLMMode
from chainchat.models.domain import AccountKey, ResolvedProvider, UsageRecord, UserIdentity
from chainchat.observability.logging import get_logger
from chainchat.observability.metrics import metrics
from chainchat.observability.tracing import get_tracer, set_span_error
from chainchat.services.allowance import AllowanceService, next_reset_time
from chainchat.services.ledger import CreditLedger, utc_now
from chainchat.services.user_settings import UserSettingsService

logger = get_logger(__name__)
tracer = get_tracer(__name__)

MAX_TOOL_STEPS = 5

ModelFactory = Callable[[str, str, str], CompletionModel]
ToolsFactory = Callable[[str | None, str | None], ToolRegistry]


# ============================================================================
# System Prompt
# ============================================================================

_BASE_PROMPT = """You are an Antelope blockchain explorer assistant. You help users understand and interact with Antelope-based blockchains (EOS, WAX, Telos, etc.).

You have tools that query on-chain data in real time. Use them to answer questions about accounts, transactions, blocks, smart contracts, and token balances.

When a user wants to perform an action on the blockchain (transfer tokens, stake resources, buy RAM, vote for producers, etc.), use the build_transaction tool to create a transaction proposal. The user reviews and signs it with their wallet.

Guidelines:
- Always use tools to fetch real data rather than making assumptions
- Present data clearly and explain what it means
- When building transactions, ONLY call the build_transaction tool, with no text before or after it. The proposal renders as an editable card.
- When the user reports a transaction error (e.g. "[Transaction Error: ...]"), analyze it and build a corrected transaction (token precision or symbol, account names, permissions, resource amounts).
- If no chain endpoint is connected, tell the user to connect first
- Be concise but informative
- When you receive a [System: ...] message about a chain or wallet change, greet the user in 1-2 sentences, mention their chain and account, and suggest a few things you can help with."""


def build_system_prompt(
    chain_endpoint: str | None,
    hyperion_endpoint: str | None,
    wallet_account: str | None,
    chain_name: str | None = None,
) -> str:
    sections = [_BASE_PROMPT]

    if chain_endpoint:
        label = f" ({chain_name})" if chain_name else ""
        sections.append(f"Connected chain endpoint{label}: {chain_endpoint}")
    else:
        sections.append(
            "No chain connected. Tell the user to connect to a chain to query on-chain data."
        )

    if hyperion_endpoint:
        sections.append(
            "Hyperion history API is available: use get_actions, get_transfers, "
            "get_created_accounts, get_creator, get_tokens and get_key_accounts for "
            "action history, transfers, account creation, token holdings and key lookups."
        )

    if wallet_account:
        sections.append(
            f"The user's connected wallet account is: {wallet_account}. When they say "
            f'"my account", "my balance", etc., use this account name. When building '
            f'transactions, use it as the "from" account.'
        )
    else:
        sections.append("No wallet connected.")

    return "\n\n".join(sections)


# ============================================================================
# Message Conversion
# ============================================================================


def _message_text(message: ChatMessage) -> str:
    texts = [p.text for p in message.parts if p.type == "text" and p.text]
    if texts:
        return "".join(texts)
    return message.content or ""


def to_provider_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """
    Convert client messages to chat-completions messages.

    Completed tool invocations become an assistant tool_calls message followed
    by one tool message per result; unfinished invocations are dropped.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        text = _message_text(message)
        if message.role != "assistant":
            if text:
                converted.append({"role": message.role, "content": text})
            continue

        results = [p for p in message.parts if p.type == "tool-invocation" and p.state == "result"]
        if not results:
            if text:
                converted.append({"role": "assistant", "content": text})
            continue

        converted.append(
            {
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {
                        "id": part.tool_call_id or f"call_{i}",
                        "type": "function",
                        "function": {
                            "name": part.tool_name or "",
                            "arguments": json.dumps(part.input or {}, default=str),
                        },
                    }
                    for i, part in enumerate(results)
                ],
            }
        )
        for i, part in enumerate(results):
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": part.tool_call_id or f"call_{i}",
                    "content": json.dumps(part.output, default=str),
                }
            )
    return converted


def _parse_arguments(arguments: str) -> Any:
    try:
        return json.loads(arguments or "{}")
    except ValueError:
        return arguments


# ============================================================================
# Usage Recording
# ============================================================================


class UsageRecorder:
    """
    Posts usage to the ledger in background tasks with their own sessions.

    Tasks are held until done so none is garbage collected mid-write;
    drain() waits for all of them (shutdown, tests).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, record: UsageRecord) -> asyncio.Task[None] | None:
        if record.mode == BillingMode.BYOK:
            return None
        task = asyncio.get_running_loop().create_task(self._record(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _record(self, record: UsageRecord) -> None:
        try:
            async with self._session_factory() as session:
                await CreditLedger(session, clock=self._clock).record_usage(record)
        except (ChainChatError, SQLAlchemyError) as e:
            metrics.usage_recording_failures_total.labels(error_type=type(e).__name__).inc()
            logger.error(
                "usage_recording_failed",
                chain_id=record.key.chain_id,
                account_name=record.key.account_name,
                mode=record.mode.value,
                input_tokens=record.input_tokens,
                output_tokens=record.output_tokens,
                model=record.model,
                error=str(e),
            )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ============================================================================
# Pipeline
# ============================================================================


@dataclass
class PreparedChat:
    """Everything needed to stream one chat request."""

    provider: ResolvedProvider
    model: CompletionModel
    billing_mode: BillingMode
    key: AccountKey | None
    system_prompt: str
    messages: list[dict[str, Any]]
    tools: ToolRegistry


@dataclass
class _UsageTally:
    input_tokens: int = 0
    output_tokens: int = 0
    reported: bool = False
    model: str = ""
    finish_reasons: list[str] = field(default_factory=list)

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.reported = True


class ChatPipeline:
    """
    One chat request from provider resolution to usage settlement.

    prepare() does everything that can fail with a plain HTTP error; stream()
    yields wire events and schedules the usage record when it ends.
    """

    def __init__(
        self,
        session: AsyncSession,
        recorder: UsageRecorder,
        config: Settings = settings,
        model_factory: ModelFactory | None = None,
        tools_factory: ToolsFactory = create_chain_tools,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.recorder = recorder
        self.config = config
        self.model_factory = model_factory or self._default_model_factory
        self.tools_factory = tools_factory
        self.clock = clock

    def _default_model_factory(self, provider: str, api_key: str, model: str) -> CompletionModel:
        return create_model(provider, api_key, model, timeout=self.config.llm_request_timeout)

    async def prepare(self, request: ChatRequest, user: UserIdentity | None) -> PreparedChat:
        """
        Resolve the provider, admit the request and shrink its history.

        Built-in requests are billed to the wallet account in the user token;
        the request body can only repeat that account, never replace it.

        Raises:
            NotConfiguredError: No usable provider, or built-in mode without a logged-in wallet
            AccountMismatchError: Built-in request naming another wallet account
            QuotaExceededError: Built-in request over the free tier with no balance
        """
        resolved = await self._resolve_provider(request, user.user_id if user else None)
        model = self.model_factory(resolved.provider, resolved.api_key, resolved.model)

        key: AccountKey | None = None
        billing_mode = BillingMode.BYOK
        if resolved.builtin:
            key = self._billing_key(request, user)
            allowance = await AllowanceService(self.session, clock=self.clock).check_allowance(key)
            if not allowance.allowed:
                raise QuotaExceededError(
                    allowance.reason or "Quota exceeded.", next_reset_time(self.clock())
                )
            billing_mode = BillingMode(allowance.mode)

        optimized = optimize_messages(
            request.messages,
            keep_recent_tool_rounds=self.config.keep_recent_tool_rounds,
            max_messages=self.config.max_history_messages,
        )

        return PreparedChat(
            provider=resolved,
            model=model,
            billing_mode=billing_mode,
            key=key,
            system_prompt=build_system_prompt(
                request.chain_endpoint,
                request.hyperion_endpoint,
                request.wallet_account or (key.account_name if key else None),
                request.chain_name,
            ),
            messages=to_provider_messages(optimized),
            tools=self.tools_factory(
                request.chain_endpoint or None, request.hyperion_endpoint or None
            ),
        )

    async def stream(self, prepared: PreparedChat) -> AsyncIterator[dict[str, Any]]:
        """
        Yield wire events; usage is scheduled exactly once when the stream ends.

        A stream cut short (client disconnect, error) still records usage when
        the provider already reported token counts.
        """
        tally = _UsageTally(model=prepared.provider.model)
        completed = False
        try:
            async for event in self._run_with_fallback(prepared, tally):
                yield event
            completed = True
        finally:
            self._settle(prepared, tally, completed)
            await prepared.tools.aclose()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _billing_key(request: ChatRequest, user: UserIdentity | None) -> AccountKey:
        key = user.account_key if user else None
        if key is None:
            raise NotConfiguredError("Built-in model requires a wallet login")

        requested = request.wallet_account or key.account_name
        requested_chain = request.chain_id or key.chain_id
        if requested != key.account_name or requested_chain != key.chain_id:
            logger.warning(
                "chat_account_mismatch",
                user_id=user.user_id if user else None,
                requested_account=requested,
                account_name=key.account_name,
            )
            raise AccountMismatchError(requested, key.account_name)
        return key

    async def _resolve_provider(
        self, request: ChatRequest, user_id: str | None
    ) -> ResolvedProvider:
        if user_id:
            try:
                stored = await UserSettingsService(self.session).get(user_id)
            except (ChainChatError, SQLAlchemyError) as e:
                # Stored settings are optional; fall through to the request config
                logger.warning("user_settings_unavailable", user_id=user_id, error=str(e))
                stored = None

            if stored is not None:
                if stored.llm_mode == LLMMode.BUILTIN.value and self.config.builtin_llm_available:
                    return ResolvedProvider(
                        provider=self.config.builtin_llm_provider,
                        model=self.config.builtin_llm_model,
                        api_key=self.config.builtin_llm_api_key,
                        builtin=True,
                    )
                if stored.has_own_config:
                    return ResolvedProvider(
                        provider=stored.llm_provider or "",
                        model=stored.llm_model or "",
                        api_key=stored.llm_api_key or "",
                        builtin=False,
                    )

        config = request.llm_config
        if config is not None and config.is_complete:
            return ResolvedProvider(
                provider=config.provider or "",
                model=config.model or "",
                api_key=config.api_key or "",
                builtin=False,
            )

        raise NotConfiguredError()

    async def _run_with_fallback(
        self, prepared: PreparedChat, tally: _UsageTally
    ) -> AsyncIterator[dict[str, Any]]:
        provider = prepared.provider
        emitted = False
        try:
            async for event in self._run_loop(prepared.model, prepared, tally):
                emitted = True
                yield event
            return
        except ModelProviderError as e:
            fallback_model = self.config.llm_fallback_models.get(provider.provider)
            if emitted or not fallback_model or fallback_model == provider.model:
                raise
            logger.warning(
                "model_fallback",
                provider=provider.provider,
                model=provider.model,
                fallback_model=fallback_model,
                error=e.message,
            )
            metrics.model_fallbacks_total.labels(provider=provider.provider).inc()

        fallback = self.model_factory(provider.provider, provider.api_key, fallback_model)
        async for event in self._run_loop(fallback, prepared, tally):
            yield event

    async def _run_loop(
        self, model: CompletionModel, prepared: PreparedChat, tally: _UsageTally
    ) -> AsyncIterator[dict[str, Any]]:
        messages = list(prepared.messages)
        tool_schemas = prepared.tools.schemas()
        tally.model = model.model
        finish_reason = "stop"

        for step in range(MAX_TOOL_STEPS):
            # The last step runs without tools so the model has to answer
            last_step = step == MAX_TOOL_STEPS - 1
            step_tools = tool_schemas if tool_schemas and not last_step else None

            text_parts: list[str] = []
            calls: list[ToolCallRequest] = []

            span = tracer.start_span(
                "model_step",
                attributes={"provider": model.provider, "model": model.model, "step": step},
            )
            try:
                async for event in model.stream(prepared.system_prompt, messages, step_tools):
                    if isinstance(event, TextDelta):
                        text_parts.append(event.text)
                        yield {"type": "text-delta", "text": event.text}
                    elif isinstance(event, ReasoningDelta):
                        yield {"type": "reasoning-delta", "text": event.text}
                    elif isinstance(event, ToolCallRequest):
                        calls.append(event)
                    elif isinstance(event, StepFinish):
                        finish_reason = event.finish_reason
                        if event.usage is not None:
                            tally.add(event.usage.input_tokens, event.usage.output_tokens)
            except ModelProviderError as e:
                metrics.record_model_request(model.provider, False)
                set_span_error(span, e)
                raise
            finally:
                span.end()
            metrics.record_model_request(model.provider, True)
            tally.finish_reasons.append(finish_reason)

            if not calls or step_tools is None:
                break

            messages.append(
                {
                    "role": "assistant",
                    "content": "".join(text_parts) or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments},
                        }
                        for call in calls
                    ],
                }
            )
            for call in calls:
                yield {
                    "type": "tool-call",
                    "toolCallId": call.id,
                    "toolName": call.name,
                    "input": _parse_arguments(call.arguments),
                }
                output = await prepared.tools.execute(call.name, call.arguments)
                yield {
                    "type": "tool-result",
                    "toolCallId": call.id,
                    "toolName": call.name,
                    "output": output,
                }
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(output, default=str),
                    }
                )

        yield {
            "type": "finish",
            "finishReason": finish_reason,
            "model": model.model,
            "usage": {
                "inputTokens": tally.input_tokens,
                "outputTokens": tally.output_tokens,
            },
        }

    def _settle(self, prepared: PreparedChat, tally: _UsageTally, completed: bool) -> None:
        """Schedule the usage record once; only built-in requests touch the ledger."""
        logger.info(
            "chat_finished",
            provider=prepared.provider.provider,
            model=tally.model,
            billing_mode=prepared.billing_mode.value,
            completed=completed,
            input_tokens=tally.input_tokens,
            output_tokens=tally.output_tokens,
        )
        if prepared.key is None or prepared.billing_mode == BillingMode.BYOK:
            return
        if not completed and not tally.reported:
            logger.warning(
                "chat_aborted_without_usage",
                chain_id=prepared.key.chain_id,
                account_name=prepared.key.account_name,
            )
            return
        self.recorder.schedule(
            UsageRecord(
                key=prepared.key,
                mode=prepared.billing_mode,
                input_tokens=tally.input_tokens,
                output_tokens=tally.output_tokens,
                model=tally.model,
            )
        )
