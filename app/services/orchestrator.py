"""Chat orchestrator — one chat turn from request to persisted reply.

Flow:
  1. Resolve the bot (cached) and gate on model, subscription and credits
  2. Resolve or create the conversation; refuse paused conversations
  3. Wait for and take the conversation lock, cancel any pending completion
  4. Persist the user turn
  5. Assemble the system prompt (knowledge, tool directives) and tool set
  6. Generate with up to ``max_tool_rounds`` tool round trips
  7. Finalize once: debit credits, persist the assistant turn, record
     usage, release the lock, schedule the conversation's completion

Blocking and streaming share the same pipeline; they differ only in where
generation events go. Streaming hands the caller an SSE byte stream right
away and runs generation and finalization in a background task, so a
client that stops reading does not stop bookkeeping.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sqlalchemy import func
from sqlmodel import select

from app.core import cache
from app.core.config import Settings, get_settings
from app.core.database import async_session_factory
from app.core.exceptions import (
    GENERIC_ERROR_MESSAGE,
    BotNotFoundError,
    ConversationPausedError,
    GenerationError,
    InsufficientCreditsError,
    ModelNotFoundError,
    SubscriptionRequiredError,
    UnsupportedProviderError,
)
from app.core.pricing import SUPPORTED_PROVIDERS, ModelInfo, get_model
from app.core.redis import get_redis
from app.core.security import decrypt_value
from app.models.bot_profile import BotProfile
from app.models.knowledge_base import KnowledgeBase
from app.models.message import MessageRole
from app.models.tool import BotTool, Tool
from app.models.usage_event import UsageEvent
from app.services.billing import BillingGate, SqlBillingGate
from app.services.conversation_store import ConversationStore, SqlConversationStore
from app.services.knowledge import (
    KnowledgeContextAssembler,
    KnowledgeResult,
    QdrantKnowledgeStore,
    build_knowledge_context,
    format_context,
)
from app.services.llm import GenerationResult, LiteLLMProvider, ModelProvider, StreamEvent, TokenUsage
from app.services.locking import ConversationLockManager, RedisLockStore
from app.services.prompt import build_system_prompt
from app.services.scheduler import CompletionScheduler, build_completion_scheduler
from app.services.tools.base import ToolContext
from app.services.tools.execution import ToolExecutionService
from app.services.tools.registry import ToolRegistry, get_tool_registry
from app.services.tools.resolution import EnabledTool, build_enabled_tool_set

logger = logging.getLogger(__name__)

BOT_CACHE_PREFIX = "bot-snapshot"


# ── Request / result types ──────────────────────────────────


@dataclass(frozen=True)
class ChatTurn:
    role: str  # "user", "assistant" or "tool"
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    messages: tuple[ChatTurn, ...]
    bot_id: str
    model_id: str | None = None
    conversation_id: str | None = None
    tenant_id: str | None = None
    user_id: str | None = None
    source: str = "playground"
    stream: bool = True
    webhook_payload: dict[str, Any] | None = None


@dataclass
class AssistantTurnResult:
    text: str
    response_messages: list[dict[str, Any]]
    usage: TokenUsage
    processing_time_ms: int
    tool_rounds: int = 0


@dataclass
class ChatProcessResult:
    """``text`` and ``turn`` for blocking calls, ``stream`` for streaming ones."""
    conversation_id: str | None
    text: str | None = None
    stream: AsyncIterator[bytes] | None = None
    turn: AssistantTurnResult | None = None


@dataclass(frozen=True)
class BotSnapshot:
    """The parts of a bot a chat turn needs, detached from the session."""
    bot_id: str
    tenant_id: str
    owner_user_id: str | None
    system_prompt: str
    default_model: str | None
    temperature: float | None
    max_tokens: int | None
    api_key: str | None
    has_knowledge_base: bool
    tools: tuple[tuple[BotTool, Tool], ...] = ()


class RunState(StrEnum):
    RESOLVING_BOT = "resolving_bot"
    LOCK_WAIT = "lock_wait"
    LOCK_HELD = "lock_held"
    CONTEXT_ASSEMBLY = "context_assembly"
    GENERATING = "generating"
    TOOL_DISPATCH = "tool_dispatch"
    FINALIZING = "finalizing"
    LOCK_RELEASED = "lock_released"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ChatRun:
    """Mutable per-request state. Never shared between requests."""
    request: ChatRequest
    state: RunState = RunState.RESOLVING_BOT
    bot: BotSnapshot | None = None
    tenant_id: str = ""
    user_id: str | None = None
    model: ModelInfo | None = None
    conversation_id: str | None = None
    lock_token: str | None = None
    lock_released: bool = False
    knowledge: KnowledgeResult = field(default_factory=KnowledgeResult)
    generation_started: float = 0.0
    generation_finished: float | None = None
    finalized: bool = False

    def transition(self, state: RunState) -> None:
        logger.debug(
            "Chat run for conversation %s: %s -> %s", self.conversation_id, self.state, state
        )
        self.state = state


# ── Collaborator defaults ───────────────────────────────────


def _decrypt_api_key(encrypted: str | None) -> str | None:
    if not encrypted:
        return None
    try:
        return json.loads(decrypt_value(encrypted)).get("api_key")
    except Exception:
        logger.warning("Could not decrypt bot credentials, using platform defaults", exc_info=True)
        return None


async def load_bot_snapshot(bot_id: str) -> BotSnapshot | None:
    """Fetch an active bot with its tool attachments, cached for a short TTL."""
    cache_key = (BOT_CACHE_PREFIX, bot_id)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    try:
        bot_uuid = uuid.UUID(bot_id)
    except ValueError:
        return None

    async with async_session_factory() as session:
        bot = await session.get(BotProfile, bot_uuid)
        if bot is None or not bot.is_active:
            return None

        kb_stmt = select(func.count()).select_from(KnowledgeBase).where(
            KnowledgeBase.bot_profile_id == bot_uuid,
            KnowledgeBase.is_active == True,  # noqa: E712
        )
        kb_count = (await session.execute(kb_stmt)).scalar_one()

        tool_stmt = (
            select(BotTool, Tool)
            .join(Tool, Tool.id == BotTool.tool_id)
            .where(BotTool.bot_profile_id == bot_uuid)
            .order_by(BotTool.created_at)
        )
        attachments = tuple((bt, t) for bt, t in (await session.execute(tool_stmt)).all())

    snapshot = BotSnapshot(
        bot_id=str(bot.id),
        tenant_id=str(bot.tenant_id),
        owner_user_id=str(bot.owner_user_id) if bot.owner_user_id else None,
        system_prompt=bot.system_prompt,
        default_model=bot.default_model,
        temperature=bot.temperature,
        max_tokens=bot.max_tokens,
        api_key=_decrypt_api_key(bot.encrypted_credentials),
        has_knowledge_base=kb_count > 0,
        tools=attachments,
    )
    cache.put(cache_key, snapshot, ttl=get_settings().bot_cache_ttl_seconds)
    return snapshot


async def record_usage_event(event: UsageEvent) -> None:
    async with async_session_factory() as session:
        session.add(event)
        await session.commit()


def litellm_provider(model: ModelInfo, bot: BotSnapshot) -> ModelProvider:
    return LiteLLMProvider(
        model=model.litellm_model,
        api_key=bot.api_key,
        temperature=bot.temperature,
        max_tokens=bot.max_tokens,
    )


def format_sse(event: str, data: dict) -> bytes:
    """Format a single SSE event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n".encode()


EventSink = Callable[[StreamEvent], Awaitable[None]]


async def _discard(event: StreamEvent) -> None:
    return None


# ── Orchestrator ────────────────────────────────────────────


class ChatOrchestrator:
    def __init__(
        self,
        locks: ConversationLockManager,
        billing: BillingGate,
        conversations: ConversationStore,
        knowledge: KnowledgeContextAssembler,
        scheduler: CompletionScheduler,
        tools: ToolExecutionService | None = None,
        registry: ToolRegistry | None = None,
        provider_factory: Callable[[ModelInfo, BotSnapshot], ModelProvider] = litellm_provider,
        bot_loader: Callable[[str], Awaitable[BotSnapshot | None]] = load_bot_snapshot,
        usage_recorder: Callable[[UsageEvent], Awaitable[None]] = record_usage_event,
        settings: Settings | None = None,
    ) -> None:
        self.locks = locks
        self.billing = billing
        self.conversations = conversations
        self.knowledge = knowledge
        self.scheduler = scheduler
        self.registry = registry or get_tool_registry()
        self.tools = tools or ToolExecutionService(self.registry)
        self.provider_factory = provider_factory
        self.bot_loader = bot_loader
        self.usage_recorder = usage_recorder
        self.settings = settings or get_settings()
        self._background: set[asyncio.Task] = set()

    async def process(self, request: ChatRequest) -> ChatProcessResult:
        """Run one chat turn.

        Raises a ChatProcessingError subclass for fatal failures: unknown
        bot or model, billing gate, paused conversation, and (blocking
        mode only) generation failure.
        """
        run = ChatRun(request=request)

        bot = await self.bot_loader(request.bot_id)
        if bot is None:
            run.transition(RunState.FAILED)
            raise BotNotFoundError(f"Bot not found: {request.bot_id}")
        run.bot = bot
        run.tenant_id = request.tenant_id or bot.tenant_id
        run.user_id = request.user_id or bot.owner_user_id

        model_id = request.model_id or bot.default_model or self.settings.default_llm_model
        run.model = self._resolve_model(model_id)
        await self._check_billing(run.tenant_id, model_id)

        run.conversation_id = await self._resolve_conversation(request)

        if run.conversation_id:
            run.transition(RunState.LOCK_WAIT)
            run.lock_token = await self.locks.obtain(run.conversation_id)
            run.transition(RunState.LOCK_HELD)
            await self._cancel_pending_completion(run.conversation_id)

        try:
            await self._persist_user_turn(run)
            run.transition(RunState.CONTEXT_ASSEMBLY)
            system_prompt, enabled_tools = await self._assemble(run, bot)
            provider = self.provider_factory(run.model, bot)
            history = [turn.to_message() for turn in request.messages]
        except Exception:
            await self._fail(run)
            raise

        events = self._events(run, provider, system_prompt, history, enabled_tools)

        if request.stream:
            return ChatProcessResult(
                conversation_id=run.conversation_id, stream=self._start_stream(run, events)
            )

        try:
            result = await self._generate(run, events, _discard)
        except Exception as exc:
            raise GenerationError(str(exc) or GENERIC_ERROR_MESSAGE) from exc
        turn = await self._finish(run, result)
        return ChatProcessResult(conversation_id=run.conversation_id, text=turn.text, turn=turn)

    # ── Gate ──────────────────────────────────────────────

    def _resolve_model(self, model_id: str) -> ModelInfo:
        model = get_model(model_id)
        if model is None:
            raise ModelNotFoundError(f"Model not found: {model_id}")
        if model.provider not in SUPPORTED_PROVIDERS:
            raise UnsupportedProviderError(f"Unsupported model provider: {model.provider}")
        if not model.is_available:
            raise ModelNotFoundError(f"Model not available: {model_id}")
        return model

    async def _check_billing(self, tenant_id: str, model_id: str) -> None:
        if not await self.billing.check_subscription(tenant_id):
            raise SubscriptionRequiredError(
                f"Tenant {tenant_id} has no active or trialing subscription"
            )
        if not await self.billing.has_sufficient_credit(tenant_id, model_id):
            raise InsufficientCreditsError(f"Insufficient credits for using model: {model_id}")

    # ── Conversation ──────────────────────────────────────

    async def _resolve_conversation(self, request: ChatRequest) -> str | None:
        if not request.conversation_id:
            try:
                return await self.conversations.create(
                    request.bot_id, metadata={"source": request.source}, source=request.source
                )
            except Exception:
                logger.exception("Error creating conversation for bot %s", request.bot_id)
                return None

        try:
            uuid.UUID(request.conversation_id)
        except ValueError:
            logger.warning(
                "Conversation id %r is malformed, answering without a conversation",
                request.conversation_id,
            )
            return None

        conversation = await self.conversations.get(request.conversation_id)
        if conversation is None:
            logger.warning("Conversation %s not found, continuing", request.conversation_id)
        elif conversation.is_paused:
            raise ConversationPausedError(
                "This conversation is currently paused. Bot responses are disabled."
            )
        return request.conversation_id

    async def _cancel_pending_completion(self, conversation_id: str) -> None:
        try:
            await self.scheduler.cancel(conversation_id)
        except Exception:
            logger.warning(
                "Could not cancel pending completion for %s", conversation_id, exc_info=True
            )

    async def _persist_user_turn(self, run: ChatRun) -> None:
        messages = run.request.messages
        if not run.conversation_id or not messages or messages[-1].role != MessageRole.USER:
            return
        try:
            await self.conversations.append_message(
                run.conversation_id,
                MessageRole.USER,
                messages[-1].content,
                processing_time_ms=0,
                token_count=0,
            )
        except Exception:
            logger.exception("Error adding user message to %s", run.conversation_id)

    # ── Context ───────────────────────────────────────────

    async def _assemble(
        self, run: ChatRun, bot: BotSnapshot
    ) -> tuple[str, dict[str, EnabledTool]]:
        knowledge_block = ""
        if bot.has_knowledge_base:
            query = next(
                (t.content for t in reversed(run.request.messages) if t.role == MessageRole.USER),
                None,
            )
            if query:
                run.knowledge = await self.knowledge.retrieve(
                    bot.bot_id, query, self.settings.knowledge_top_k
                )
                knowledge_block = format_context(run.knowledge)

        context = ToolContext(
            bot_id=bot.bot_id,
            organization_id=run.tenant_id,
            user_id=run.user_id,
            conversation_id=run.conversation_id,
            webhook_payload=run.request.webhook_payload,
        )
        enabled_tools = build_enabled_tool_set(
            bot.tools, self.registry, self.tools.execute_tool, context
        )

        system_prompt = build_system_prompt(
            bot.system_prompt, knowledge_block, enabled_tools, run.request.source
        )
        return system_prompt, enabled_tools

    # ── Generation ────────────────────────────────────────

    async def _events(
        self,
        run: ChatRun,
        provider: ModelProvider,
        system_prompt: str,
        history: list[dict[str, Any]],
        enabled_tools: Mapping[str, EnabledTool],
    ) -> AsyncIterator[StreamEvent]:
        tools = enabled_tools or None
        max_rounds = self.settings.max_tool_rounds
        if run.request.stream:
            async for event in provider.stream(system_prompt, history, tools, max_rounds):
                yield event
        else:
            result = await provider.generate(system_prompt, history, tools, max_rounds)
            yield StreamEvent(event="done", data={"content": result.text}, result=result)

    async def _generate(
        self, run: ChatRun, events: AsyncIterator[StreamEvent], sink: EventSink
    ) -> GenerationResult:
        """Drive generation, forwarding events to ``sink``.

        On failure the run is failed (lock released) before re-raising.
        """
        run.transition(RunState.GENERATING)
        run.generation_started = time.monotonic()
        result: GenerationResult | None = None
        try:
            async for event in events:
                if event.event == "done":
                    result = event.result
                    break
                if event.event == "tool_call":
                    run.transition(RunState.TOOL_DISPATCH)
                elif event.event == "tool_result":
                    run.transition(RunState.GENERATING)
                await sink(event)
            if result is None:
                raise RuntimeError("Model stream ended without a result")
        except Exception:
            logger.exception("Generation failed for conversation %s", run.conversation_id)
            await self._fail(run)
            raise
        run.generation_finished = time.monotonic()
        return result

    def _start_stream(
        self, run: ChatRun, events: AsyncIterator[StreamEvent]
    ) -> AsyncIterator[bytes]:
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()

        async def sink(event: StreamEvent) -> None:
            await queue.put(format_sse(event.event, event.data))

        async def produce() -> None:
            try:
                result = await self._generate(run, events, sink)
            except Exception:
                await queue.put(format_sse("error", {"message": GENERIC_ERROR_MESSAGE}))
                await queue.put(None)
                return

            await queue.put(format_sse("done", {
                "conversation_id": run.conversation_id,
                "content": result.text,
                "usage": result.usage.to_dict(),
                "tool_rounds": result.tool_rounds,
            }))
            await queue.put(None)
            await self._finish(run, result)

        task = asyncio.create_task(produce())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        async def consume() -> AsyncIterator[bytes]:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item

        return consume()

    async def wait_for_background(self) -> None:
        """Wait for in-flight streaming finalizations (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Finalization ──────────────────────────────────────

    async def _finish(self, run: ChatRun, result: GenerationResult) -> AssistantTurnResult:
        """Bookkeeping for a finished turn. Runs at most once per run; never raises."""
        finished = run.generation_finished or time.monotonic()
        elapsed_ms = int((finished - run.generation_started) * 1000)
        turn = AssistantTurnResult(
            text=result.text,
            response_messages=result.tool_trace,
            usage=result.usage,
            processing_time_ms=min(self.settings.max_processing_time_ms, max(elapsed_ms, 0)),
            tool_rounds=result.tool_rounds,
        )
        if run.finalized:
            return turn
        run.finalized = True
        run.transition(RunState.FINALIZING)

        model_id = run.model.id if run.model else ""
        total_tokens = turn.usage.total_tokens
        try:
            credits = await self._safely(
                "credit debit",
                self.billing.debit(run.tenant_id, model_id, total_tokens, {
                    "botId": run.request.bot_id,
                    "conversationId": run.conversation_id,
                    "userId": run.user_id,
                    "source": run.request.source,
                }),
            ) or 0

            message_id = None
            if run.conversation_id:
                message_id = await self._safely(
                    "assistant message persistence",
                    self.conversations.append_message(
                        run.conversation_id,
                        MessageRole.ASSISTANT,
                        turn.text,
                        response_messages=turn.response_messages,
                        context_used=build_knowledge_context(run.knowledge).to_dict(),
                        processing_time_ms=turn.processing_time_ms,
                        token_count=total_tokens,
                    ),
                )

            await self._safely("usage recording", self.usage_recorder(UsageEvent(
                tenant_id=uuid.UUID(run.tenant_id),
                bot_profile_id=uuid.UUID(run.request.bot_id),
                conversation_id=uuid.UUID(run.conversation_id) if run.conversation_id else None,
                message_id=uuid.UUID(message_id) if message_id else None,
                model=model_id,
                source=run.request.source,
                prompt_tokens=turn.usage.prompt_tokens,
                completion_tokens=turn.usage.completion_tokens,
                total_tokens=total_tokens,
                credits_charged=credits,
                tool_rounds=turn.tool_rounds,
                is_stream=run.request.stream,
                processing_time_ms=turn.processing_time_ms,
            )))
        except Exception:
            logger.exception("Finalization failed for conversation %s", run.conversation_id)
        finally:
            await self._release(run)

        if run.conversation_id:
            await self._safely(
                "completion scheduling",
                self.scheduler.schedule_completion(
                    run.conversation_id, self.settings.completion_delay_seconds
                ),
            )

        run.transition(RunState.DONE)
        logger.info(
            "Chat turn finished for conversation %s: %d tokens, %d tool rounds, %dms",
            run.conversation_id,
            total_tokens,
            turn.tool_rounds,
            turn.processing_time_ms,
        )
        return turn

    async def _fail(self, run: ChatRun) -> None:
        if run.finalized:
            return
        run.finalized = True
        await self._release(run)
        run.transition(RunState.FAILED)

    async def _release(self, run: ChatRun) -> None:
        if run.lock_released or not run.conversation_id:
            return
        run.lock_released = True
        await self.locks.release(run.conversation_id, run.lock_token)
        run.transition(RunState.LOCK_RELEASED)

    async def _safely(self, step: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except Exception:
            logger.exception("Error during %s for a chat turn", step)
            return None


# ── Default wiring ──────────────────────────────────────────

_default: ChatOrchestrator | None = None


def get_orchestrator() -> ChatOrchestrator:
    """Lazy-init an orchestrator wired to Redis, Postgres, Qdrant and LiteLLM."""
    global _default
    if _default is None:
        conversations = SqlConversationStore()
        _default = ChatOrchestrator(
            locks=ConversationLockManager(RedisLockStore(get_redis())),
            billing=SqlBillingGate(),
            conversations=conversations,
            knowledge=KnowledgeContextAssembler(QdrantKnowledgeStore()),
            scheduler=build_completion_scheduler(conversations),
        )
    return _default


async def process_chat_request(request: ChatRequest) -> ChatProcessResult:
    """Module-level entry point using the default collaborators."""
    return await get_orchestrator().process(request)
