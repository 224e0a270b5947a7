"""Chat use case: drives one user message through summarization, routing and persistence.

This module contains the business logic for a chat turn and the conversation
management operations around it. It has **no dependency on FastAPI** and can
be invoked from any transport layer.

Generation runs in a background task that feeds a queue. The caller's
iterator only reads from that queue, so a caller that stops reading (client
disconnect) does not stop the turn from completing and being persisted.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace

from crm_assistant.application.exceptions import (
    AllProvidersFailedError,
    ConversationNotFoundError,
    EmbeddingError,
    EmptyMessageError,
    ProviderError,
    ValidationError,
)
from crm_assistant.application.prompts import create_system_prompt
from crm_assistant.domain.models import (
    Conversation,
    ConversationContext,
    ConversationSummary,
    ConversationTurn,
    GenerationOptions,
    Sender,
    utcnow,
)
from crm_assistant.domain.protocols import (
    ICrmDataSource,
    IConversationRepository,
    ISimilarityIndex,
)
from crm_assistant.logging_config import turn_logger
from crm_assistant.services.context_summarizer import ContextSummarizer
from crm_assistant.services.generation_router import GenerationRouter
from crm_assistant.services.similarity_index import format_matches

MAX_TITLE_LENGTH = 100

_DONE = object()


@dataclass
class _ConversationLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------


@dataclass
class TurnResult:
    """The persisted turn pair plus routing metadata, yielded after the last chunk."""

    conversation_id: str
    user_turn: ConversationTurn
    assistant_turn: ConversationTurn
    provider: str
    model: str
    latency_ms: int
    summarized: bool = False


# ---------------------------------------------------------------------------
# Use case
# ---------------------------------------------------------------------------


class ChatUseCase:
    """Orchestrates chat turns and conversation management for one process.

    Parameters
    ----------
    repository:
        Conversation persistence.
    router:
        Generation router; its registry resolves the requested model.
    summarizer:
        Keeps the generation context under ``token_threshold``.
    crm_data:
        Optional source of the CRM snapshot injected into the system prompt.
    similarity_index:
        Optional index queried when a turn names the contact it is about;
        the top ``grounding_k`` matches are added to the system prompt.
    """

    def __init__(
        self,
        repository: IConversationRepository,
        router: GenerationRouter,
        summarizer: ContextSummarizer,
        crm_data: ICrmDataSource | None = None,
        *,
        default_model: str = "gpt-4o-mini",
        token_threshold: int = 4000,
        max_response_tokens: int = 1000,
        temperature: float = 0.7,
        recent_turns_with_summary: int = 3,
        recent_turns_without_summary: int = 8,
        similarity_index: ISimilarityIndex | None = None,
        grounding_k: int = 5,
    ) -> None:
        self.repository = repository
        self.router = router
        self.summarizer = summarizer
        self.crm_data = crm_data
        self.default_model = default_model
        self.token_threshold = token_threshold
        self.max_response_tokens = max_response_tokens
        self.temperature = temperature
        self.recent_turns_with_summary = recent_turns_with_summary
        self.recent_turns_without_summary = recent_turns_without_summary
        self.similarity_index = similarity_index
        self.grounding_k = grounding_k
        self._locks: dict[tuple[str, str], _ConversationLock] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API: send
    # ------------------------------------------------------------------

    async def send_message(
        self,
        owner_id: str,
        conversation_id: str,
        text: str,
        model_id: str | None = None,
        entity_id: str | None = None,
    ) -> AsyncIterator[str | TurnResult]:
        """Run a streaming chat turn.

        When *entity_id* names a CRM contact, content indexed for it that is
        similar to *text* grounds the reply. Retrieval failures are logged and
        the turn proceeds without it.

        Yields:
            ``str`` chunks as the model produces text.
            As the **final** item, a ``TurnResult`` for the persisted turn pair.

        Raises:
            EmptyMessageError: If *text* is blank.
            UnknownModelError: If no provider lists the requested model.
            AllProvidersFailedError: If every candidate failed before streaming.
                The user turn (and any new summary) is persisted.
            ProviderError: If the stream broke after it started. Chunks already
                yielded stay delivered; no assistant turn is persisted.
        """
        if not text or not text.strip():
            raise EmptyMessageError("Message is required")
        model = model_id or self.default_model
        self.router.registry.owner_of(model)

        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(
            self._run_turn(owner_id, conversation_id, text, model, entity_id, queue)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        while True:
            item = await queue.get()
            if item is _DONE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def wait_idle(self) -> None:
        """Wait for background turns still running (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Public API: conversations
    # ------------------------------------------------------------------

    def list_conversations(self, owner_id: str) -> list[ConversationSummary]:
        """All conversations for *owner_id*, newest first."""
        return self.repository.list_conversations(owner_id)

    def get_conversation(self, owner_id: str, conversation_id: str) -> Conversation:
        conversation = self.repository.find_conversation(owner_id, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def delete_conversation(self, owner_id: str, conversation_id: str) -> None:
        if not self.repository.delete_conversation(owner_id, conversation_id):
            raise ConversationNotFoundError(conversation_id)
        turn_logger(owner_id, conversation_id).info("Conversation deleted")

    async def update_title(self, owner_id: str, conversation_id: str, title: str) -> Conversation:
        """Rename a conversation. The title is trimmed and must be 1-100 characters."""
        cleaned = (title or "").strip()
        if not cleaned:
            raise ValidationError("Title is required")
        if len(cleaned) > MAX_TITLE_LENGTH:
            raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters")

        async with self._conversation_lock(owner_id, conversation_id):
            conversation = self.get_conversation(owner_id, conversation_id)
            conversation.title = cleaned
            conversation.updated_at = utcnow()
            self.repository.save_conversation(conversation)
        return conversation

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _conversation_lock(self, owner_id: str, conversation_id: str):
        """Serialize work on one conversation; the entry is dropped once idle."""
        key = (owner_id, conversation_id)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _ConversationLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def _run_turn(
        self,
        owner_id: str,
        conversation_id: str,
        text: str,
        model: str,
        entity_id: str | None,
        queue: asyncio.Queue,
    ) -> None:
        log = turn_logger(owner_id, conversation_id)
        try:
            async with self._conversation_lock(owner_id, conversation_id):
                result = await self._process_turn(
                    owner_id, conversation_id, text, model, entity_id, queue
                )
            queue.put_nowait(result)
        except Exception as exc:  # noqa: BLE001
            log.warning("Chat turn failed | error={}", exc)
            queue.put_nowait(exc)
        finally:
            queue.put_nowait(_DONE)

    async def _process_turn(
        self,
        owner_id: str,
        conversation_id: str,
        text: str,
        model: str,
        entity_id: str | None,
        queue: asyncio.Queue,
    ) -> TurnResult:
        log = turn_logger(owner_id, conversation_id)
        t0 = time.perf_counter()

        conversation = self.repository.find_conversation(owner_id, conversation_id)
        if conversation is None:
            conversation = Conversation(owner_id=owner_id, conversation_id=conversation_id)
            log.info("Created new conversation")

        user_turn = ConversationTurn(sender=Sender.USER, text=text)
        turns = [*conversation.turns, user_turn]
        working = replace(
            conversation.context,
            unsummarized_turns=(*conversation.context.unsummarized_turns, user_turn),
        )
        context = await self.summarizer.reconcile(working, self.token_threshold, model)
        summarized = context is not working

        crm_context = self.crm_data.get_crm_context(owner_id) if self.crm_data else None
        related = await self._related_context(owner_id, conversation_id, entity_id, text)
        messages = self.summarizer.build_prompt_messages(
            create_system_prompt(crm_context, related),
            context,
            turns,
            recent_with_summary=self.recent_turns_with_summary,
            recent_without_summary=self.recent_turns_without_summary,
        )
        log.debug(
            "Prompt assembled | messages={} summarized={} context_tokens={}",
            len(messages),
            summarized,
            self.summarizer.context_tokens(context),
        )

        result = await self.router.generate(
            model,
            GenerationOptions(
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_response_tokens,
            ),
        )
        if not result.success or result.chunks is None:
            self._persist(conversation, turns, context)
            raise AllProvidersFailedError(result.attempted, result.last_error)

        parts: list[str] = []
        try:
            async for chunk in result.chunks:
                parts.append(chunk)
                queue.put_nowait(chunk)
        except Exception as exc:
            self._persist(conversation, turns, context)
            if isinstance(exc, ProviderError):
                raise
            raise ProviderError(result.provider or "unknown", str(exc)) from exc

        assistant_turn = ConversationTurn(
            sender=Sender.ASSISTANT,
            text="".join(parts).strip(),
            model_metadata={"provider": result.provider, "model": result.model},
        )
        turns.append(assistant_turn)
        context = replace(
            context,
            unsummarized_turns=(*context.unsummarized_turns, assistant_turn),
        )
        self._persist(conversation, turns, context)

        latency = int((time.perf_counter() - t0) * 1000)
        log.info(
            "Chat turn completed | provider={} model={} latency={}ms chunks={}",
            result.provider,
            result.model,
            latency,
            len(parts),
        )
        return TurnResult(
            conversation_id=conversation_id,
            user_turn=user_turn,
            assistant_turn=assistant_turn,
            provider=result.provider or "",
            model=result.model or model,
            latency_ms=latency,
            summarized=summarized,
        )

    def _persist(
        self,
        conversation: Conversation,
        turns: list[ConversationTurn],
        context: ConversationContext,
    ) -> None:
        conversation.turns = turns
        conversation.context = context
        conversation.updated_at = utcnow()
        self.repository.save_conversation(conversation)

    async def _related_context(
        self,
        owner_id: str,
        conversation_id: str,
        entity_id: str | None,
        text: str,
    ) -> str:
        if not entity_id or self.similarity_index is None:
            return ""
        try:
            matches = await self.similarity_index.query(owner_id, entity_id, text, self.grounding_k)
        except EmbeddingError as exc:
            turn_logger(owner_id, conversation_id).warning(
                "Similarity lookup failed, continuing without it | entity={} error={}",
                entity_id,
                exc,
            )
            return ""
        return format_matches(matches)
