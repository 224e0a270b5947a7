"""Domain service interfaces (ports).

These protocols define the contracts that infrastructure implementations
must satisfy. The application layer depends on these abstractions,
not on concrete classes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from typing import Protocol, runtime_checkable

from crm_assistant.domain.models import (
    ChatMessage,
    ContentType,
    Conversation,
    ConversationSummary,
    ConversationTurn,
    CrmContext,
    EmbeddedItem,
    EntitySnapshot,
    SimilarityMatch,
)

# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------


@runtime_checkable
class ITokenEstimator(Protocol):
    """Interface for token counting.

    Implementations: TokenEstimator (characters / 4).
    """

    def estimate_tokens(self, text: str) -> int: ...

    def estimate_turn_tokens(self, turn: ConversationTurn) -> int: ...

    def estimate_turns_tokens(self, turns: Iterable[ConversationTurn]) -> int: ...


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@runtime_checkable
class IGenerationBackend(Protocol):
    """One provider's streaming text-generation call.

    Implementations: PydanticAIBackend (OpenAI / Mistral), test stubs.
    Errors surface as exceptions, at the latest when the first chunk is pulled.
    """

    def invoke(
        self,
        model_id: str,
        messages: list[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]: ...


@runtime_checkable
class ITextGenerator(Protocol):
    """Non-streaming text generation used for summaries.

    Implementations: RouterTextGenerator, test stubs.
    """

    async def generate_text(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        model_id: str | None = None,
    ) -> str: ...


# ---------------------------------------------------------------------------
# Embeddings / similarity
# ---------------------------------------------------------------------------


@runtime_checkable
class IEmbeddingBackend(Protocol):
    """Interface for text embedding.

    Implementations: OpenAIEmbeddingBackend, test stubs.
    """

    async def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class ISimilarityIndex(Protocol):
    """Nearest-neighbour lookup over indexed entity content.

    Implementations: SimilarityIndex (brute-force cosine scan).
    """

    async def store(
        self,
        owner_id: str,
        entity_id: str,
        content_type: ContentType,
        text: str,
        *,
        source: str,
        tags: Iterable[str] = (),
        importance: float = 1.0,
    ) -> EmbeddedItem: ...

    async def query(
        self, owner_id: str, entity_id: str, query_text: str, k: int = 5
    ) -> list[SimilarityMatch]: ...


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@runtime_checkable
class IConversationRepository(Protocol):
    """Conversation persistence.

    Implementations: InMemoryStore, SQLiteStore.
    """

    def find_conversation(self, owner_id: str, conversation_id: str) -> Conversation | None: ...

    def save_conversation(self, conversation: Conversation) -> None: ...

    def list_conversations(self, owner_id: str) -> list[ConversationSummary]: ...

    def delete_conversation(self, owner_id: str, conversation_id: str) -> bool: ...


@runtime_checkable
class IEmbeddedItemRepository(Protocol):
    """Embedded item persistence.

    Implementations: InMemoryStore, SQLiteStore.
    """

    def find_embedded_items(self, owner_id: str, entity_id: str) -> list[EmbeddedItem]: ...

    def insert_embedded_item(self, item: EmbeddedItem) -> None: ...

    def delete_embedded_items(self, owner_id: str, entity_id: str) -> int: ...


# ---------------------------------------------------------------------------
# CRM data
# ---------------------------------------------------------------------------


@runtime_checkable
class ICrmDataSource(Protocol):
    """Read-only access to the CRM records owned by the document store.

    Implementations: InMemoryCrmDataSource.
    """

    def get_crm_context(self, owner_id: str) -> CrmContext | None: ...

    def get_entity_snapshot(self, owner_id: str, entity_id: str) -> EntitySnapshot | None: ...
