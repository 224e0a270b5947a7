"""Domain entities and value objects.

These are the core data structures of the CRM assistant domain,
independent of any infrastructure or framework concerns.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Conversation entities
# ---------------------------------------------------------------------------


class Sender(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    """One message in a conversation. Immutable once appended."""

    sender: Sender
    text: str
    timestamp: datetime = field(default_factory=utcnow)
    model_metadata: dict | None = None


@dataclass(frozen=True)
class ConversationContext:
    """Generation input for a conversation: rolling summary plus a raw tail.

    ``unsummarized_turns`` is always a suffix of the conversation's full turn log.
    """

    summary: str = ""
    summary_token_count: int = 0
    unsummarized_turns: tuple[ConversationTurn, ...] = ()
    last_summarized_at: datetime | None = None

    @property
    def is_summarized(self) -> bool:
        return bool(self.summary)


def default_title(now: datetime | None = None) -> str:
    return f"Chat - {(now or utcnow()):%Y-%m-%d}"


@dataclass
class Conversation:
    """A persisted conversation: full display log plus generation context."""

    owner_id: str
    conversation_id: str
    title: str = field(default_factory=default_title)
    turns: list[ConversationTurn] = field(default_factory=list)
    context: ConversationContext = field(default_factory=ConversationContext)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ConversationSummary:
    """Listing row for a user's conversations."""

    conversation_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    has_summary: bool


# ---------------------------------------------------------------------------
# Providers / generation
# ---------------------------------------------------------------------------


@dataclass
class Provider:
    """A text-generation backend and the models it serves.

    Mutated in place by the registry; never persisted.
    """

    name: str
    supported_models: tuple[str, ...]
    priority: int
    enabled: bool = True
    consecutive_failures: int = 0
    display_name: str = ""

    def __post_init__(self) -> None:
        if not self.supported_models:
            raise ValueError(f"Provider {self.name!r} must support at least one model")


class ChatMessage(BaseModel):
    """A single role/content pair sent to a generation backend."""

    role: str = Field(description="Message role: 'system', 'user' or 'assistant'")
    content: str = Field(description="Message content")


@dataclass
class GenerationOptions:
    """Per-request generation settings (the model is chosen by the router)."""

    messages: list[ChatMessage]
    temperature: float = 0.7
    max_tokens: int = 1000


@dataclass
class GenerationResult:
    """Outcome of a routed generation request.

    ``chunks`` can be consumed once; it is not restartable.
    """

    success: bool
    chunks: AsyncIterator[str] | None = None
    provider: str | None = None
    model: str | None = None
    error: str | None = None
    last_error: str | None = None
    attempted: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Similarity search
# ---------------------------------------------------------------------------


class ContentType(StrEnum):
    ACTIVITY = "activity"
    NOTE = "note"
    MESSAGE_HISTORY = "message_history"
    MEETING_NOTE = "meeting_note"
    PREFERENCE = "preference"


@dataclass(frozen=True)
class ItemMetadata:
    source: str
    tags: tuple[str, ...] = ()
    importance: float = 1.0
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EmbeddedItem:
    """Indexed content for one owner/entity pair. Immutable after creation."""

    id: str
    owner_id: str
    entity_id: str
    content_type: ContentType
    text: str
    embedding: tuple[float, ...]
    metadata: ItemMetadata


@dataclass(frozen=True)
class SimilarityMatch:
    item: EmbeddedItem
    similarity: float


# ---------------------------------------------------------------------------
# CRM snapshot (read-only view supplied by the CRM data collaborator)
# ---------------------------------------------------------------------------


@dataclass
class ContactInfo:
    name: str
    email: str
    company: str | None = None
    tags: list[str] = field(default_factory=list)
    note: str | None = None


@dataclass
class ActivityInfo:
    activity_type: str
    details: str
    timestamp: datetime
    entity_id: str | None = None


@dataclass
class CrmContext:
    """Business snapshot injected into the chat system prompt."""

    total_contacts: int = 0
    companies_count: int = 0
    tags_count: int = 0
    top_companies: list[tuple[str, int]] = field(default_factory=list)
    recent_contacts: list[ContactInfo] = field(default_factory=list)
    recent_activities: list[ActivityInfo] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


@dataclass
class SentMessageInfo:
    """A message previously generated for a contact."""

    content: str
    status: str
    generated_at: datetime


@dataclass
class EntitySnapshot:
    """Indexable content for one CRM entity (a contact)."""

    entity_id: str
    note: str | None = None
    tags: list[str] = field(default_factory=list)
    activities: list[ActivityInfo] = field(default_factory=list)
    sent_messages: list[SentMessageInfo] = field(default_factory=list)
