"""HTTP request/response schemas (Pydantic models) for the REST API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class SendMessageRequest(BaseModel):
    """Request body for POST /chat/send.

    The owner is taken from the bearer token, not the body.
    """

    conversation_id: str = Field(min_length=1, description="Conversation to append to")
    message: str = Field(description="The new user message")
    model_name: str | None = Field(
        default=None, description="Primary model; the configured default when omitted"
    )
    entity_id: str | None = Field(
        default=None, description="CRM contact the message is about; grounds the reply"
    )


class TurnResponse(BaseModel):
    """A single persisted turn."""

    sender: str
    text: str
    timestamp: datetime
    model_metadata: dict | None = None


class ConversationSummaryResponse(BaseModel):
    """A single conversation in the listing."""

    conversation_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    has_summary: bool


class ConversationResponse(BaseModel):
    """Full conversation with its display log and current summary."""

    conversation_id: str
    title: str
    turns: list[TurnResponse]
    summary: str = ""
    last_summarized_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class UpdateTitleRequest(BaseModel):
    """Request body for PUT /chat/conversations/{id}/title."""

    title: str


# ---------------------------------------------------------------------------
# Similarity search
# ---------------------------------------------------------------------------


class SimilarSearchRequest(BaseModel):
    """Request body for POST /search/similar."""

    entity_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    k: int | None = Field(default=None, ge=1, le=50, description="Number of matches")


class SimilarityMatchResponse(BaseModel):
    id: str
    content_type: str
    text: str
    similarity: float
    source: str
    tags: list[str] = Field(default_factory=list)
    timestamp: datetime


class IndexEntityResponse(BaseModel):
    """Response from POST /search/index/{entity_id}."""

    entity_id: str
    indexed: int


# ---------------------------------------------------------------------------
# Models / providers
# ---------------------------------------------------------------------------


class ModelInfoResponse(BaseModel):
    name: str
    provider: str
    available: bool
    fallbacks: list[str] = Field(default_factory=list)


class ProviderStatusResponse(BaseModel):
    name: str
    display_name: str
    models: list[str]
    priority: int
    enabled: bool
    consecutive_failures: int


class AvailableModelsResponse(BaseModel):
    """Response from GET /models."""

    models: list[ModelInfoResponse]
    providers: list[ProviderStatusResponse]
