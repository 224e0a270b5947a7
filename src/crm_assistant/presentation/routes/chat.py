"""Chat routes: streaming send, history, conversation fetch/delete/rename."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse
from loguru import logger

from crm_assistant.application.exceptions import (
    AssistantError,
    UnknownModelError,
    ValidationError,
)
from crm_assistant.application.use_cases.chat import ChatUseCase, TurnResult
from crm_assistant.domain.models import Conversation, ConversationTurn
from crm_assistant.presentation.auth import AuthenticatedUser, get_current_user
from crm_assistant.presentation.schemas import (
    ConversationResponse,
    ConversationSummaryResponse,
    SendMessageRequest,
    TurnResponse,
    UpdateTitleRequest,
)
from crm_assistant.services.rate_limiter import RateLimiter

router = APIRouter(tags=["chat"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _turn_response(turn: ConversationTurn) -> TurnResponse:
    return TurnResponse(
        sender=str(turn.sender),
        text=turn.text,
        timestamp=turn.timestamp,
        model_metadata=turn.model_metadata,
    )


def _conversation_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        conversation_id=conversation.conversation_id,
        title=conversation.title,
        turns=[_turn_response(t) for t in conversation.turns],
        summary=conversation.context.summary,
        last_summarized_at=conversation.context.last_summarized_at,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _annotation(result: TurnResult) -> dict:
    return {
        "conversation_id": result.conversation_id,
        "provider": result.provider,
        "model": result.model,
        "latency_ms": result.latency_ms,
        "summarized": result.summarized,
        "turns": [
            _turn_response(result.user_turn).model_dump(mode="json"),
            _turn_response(result.assistant_turn).model_dump(mode="json"),
        ],
    }


async def _chain(first, rest: AsyncIterator) -> AsyncIterator:
    yield first
    async for item in rest:
        yield item


# ---------------------------------------------------------------------------
# Send (streaming, Vercel AI Data Stream Protocol)
# ---------------------------------------------------------------------------


@router.post("/chat/send")
async def send_message(
    request: SendMessageRequest,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Send a message and receive the streamed answer.

    Stream lines follow the Vercel AI Data Stream Protocol:
    - ``0:"text chunk"``: streamed text
    - ``2:[{...}]``: the persisted turn pair with provider, model and latency
    - ``3:"message"``: the stream broke after it started
    - ``d:{"finishReason": ...}``: end of stream

    Failures before the first chunk (validation, rate limit, every provider
    failing) are returned as ordinary HTTP errors instead.
    """
    uc: ChatUseCase = raw_request.app.state.chat_uc
    limiter: RateLimiter = raw_request.app.state.rate_limiter
    user_id = current_user.user_id

    reservation = limiter.acquire(user_id)
    logger.info(
        "POST /chat/send | user={} conversation={} model={} msg={}",
        user_id,
        request.conversation_id,
        request.model_name,
        request.message[:60],
    )

    stream = uc.send_message(
        user_id,
        request.conversation_id,
        request.message,
        request.model_name,
        request.entity_id,
    )
    try:
        first = await anext(stream)
    except (ValidationError, UnknownModelError):
        # rejected before anything was persisted
        limiter.release(reservation)
        raise

    async def event_generator():
        finish_reason = "stop"
        try:
            async for item in _chain(first, stream):
                if isinstance(item, TurnResult):
                    yield f"2:{json.dumps([_annotation(item)])}\n"
                else:
                    yield f"0:{json.dumps(item)}\n"
        except AssistantError as exc:
            logger.warning("Stream aborted | user={} error={}", user_id, exc)
            finish_reason = "error"
            yield f"3:{json.dumps(str(exc))}\n"
        yield f"d:{json.dumps({'finishReason': finish_reason})}\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.get("/chat/history", response_model=list[ConversationSummaryResponse])
async def chat_history(
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """List the caller's conversations, newest first."""
    uc: ChatUseCase = raw_request.app.state.chat_uc
    return [
        ConversationSummaryResponse(
            conversation_id=s.conversation_id,
            title=s.title,
            created_at=s.created_at,
            updated_at=s.updated_at,
            message_count=s.message_count,
            has_summary=s.has_summary,
        )
        for s in uc.list_conversations(current_user.user_id)
    ]


@router.get("/chat/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Full turn log of one conversation (summaries never replace stored turns)."""
    uc: ChatUseCase = raw_request.app.state.chat_uc
    return _conversation_response(uc.get_conversation(current_user.user_id, conversation_id))


@router.delete("/chat/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    uc: ChatUseCase = raw_request.app.state.chat_uc
    uc.delete_conversation(current_user.user_id, conversation_id)
    return Response(status_code=204)


@router.put("/chat/conversations/{conversation_id}/title", response_model=ConversationResponse)
async def update_title(
    conversation_id: str,
    request: UpdateTitleRequest,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Rename a conversation (1-100 characters after trimming)."""
    uc: ChatUseCase = raw_request.app.state.chat_uc
    conversation = await uc.update_title(current_user.user_id, conversation_id, request.title)
    logger.info(
        "PUT /chat/conversations/{}/title | user={} title={}",
        conversation_id,
        current_user.user_id,
        conversation.title,
    )
    return _conversation_response(conversation)
