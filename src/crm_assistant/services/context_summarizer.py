"""Rolling conversation summaries under a token budget.

A conversation is either *direct* (no summary, every unsummarized turn fits
under the threshold) or *summarized* (a cumulative summary plus a short raw
tail). ``reconcile`` moves a context from over-budget back under it by folding
everything except the newest turn into the summary.
"""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import UTC, datetime

from loguru import logger

from crm_assistant.application.exceptions import AllProvidersFailedError, SummarizationError
from crm_assistant.domain.models import (
    ChatMessage,
    ConversationContext,
    ConversationTurn,
    GenerationOptions,
    Sender,
)
from crm_assistant.domain.protocols import ITextGenerator, ITokenEstimator
from crm_assistant.domain.tokens import TokenEstimator
from crm_assistant.services.generation_router import GenerationRouter

SUMMARY_PROMPT = """\
Summarize the following conversation in a concise way that captures the key points, \
decisions, and context that would be useful for future interactions. Focus on:
- Main topics discussed
- Key decisions or agreements made
- Important context or background information
- Any action items or follow-ups needed
"""

MERGE_INSTRUCTION = """\

There is already a previous summary of the earlier part of this conversation:
"{previous}"
Write one new comprehensive summary that keeps everything important from the \
previous summary and adds the new conversation content below. Do not drop \
earlier context.
"""

SUMMARY_TURN_TEMPLATE = "[Previous conversation summary: {summary}]"


_PLACEHOLDER_LINE = re.compile(
    r"^Previous conversation with (\d+) (?:additional )?messages\. Key topics discussed\.$"
)


def placeholder_summary(message_count: int, previous: str = "") -> str:
    """Deterministic summary used when the generator fails.

    An earlier placeholder line in *previous* is replaced, with its count
    carried over, so repeated failures do not grow the summary.
    """
    kept: list[str] = []
    for line in previous.splitlines():
        match = _PLACEHOLDER_LINE.match(line.strip())
        if match:
            message_count += int(match.group(1))
        elif line.strip():
            kept.append(line)
    if kept:
        return (
            "\n".join(kept)
            + f"\nPrevious conversation with {message_count} additional messages. "
            "Key topics discussed."
        )
    return f"Previous conversation with {message_count} messages. Key topics discussed."


def _transcript(turns: list[ConversationTurn] | tuple[ConversationTurn, ...]) -> str:
    return "\n".join(f"{turn.sender}: {turn.text}" for turn in turns)


class RouterTextGenerator:
    """``ITextGenerator`` over the generation router: collects the whole stream.

    ``model_id`` is the default; a caller may route one summary through the
    model of the turn being processed instead.
    """

    def __init__(
        self,
        router: GenerationRouter,
        model_id: str,
        fallback_models: list[str] | None = None,
    ) -> None:
        self.router = router
        self.model_id = model_id
        self.fallback_models = fallback_models

    async def generate_text(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        model_id: str | None = None,
    ) -> str:
        options = GenerationOptions(
            messages=[ChatMessage(role="user", content=prompt)],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        model = model_id or self.model_id
        fallbacks = self.fallback_models if model == self.model_id else None
        result = await self.router.generate(model, options, fallbacks)
        if not result.success or result.chunks is None:
            raise AllProvidersFailedError(result.attempted, result.last_error)
        parts = [chunk async for chunk in result.chunks]
        return "".join(parts).strip()


class ContextSummarizer:
    """Keeps a conversation's generation context under a token threshold.

    Parameters
    ----------
    text_generator:
        Any ``ITextGenerator``; a router-backed one in production, a stub in tests.
    estimator:
        Token estimator shared with the orchestrator.
    max_summary_tokens / temperature:
        Generation settings for the summary call.
    """

    def __init__(
        self,
        text_generator: ITextGenerator,
        estimator: ITokenEstimator | None = None,
        *,
        summary_prompt: str = SUMMARY_PROMPT,
        max_summary_tokens: int = 500,
        temperature: float = 0.3,
    ) -> None:
        self.text_generator = text_generator
        self.estimator = estimator or TokenEstimator()
        self.summary_prompt = summary_prompt
        self.max_summary_tokens = max_summary_tokens
        self.temperature = temperature

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def context_tokens(self, context: ConversationContext) -> int:
        return self.estimator.estimate_tokens(
            context.summary
        ) + self.estimator.estimate_turns_tokens(context.unsummarized_turns)

    def needs_summarization(self, context: ConversationContext, token_threshold: int) -> bool:
        return self.context_tokens(context) > token_threshold

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        context: ConversationContext,
        token_threshold: int,
        model_id: str | None = None,
    ) -> ConversationContext:
        """Return a context that fits *token_threshold*, summarizing at most once.

        The newest turn is always kept verbatim. A single turn that alone
        exceeds the budget is left as-is (the budget is a soft target).
        Never raises on summary failure; a placeholder summary is used instead.
        *model_id* routes the summary call, falling back to the generator's default.
        """
        total = self.context_tokens(context)
        if total <= token_threshold:
            return context

        turns = context.unsummarized_turns
        if len(turns) <= 1:
            logger.debug(
                "Context over budget but nothing to summarize | tokens={} threshold={}",
                total,
                token_threshold,
            )
            return context

        to_summarize, keep = turns[:-1], turns[-1:]
        summary = await self._summarize(list(to_summarize), context.summary, model_id)

        logger.info(
            "Summarized conversation context | turns={} tokens_before={} summary_tokens={}",
            len(to_summarize),
            total,
            self.estimator.estimate_tokens(summary),
        )
        return replace(
            context,
            summary=summary,
            summary_token_count=self.estimator.estimate_tokens(summary),
            unsummarized_turns=tuple(keep),
            last_summarized_at=datetime.now(UTC),
        )

    def build_summary_prompt(self, turns: list[ConversationTurn], previous_summary: str = "") -> str:
        prompt = self.summary_prompt
        if previous_summary:
            prompt += MERGE_INSTRUCTION.format(previous=previous_summary)
        return f"{prompt}\nConversation:\n{_transcript(turns)}"

    async def _summarize(
        self,
        turns: list[ConversationTurn],
        previous_summary: str,
        model_id: str | None = None,
    ) -> str:
        prompt = self.build_summary_prompt(turns, previous_summary)
        try:
            summary = await self.text_generator.generate_text(
                prompt,
                max_tokens=self.max_summary_tokens,
                temperature=self.temperature,
                model_id=model_id,
            )
            if not summary.strip():
                raise SummarizationError("summary generator returned no text")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Summary generation failed, using placeholder | error={}", exc)
            return placeholder_summary(len(turns), previous_summary)
        return summary.strip()

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------

    @staticmethod
    def build_prompt_messages(
        system_prompt: str,
        context: ConversationContext,
        turns: list[ConversationTurn],
        *,
        recent_with_summary: int = 3,
        recent_without_summary: int = 8,
    ) -> list[ChatMessage]:
        """System prompt, optional summary turn, then the last K raw turns.

        K is smaller when a summary exists, since the summary carries the
        older context.
        """
        messages = [ChatMessage(role="system", content=system_prompt)]
        if context.summary:
            messages.append(
                ChatMessage(
                    role="assistant",
                    content=SUMMARY_TURN_TEMPLATE.format(summary=context.summary),
                )
            )
            recent = turns[-recent_with_summary:] if recent_with_summary > 0 else []
        else:
            recent = turns[-recent_without_summary:] if recent_without_summary > 0 else []

        for turn in recent:
            role = "user" if turn.sender == Sender.USER else "assistant"
            messages.append(ChatMessage(role=role, content=turn.text))
        return messages
