"""Test doubles for the generation, summary and embedding collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from crm_assistant.domain.models import ChatMessage, ConversationTurn, Sender


@dataclass
class BackendCall:
    model_id: str
    messages: list[ChatMessage]
    temperature: float
    max_tokens: int


class Slow:
    """Script entry: wait *seconds* before producing *chunks*."""

    def __init__(self, seconds: float, chunks: tuple[str, ...] = ("late",)) -> None:
        self.seconds = seconds
        self.chunks = chunks


class ScriptedBackend:
    """``IGenerationBackend`` whose output per model is scripted.

    A script is a list of chunks (an ``Exception`` item is raised when reached,
    a ``Slow`` item sleeps and then yields its chunks),
    a bare ``Exception`` (raised on the first pull) or a ``Slow`` entry.
    Unscripted models stream ``default``.
    """

    def __init__(self, scripts: dict | None = None, default=("Hello", " world")) -> None:
        self.scripts = dict(scripts or {})
        self.default = default
        self.calls: list[BackendCall] = []

    @property
    def models_called(self) -> list[str]:
        return [c.model_id for c in self.calls]

    def invoke(self, model_id, messages, temperature, max_tokens) -> AsyncIterator[str]:
        self.calls.append(BackendCall(model_id, list(messages), temperature, max_tokens))
        return self._stream(self.scripts.get(model_id, self.default))

    async def _stream(self, script) -> AsyncIterator[str]:
        if isinstance(script, BaseException):
            raise script
        if isinstance(script, Slow):
            await asyncio.sleep(script.seconds)
            script = script.chunks
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, Slow):
                await asyncio.sleep(item.seconds)
                for chunk in item.chunks:
                    yield chunk
                continue
            yield item


class StubTextGenerator:
    """``ITextGenerator`` returning a fixed summary, or raising ``error``."""

    def __init__(self, summary: str = "User discussed the Acme renewal.", error: Exception | None = None):
        self.summary = summary
        self.error = error
        self.prompts: list[str] = []
        self.models: list[str | None] = []

    async def generate_text(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        model_id: str | None = None,
    ) -> str:
        self.prompts.append(prompt)
        self.models.append(model_id)
        if self.error is not None:
            raise self.error
        return self.summary


class StubEmbedder:
    """``IEmbeddingBackend`` mapping known texts to fixed vectors."""

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        fallback: Callable[[str], list[float]] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.vectors = dict(vectors or {})
        self.fallback = fallback or (lambda text: [float(len(text)), 1.0, 0.0])
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.vectors.get(text) or self.fallback(text)


def turn_with_tokens(sender: Sender, tokens: int, fill: str = "x") -> ConversationTurn:
    """A turn whose ``"<sender>: <text>"`` form estimates to exactly *tokens*."""
    prefix = len(f"{sender}: ")
    return ConversationTurn(sender=sender, text=fill * (tokens * 4 - prefix))
