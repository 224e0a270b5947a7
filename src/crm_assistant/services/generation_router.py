"""Generation router: primary model first, then ranked fallbacks.

A candidate counts as successful once its first non-empty chunk arrives
within the timeout. The caller then receives a single-consumption stream that
replays that chunk followed by the rest of the provider's output. A stream that
then goes quiet for longer than the same timeout fails with
``GenerationTimeoutError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping

from loguru import logger

from crm_assistant.application.exceptions import (
    AllProvidersFailedError,
    GenerationTimeoutError,
    ProviderError,
)
from crm_assistant.domain.models import GenerationOptions, GenerationResult
from crm_assistant.domain.protocols import IGenerationBackend
from crm_assistant.services.provider_registry import ProviderRegistry

DEFAULT_TIMEOUT_SECONDS = 30.0

QUOTA_MARKERS = (
    "quota",
    "rate_limit",
    "rate limit",
    "ratelimit",
    "resource_exhausted",
    "resource exhausted",
    "too many requests",
    "empty response",
)


def is_quota_error(exc: BaseException) -> bool:
    """True for quota / rate-limit / resource-exhausted / empty-response failures."""
    if getattr(exc, "status_code", None) == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in QUOTA_MARKERS)


async def _first_chunk(stream: AsyncIterator[str]) -> str:
    """Pull until a non-blank chunk arrives. Blank-only output is an empty response."""
    async for chunk in stream:
        if chunk and chunk.strip():
            return chunk
    raise ProviderError("stream", "empty response")


async def _replay(
    first: str,
    rest: AsyncIterator[str],
    provider_name: str,
    idle_timeout: float,
) -> AsyncIterator[str]:
    """Yield *first*, then the rest of the stream. Each later pull is time-limited."""
    yield first
    while True:
        try:
            async with asyncio.timeout(idle_timeout):
                chunk = await anext(rest)
        except StopAsyncIteration:
            return
        except TimeoutError:
            await _close(rest)
            logger.warning(
                "Generation stalled mid-stream | provider={} timeout={}s",
                provider_name,
                idle_timeout,
            )
            raise GenerationTimeoutError(provider_name, idle_timeout) from None
        if chunk:
            yield chunk


async def _close(stream: AsyncIterator[str]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Ignoring error while closing failed stream: {}", exc)


class GenerationRouter:
    """Routes a request across providers with fallback and circuit breaking.

    Parameters
    ----------
    registry:
        Shared provider table; the router reads enabled flags from it and
        reports quota-class failures back to it.
    backends:
        Provider name → backend performing the actual call.
    timeout_seconds:
        Per-candidate limit for the first chunk, and the inactivity limit
        between later chunks. A first-chunk timeout advances to the
        next candidate; the same candidate is never retried.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        backends: Mapping[str, IGenerationBackend],
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.registry = registry
        self.backends = dict(backends)
        self.timeout_seconds = timeout_seconds

    def candidates_for(self, primary_model: str, fallback_models: list[str] | None = None) -> list[str]:
        """Primary model followed by fallbacks, without duplicates.

        Raises:
            UnknownModelError: If no provider lists *primary_model*.
        """
        self.registry.owner_of(primary_model)
        if fallback_models is None:
            fallback_models = self.registry.fallback_models_for(primary_model)
        ordered: list[str] = []
        for model in [primary_model, *fallback_models]:
            if model not in ordered:
                ordered.append(model)
        return ordered

    async def generate(
        self,
        primary_model: str,
        options: GenerationOptions,
        fallback_models: list[str] | None = None,
    ) -> GenerationResult:
        """Try each candidate in order and return the first that starts streaming.

        Raises:
            UnknownModelError: If no provider lists *primary_model*.
        """
        candidates = self.candidates_for(primary_model, fallback_models)
        attempted: list[str] = []
        last_error: str | None = None

        for model in candidates:
            try:
                provider = self.registry.owner_of(model)
            except LookupError:
                logger.warning("Skipping fallback with no provider | model={}", model)
                continue
            if not provider.enabled:
                logger.info("Skipping disabled provider | provider={} model={}", provider.name, model)
                continue
            backend = self.backends.get(provider.name)
            if backend is None:
                logger.warning("No backend configured | provider={}", provider.name)
                continue

            attempted.append(model)
            try:
                chunks = await self._start(provider.name, backend, model, options)
            except Exception as exc:  # noqa: BLE001
                last_error = str(exc)
                if is_quota_error(exc):
                    self.registry.record_failure(provider.name)
                logger.warning(
                    "Generation failed | provider={} model={} error={}",
                    provider.name,
                    model,
                    exc,
                )
                continue

            self.registry.record_success(provider.name)
            logger.info("Generation started | provider={} model={}", provider.name, model)
            return GenerationResult(
                success=True,
                chunks=chunks,
                provider=provider.name,
                model=model,
                attempted=attempted,
            )

        error = AllProvidersFailedError(attempted, last_error)
        logger.error("{}", error)
        return GenerationResult(
            success=False, error=str(error), last_error=last_error, attempted=attempted
        )

    async def _start(
        self,
        provider_name: str,
        backend: IGenerationBackend,
        model: str,
        options: GenerationOptions,
    ) -> AsyncIterator[str]:
        stream = backend.invoke(model, options.messages, options.temperature, options.max_tokens)
        try:
            # asyncio.timeout keeps the pull in the current task, so the
            # provider stream can be resumed by the consumer afterwards.
            async with asyncio.timeout(self.timeout_seconds):
                first = await _first_chunk(stream)
        except TimeoutError:
            await _close(stream)
            raise GenerationTimeoutError(provider_name, self.timeout_seconds) from None
        except ProviderError as exc:
            await _close(stream)
            raise ProviderError(provider_name, exc.cause) from None
        except Exception:
            await _close(stream)
            raise
        return _replay(first, stream, provider_name, self.timeout_seconds)
