"""FastAPI application for the CRM assistant.

This module is a thin **presentation layer**: it wires services together at
startup and translates application exceptions into HTTP responses. All
business logic lives in ``application`` and ``services``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from crm_assistant import __version__
from crm_assistant.application.exceptions import (
    AllProvidersFailedError,
    ConversationNotFoundError,
    EmbeddingError,
    GenerationTimeoutError,
    ProviderError,
    RateLimitedError,
    UnknownModelError,
    ValidationError,
)
from crm_assistant.application.use_cases.chat import ChatUseCase
from crm_assistant.config import Settings, get_settings
from crm_assistant.domain.protocols import ICrmDataSource, IEmbeddingBackend, IGenerationBackend
from crm_assistant.domain.tokens import TokenEstimator
from crm_assistant.logging_config import setup_logging
from crm_assistant.presentation.routes import chat, models, search
from crm_assistant.services.context_summarizer import ContextSummarizer, RouterTextGenerator
from crm_assistant.services.conversation_store import SQLiteStore
from crm_assistant.services.crm_data import InMemoryCrmDataSource
from crm_assistant.services.embedding_service import OpenAIEmbeddingBackend
from crm_assistant.services.generation_backends import create_backends
from crm_assistant.services.generation_router import GenerationRouter
from crm_assistant.services.provider_registry import ProviderRegistry
from crm_assistant.services.rate_limiter import RateLimiter
from crm_assistant.services.similarity_index import SimilarityIndex
from crm_assistant.telemetry import setup_telemetry

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _error(status_code: int, exc: Exception, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)}, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Map application exceptions to HTTP status codes."""

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError):
        return _error(422, exc)

    @app.exception_handler(UnknownModelError)
    async def _unknown_model(_: Request, exc: UnknownModelError):
        return _error(422, exc)

    @app.exception_handler(ConversationNotFoundError)
    async def _not_found(_: Request, exc: ConversationNotFoundError):
        return _error(404, exc)

    @app.exception_handler(RateLimitedError)
    async def _rate_limited(_: Request, exc: RateLimitedError):
        return _error(429, exc, headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))})

    @app.exception_handler(GenerationTimeoutError)
    async def _timeout(_: Request, exc: GenerationTimeoutError):
        return _error(504, exc)

    @app.exception_handler(ProviderError)
    async def _provider(_: Request, exc: ProviderError):
        return _error(502, exc)

    @app.exception_handler(AllProvidersFailedError)
    async def _all_failed(_: Request, exc: AllProvidersFailedError):
        return _error(502, exc)

    @app.exception_handler(EmbeddingError)
    async def _embedding(_: Request, exc: EmbeddingError):
        return _error(502, exc)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    *,
    backends: Mapping[str, IGenerationBackend] | None = None,
    embedder: IEmbeddingBackend | None = None,
    crm_data: ICrmDataSource | None = None,
) -> FastAPI:
    """Build the application.

    ``backends``, ``embedder`` and ``crm_data`` replace the provider-backed
    defaults, which tests use to run without network access.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Set up and tear down services around the application lifetime."""
        settings.validate_runtime()

        store = SQLiteStore(settings.chat_db_path)
        store.connect()

        registry = ProviderRegistry(
            failure_threshold=settings.circuit_breaker_threshold,
            reset_on_success=settings.reset_failures_on_success,
        )
        router = GenerationRouter(
            registry,
            backends if backends is not None else create_backends(settings),
            timeout_seconds=settings.generation_timeout_seconds,
        )
        estimator = TokenEstimator()
        summarizer = ContextSummarizer(
            RouterTextGenerator(router, settings.default_model),
            estimator,
            max_summary_tokens=settings.summary_max_tokens,
            temperature=settings.summary_temperature,
        )
        crm = crm_data if crm_data is not None else InMemoryCrmDataSource()

        similarity_embedder = embedder
        if similarity_embedder is None and settings.resolved_embedding_api_key:
            similarity_embedder = OpenAIEmbeddingBackend.from_settings(settings)
        if similarity_embedder is None:
            logger.warning("No embedding API key; similarity search disabled")

        app.state.settings = settings
        app.state.store = store
        app.state.registry = registry
        app.state.rate_limiter = RateLimiter(
            max_messages=settings.rate_limit_max_messages,
            min_interval_seconds=settings.rate_limit_min_interval_seconds,
        )
        similarity_index = (
            SimilarityIndex(
                store,
                similarity_embedder,
                timeout_seconds=settings.embedding_timeout_seconds,
                crm_data=crm,
            )
            if similarity_embedder is not None
            else None
        )
        app.state.similarity_index = similarity_index
        app.state.chat_uc = ChatUseCase(
            store,
            router,
            summarizer,
            crm,
            default_model=settings.default_model,
            token_threshold=settings.token_threshold,
            max_response_tokens=settings.max_response_tokens,
            temperature=settings.chat_temperature,
            recent_turns_with_summary=settings.recent_turns_with_summary,
            recent_turns_without_summary=settings.recent_turns_without_summary,
            similarity_index=similarity_index,
            grounding_k=settings.similarity_default_k,
        )

        logger.info(
            "Application startup complete | providers={} default_model={}",
            [p.name for p in registry.snapshot()],
            settings.default_model,
        )
        yield

        await app.state.chat_uc.wait_idle()
        store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="CRM Assistant",
        description="Conversational assistant over CRM data with provider fallback.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(models.router)
    app.include_router(chat.router)
    app.include_router(search.router)

    # No-op when OBSERVABILITY=off
    setup_telemetry(app, settings)
    return app


def main() -> None:
    """Console entrypoint: configure logging and serve with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(level=settings.log_level, json=settings.log_json)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
