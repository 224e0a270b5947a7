"""Model listing, provider operator actions and health check."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger

from crm_assistant.domain.models import Provider
from crm_assistant.presentation.auth import AuthenticatedUser, get_current_user
from crm_assistant.presentation.schemas import (
    AvailableModelsResponse,
    ModelInfoResponse,
    ProviderStatusResponse,
)
from crm_assistant.services.provider_registry import ProviderRegistry

router = APIRouter(tags=["models"])


def _provider_status(provider: Provider) -> ProviderStatusResponse:
    return ProviderStatusResponse(
        name=provider.name,
        display_name=provider.display_name or provider.name,
        models=list(provider.supported_models),
        priority=provider.priority,
        enabled=provider.enabled,
        consecutive_failures=provider.consecutive_failures,
    )


def _get_provider(registry: ProviderRegistry, name: str) -> Provider:
    try:
        return registry.get(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {name}")


@router.get("/health")
async def health():
    """Simple liveness / readiness check."""
    return {"status": "ok"}


@router.get("/models", response_model=AvailableModelsResponse)
async def available_models(
    raw_request: Request,
    _current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Every known model with its availability and fallback chain, plus provider state."""
    registry: ProviderRegistry = raw_request.app.state.registry
    providers = registry.snapshot()
    models = [
        ModelInfoResponse(
            name=model,
            provider=provider.name,
            available=provider.enabled,
            fallbacks=registry.fallback_models_for(model),
        )
        for provider in providers
        for model in provider.supported_models
    ]
    return AvailableModelsResponse(
        models=models,
        providers=[_provider_status(p) for p in providers],
    )


@router.post("/providers/{name}/enable", response_model=ProviderStatusResponse)
async def enable_provider(
    name: str,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Re-enable a provider the circuit breaker disabled."""
    registry: ProviderRegistry = raw_request.app.state.registry
    _get_provider(registry, name)
    registry.enable(name)
    logger.info("POST /providers/{}/enable | user={}", name, current_user.user_id)
    return _provider_status(registry.get(name))


@router.post("/providers/{name}/reset", response_model=ProviderStatusResponse)
async def reset_provider(
    name: str,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Clear a provider's consecutive-failure counter without changing its enabled flag."""
    registry: ProviderRegistry = raw_request.app.state.registry
    _get_provider(registry, name)
    registry.reset_failures(name)
    logger.info("POST /providers/{}/reset | user={}", name, current_user.user_id)
    return _provider_status(registry.get(name))
