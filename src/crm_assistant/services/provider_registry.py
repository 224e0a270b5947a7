"""Provider registry: which backend serves which model, and circuit-breaker state."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import replace

from loguru import logger

from crm_assistant.application.exceptions import UnknownModelError
from crm_assistant.domain.models import Provider

DEFAULT_FAILURE_THRESHOLD = 3


def default_providers() -> list[Provider]:
    """The providers wired in by default, lowest priority value tried first."""
    return [
        Provider(
            name="openai",
            display_name="OpenAI",
            supported_models=("gpt-4o-mini",),
            priority=1,
        ),
        Provider(
            name="mistral",
            display_name="Mistral",
            supported_models=("mistral-large-latest",),
            priority=2,
        ),
    ]


class ProviderRegistry:
    """Process-wide table of providers, mutated in place.

    ``record_failure`` counts consecutive quota-class failures; reaching
    ``failure_threshold`` disables the provider. Only ``enable`` turns it back
    on. Whether a success clears the counter is controlled by
    ``reset_on_success``.
    """

    def __init__(
        self,
        providers: Iterable[Provider] | None = None,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_on_success: bool = True,
    ) -> None:
        ordered = sorted(
            providers if providers is not None else default_providers(),
            key=lambda p: p.priority,
        )
        self._providers: dict[str, Provider] = {}
        for provider in ordered:
            if provider.name in self._providers:
                raise ValueError(f"Duplicate provider name: {provider.name}")
            self._providers[provider.name] = provider
        self.failure_threshold = failure_threshold
        self.reset_on_success = reset_on_success
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise KeyError(f"Unknown provider: {name}") from None

    def owner_of(self, model: str) -> Provider:
        """Return the provider that lists *model*, whether or not it is enabled."""
        for provider in self._providers.values():
            if model in provider.supported_models:
                return provider
        raise UnknownModelError(model)

    def provider_for_model(self, model: str) -> Provider:
        """Return the enabled provider serving *model*."""
        for provider in self._providers.values():
            if provider.enabled and model in provider.supported_models:
                return provider
        raise UnknownModelError(model)

    def fallback_models_for(self, model: str) -> list[str]:
        """Models of every other enabled provider, by ascending priority.

        The model's own provider is excluded so an exhausted provider is not
        retried through a sibling model.
        """
        primary = self.owner_of(model)
        fallbacks: list[str] = []
        for provider in self._providers.values():
            if provider.enabled and provider.name != primary.name:
                fallbacks.extend(provider.supported_models)
        return fallbacks

    def available_models(self) -> list[str]:
        models: list[str] = []
        for provider in self._providers.values():
            if provider.enabled:
                models.extend(provider.supported_models)
        return models

    def is_model_available(self, model: str) -> bool:
        try:
            self.provider_for_model(model)
        except UnknownModelError:
            return False
        return True

    def snapshot(self) -> list[Provider]:
        """Copies of the current provider state, in priority order."""
        with self._lock:
            return [replace(p) for p in self._providers.values()]

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def record_failure(self, name: str) -> bool:
        """Count a quota-class failure. Returns True if the provider was disabled."""
        with self._lock:
            provider = self.get(name)
            provider.consecutive_failures += 1
            tripped = provider.enabled and provider.consecutive_failures >= self.failure_threshold
            if tripped:
                provider.enabled = False
        if tripped:
            logger.error(
                "Circuit breaker opened | provider={} failures={}",
                name,
                provider.consecutive_failures,
            )
        else:
            logger.warning(
                "Provider failure recorded | provider={} failures={}/{}",
                name,
                provider.consecutive_failures,
                self.failure_threshold,
            )
        return tripped

    def record_success(self, name: str) -> None:
        with self._lock:
            provider = self.get(name)
            if self.reset_on_success:
                provider.consecutive_failures = 0

    def reset_failures(self, name: str) -> None:
        with self._lock:
            self.get(name).consecutive_failures = 0
        logger.info("Provider failure counter reset | provider={}", name)

    def enable(self, name: str) -> None:
        """Operator action: re-enable a provider and clear its counter."""
        with self._lock:
            provider = self.get(name)
            provider.enabled = True
            provider.consecutive_failures = 0
        logger.info("Provider enabled | provider={}", name)

    def disable(self, name: str) -> None:
        with self._lock:
            self.get(name).enabled = False
        logger.warning("Provider disabled | provider={}", name)
