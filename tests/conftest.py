"""Shared fixtures for assistant tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from crm_assistant.config import Settings
from crm_assistant.services.conversation_store import InMemoryStore
from crm_assistant.services.generation_router import GenerationRouter
from crm_assistant.services.provider_registry import ProviderRegistry
from helpers import ScriptedBackend


def pytest_configure(config):
    """Set pytest-asyncio mode to auto so async test functions work without markers."""
    config.option.asyncio_mode = "auto"


@pytest.fixture()
def registry() -> ProviderRegistry:
    """Default providers: openai (gpt-4o-mini, priority 1), mistral (mistral-large-latest, 2)."""
    return ProviderRegistry()


@pytest.fixture()
def backend() -> ScriptedBackend:
    """One scripted backend serving every provider; scripts are keyed by model."""
    return ScriptedBackend()


@pytest.fixture()
def router(registry: ProviderRegistry, backend: ScriptedBackend) -> GenerationRouter:
    return GenerationRouter(
        registry,
        {"openai": backend, "mistral": backend},
        timeout_seconds=0.5,
    )


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    """Settings that never read the real .env file. Auth is off."""
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        mistral_api_key="test-key",
        embedding_api_key="test-key",
        chat_db_path=tmp_path / "chat.sqlite",
        generation_timeout_seconds=0.5,
        auth_enabled=False,
        observability="off",
    )
