"""PydanticAI-backed generation backends (one per provider)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

from loguru import logger
from pydantic_ai import Agent
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models import Model
from pydantic_ai.models.instrumented import InstrumentationSettings
from pydantic_ai.settings import ModelSettings

from crm_assistant.config import Settings
from crm_assistant.domain.models import ChatMessage
from crm_assistant.domain.protocols import IGenerationBackend
from crm_assistant.telemetry import get_instrumentation_settings

ModelFactory = Callable[[str], Model]


def build_history(messages: list[ChatMessage]) -> tuple[list[ModelMessage], str]:
    """Split role/content pairs into PydanticAI history plus the final user prompt.

    Consecutive system/user messages are merged into one ``ModelRequest`` so
    the history alternates request/response the way PydanticAI expects.
    """
    if not messages or messages[-1].role != "user":
        raise ValueError("The last message sent to a model must have role 'user'")

    history: list[ModelMessage] = []
    for msg in messages[:-1]:
        if msg.role == "assistant":
            history.append(ModelResponse(parts=[TextPart(content=msg.content)]))
            continue
        part = (
            SystemPromptPart(content=msg.content)
            if msg.role == "system"
            else UserPromptPart(content=msg.content)
        )
        if history and isinstance(history[-1], ModelRequest):
            history[-1] = ModelRequest(parts=[*history[-1].parts, part])
        else:
            history.append(ModelRequest(parts=[part]))
    return history, messages[-1].content


class PydanticAIBackend:
    """Streams text from any model PydanticAI can drive.

    ``model_factory`` maps a model ID to a configured PydanticAI ``Model``
    (provider client, API key). A fresh plain-text ``Agent`` is used per call.
    """

    def __init__(
        self,
        provider_name: str,
        model_factory: ModelFactory,
        instrument: InstrumentationSettings | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.model_factory = model_factory
        self.instrument = instrument

    async def invoke(
        self,
        model_id: str,
        messages: list[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        history, prompt = build_history(messages)
        agent_options: dict = {"model": self.model_factory(model_id), "output_type": str}
        if self.instrument is not None:
            agent_options["instrument"] = self.instrument
        agent: Agent[None, str] = Agent(**agent_options)
        settings = ModelSettings(temperature=temperature, max_tokens=max_tokens)

        logger.debug(
            "Invoking model | provider={} model={} messages={}",
            self.provider_name,
            model_id,
            len(messages),
        )
        async with agent.run_stream(
            prompt,
            message_history=history or None,
            model_settings=settings,
        ) as stream:
            async for chunk in stream.stream_text(delta=True):
                yield chunk


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _openai_factory(api_key: str) -> ModelFactory:
    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.openai import OpenAIProvider

    provider = OpenAIProvider(api_key=api_key)
    return lambda model_id: OpenAIChatModel(model_id, provider=provider)


def _mistral_factory(api_key: str) -> ModelFactory:
    from pydantic_ai.models.mistral import MistralModel
    from pydantic_ai.providers.mistral import MistralProvider

    provider = MistralProvider(api_key=api_key)
    return lambda model_id: MistralModel(model_id, provider=provider)


def create_backends(settings: Settings) -> dict[str, IGenerationBackend]:
    """Build a backend for every provider that has an API key configured.

    Providers without a key get no backend; the router skips them.
    """
    instrument = get_instrumentation_settings(settings)
    backends: dict[str, IGenerationBackend] = {}
    if settings.openai_api_key:
        backends["openai"] = PydanticAIBackend(
            "openai", _openai_factory(settings.openai_api_key), instrument
        )
    else:
        logger.warning("OPENAI_API_KEY not set; openai provider has no backend")
    if settings.mistral_api_key:
        backends["mistral"] = PydanticAIBackend(
            "mistral", _mistral_factory(settings.mistral_api_key), instrument
        )
    else:
        logger.warning("MISTRAL_API_KEY not set; mistral provider has no backend")
    return backends
