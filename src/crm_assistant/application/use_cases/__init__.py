"""Use-case layer: business logic decoupled from the HTTP transport."""

from crm_assistant.application.use_cases.chat import ChatUseCase, TurnResult

__all__ = ["ChatUseCase", "TurnResult"]
