"""Provider routing, summarization, similarity search and persistence services."""

from crm_assistant.services.context_summarizer import ContextSummarizer, RouterTextGenerator
from crm_assistant.services.conversation_store import InMemoryStore, SQLiteStore
from crm_assistant.services.generation_router import GenerationRouter
from crm_assistant.services.provider_registry import ProviderRegistry, default_providers
from crm_assistant.services.rate_limiter import RateLimiter
from crm_assistant.services.similarity_index import SimilarityIndex

__all__ = [
    "ContextSummarizer",
    "GenerationRouter",
    "InMemoryStore",
    "ProviderRegistry",
    "RateLimiter",
    "RouterTextGenerator",
    "SQLiteStore",
    "SimilarityIndex",
    "default_providers",
]
