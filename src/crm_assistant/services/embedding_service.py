"""OpenAI embedding backend."""

from openai import AsyncOpenAI

from crm_assistant.config import Settings


class OpenAIEmbeddingBackend:
    """OpenAI implementation of ``IEmbeddingBackend``."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
    ):
        """
        Initialize the embedding backend.

        Args:
            client: Async OpenAI client
            model: Embedding model name
            dimensions: Requested embedding dimensions
        """
        self.client = client
        self.model = model
        self._dimensions = dimensions

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIEmbeddingBackend":
        if not settings.resolved_embedding_api_key:
            raise ValueError("No embedding API key. Set EMBEDDING_API_KEY or OPENAI_API_KEY.")
        return cls(
            client=AsyncOpenAI(api_key=settings.resolved_embedding_api_key),
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
        )

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding for a single text."""
        response = await self.client.embeddings.create(
            model=self.model,
            input=text,
            dimensions=self._dimensions,
        )
        return [float(x) for x in response.data[0].embedding]

    @property
    def dimension(self) -> int:
        """Get embedding dimension."""
        return self._dimensions
