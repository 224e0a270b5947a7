"""Similarity search over per-entity CRM content (notes, activity, messages).

Brute-force cosine scan: item counts per entity are small because indexing
takes only recent activity. Callers depend on ``ISimilarityIndex``, so an
approximate-nearest-neighbour backend can replace this class.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

import numpy as np
from loguru import logger

from crm_assistant.application.exceptions import EmbeddingError
from crm_assistant.domain.models import (
    ContentType,
    EmbeddedItem,
    ItemMetadata,
    SimilarityMatch,
)
from crm_assistant.domain.protocols import (
    ICrmDataSource,
    IEmbeddedItemRepository,
    IEmbeddingBackend,
)

DEFAULT_TIMEOUT_SECONDS = 30.0
RECENT_ITEMS_PER_SOURCE = 10


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """``dot(a, b) / (|a| |b|)``; 0.0 when either vector has zero norm.

    Raises:
        ValueError: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vectors must have the same length ({va.size} != {vb.size})")
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def rank_matches(
    query_embedding: Sequence[float], items: Iterable[EmbeddedItem], k: int
) -> list[SimilarityMatch]:
    """Top *k* items by descending similarity, newest ``metadata.timestamp`` first on ties.

    Items whose embedding dimension differs from the query (indexed under an
    older embedding configuration) are skipped.
    """
    if k <= 0:
        return []
    dimension = len(query_embedding)
    matches: list[SimilarityMatch] = []
    for item in items:
        if len(item.embedding) != dimension:
            logger.warning(
                "Skipping item with mismatched embedding dimension | item={} dim={} expected={}",
                item.id,
                len(item.embedding),
                dimension,
            )
            continue
        matches.append(
            SimilarityMatch(item=item, similarity=cosine_similarity(query_embedding, item.embedding))
        )
    matches.sort(key=lambda m: (m.similarity, m.item.metadata.timestamp), reverse=True)
    return matches[:k]


def format_matches(matches: list[SimilarityMatch]) -> str:
    """Render matches as ``<content_type>: <text>`` lines for a prompt."""
    return "\n".join(f"{m.item.content_type}: {m.item.text}" for m in matches)


class SimilarityIndex:
    """Stores embedded content and answers top-k queries for one owner/entity."""

    def __init__(
        self,
        repository: IEmbeddedItemRepository,
        embedder: IEmbeddingBackend,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        crm_data: ICrmDataSource | None = None,
    ) -> None:
        self.repository = repository
        self.embedder = embedder
        self.timeout_seconds = timeout_seconds
        self.crm_data = crm_data

    async def _embed(self, text: str) -> list[float]:
        try:
            async with asyncio.timeout(self.timeout_seconds):
                embedding = await self.embedder.embed(text)
        except TimeoutError:
            raise EmbeddingError(
                f"Embedding timed out after {self.timeout_seconds:g}s"
            ) from None
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Failed to generate embedding: {exc}") from exc
        if not embedding:
            raise EmbeddingError("Embedding backend returned an empty vector")
        return [float(x) for x in embedding]

    async def store(
        self,
        owner_id: str,
        entity_id: str,
        content_type: ContentType,
        text: str,
        *,
        source: str,
        tags: Iterable[str] = (),
        importance: float = 1.0,
    ) -> EmbeddedItem:
        """Embed *text* and persist it. Nothing is stored if embedding fails.

        Duplicate calls store duplicate items.
        """
        embedding = await self._embed(text)
        item = EmbeddedItem(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            entity_id=entity_id,
            content_type=ContentType(content_type),
            text=text,
            embedding=tuple(embedding),
            metadata=ItemMetadata(
                source=source,
                tags=tuple(tags),
                importance=importance,
                timestamp=datetime.now(UTC),
            ),
        )
        self.repository.insert_embedded_item(item)
        logger.debug(
            "Stored embedded item | owner={} entity={} type={}",
            owner_id,
            entity_id,
            item.content_type,
        )
        return item

    async def query(
        self, owner_id: str, entity_id: str, query_text: str, k: int = 5
    ) -> list[SimilarityMatch]:
        """Return the *k* stored items most similar to *query_text*."""
        query_embedding = await self._embed(query_text)
        items = self.repository.find_embedded_items(owner_id, entity_id)
        if not items:
            return []
        matches = rank_matches(query_embedding, items, k)
        logger.debug(
            "Similarity query | owner={} entity={} scanned={} returned={}",
            owner_id,
            entity_id,
            len(items),
            len(matches),
        )
        return matches

    def delete_entity(self, owner_id: str, entity_id: str) -> int:
        """Cascade delete for a removed entity. Returns the number of items removed."""
        removed = self.repository.delete_embedded_items(owner_id, entity_id)
        logger.info("Deleted embedded items | owner={} entity={} count={}", owner_id, entity_id, removed)
        return removed

    async def index_entity(self, owner_id: str, entity_id: str) -> list[EmbeddedItem]:
        """Index an entity's note, recent activities and recent generated messages.

        Raises:
            RuntimeError: If the index was built without a CRM data source.
            LookupError: If the entity does not exist for this owner.
            EmbeddingError: On the first embedding failure (earlier items stay stored).
        """
        if self.crm_data is None:
            raise RuntimeError("SimilarityIndex has no CRM data source to index from")
        snapshot = self.crm_data.get_entity_snapshot(owner_id, entity_id)
        if snapshot is None:
            raise LookupError(f"Entity not found: {entity_id}")

        stored: list[EmbeddedItem] = []
        if snapshot.note:
            stored.append(
                await self.store(
                    owner_id,
                    entity_id,
                    ContentType.NOTE,
                    snapshot.note,
                    source="contact_note",
                    tags=snapshot.tags,
                )
            )

        activities = sorted(snapshot.activities, key=lambda a: a.timestamp, reverse=True)
        for activity in activities[:RECENT_ITEMS_PER_SOURCE]:
            stored.append(
                await self.store(
                    owner_id,
                    entity_id,
                    ContentType.ACTIVITY,
                    f"{activity.activity_type}: {activity.details}",
                    source="activity_log",
                    tags=[activity.activity_type],
                )
            )

        messages = sorted(snapshot.sent_messages, key=lambda m: m.generated_at, reverse=True)
        for message in messages[:RECENT_ITEMS_PER_SOURCE]:
            stored.append(
                await self.store(
                    owner_id,
                    entity_id,
                    ContentType.MESSAGE_HISTORY,
                    f"Previous message: {message.content}",
                    source="message_history",
                    tags=[message.status],
                )
            )

        logger.info("Indexed entity | owner={} entity={} items={}", owner_id, entity_id, len(stored))
        return stored
