"""Tests for cosine similarity, SimilarityIndex store/query and entity indexing."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from crm_assistant.application.exceptions import EmbeddingError
from crm_assistant.domain.models import (
    ActivityInfo,
    ContactInfo,
    ContentType,
    EmbeddedItem,
    ItemMetadata,
    SentMessageInfo,
)
from crm_assistant.domain.protocols import ISimilarityIndex
from crm_assistant.services.conversation_store import InMemoryStore
from crm_assistant.services.crm_data import InMemoryCrmDataSource
from crm_assistant.services.similarity_index import (
    SimilarityIndex,
    cosine_similarity,
    format_matches,
    rank_matches,
)
from helpers import StubEmbedder

VECTORS = {
    "pricing call with Acme": [1.0, 0.0, 0.0],
    "sent brochure": [0.0, 1.0, 0.0],
    "follow up on pricing": [0.9, 0.1, 0.0],
    "pricing": [1.0, 0.0, 0.0],
}


@pytest.fixture()
def embedder() -> StubEmbedder:
    return StubEmbedder(VECTORS)


@pytest.fixture()
def index(store: InMemoryStore, embedder: StubEmbedder) -> SimilarityIndex:
    return SimilarityIndex(store, embedder)


def _item(item_id: str, embedding, timestamp: datetime) -> EmbeddedItem:
    return EmbeddedItem(
        id=item_id,
        owner_id="u1",
        entity_id="c1",
        content_type=ContentType.NOTE,
        text=item_id,
        embedding=tuple(embedding),
        metadata=ItemMetadata(source="test", timestamp=timestamp),
    )


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([0.3, 0.4, 0.5], [0.3, 0.4, 0.5]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_zero_vector_is_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


class TestRanking:
    def test_ties_prefer_newest(self):
        now = datetime.now(UTC)
        older = _item("older", [1.0, 0.0], now - timedelta(days=1))
        newer = _item("newer", [2.0, 0.0], now)
        matches = rank_matches([1.0, 0.0], [older, newer], k=2)
        assert [m.item.id for m in matches] == ["newer", "older"]

    def test_k_limits_results(self):
        now = datetime.now(UTC)
        items = [_item(f"i{n}", [1.0, float(n)], now) for n in range(5)]
        assert len(rank_matches([1.0, 0.0], items, k=3)) == 3
        assert rank_matches([1.0, 0.0], items, k=0) == []

    def test_mismatched_dimension_skipped(self):
        now = datetime.now(UTC)
        current = _item("current", [1.0, 0.0], now)
        stale = _item("stale", [1.0, 0.0, 0.0], now)
        matches = rank_matches([1.0, 0.0], [stale, current], k=5)
        assert [m.item.id for m in matches] == ["current"]


class TestStoreAndQuery:
    def test_satisfies_protocol(self, index: SimilarityIndex):
        assert isinstance(index, ISimilarityIndex)

    async def test_query_ranks_by_similarity(self, index: SimilarityIndex):
        for text in ("sent brochure", "pricing call with Acme", "follow up on pricing"):
            await index.store("u1", "c1", ContentType.ACTIVITY, text, source="activity_log")

        matches = await index.query("u1", "c1", "pricing", k=2)

        assert [m.item.text for m in matches] == ["pricing call with Acme", "follow up on pricing"]
        assert matches[0].similarity == pytest.approx(1.0)
        assert matches[0].similarity >= matches[1].similarity

    async def test_stored_item_fields(self, index: SimilarityIndex):
        item = await index.store(
            "u1", "c1", "note", "sent brochure", source="contact_note", tags=["vip"], importance=2.0
        )
        assert item.content_type is ContentType.NOTE
        assert item.embedding == (0.0, 1.0, 0.0)
        assert item.metadata.tags == ("vip",)
        assert item.metadata.importance == 2.0
        assert item.metadata.timestamp is not None

    async def test_duplicates_are_kept(self, index: SimilarityIndex, store: InMemoryStore):
        for _ in range(2):
            await index.store("u1", "c1", ContentType.NOTE, "sent brochure", source="contact_note")
        assert len(store.find_embedded_items("u1", "c1")) == 2

    async def test_scoped_to_owner_and_entity(self, index: SimilarityIndex):
        await index.store("u1", "c1", ContentType.NOTE, "pricing call with Acme", source="n")
        await index.store("u2", "c1", ContentType.NOTE, "pricing call with Acme", source="n")
        await index.store("u1", "c2", ContentType.NOTE, "pricing call with Acme", source="n")
        matches = await index.query("u1", "c1", "pricing")
        assert len(matches) == 1
        assert (matches[0].item.owner_id, matches[0].item.entity_id) == ("u1", "c1")

    async def test_query_ignores_items_from_older_embedding_size(self, index, store):
        await index.store("u1", "c1", ContentType.NOTE, "pricing call with Acme", source="n")
        store.insert_embedded_item(_item("stale", [1.0, 0.0], datetime.now(UTC)))
        matches = await index.query("u1", "c1", "pricing")
        assert [m.item.text for m in matches] == ["pricing call with Acme"]

    async def test_empty_index_returns_nothing(self, index: SimilarityIndex):
        assert await index.query("u1", "c1", "pricing") == []

    async def test_embedding_failure_stores_nothing(self, store: InMemoryStore):
        index = SimilarityIndex(store, StubEmbedder(error=RuntimeError("service down")))
        with pytest.raises(EmbeddingError, match="service down"):
            await index.store("u1", "c1", ContentType.NOTE, "anything", source="n")
        assert store.find_embedded_items("u1", "c1") == []

    async def test_embedding_timeout(self, store: InMemoryStore):
        index = SimilarityIndex(store, StubEmbedder(delay=1.0), timeout_seconds=0.05)
        with pytest.raises(EmbeddingError, match="timed out"):
            await index.query("u1", "c1", "pricing")

    async def test_empty_vector_rejected(self, store: InMemoryStore):
        index = SimilarityIndex(store, StubEmbedder(fallback=lambda text: []))
        with pytest.raises(EmbeddingError):
            await index.store("u1", "c1", ContentType.NOTE, "x", source="n")

    async def test_delete_entity_cascades(self, index: SimilarityIndex, store: InMemoryStore):
        await index.store("u1", "c1", ContentType.NOTE, "sent brochure", source="n")
        await index.store("u1", "c1", ContentType.NOTE, "pricing", source="n")
        await index.store("u1", "c2", ContentType.NOTE, "pricing", source="n")
        assert index.delete_entity("u1", "c1") == 2
        assert store.find_embedded_items("u1", "c1") == []
        assert len(store.find_embedded_items("u1", "c2")) == 1

    async def test_format_matches(self, index: SimilarityIndex):
        await index.store("u1", "c1", ContentType.ACTIVITY, "sent brochure", source="a")
        matches = await index.query("u1", "c1", "sent brochure", k=1)
        assert format_matches(matches) == "activity: sent brochure"


class TestIndexEntity:
    @pytest.fixture()
    def crm(self) -> InMemoryCrmDataSource:
        crm = InMemoryCrmDataSource()
        crm.add_contact(
            "u1",
            "c1",
            ContactInfo(name="Dana", email="dana@acme.com", company="Acme", tags=["vip"], note="Prefers email"),
        )
        start = datetime(2025, 1, 1, tzinfo=UTC)
        for n in range(12):
            crm.add_activity(
                "u1",
                ActivityInfo(
                    activity_type="call",
                    details=f"call {n}",
                    timestamp=start + timedelta(days=n),
                    entity_id="c1",
                ),
            )
        crm.add_sent_message(
            "u1", "c1", SentMessageInfo(content="Hi Dana!", status="sent", generated_at=start)
        )
        return crm

    async def test_indexes_note_recent_activities_and_messages(self, store, embedder, crm):
        index = SimilarityIndex(store, embedder, crm_data=crm)
        items = await index.index_entity("u1", "c1")

        texts = [i.text for i in items]
        assert len(items) == 1 + 10 + 1
        assert texts[0] == "Prefers email"
        assert "call: call 11" in texts
        assert "call: call 1" not in texts
        assert "Previous message: Hi Dana!" in texts
        assert {i.content_type for i in items} == {
            ContentType.NOTE,
            ContentType.ACTIVITY,
            ContentType.MESSAGE_HISTORY,
        }

    async def test_unknown_entity(self, store, embedder, crm):
        index = SimilarityIndex(store, embedder, crm_data=crm)
        with pytest.raises(LookupError):
            await index.index_entity("u1", "missing")

    async def test_requires_crm_data(self, index: SimilarityIndex):
        with pytest.raises(RuntimeError):
            await index.index_entity("u1", "c1")
