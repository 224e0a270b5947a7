"""Tests for InMemoryStore and SQLiteStore (shared contract plus SQLite specifics)."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from crm_assistant.domain.models import (
    ContentType,
    Conversation,
    ConversationContext,
    ConversationTurn,
    EmbeddedItem,
    ItemMetadata,
    Sender,
)
from crm_assistant.domain.protocols import IConversationRepository, IEmbeddedItemRepository
from crm_assistant.services.conversation_store import InMemoryStore, SQLiteStore


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path: Path):
    if request.param == "memory":
        yield InMemoryStore()
        return
    svc = SQLiteStore(db_path=tmp_path / "chat.sqlite")
    svc.connect()
    yield svc
    svc.close()


def _turn(sender: Sender, text: str, minutes: int = 0) -> ConversationTurn:
    return ConversationTurn(
        sender=sender,
        text=text,
        timestamp=datetime(2025, 3, 1, 12, 0, tzinfo=UTC) + timedelta(minutes=minutes),
    )


def _conversation(conversation_id: str = "c1", owner_id: str = "u1") -> Conversation:
    turns = [
        _turn(Sender.USER, "hello", 0),
        ConversationTurn(
            sender=Sender.ASSISTANT,
            text="hi there",
            timestamp=datetime(2025, 3, 1, 12, 1, tzinfo=UTC),
            model_metadata={"provider": "openai", "model": "gpt-4o-mini"},
        ),
    ]
    return Conversation(
        owner_id=owner_id,
        conversation_id=conversation_id,
        title="Chat - 2025-03-01",
        turns=turns,
        context=ConversationContext(unsummarized_turns=tuple(turns)),
    )


def _item(entity_id: str = "e1", owner_id: str = "u1", item_id: str = "i1") -> EmbeddedItem:
    return EmbeddedItem(
        id=item_id,
        owner_id=owner_id,
        entity_id=entity_id,
        content_type=ContentType.ACTIVITY,
        text="call: discussed pricing",
        embedding=(0.1, 0.2, 0.3),
        metadata=ItemMetadata(
            source="activity_log",
            tags=("call",),
            importance=1.5,
            timestamp=datetime(2025, 3, 1, tzinfo=UTC),
        ),
    )


class TestConversations:
    def test_satisfies_protocols(self, repo):
        assert isinstance(repo, IConversationRepository)
        assert isinstance(repo, IEmbeddedItemRepository)

    def test_find_missing(self, repo):
        assert repo.find_conversation("u1", "nope") is None

    def test_round_trip(self, repo):
        repo.save_conversation(_conversation())
        loaded = repo.find_conversation("u1", "c1")
        assert loaded is not None
        assert loaded.title == "Chat - 2025-03-01"
        assert [t.text for t in loaded.turns] == ["hello", "hi there"]
        assert loaded.turns[1].sender is Sender.ASSISTANT
        assert loaded.turns[1].model_metadata == {"provider": "openai", "model": "gpt-4o-mini"}
        assert loaded.context.unsummarized_turns == tuple(loaded.turns)
        assert loaded.context.summary == ""

    def test_owner_scoping(self, repo):
        repo.save_conversation(_conversation())
        assert repo.find_conversation("someone-else", "c1") is None

    def test_appends_turns_and_summary(self, repo):
        conversation = _conversation()
        repo.save_conversation(conversation)

        loaded = repo.find_conversation("u1", "c1")
        new_turns = [_turn(Sender.USER, "next question", 5), _turn(Sender.ASSISTANT, "answer", 6)]
        loaded.turns.extend(new_turns)
        loaded.context = ConversationContext(
            summary="Greetings exchanged.",
            summary_token_count=5,
            unsummarized_turns=tuple(loaded.turns[-2:]),
            last_summarized_at=datetime(2025, 3, 1, 12, 5, tzinfo=UTC),
        )
        repo.save_conversation(loaded)

        again = repo.find_conversation("u1", "c1")
        assert [t.text for t in again.turns] == ["hello", "hi there", "next question", "answer"]
        assert again.context.summary == "Greetings exchanged."
        assert again.context.summary_token_count == 5
        assert [t.text for t in again.context.unsummarized_turns] == ["next question", "answer"]
        assert again.context.last_summarized_at == datetime(2025, 3, 1, 12, 5, tzinfo=UTC)

    def test_list_newest_first(self, repo):
        older = _conversation("old")
        older.updated_at = datetime(2025, 1, 1, tzinfo=UTC)
        newer = _conversation("new")
        newer.updated_at = datetime(2025, 2, 1, tzinfo=UTC)
        newer.context = replace(newer.context, summary="s")
        repo.save_conversation(older)
        repo.save_conversation(newer)

        rows = repo.list_conversations("u1")
        assert [r.conversation_id for r in rows] == ["new", "old"]
        assert rows[0].message_count == 2
        assert rows[0].has_summary is True
        assert rows[1].has_summary is False
        assert repo.list_conversations("u2") == []

    def test_delete(self, repo):
        repo.save_conversation(_conversation())
        assert repo.delete_conversation("u1", "c1") is True
        assert repo.find_conversation("u1", "c1") is None
        assert repo.delete_conversation("u1", "c1") is False


class TestEmbeddedItems:
    def test_insert_and_find(self, repo):
        repo.insert_embedded_item(_item())
        items = repo.find_embedded_items("u1", "e1")
        assert len(items) == 1
        item = items[0]
        assert item.embedding == (0.1, 0.2, 0.3)
        assert item.content_type is ContentType.ACTIVITY
        assert item.metadata.tags == ("call",)
        assert item.metadata.importance == 1.5
        assert item.metadata.timestamp == datetime(2025, 3, 1, tzinfo=UTC)

    def test_delete_by_entity(self, repo):
        repo.insert_embedded_item(_item(item_id="a"))
        repo.insert_embedded_item(_item(item_id="b"))
        repo.insert_embedded_item(_item(entity_id="e2", item_id="c"))
        assert repo.delete_embedded_items("u1", "e1") == 2
        assert repo.find_embedded_items("u1", "e1") == []
        assert len(repo.find_embedded_items("u1", "e2")) == 1


class TestSQLiteStore:
    def test_persists_across_connections(self, tmp_path: Path):
        path = tmp_path / "db" / "chat.sqlite"
        first = SQLiteStore(path)
        first.connect()
        first.save_conversation(_conversation())
        first.close()

        second = SQLiteStore(path)
        second.connect()
        assert [t.text for t in second.find_conversation("u1", "c1").turns] == ["hello", "hi there"]
        second.close()

    def test_rejects_context_that_is_not_a_suffix(self, tmp_path: Path):
        svc = SQLiteStore(tmp_path / "chat.sqlite")
        svc.connect()
        conversation = _conversation()
        conversation.context = ConversationContext(
            unsummarized_turns=(_turn(Sender.USER, "not in the log", 9),)
        )
        with pytest.raises(ValueError, match="suffix"):
            svc.save_conversation(conversation)
        svc.close()
