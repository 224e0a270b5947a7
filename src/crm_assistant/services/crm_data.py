"""In-memory CRM records for the assistant's read-only business context.

The CRM's own document store owns contacts, activities and tags. This class
holds the same data for development and tests and answers the two read
queries the assistant needs.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field

from crm_assistant.domain.models import (
    ActivityInfo,
    ContactInfo,
    CrmContext,
    EntitySnapshot,
    SentMessageInfo,
)

MAX_CONTEXT_CONTACTS = 50
TOP_COMPANIES = 10


@dataclass
class _OwnerRecords:
    contacts: dict[str, ContactInfo] = field(default_factory=dict)
    activities: list[ActivityInfo] = field(default_factory=list)
    sent_messages: dict[str, list[SentMessageInfo]] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


class InMemoryCrmDataSource:
    """Per-owner contacts, activities, generated messages and tags."""

    def __init__(self) -> None:
        self._owners: dict[str, _OwnerRecords] = {}
        self._lock = threading.Lock()

    def _records(self, owner_id: str) -> _OwnerRecords:
        return self._owners.setdefault(owner_id, _OwnerRecords())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_contact(self, owner_id: str, entity_id: str, contact: ContactInfo) -> None:
        with self._lock:
            records = self._records(owner_id)
            records.contacts[entity_id] = contact
            for tag in contact.tags:
                if tag not in records.tags:
                    records.tags.append(tag)

    def add_activity(self, owner_id: str, activity: ActivityInfo) -> None:
        with self._lock:
            self._records(owner_id).activities.append(activity)

    def add_sent_message(self, owner_id: str, entity_id: str, message: SentMessageInfo) -> None:
        with self._lock:
            self._records(owner_id).sent_messages.setdefault(entity_id, []).append(message)

    def add_tag(self, owner_id: str, name: str) -> None:
        with self._lock:
            tags = self._records(owner_id).tags
            if name not in tags:
                tags.append(name)

    def remove_contact(self, owner_id: str, entity_id: str) -> bool:
        with self._lock:
            records = self._owners.get(owner_id)
            if records is None or entity_id not in records.contacts:
                return False
            del records.contacts[entity_id]
            records.sent_messages.pop(entity_id, None)
            records.activities = [a for a in records.activities if a.entity_id != entity_id]
            return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_crm_context(self, owner_id: str) -> CrmContext | None:
        with self._lock:
            records = self._owners.get(owner_id)
            if records is None:
                return None
            contacts = list(records.contacts.values())
            activities = sorted(records.activities, key=lambda a: a.timestamp, reverse=True)
            tags = list(records.tags)

        companies = Counter(c.company for c in contacts if c.company)
        return CrmContext(
            total_contacts=len(contacts),
            companies_count=len(companies),
            tags_count=len(tags),
            top_companies=companies.most_common(TOP_COMPANIES),
            recent_contacts=list(reversed(contacts))[:MAX_CONTEXT_CONTACTS],
            recent_activities=activities,
            tags=tags,
        )

    def get_entity_snapshot(self, owner_id: str, entity_id: str) -> EntitySnapshot | None:
        with self._lock:
            records = self._owners.get(owner_id)
            if records is None or entity_id not in records.contacts:
                return None
            contact = records.contacts[entity_id]
            return EntitySnapshot(
                entity_id=entity_id,
                note=contact.note,
                tags=list(contact.tags),
                activities=[a for a in records.activities if a.entity_id == entity_id],
                sent_messages=list(records.sent_messages.get(entity_id, [])),
            )
