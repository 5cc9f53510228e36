"""
Unit tests for realtime fan-out.

Tests cover:
- Subscription filtering, bounded queues and close
- Policy-filtered publish
- Disabled hub and unpublished tables
"""

import asyncio

import pytest

from backend.voxtier_server.store.acl import PolicyEngine, Principal, Table
from backend.voxtier_server.store.canonical_store import Conversation
from backend.voxtier_server.store.hierarchy import HierarchyResolver
from backend.voxtier_server.store.participants import ParticipantMaterializer
from backend.voxtier_server.store.realtime import ChangeEvent, RealtimeHub, Subscription


def _event(conversation_id="c1", table=Table.CONVERSATIONS):
    row = Conversation(id=conversation_id, client_id="a", mentor_id="b", created_at=1)
    return ChangeEvent(table=table, row=row, conversation_id=conversation_id, commit_ts=5)


class TestChangeEvent:
    """Tests for ChangeEvent."""

    def test_to_dict(self):
        payload = _event().to_dict()
        assert payload == {
            "type": "change",
            "table": "conversations",
            "event": "INSERT",
            "conversation_id": "c1",
            "commit_timestamp": 5,
            "record": {"id": "c1", "client_id": "a", "mentor_id": "b", "created_at": 1},
        }


class TestSubscription:
    """Tests for Subscription."""

    def test_ids_are_unique(self):
        first = Subscription(Principal.user("u"), None, None, queue_size=4)
        second = Subscription(Principal.user("u"), None, None, queue_size=4)
        assert first.id != second.id

    def test_table_filter(self):
        sub = Subscription(Principal.user("u"), frozenset({Table.AUDIO_MESSAGES}), None, queue_size=4)
        assert not sub.wants(_event())
        assert sub.wants(_event(table=Table.AUDIO_MESSAGES))

    def test_conversation_filter(self):
        sub = Subscription(Principal.user("u"), None, "c2", queue_size=4)
        assert not sub.wants(_event("c1"))
        assert sub.wants(_event("c2"))

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        sub = Subscription(Principal.user("u"), None, None, queue_size=1)
        assert sub.offer(_event("c1")) is True
        assert sub.offer(_event("c2")) is False
        assert sub.dropped == 1
        assert sub.pending() == 1
        assert (await sub.get()).conversation_id == "c1"

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        sub = Subscription(Principal.user("u"), None, None, queue_size=1)
        sub.offer(_event("c1"))
        sub.close()

        received = [event async for event in sub]

        assert received == []
        assert await sub.get() is None

    @pytest.mark.asyncio
    async def test_close_wakes_waiter(self):
        sub = Subscription(Principal.user("u"), None, None, queue_size=4)
        waiter = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        sub.close()
        assert await asyncio.wait_for(waiter, timeout=1) is None


@pytest.fixture
def policy(store):
    return PolicyEngine(store, HierarchyResolver(store))


@pytest.fixture
def conversation(seeded, store):
    materializer = ParticipantMaterializer(store, HierarchyResolver(store))
    with store.transaction() as conn:
        conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
        materializer.on_conversation_created(conn, conversation)
    return conversation


class TestRealtimeHub:
    """Tests for RealtimeHub."""

    @pytest.mark.asyncio
    async def test_publish_reaches_only_readers(self, seeded, store, policy, conversation):
        hub = RealtimeHub(store, policy)
        director = hub.subscribe(Principal.user(seeded.director))
        outsider = hub.subscribe(Principal.user(seeded.director2))

        with store.transaction() as conn:
            message = store.insert_message(conn, conversation.id, seeded.client, text_transcript="hi")
        delivered = await hub.publish(Table.AUDIO_MESSAGES, message)

        assert delivered == 1
        event = await asyncio.wait_for(director.get(), timeout=1)
        assert event.row == message
        assert event.conversation_id == conversation.id
        assert outsider.pending() == 0

    @pytest.mark.asyncio
    async def test_annotation_events_are_owner_private(self, seeded, store, policy, conversation):
        hub = RealtimeHub(store, policy)
        owner = hub.subscribe(Principal.user(seeded.client))
        other_member = hub.subscribe(Principal.user(seeded.mentor))

        with store.transaction() as conn:
            message = store.insert_message(conn, conversation.id, seeded.client, text_transcript="hi")
            favorite = store.insert_favorite(conn, seeded.client, message.id)

        assert await hub.publish(Table.FAVORITES, favorite) == 1
        event = await owner.get()
        assert event.conversation_id == conversation.id
        assert other_member.pending() == 0

    @pytest.mark.asyncio
    async def test_unpublished_table_is_ignored(self, seeded, store, policy, conversation):
        hub = RealtimeHub(store, policy, tables=[Table.AUDIO_MESSAGES])
        sub = hub.subscribe(Principal.user(seeded.client))

        assert await hub.publish(Table.CONVERSATIONS, conversation) == 0
        assert sub.pending() == 0

    @pytest.mark.asyncio
    async def test_disabled_hub(self, seeded, store, policy, conversation):
        hub = RealtimeHub(store, policy, enabled=False)
        hub.subscribe(Principal.user(seeded.client))
        assert await hub.publish(Table.CONVERSATIONS, conversation) == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_and_close(self, seeded, store, policy):
        hub = RealtimeHub(store, policy)
        first = hub.subscribe(Principal.user(seeded.client))
        second = hub.subscribe(Principal.user(seeded.mentor))
        assert hub.subscriber_count == 2

        hub.unsubscribe(first)
        assert hub.subscriber_count == 1
        assert first.closed

        hub.close()
        assert hub.subscriber_count == 0
        assert second.closed
