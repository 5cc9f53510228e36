"""
Unit tests for participant materialization.

Tests cover:
- Materialization on conversation creation
- Atomic rollback when materialization is incomplete
- Director re-materialization
- Backfill and verification
"""

import pytest

from backend.voxtier_server.store.canonical_store import Role
from backend.voxtier_server.store.hierarchy import HierarchyResolver
from backend.voxtier_server.store.participants import (
    ConsistencyError,
    MembershipReport,
    ParticipantMaterializer,
)


@pytest.fixture
def materializer(store):
    return ParticipantMaterializer(store, HierarchyResolver(store))


def _members(store, conn, conversation_id):
    return {p.user_id: p.role for p in store.list_participants(conn, conversation_id)}


class TestOnConversationCreated:
    """Tests for on_conversation_created()."""

    @pytest.mark.asyncio
    async def test_three_members_with_director(self, seeded, store, materializer):
        with store.transaction() as conn:
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
            materializer.on_conversation_created(conn, conversation)

        with store.read() as conn:
            assert _members(store, conn, conversation.id) == {
                seeded.client: Role.CLIENT,
                seeded.mentor: Role.MENTOR,
                seeded.director: Role.TRAINING_DIRECTOR,
            }

    @pytest.mark.asyncio
    async def test_two_members_without_director(self, seeded, store, materializer):
        with store.transaction() as conn:
            store.set_director(conn, seeded.mentor, None)
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
            materializer.on_conversation_created(conn, conversation)

        with store.read() as conn:
            assert set(_members(store, conn, conversation.id)) == {seeded.client, seeded.mentor}

    @pytest.mark.asyncio
    async def test_repeat_is_absorbed(self, seeded, store, materializer):
        with store.transaction() as conn:
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
            materializer.on_conversation_created(conn, conversation)
            materializer.on_conversation_created(conn, conversation)

        with store.read() as conn:
            assert store.count_participants(conn, conversation.id) == 3

    @pytest.mark.asyncio
    async def test_partial_membership_rolls_back(self, seeded, store, materializer, monkeypatch):
        monkeypatch.setattr(store, "insert_participant", lambda *args, **kwargs: False)

        with pytest.raises(ConsistencyError) as exc_info:
            with store.transaction() as conn:
                conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
                materializer.on_conversation_created(conn, conversation)

        assert exc_info.value.conversation_id == conversation.id
        with store.read() as conn:
            assert store.get_conversation(conn, conversation.id) is None


class TestRematerialize:
    """Tests for rematerialize_for_mentor()."""

    @pytest.mark.asyncio
    async def test_director_change_replaces_rows(self, seeded, store, materializer):
        with store.transaction() as conn:
            first = store.insert_conversation(conn, seeded.client, seeded.mentor)
            materializer.on_conversation_created(conn, first)

        with store.transaction() as conn:
            store.set_director(conn, seeded.mentor, seeded.director2)
            touched = materializer.rematerialize_for_mentor(conn, seeded.mentor)

        assert touched == 1
        with store.read() as conn:
            members = _members(store, conn, first.id)
        assert seeded.director not in members
        assert members[seeded.director2] == Role.TRAINING_DIRECTOR

    @pytest.mark.asyncio
    async def test_director_cleared(self, seeded, store, materializer):
        with store.transaction() as conn:
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
            materializer.on_conversation_created(conn, conversation)
            store.set_director(conn, seeded.mentor, None)
            materializer.rematerialize_for_mentor(conn, seeded.mentor)

        with store.read() as conn:
            assert set(_members(store, conn, conversation.id)) == {seeded.client, seeded.mentor}


class TestBackfillAndVerify:
    """Tests for backfill() and verify()."""

    @pytest.mark.asyncio
    async def test_backfill_is_idempotent(self, seeded, store, materializer):
        with store.transaction() as conn:
            store.insert_conversation(conn, seeded.client, seeded.mentor)
            store.insert_conversation(conn, seeded.client2, seeded.mentor2)

        with store.transaction() as conn:
            assert materializer.backfill(conn) == 6
        with store.transaction() as conn:
            assert materializer.backfill(conn) == 0

    @pytest.mark.asyncio
    async def test_verify_reports_drift(self, seeded, store, materializer):
        with store.transaction() as conn:
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
            materializer.on_conversation_created(conn, conversation)
            assert materializer.verify(conn, conversation).consistent

            # Director pointer moves without re-materialization.
            store.set_director(conn, seeded.mentor, seeded.director2)
            report = materializer.verify(conn, conversation)

        assert not report.consistent
        assert report.missing == {seeded.director2: Role.TRAINING_DIRECTOR}
        assert report.extra == {seeded.director: Role.TRAINING_DIRECTOR}
        assert report.to_dict()["consistent"] is False


class TestMembershipReport:
    """Tests for MembershipReport."""

    def test_empty_report_is_consistent(self):
        assert MembershipReport(conversation_id="c1").consistent

    def test_role_mismatch_counts_both_ways(self):
        report = MembershipReport(
            conversation_id="c1",
            expected={"u1": Role.MENTOR},
            materialized={"u1": Role.CLIENT},
        )
        assert report.missing == {"u1": Role.MENTOR}
        assert report.extra == {"u1": Role.CLIENT}
