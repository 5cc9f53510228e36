"""
Unit tests for hierarchy resolution.

Tests cover:
- Director lookup, including dangling pointers
- Membership of client, mentor and director
- Who may open a conversation
"""

import pytest

from backend.voxtier_server.store.canonical_store import Role
from backend.voxtier_server.store.hierarchy import HierarchyResolver


@pytest.fixture
def resolver(store):
    return HierarchyResolver(store)


class TestDirectorOf:
    """Tests for director_of()."""

    @pytest.mark.asyncio
    async def test_assigned_director(self, seeded, store, resolver):
        with store.read() as conn:
            assert resolver.director_of(conn, seeded.mentor) == seeded.director

    @pytest.mark.asyncio
    async def test_no_director(self, seeded, store, resolver):
        with store.transaction() as conn:
            store.set_director(conn, seeded.mentor, None)
            assert resolver.director_of(conn, seeded.mentor) is None

    @pytest.mark.asyncio
    async def test_unknown_mentor(self, seeded, store, resolver):
        with store.read() as conn:
            assert resolver.director_of(conn, "ghost") is None

    @pytest.mark.asyncio
    async def test_pointer_to_wrong_role_is_ignored(self, seeded, store, resolver):
        with store.transaction() as conn:
            conn.execute(
                "UPDATE profiles SET director_id = ? WHERE id = ?", (seeded.client, seeded.mentor)
            )
            assert resolver.director_of(conn, seeded.mentor) is None


class TestMembership:
    """Tests for is_member() and expected_members()."""

    @pytest.mark.asyncio
    async def test_members(self, seeded, store, resolver):
        with store.transaction() as conn:
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)

        with store.read() as conn:
            assert resolver.is_member(conn, seeded.client, conversation)
            assert resolver.is_member(conn, seeded.mentor, conversation)
            assert resolver.is_member(conn, seeded.director, conversation)
            assert not resolver.is_member(conn, seeded.director2, conversation)
            assert not resolver.is_member(conn, seeded.client2, conversation)
            assert not resolver.is_member(conn, seeded.mentor2, conversation)

    @pytest.mark.asyncio
    async def test_expected_members(self, seeded, store, resolver):
        with store.transaction() as conn:
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
            expected = resolver.expected_members(conn, conversation)

        assert expected == {
            seeded.client: Role.CLIENT,
            seeded.mentor: Role.MENTOR,
            seeded.director: Role.TRAINING_DIRECTOR,
        }

    @pytest.mark.asyncio
    async def test_expected_members_without_director(self, seeded, store, resolver):
        with store.transaction() as conn:
            store.set_director(conn, seeded.mentor, None)
            conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
            expected = resolver.expected_members(conn, conversation)

        assert set(expected) == {seeded.client, seeded.mentor}


class TestCanCreate:
    """Tests for can_create()."""

    @pytest.mark.asyncio
    async def test_pair_members_may_create(self, seeded, store, resolver):
        with store.read() as conn:
            assert resolver.can_create(conn, seeded.client, seeded.client, seeded.mentor)
            assert resolver.can_create(conn, seeded.mentor, seeded.client, seeded.mentor)

    @pytest.mark.asyncio
    async def test_recorded_mentor_may_create(self, seeded, store, resolver):
        with store.read() as conn:
            assert resolver.can_create(conn, seeded.mentor, seeded.client, seeded.mentor2)

    @pytest.mark.asyncio
    async def test_others_may_not_create(self, seeded, store, resolver):
        with store.read() as conn:
            assert not resolver.can_create(conn, seeded.director, seeded.client, seeded.mentor)
            assert not resolver.can_create(conn, seeded.client2, seeded.client, seeded.mentor)
            assert not resolver.can_create(conn, seeded.mentor2, seeded.loner, seeded.mentor)
