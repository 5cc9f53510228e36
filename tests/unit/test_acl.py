"""
Unit tests for the policy engine.

Tests cover:
- Principal parsing
- Profile self-service rules
- Membership authority of the materialized table
- Message, annotation, folder item and object predicates
"""

import pytest

from backend.voxtier_server.objects.object_store import parse_object_path
from backend.voxtier_server.store.acl import (
    SYSTEM_ACTOR,
    AccessDeniedError,
    Operation,
    PolicyEngine,
    Principal,
    Table,
)
from backend.voxtier_server.store.canonical_store import Bookmark, Favorite, FolderItem
from backend.voxtier_server.store.hierarchy import HierarchyResolver
from backend.voxtier_server.store.participants import ParticipantMaterializer


class TestPrincipalParsing:
    """Tests for principal parsing."""

    def test_parse_user_principal(self):
        principal = Principal.parse("user:alice")
        assert principal.type == "user"
        assert principal.id == "alice"
        assert not principal.is_system

    def test_parse_system_principal(self):
        principal = Principal.parse("system:backfill")
        assert principal.is_system
        assert str(principal) == "system:backfill"

    def test_id_may_contain_colon(self):
        assert Principal.parse("user:a:b").id == "a:b"

    @pytest.mark.parametrize("raw", ["", "alice", "role:admin", "user:"])
    def test_parse_invalid(self, raw):
        with pytest.raises(ValueError):
            Principal.parse(raw)


@pytest.fixture
def policy(store):
    return PolicyEngine(store, HierarchyResolver(store))


@pytest.fixture
def materializer(store):
    return ParticipantMaterializer(store, HierarchyResolver(store))


@pytest.fixture
def conversation(seeded, store, materializer):
    with store.transaction() as conn:
        conversation = store.insert_conversation(conn, seeded.client, seeded.mentor)
        materializer.on_conversation_created(conn, conversation)
    return conversation


@pytest.fixture
def message(seeded, store, conversation):
    with store.transaction() as conn:
        return store.insert_message(conn, conversation.id, seeded.client, text_transcript="hello")


class TestProfiles:
    """Tests for profile predicates."""

    @pytest.mark.asyncio
    async def test_everyone_reads_profiles(self, seeded, store, policy):
        with store.read() as conn:
            profile = store.get_profile(conn, seeded.director)
            assert policy.check(conn, Principal.user(seeded.loner), Table.PROFILES, Operation.READ, profile)

    @pytest.mark.asyncio
    async def test_self_edit_of_display_fields(self, seeded, store, policy):
        me = Principal.user(seeded.client)
        with store.read() as conn:
            profile = store.get_profile(conn, seeded.client)
            assert policy.check(conn, me, Table.PROFILES, Operation.UPDATE, profile, ["full_name"])
            assert not policy.check(conn, me, Table.PROFILES, Operation.UPDATE, profile, ["mentor_id"])
            assert not policy.check(conn, me, Table.PROFILES, Operation.UPDATE, profile, ["role"])
            assert not policy.check(conn, me, Table.PROFILES, Operation.DELETE, profile)

    @pytest.mark.asyncio
    async def test_cannot_edit_others(self, seeded, store, policy):
        with store.read() as conn:
            profile = store.get_profile(conn, seeded.client)
            assert not policy.check(
                conn, Principal.user(seeded.mentor), Table.PROFILES, Operation.UPDATE, profile, ["full_name"]
            )

    @pytest.mark.asyncio
    async def test_system_passes(self, seeded, store, policy):
        with store.read() as conn:
            profile = store.get_profile(conn, seeded.client)
            assert policy.check(conn, SYSTEM_ACTOR, Table.PROFILES, Operation.DELETE, profile)

    @pytest.mark.asyncio
    async def test_missing_row_denies(self, seeded, store, policy):
        with store.read() as conn:
            assert not policy.check(
                conn, Principal.user(seeded.client), Table.PROFILES, Operation.READ, None
            )


class TestMembership:
    """Tests for conversation membership."""

    @pytest.mark.asyncio
    async def test_members_read_conversation(self, seeded, store, policy, conversation):
        with store.read() as conn:
            for uid in (seeded.client, seeded.mentor, seeded.director):
                assert policy.check(
                    conn, Principal.user(uid), Table.CONVERSATIONS, Operation.READ, conversation
                )
            for uid in (seeded.director2, seeded.client2, seeded.mentor2):
                assert not policy.check(
                    conn, Principal.user(uid), Table.CONVERSATIONS, Operation.READ, conversation
                )

    @pytest.mark.asyncio
    async def test_materialized_rows_are_authoritative(self, seeded, store, policy, conversation):
        with store.transaction() as conn:
            store.set_director(conn, seeded.mentor, seeded.director2)

        with store.read() as conn:
            assert policy.is_member(conn, seeded.director, conversation)
            assert not policy.is_member(conn, seeded.director2, conversation)

    @pytest.mark.asyncio
    async def test_unmaterialized_falls_back_to_hierarchy(self, seeded, store, policy):
        with store.transaction() as conn:
            legacy = store.insert_conversation(conn, seeded.client, seeded.mentor)

        with store.read() as conn:
            assert policy.is_member(conn, seeded.director, legacy)
            assert not policy.is_member(conn, seeded.director2, legacy)

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, seeded, store, policy):
        with store.read() as conn:
            assert not policy.is_member_of(conn, seeded.client, "nope")


class TestMessages:
    """Tests for audio message predicates."""

    @pytest.mark.asyncio
    async def test_sender_must_be_requester(self, seeded, store, policy, message):
        forged = type(message)(**{**message.to_dict(), "id": "m2", "sender_id": seeded.mentor})
        with store.read() as conn:
            assert not policy.check(
                conn, Principal.user(seeded.client), Table.AUDIO_MESSAGES, Operation.INSERT, forged
            )

    @pytest.mark.asyncio
    async def test_only_sender_deletes(self, seeded, store, policy, message):
        with store.read() as conn:
            assert policy.check(
                conn, Principal.user(seeded.client), Table.AUDIO_MESSAGES, Operation.DELETE, message
            )
            for uid in (seeded.mentor, seeded.director):
                assert not policy.check(
                    conn, Principal.user(uid), Table.AUDIO_MESSAGES, Operation.DELETE, message
                )

    @pytest.mark.asyncio
    async def test_check_or_raise(self, seeded, store, policy, message):
        with store.read() as conn:
            with pytest.raises(AccessDeniedError) as exc_info:
                policy.check_or_raise(
                    conn, Principal.user(seeded.client2), Table.AUDIO_MESSAGES, Operation.READ, message
                )

        assert str(exc_info.value) == "not permitted"
        assert exc_info.value.table == Table.AUDIO_MESSAGES

    @pytest.mark.asyncio
    async def test_filter_visible(self, seeded, store, policy, message):
        with store.read() as conn:
            visible = policy.filter_visible(
                conn, Principal.user(seeded.director), Table.AUDIO_MESSAGES, [message]
            )
            hidden = policy.filter_visible(
                conn, Principal.user(seeded.director2), Table.AUDIO_MESSAGES, [message]
            )

        assert visible == [message]
        assert hidden == []


class TestAnnotations:
    """Tests for bookmarks, favorites, folders and folder items."""

    @pytest.mark.asyncio
    async def test_annotations_are_owner_private(self, seeded, store, policy, message):
        bookmark = Bookmark("b1", message.id, seeded.client, 1.0, None, 0)
        with store.read() as conn:
            assert policy.check(conn, Principal.user(seeded.client), Table.BOOKMARKS, Operation.READ, bookmark)
            assert not policy.check(conn, Principal.user(seeded.mentor), Table.BOOKMARKS, Operation.READ, bookmark)

    @pytest.mark.asyncio
    async def test_favorite_needs_readable_message(self, seeded, store, policy, message):
        mine = Favorite(seeded.client2, message.id, 0)
        ghost = Favorite(seeded.client, "missing", 0)
        with store.read() as conn:
            assert not policy.check(conn, Principal.user(seeded.client2), Table.FAVORITES, Operation.INSERT, mine)
            assert not policy.check(conn, Principal.user(seeded.client), Table.FAVORITES, Operation.INSERT, ghost)

    @pytest.mark.asyncio
    async def test_folder_item_requires_both_conditions(self, seeded, store, policy, message):
        with store.transaction() as conn:
            mentor_folder = store.insert_folder(conn, seeded.mentor, "Mine")
            outsider_folder = store.insert_folder(conn, seeded.mentor2, "Theirs")

        with store.read() as conn:
            owned_and_member = FolderItem(mentor_folder.id, message.id, 0)
            assert policy.check(
                conn, Principal.user(seeded.mentor), Table.FOLDER_ITEMS, Operation.INSERT, owned_and_member
            )
            # Member of the conversation, but not the folder owner.
            assert not policy.check(
                conn, Principal.user(seeded.client), Table.FOLDER_ITEMS, Operation.INSERT, owned_and_member
            )
            # Folder owner, but not a member of the conversation.
            not_member = FolderItem(outsider_folder.id, message.id, 0)
            assert not policy.check(
                conn, Principal.user(seeded.mentor2), Table.FOLDER_ITEMS, Operation.INSERT, not_member
            )


class TestObjects:
    """Tests for object store predicates."""

    @pytest.mark.asyncio
    async def test_member_uploads_as_self(self, seeded, store, policy, conversation):
        ref = parse_object_path(f"{conversation.id}/m1.mp3")
        with store.read() as conn:
            client = Principal.user(seeded.client)
            assert policy.check(conn, client, Table.OBJECTS, Operation.INSERT, ref.with_owner(seeded.client))
            assert not policy.check(conn, client, Table.OBJECTS, Operation.INSERT, ref.with_owner(seeded.mentor))
            assert not policy.check(
                conn, Principal.user(seeded.client2), Table.OBJECTS, Operation.INSERT, ref.with_owner(seeded.client2)
            )

    @pytest.mark.asyncio
    async def test_path_owned_by_another_member(self, seeded, store, policy, conversation):
        taken = parse_object_path(f"{conversation.id}/m1.mp3").with_owner(seeded.client)
        with store.read() as conn:
            for member in (seeded.mentor, seeded.director):
                assert not policy.check(conn, Principal.user(member), Table.OBJECTS, Operation.INSERT, taken)
            with pytest.raises(AccessDeniedError):
                policy.check_or_raise(conn, Principal.user(seeded.mentor), Table.OBJECTS, Operation.INSERT, taken)

    @pytest.mark.asyncio
    async def test_members_read_objects(self, seeded, store, policy, conversation):
        ref = parse_object_path(f"{conversation.id}/m1.mp3")
        with store.read() as conn:
            assert policy.check(conn, Principal.user(seeded.director), Table.OBJECTS, Operation.READ, ref)
            assert not policy.check(conn, Principal.user(seeded.director2), Table.OBJECTS, Operation.READ, ref)
