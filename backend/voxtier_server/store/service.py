"""
Data service for Voxtier.

The one entry point for reading and writing data on behalf of a requester.
Every method takes the requester as an explicit Principal, opens a store
transaction or read connection, consults the policy engine and only then
touches rows. Committed inserts on realtime tables are handed to the
realtime hub.

Invariants:
    - No data access bypasses PolicyEngine
    - Denied reads and missing rows both return None (lists omit the row)
    - Denied updates/deletes and missing rows both return None/False
    - Denied inserts raise AccessDeniedError with a generic message
    - A conversation and its membership rows commit in one transaction
    - Realtime events are published only after commit
    - Recordings are write-once and a voice message may only reference a
      recording its sender uploaded

How to change safely:
    - Add a PolicyEngine predicate before adding an operation on a new table
    - Keep every multi-row write inside a single store.transaction()
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from ..config import ServerConfig
from ..objects.object_store import (
    ObjectExistsError,
    ObjectStore,
    StoredObject,
    create_object_store,
    parse_object_path,
)
from .acl import AccessDeniedError, Operation, PolicyEngine, Principal, Table
from .canonical_store import (
    AudioMessage,
    Bookmark,
    CanonicalStore,
    Conversation,
    Favorite,
    Folder,
    FolderItem,
    IntegrityViolationError,
    Participant,
    Profile,
    Role,
    new_id,
    now_ms,
)
from .hierarchy import HierarchyResolver
from .participants import MembershipReport, ParticipantMaterializer
from .realtime import REALTIME_TABLES, RealtimeHub

logger = logging.getLogger(__name__)


def _require_user(actor: Principal, table: Table, operation: Operation) -> str:
    if actor.type != "user":
        raise AccessDeniedError(str(actor), table, operation)
    return actor.id


def _require_system(actor: Principal, table: Table, operation: Operation) -> None:
    if not actor.is_system:
        raise AccessDeniedError(str(actor), table, operation)


class DataService:
    """Requester-parameterized operations over the Voxtier tables.

    Attributes:
        store: Canonical SQLite store
        objects: Binary object store for recordings
        resolver: Live hierarchy predicates
        materializer: Conversation membership maintenance
        policy: Row predicate evaluation
        hub: Realtime fan-out

    Example:
        >>> service = DataService(store, InMemoryObjectStore())
        >>> alice = Principal.user("alice")
        >>> await service.register_profile(alice, Role.CLIENT, "Alice")
    """

    def __init__(
        self,
        store: CanonicalStore,
        objects: ObjectStore,
        bucket: str = "voices",
        realtime_tables: tuple[str, ...] | None = None,
        realtime_queue_size: int = 256,
        realtime_enabled: bool = True,
    ) -> None:
        self.store = store
        self.objects = objects
        self.bucket = bucket
        self.resolver = HierarchyResolver(store)
        self.materializer = ParticipantMaterializer(store, self.resolver)
        self.policy = PolicyEngine(store, self.resolver)
        tables = (
            REALTIME_TABLES
            if realtime_tables is None
            else frozenset(Table(name) for name in realtime_tables)
        )
        self.hub = RealtimeHub(
            store,
            self.policy,
            tables=tables,
            queue_size=realtime_queue_size,
            enabled=realtime_enabled,
        )

    @classmethod
    def from_config(cls, config: ServerConfig, objects: ObjectStore | None = None) -> DataService:
        """Build the service and its store from server configuration.

        Args:
            config: Server configuration
            objects: Object store to use instead of the configured backend
        """
        store = CanonicalStore(
            data_dir=config.storage.data_dir,
            db_filename=config.storage.db_filename,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            cache_size_pages=config.storage.cache_size_pages,
            max_message_duration_sec=config.messaging.max_message_duration_sec,
        )
        return cls(
            store,
            objects if objects is not None else create_object_store(config.objects),
            bucket=config.objects.bucket,
            realtime_tables=config.realtime.tables,
            realtime_queue_size=config.realtime.queue_size,
            realtime_enabled=config.realtime.enabled,
        )

    async def health(self) -> dict[str, Any]:
        """Report store reachability and realtime load."""
        with self.store.read() as conn:
            conn.execute("SELECT 1").fetchone()
        return {
            "healthy": True,
            "realtime_subscribers": self.hub.subscriber_count,
        }

    # ------------------------------------------------------------------
    # Identity & roles
    # ------------------------------------------------------------------

    async def register_profile(
        self,
        actor: Principal,
        role: Role,
        full_name: str,
        avatar_url: str | None = None,
    ) -> Profile:
        """Create the requester's own profile.

        Hierarchy pointers start empty; an administrative process assigns
        them later.

        Raises:
            AccessDeniedError: If the requester is not a user
            IntegrityViolationError: If the profile already exists
        """
        uid = _require_user(actor, Table.PROFILES, Operation.INSERT)
        proposed = Profile(
            id=uid,
            role=Role(role),
            full_name=full_name,
            avatar_url=avatar_url,
            mentor_id=None,
            director_id=None,
            created_at=now_ms(),
        )
        with self.store.transaction() as conn:
            self.policy.check_or_raise(conn, actor, Table.PROFILES, Operation.INSERT, proposed)
            profile = self.store.insert_profile(
                conn, uid, proposed.role, full_name, avatar_url=avatar_url
            )

        logger.info("Registered profile", extra={"profile_id": uid, "role": profile.role.value})
        return profile

    async def get_profile(self, actor: Principal, profile_id: str) -> Profile | None:
        with self.store.read() as conn:
            profile = self.store.get_profile(conn, profile_id)
            if not self.policy.check(conn, actor, Table.PROFILES, Operation.READ, profile):
                return None
            return profile

    async def list_profiles(self, actor: Principal, role: Role | None = None) -> list[Profile]:
        with self.store.read() as conn:
            rows = self.store.list_profiles(conn, role)
            return self.policy.filter_visible(conn, actor, Table.PROFILES, rows)

    async def update_profile(
        self,
        actor: Principal,
        profile_id: str,
        full_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Profile | None:
        """Change display fields of a profile. None if missing or not permitted."""
        changes = [
            name
            for name, value in (("full_name", full_name), ("avatar_url", avatar_url))
            if value is not None
        ]
        with self.store.transaction() as conn:
            existing = self.store.get_profile(conn, profile_id)
            if not self.policy.check(
                conn, actor, Table.PROFILES, Operation.UPDATE, existing, changes
            ):
                return None
            return self.store.update_profile_fields(
                conn, profile_id, full_name=full_name, avatar_url=avatar_url
            )

    async def assign_mentor(
        self, actor: Principal, client_id: str, mentor_id: str | None
    ) -> Profile:
        """Point a client at a mentor. Administrative only.

        Raises:
            AccessDeniedError: If the requester is not a system principal
            IntegrityViolationError: If either profile is missing or has the wrong role
        """
        with self.store.transaction() as conn:
            existing = self.store.get_profile(conn, client_id)
            if existing is not None:
                self.policy.check_or_raise(
                    conn, actor, Table.PROFILES, Operation.UPDATE, existing, ["mentor_id"]
                )
            else:
                _require_system(actor, Table.PROFILES, Operation.UPDATE)
            profile = self.store.set_mentor(conn, client_id, mentor_id)

        logger.info("Assigned mentor", extra={"client_id": client_id, "mentor_id": mentor_id})
        return profile

    async def assign_director(
        self, actor: Principal, mentor_id: str, director_id: str | None
    ) -> Profile:
        """Point a mentor at a training director. Administrative only.

        Director membership of all the mentor's conversations is replaced in
        the same transaction.

        Raises:
            AccessDeniedError: If the requester is not a system principal
            IntegrityViolationError: If either profile is missing or has the wrong role
        """
        with self.store.transaction() as conn:
            existing = self.store.get_profile(conn, mentor_id)
            if existing is not None:
                self.policy.check_or_raise(
                    conn, actor, Table.PROFILES, Operation.UPDATE, existing, ["director_id"]
                )
            else:
                _require_system(actor, Table.PROFILES, Operation.UPDATE)
            profile = self.store.set_director(conn, mentor_id, director_id)
            touched = self.materializer.rematerialize_for_mentor(conn, mentor_id)

        logger.info(
            "Assigned director",
            extra={"mentor_id": mentor_id, "director_id": director_id, "conversations": touched},
        )
        return profile

    async def delete_profile(self, actor: Principal, profile_id: str) -> bool:
        """Delete a profile and everything that cascades from it."""
        with self.store.transaction() as conn:
            existing = self.store.get_profile(conn, profile_id)
            if not self.policy.check(conn, actor, Table.PROFILES, Operation.DELETE, existing):
                return False
            deleted = self.store.delete_profile(conn, profile_id)

        logger.info("Deleted profile", extra={"profile_id": profile_id})
        return deleted

    async def ensure_admin(
        self, actor: Principal, admin_id: str, full_name: str = "Training Director"
    ) -> Profile:
        """Make sure a training director profile with this id exists.

        Idempotent: repeated calls leave an existing director untouched.

        Raises:
            AccessDeniedError: If the requester is not a system principal
            IntegrityViolationError: If the id belongs to a non-director profile
        """
        _require_system(actor, Table.PROFILES, Operation.INSERT)
        with self.store.transaction() as conn:
            created = self.store.insert_profile_if_absent(
                conn, admin_id, Role.TRAINING_DIRECTOR, full_name
            )
            profile = self.store.get_profile(conn, admin_id)
            if profile is None:
                raise IntegrityViolationError(f"Profile {admin_id} was not stored")
            if profile.role != Role.TRAINING_DIRECTOR:
                raise IntegrityViolationError(
                    f"Profile {admin_id} exists with role {profile.role.value}"
                )

        logger.info("Ensured admin profile", extra={"profile_id": admin_id, "created": created})
        return profile

    async def list_contacts(self, actor: Principal) -> list[Profile]:
        """Profiles the requester works with.

        Clients see their mentor; mentors see their clients and their
        director; directors see their mentors and those mentors' clients.
        """
        uid = _require_user(actor, Table.PROFILES, Operation.READ)
        with self.store.read() as conn:
            me = self.store.get_profile(conn, uid)
            if me is None:
                return []

            contacts: list[Profile] = []
            if me.role == Role.CLIENT:
                mentor = self.store.get_profile(conn, me.mentor_id)
                if mentor is not None:
                    contacts.append(mentor)
            elif me.role == Role.MENTOR:
                contacts.extend(self.store.list_clients_of(conn, uid))
                director = self.store.get_profile(conn, me.director_id)
                if director is not None:
                    contacts.append(director)
            else:
                mentors = self.store.list_mentors_of(conn, uid)
                contacts.extend(mentors)
                for mentor in mentors:
                    contacts.extend(self.store.list_clients_of(conn, mentor.id))

            return self.policy.filter_visible(conn, actor, Table.PROFILES, contacts)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def _create_conversation_in(
        self, conn: sqlite3.Connection, actor: Principal, client_id: str, mentor_id: str
    ) -> Conversation:
        proposed = Conversation(
            id=new_id(), client_id=client_id, mentor_id=mentor_id, created_at=now_ms()
        )
        self.policy.check_or_raise(conn, actor, Table.CONVERSATIONS, Operation.INSERT, proposed)
        conversation = self.store.insert_conversation(
            conn,
            client_id,
            mentor_id,
            conversation_id=proposed.id,
            created_at=proposed.created_at,
        )
        self.materializer.on_conversation_created(conn, conversation)
        return conversation

    async def create_conversation(
        self, actor: Principal, client_id: str, mentor_id: str
    ) -> Conversation:
        """Create a conversation and materialize its membership atomically.

        Raises:
            AccessDeniedError: If the requester may not open this channel
            IntegrityViolationError: If the profiles don't have client/mentor roles
            ConsistencyError: If membership could not be fully materialized
        """
        with self.store.transaction() as conn:
            conversation = self._create_conversation_in(conn, actor, client_id, mentor_id)

        logger.info(
            "Created conversation",
            extra={"conversation_id": conversation.id, "client_id": client_id, "mentor_id": mentor_id},
        )
        await self.hub.publish(Table.CONVERSATIONS, conversation)
        return conversation

    async def get_or_create_conversation(self, actor: Principal, contact_id: str) -> Conversation:
        """Find the channel between the requester and a contact, creating it if needed.

        Raises:
            AccessDeniedError: If the requester may not open this channel
            IntegrityViolationError: If the pair is not one client and one mentor
        """
        uid = _require_user(actor, Table.CONVERSATIONS, Operation.INSERT)
        created = False
        with self.store.transaction() as conn:
            me = self.store.get_profile(conn, uid)
            contact = self.store.get_profile(conn, contact_id)
            if me is None or contact is None:
                raise IntegrityViolationError("Both profiles must exist to open a conversation")

            roles = {me.role: me.id, contact.role: contact.id}
            if set(roles) != {Role.CLIENT, Role.MENTOR}:
                raise IntegrityViolationError(
                    "A conversation pairs exactly one client with one mentor"
                )
            client_id, mentor_id = roles[Role.CLIENT], roles[Role.MENTOR]

            conversation = self.store.find_conversation(conn, client_id, mentor_id)
            if conversation is not None:
                self.policy.check_or_raise(
                    conn, actor, Table.CONVERSATIONS, Operation.READ, conversation
                )
            else:
                conversation = self._create_conversation_in(conn, actor, client_id, mentor_id)
                created = True

        if created:
            logger.info("Created conversation", extra={"conversation_id": conversation.id})
            await self.hub.publish(Table.CONVERSATIONS, conversation)
        return conversation

    async def get_conversation(self, actor: Principal, conversation_id: str) -> Conversation | None:
        with self.store.read() as conn:
            conversation = self.store.get_conversation(conn, conversation_id)
            if not self.policy.check(
                conn, actor, Table.CONVERSATIONS, Operation.READ, conversation
            ):
                return None
            return conversation

    async def list_conversations(self, actor: Principal) -> list[Conversation]:
        with self.store.read() as conn:
            if actor.is_system:
                rows = self.store.list_conversations(conn)
            else:
                rows = self.store.list_candidate_conversations(conn, actor.id)
            return self.policy.filter_visible(conn, actor, Table.CONVERSATIONS, rows)

    async def list_participants(self, actor: Principal, conversation_id: str) -> list[Participant]:
        with self.store.read() as conn:
            rows = self.store.list_participants(conn, conversation_id)
            return self.policy.filter_visible(conn, actor, Table.CONVERSATION_PARTICIPANTS, rows)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(
        self,
        actor: Principal,
        conversation_id: str,
        audio_url: str | None = None,
        duration: float = 0.0,
        text_transcript: str | None = None,
        message_id: str | None = None,
    ) -> AudioMessage:
        """Post a voice or text message as the requester.

        For voice messages the recording is uploaded first to
        `{conversation_id}/{message_id}.{ext}`; the message id defaults to the
        one named in that path.

        Raises:
            AccessDeniedError: If the requester is not a member of the conversation
            IntegrityViolationError: If the message is empty or too long, or its
                audio path belongs to another conversation or to a recording the
                requester did not upload
        """
        uid = _require_user(actor, Table.AUDIO_MESSAGES, Operation.INSERT)
        if audio_url:
            ref = parse_object_path(audio_url, self.bucket)
            if ref.conversation_id != conversation_id:
                raise IntegrityViolationError("audio_url points into another conversation")
            if await self.objects.owner_of(ref) != uid:
                raise IntegrityViolationError("audio_url is not a recording uploaded by the sender")
            message_id = message_id or ref.message_id

        proposed = AudioMessage(
            id=message_id or new_id(),
            conversation_id=conversation_id,
            sender_id=uid,
            audio_url=audio_url,
            duration=duration,
            text_transcript=text_transcript,
            created_at=now_ms(),
        )
        with self.store.transaction() as conn:
            self.policy.check_or_raise(conn, actor, Table.AUDIO_MESSAGES, Operation.INSERT, proposed)
            message = self.store.insert_message(
                conn,
                conversation_id,
                uid,
                audio_url=audio_url,
                duration=duration,
                text_transcript=text_transcript,
                message_id=proposed.id,
                created_at=proposed.created_at,
            )

        logger.debug(
            "Message sent",
            extra={"message_id": message.id, "conversation_id": conversation_id},
        )
        await self.hub.publish(Table.AUDIO_MESSAGES, message)
        return message

    async def get_message(self, actor: Principal, message_id: str) -> AudioMessage | None:
        with self.store.read() as conn:
            message = self.store.get_message(conn, message_id)
            if not self.policy.check(conn, actor, Table.AUDIO_MESSAGES, Operation.READ, message):
                return None
            return message

    async def list_messages(
        self,
        actor: Principal,
        conversation_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AudioMessage]:
        """Messages of a conversation in chronological order; empty if not readable."""
        with self.store.read() as conn:
            rows = self.store.list_messages(conn, conversation_id, limit=limit, offset=offset)
            return self.policy.filter_visible(conn, actor, Table.AUDIO_MESSAGES, rows)

    async def list_recent_messages(self, actor: Principal, limit: int = 20) -> list[AudioMessage]:
        """Newest messages across every conversation the requester can read."""
        conversations = await self.list_conversations(actor)
        with self.store.read() as conn:
            rows = self.store.list_recent_messages(
                conn, [c.id for c in conversations], limit=limit
            )
            return self.policy.filter_visible(conn, actor, Table.AUDIO_MESSAGES, rows)

    async def delete_message(self, actor: Principal, message_id: str) -> bool:
        """Delete a message. Only its sender may do so."""
        with self.store.transaction() as conn:
            message = self.store.get_message(conn, message_id)
            if not self.policy.check(conn, actor, Table.AUDIO_MESSAGES, Operation.DELETE, message):
                return False
            return self.store.delete_message(conn, message_id)

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------

    async def add_bookmark(
        self,
        actor: Principal,
        message_id: str,
        timestamp_sec: float = 0.0,
        label: str | None = None,
    ) -> Bookmark:
        """Bookmark a position in a message the requester can read.

        Raises:
            AccessDeniedError: If the message is not readable by the requester
        """
        uid = _require_user(actor, Table.BOOKMARKS, Operation.INSERT)
        proposed = Bookmark(
            id="",
            message_id=message_id,
            user_id=uid,
            timestamp_sec=timestamp_sec,
            label=label,
            created_at=0,
        )
        with self.store.transaction() as conn:
            self.policy.check_or_raise(conn, actor, Table.BOOKMARKS, Operation.INSERT, proposed)
            bookmark = self.store.insert_bookmark(
                conn, uid, message_id, timestamp_sec=timestamp_sec, label=label
            )

        await self.hub.publish(Table.BOOKMARKS, bookmark)
        return bookmark

    async def list_bookmarks(
        self, actor: Principal, message_id: str | None = None
    ) -> list[Bookmark]:
        uid = _require_user(actor, Table.BOOKMARKS, Operation.READ)
        with self.store.read() as conn:
            rows = self.store.list_bookmarks(conn, uid, message_id)
            return self.policy.filter_visible(conn, actor, Table.BOOKMARKS, rows)

    async def update_bookmark(
        self,
        actor: Principal,
        bookmark_id: str,
        label: str | None = None,
        timestamp_sec: float | None = None,
    ) -> Bookmark | None:
        with self.store.transaction() as conn:
            existing = self.store.get_bookmark(conn, bookmark_id)
            if not self.policy.check(conn, actor, Table.BOOKMARKS, Operation.UPDATE, existing):
                return None
            return self.store.update_bookmark(
                conn, bookmark_id, label=label, timestamp_sec=timestamp_sec
            )

    async def delete_bookmark(self, actor: Principal, bookmark_id: str) -> bool:
        with self.store.transaction() as conn:
            existing = self.store.get_bookmark(conn, bookmark_id)
            if not self.policy.check(conn, actor, Table.BOOKMARKS, Operation.DELETE, existing):
                return False
            return self.store.delete_bookmark(conn, bookmark_id)

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    async def add_favorite(self, actor: Principal, message_id: str) -> Favorite:
        """Star a message the requester can read.

        Raises:
            AccessDeniedError: If the message is not readable by the requester
        """
        uid = _require_user(actor, Table.FAVORITES, Operation.INSERT)
        proposed = Favorite(user_id=uid, message_id=message_id, created_at=0)
        with self.store.transaction() as conn:
            self.policy.check_or_raise(conn, actor, Table.FAVORITES, Operation.INSERT, proposed)
            already = self.store.get_favorite(conn, uid, message_id) is not None
            favorite = self.store.insert_favorite(conn, uid, message_id)

        if not already:
            await self.hub.publish(Table.FAVORITES, favorite)
        return favorite

    async def remove_favorite(self, actor: Principal, message_id: str) -> bool:
        uid = _require_user(actor, Table.FAVORITES, Operation.DELETE)
        with self.store.transaction() as conn:
            existing = self.store.get_favorite(conn, uid, message_id)
            if not self.policy.check(conn, actor, Table.FAVORITES, Operation.DELETE, existing):
                return False
            return self.store.delete_favorite(conn, uid, message_id)

    async def list_favorites(self, actor: Principal) -> list[Favorite]:
        uid = _require_user(actor, Table.FAVORITES, Operation.READ)
        with self.store.read() as conn:
            rows = self.store.list_favorites(conn, uid)
            return self.policy.filter_visible(conn, actor, Table.FAVORITES, rows)

    async def toggle_favorite(self, actor: Principal, message_id: str) -> bool:
        """Flip the star on a message. Returns True if it is now a favorite."""
        if await self.remove_favorite(actor, message_id):
            return False
        await self.add_favorite(actor, message_id)
        return True

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def create_folder(self, actor: Principal, name: str) -> Folder:
        uid = _require_user(actor, Table.FOLDERS, Operation.INSERT)
        proposed = Folder(id="", owner_id=uid, name=name, created_at=0)
        with self.store.transaction() as conn:
            self.policy.check_or_raise(conn, actor, Table.FOLDERS, Operation.INSERT, proposed)
            return self.store.insert_folder(conn, uid, name)

    async def list_folders(self, actor: Principal) -> list[Folder]:
        uid = _require_user(actor, Table.FOLDERS, Operation.READ)
        with self.store.read() as conn:
            rows = self.store.list_folders(conn, uid)
            return self.policy.filter_visible(conn, actor, Table.FOLDERS, rows)

    async def rename_folder(self, actor: Principal, folder_id: str, name: str) -> Folder | None:
        with self.store.transaction() as conn:
            existing = self.store.get_folder(conn, folder_id)
            if not self.policy.check(conn, actor, Table.FOLDERS, Operation.UPDATE, existing):
                return None
            return self.store.rename_folder(conn, folder_id, name)

    async def delete_folder(self, actor: Principal, folder_id: str) -> bool:
        with self.store.transaction() as conn:
            existing = self.store.get_folder(conn, folder_id)
            if not self.policy.check(conn, actor, Table.FOLDERS, Operation.DELETE, existing):
                return False
            return self.store.delete_folder(conn, folder_id)

    async def add_folder_item(
        self, actor: Principal, folder_id: str, message_id: str
    ) -> FolderItem:
        """File a message in one of the requester's folders.

        Raises:
            AccessDeniedError: If the folder is not the requester's, or the
                message's conversation doesn't count the requester as a member
        """
        proposed = FolderItem(folder_id=folder_id, message_id=message_id, added_at=0)
        with self.store.transaction() as conn:
            self.policy.check_or_raise(conn, actor, Table.FOLDER_ITEMS, Operation.INSERT, proposed)
            return self.store.insert_folder_item(conn, folder_id, message_id)

    async def remove_folder_item(self, actor: Principal, folder_id: str, message_id: str) -> bool:
        with self.store.transaction() as conn:
            existing = self.store.get_folder_item(conn, folder_id, message_id)
            if not self.policy.check(conn, actor, Table.FOLDER_ITEMS, Operation.DELETE, existing):
                return False
            return self.store.delete_folder_item(conn, folder_id, message_id)

    async def list_folder_items(self, actor: Principal, folder_id: str) -> list[FolderItem]:
        with self.store.read() as conn:
            rows = self.store.list_folder_items(conn, folder_id)
            return self.policy.filter_visible(conn, actor, Table.FOLDER_ITEMS, rows)

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    async def upload_audio(
        self,
        actor: Principal,
        path: str,
        data: bytes,
        content_type: str = "audio/mp3",
    ) -> StoredObject:
        """Store a recording under `{conversation_id}/{message_id}.{ext}`.

        Recordings are write-once. The declared owner of a path that is
        already taken is its original uploader, so anyone else is denied and
        the uploader gets a conflict.

        Raises:
            InvalidObjectPathError: If the path is malformed
            AccessDeniedError: If the requester is not a member of the conversation
                or the path holds another member's recording
            IntegrityViolationError: If the requester already uploaded this path
            ObjectStoreUnavailableError: If the object store cannot be reached
        """
        uid = _require_user(actor, Table.OBJECTS, Operation.INSERT)
        ref = parse_object_path(path, self.bucket)
        ref = ref.with_owner(await self.objects.owner_of(ref) or uid)
        with self.store.read() as conn:
            self.policy.check_or_raise(conn, actor, Table.OBJECTS, Operation.INSERT, ref)

        try:
            stored = await self.objects.put(ref, data, content_type)
        except ObjectExistsError as e:
            raise IntegrityViolationError(f"Recording already exists: {ref.path}") from e
        logger.debug("Stored recording", extra={"path": ref.path, "size": stored.size})
        return stored

    async def download_audio(self, actor: Principal, path: str) -> StoredObject | None:
        """Fetch a recording; None if missing or not readable."""
        ref = parse_object_path(path, self.bucket)
        with self.store.read() as conn:
            if not self.policy.check(conn, actor, Table.OBJECTS, Operation.READ, ref):
                return None
        return await self.objects.get(ref)

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    async def verify_membership(
        self, actor: Principal, conversation_id: str | None = None
    ) -> list[MembershipReport]:
        """Compare materialized membership with the live hierarchy. Administrative only.

        Args:
            conversation_id: Check one conversation (default: all)
        """
        _require_system(actor, Table.CONVERSATION_PARTICIPANTS, Operation.READ)
        with self.store.read() as conn:
            if conversation_id is None:
                conversations = self.store.list_conversations(conn)
            else:
                conversation = self.store.get_conversation(conn, conversation_id)
                conversations = [conversation] if conversation else []
            return [self.materializer.verify(conn, c) for c in conversations]

    async def backfill_membership(self, actor: Principal) -> int:
        """Insert missing membership rows for every conversation. Administrative only."""
        _require_system(actor, Table.CONVERSATION_PARTICIPANTS, Operation.INSERT)
        with self.store.transaction() as conn:
            return self.materializer.backfill(conn)
