"""
Canonical SQLite store for Voxtier.

This module manages the single SQLite database that stores:
- Profiles with their role and hierarchy pointers
- Conversations between a client and a mentor
- Materialized conversation membership
- Audio/text messages and the per-user bookmarks, favorites and folders

The store knows nothing about requesters. Authorization lives in the policy
engine (acl.py) and every public path goes through the data service
(service.py), which opens a transaction here and hands the connection to the
row helpers below.

Invariants:
    - All writes happen inside transaction() (BEGIN IMMEDIATE ... COMMIT)
    - A failed write rolls back completely; no partial rows survive
    - Profile hierarchy pointers always reference profiles of the right role
    - Conversations always pair a client profile with a mentor profile
    - A message carries audio, text or both, and its duration is bounded

How to change safely:
    - Schema changes must be additive (new nullable columns, new tables)
    - Keep row helpers free of authorization decisions
    - Map new sqlite3 failure modes to the errors declared here

Table schema:
    profiles:
        - id TEXT PRIMARY KEY (identity provider user id)
        - created_at INTEGER (Unix ms)
        - role TEXT (client | mentor | training_director)
        - mentor_id TEXT NULL -> profiles.id
        - director_id TEXT NULL -> profiles.id
        - full_name TEXT
        - avatar_url TEXT NULL

    conversations:
        - id TEXT PRIMARY KEY (UUID)
        - client_id TEXT -> profiles.id
        - mentor_id TEXT -> profiles.id

    conversation_participants:
        - PRIMARY KEY (conversation_id, user_id)
        - role TEXT

    audio_messages:
        - id TEXT PRIMARY KEY (UUID, may be chosen by the uploader)
        - conversation_id, sender_id, audio_url NULL, duration REAL, text_transcript NULL

    bookmarks / favorites / folders / folder_items:
        - per-user annotations on messages
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class Role(Enum):
    """Account roles in the mentoring hierarchy."""

    CLIENT = "client"
    MENTOR = "mentor"
    TRAINING_DIRECTOR = "training_director"


class IntegrityViolationError(Exception):
    """A write would break a referential or domain invariant.

    Raised after the enclosing transaction has been rolled back.
    """

    pass


class StoreUnavailableError(Exception):
    """The database is locked, busy or otherwise temporarily unusable.

    Transient; callers may retry.
    """

    retryable = True


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Profile:
    """A user profile.

    Attributes:
        id: Identity provider user id (1:1 with an identity)
        role: Account role
        full_name: Display name
        avatar_url: Optional avatar locator
        mentor_id: For clients, the assigned mentor
        director_id: For mentors, the supervising training director
        created_at: Creation timestamp (Unix ms)
    """

    id: str
    role: Role
    full_name: str
    avatar_url: str | None
    mentor_id: str | None
    director_id: str | None
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Profile:
        return cls(
            id=row["id"],
            role=Role(row["role"]),
            full_name=row["full_name"],
            avatar_url=row["avatar_url"],
            mentor_id=row["mentor_id"],
            director_id=row["director_id"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data


@dataclass
class Conversation:
    """A channel between one client and one mentor."""

    id: str
    client_id: str
    mentor_id: str
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Conversation:
        return cls(
            id=row["id"],
            client_id=row["client_id"],
            mentor_id=row["mentor_id"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Participant:
    """A materialized membership row."""

    conversation_id: str
    user_id: str
    role: Role

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Participant:
        return cls(
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            role=Role(row["role"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"conversation_id": self.conversation_id, "user_id": self.user_id, "role": self.role.value}


@dataclass
class AudioMessage:
    """A voice or text message.

    Attributes:
        id: Message identifier
        conversation_id: Owning conversation
        sender_id: Profile that sent the message
        audio_url: Object path of the recording, None for text messages
        duration: Recording length in seconds (0 for text)
        text_transcript: Text body or transcript
        created_at: Creation timestamp (Unix ms)
    """

    id: str
    conversation_id: str
    sender_id: str
    audio_url: str | None
    duration: float
    text_transcript: str | None
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> AudioMessage:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            audio_url=row["audio_url"],
            duration=row["duration"],
            text_transcript=row["text_transcript"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Bookmark:
    """A labelled position inside a message."""

    id: str
    message_id: str
    user_id: str
    timestamp_sec: float
    label: str | None
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Bookmark:
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            user_id=row["user_id"],
            timestamp_sec=row["timestamp_sec"],
            label=row["label"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Favorite:
    """A starred message."""

    user_id: str
    message_id: str
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Favorite:
        return cls(user_id=row["user_id"], message_id=row["message_id"], created_at=row["created_at"])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Folder:
    """A named collection of messages owned by one user."""

    id: str
    owner_id: str
    name: str
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Folder:
        return cls(id=row["id"], owner_id=row["owner_id"], name=row["name"], created_at=row["created_at"])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FolderItem:
    """A message filed in a folder."""

    folder_id: str
    message_id: str
    added_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FolderItem:
        return cls(folder_id=row["folder_id"], message_id=row["message_id"], added_at=row["added_at"])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_ROLE_CHECK = "CHECK (role IN ('client', 'mentor', 'training_director'))"

SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        created_at INTEGER NOT NULL,
        role TEXT NOT NULL {_ROLE_CHECK},
        mentor_id TEXT REFERENCES profiles(id) ON DELETE SET NULL,
        director_id TEXT REFERENCES profiles(id) ON DELETE SET NULL,
        full_name TEXT NOT NULL,
        avatar_url TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_profiles_mentor ON profiles(mentor_id);
    CREATE INDEX IF NOT EXISTS idx_profiles_director ON profiles(director_id);

    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        created_at INTEGER NOT NULL,
        client_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        mentor_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_conversations_client ON conversations(client_id);
    CREATE INDEX IF NOT EXISTS idx_conversations_mentor ON conversations(mentor_id);

    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        role TEXT NOT NULL {_ROLE_CHECK},
        PRIMARY KEY (conversation_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_participants_user ON conversation_participants(user_id);

    CREATE TABLE IF NOT EXISTS audio_messages (
        id TEXT PRIMARY KEY,
        created_at INTEGER NOT NULL,
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        sender_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        audio_url TEXT,
        duration REAL NOT NULL DEFAULT 0,
        text_transcript TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON audio_messages(conversation_id, created_at);

    CREATE TABLE IF NOT EXISTS bookmarks (
        id TEXT PRIMARY KEY,
        created_at INTEGER NOT NULL,
        message_id TEXT NOT NULL REFERENCES audio_messages(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        timestamp_sec REAL NOT NULL DEFAULT 0,
        label TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_bookmarks_user ON bookmarks(user_id, message_id);

    CREATE TABLE IF NOT EXISTS favorites (
        user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        message_id TEXT NOT NULL REFERENCES audio_messages(id) ON DELETE CASCADE,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (user_id, message_id)
    );

    CREATE TABLE IF NOT EXISTS folders (
        id TEXT PRIMARY KEY,
        created_at INTEGER NOT NULL,
        owner_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        name TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_folders_owner ON folders(owner_id);

    CREATE TABLE IF NOT EXISTS folder_items (
        folder_id TEXT NOT NULL REFERENCES folders(id) ON DELETE CASCADE,
        message_id TEXT NOT NULL REFERENCES audio_messages(id) ON DELETE CASCADE,
        added_at INTEGER NOT NULL,
        PRIMARY KEY (folder_id, message_id)
    );

    INSERT OR IGNORE INTO schema_version (version, applied_at)
    VALUES (1, strftime('%s', 'now') * 1000);
"""


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


class CanonicalStore:
    """SQLite store for all Voxtier tables.

    Connections are opened per operation and closed on exit. Writers take
    the database write lock up front with BEGIN IMMEDIATE so that a
    conversation and its membership rows commit or vanish together.

    Example:
        >>> store = CanonicalStore("/var/lib/voxtier")
        >>> await store.initialize()
        >>> with store.transaction() as conn:
        ...     store.insert_profile(conn, "u1", Role.CLIENT, "Ada")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "voxtier.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        max_message_duration_sec: float = 15 * 60,
    ) -> None:
        """Initialize the canonical store.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            max_message_duration_sec: Upper bound on message duration
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.max_message_duration_sec = max_message_duration_sec
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database file."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Cannot open database: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                logger.info("Initialized database", extra={"db_path": str(self.db_path)})

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside a single write transaction.

        Yields:
            Connection with an open BEGIN IMMEDIATE transaction

        Raises:
            IntegrityViolationError: On constraint failure (after rollback)
            StoreUnavailableError: If the database is locked or busy
        """
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.IntegrityError as e:
            logger.warning("Integrity violation", extra={"error": str(e)})
            raise IntegrityViolationError(str(e)) from e
        except sqlite3.OperationalError as e:
            if _is_transient(e):
                raise StoreUnavailableError(str(e)) from e
            raise

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Open a connection for reads only.

        Raises:
            StoreUnavailableError: If the database is locked or busy
        """
        try:
            with self._get_connection() as conn:
                yield conn
        except sqlite3.OperationalError as e:
            if _is_transient(e):
                raise StoreUnavailableError(str(e)) from e
            raise

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, conn: sqlite3.Connection, profile_id: str | None) -> Profile | None:
        if profile_id is None:
            return None
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        return Profile.from_row(row) if row else None

    def _require_role(
        self, conn: sqlite3.Connection, profile_id: str, role: Role, field_name: str
    ) -> Profile:
        target = self.get_profile(conn, profile_id)
        if target is None:
            raise IntegrityViolationError(f"{field_name} references unknown profile {profile_id}")
        if target.role != role:
            raise IntegrityViolationError(
                f"{field_name} must reference a {role.value}, got {target.role.value}"
            )
        return target

    def insert_profile(
        self,
        conn: sqlite3.Connection,
        profile_id: str,
        role: Role,
        full_name: str,
        avatar_url: str | None = None,
        mentor_id: str | None = None,
        director_id: str | None = None,
        created_at: int | None = None,
    ) -> Profile:
        """Insert a profile row.

        Raises:
            IntegrityViolationError: If the id exists or a pointer has the wrong role
        """
        if not full_name or not full_name.strip():
            raise IntegrityViolationError("full_name must not be empty")
        if mentor_id is not None:
            self._require_role(conn, mentor_id, Role.MENTOR, "mentor_id")
        if director_id is not None:
            self._require_role(conn, director_id, Role.TRAINING_DIRECTOR, "director_id")

        now = created_at or now_ms()
        conn.execute(
            """
            INSERT INTO profiles (id, created_at, role, mentor_id, director_id, full_name, avatar_url)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (profile_id, now, role.value, mentor_id, director_id, full_name, avatar_url),
        )
        return Profile(
            id=profile_id,
            role=role,
            full_name=full_name,
            avatar_url=avatar_url,
            mentor_id=mentor_id,
            director_id=director_id,
            created_at=now,
        )

    def insert_profile_if_absent(
        self,
        conn: sqlite3.Connection,
        profile_id: str,
        role: Role,
        full_name: str,
    ) -> bool:
        """Insert a profile unless one with this id exists. Returns True if inserted."""
        cursor = conn.execute(
            """
            INSERT INTO profiles (id, created_at, role, full_name)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO NOTHING
            """,
            (profile_id, now_ms(), role.value, full_name),
        )
        return cursor.rowcount > 0

    def list_profiles(self, conn: sqlite3.Connection, role: Role | None = None) -> list[Profile]:
        if role is None:
            rows = conn.execute("SELECT * FROM profiles ORDER BY full_name, id").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM profiles WHERE role = ? ORDER BY full_name, id", (role.value,)
            ).fetchall()
        return [Profile.from_row(r) for r in rows]

    def list_clients_of(self, conn: sqlite3.Connection, mentor_id: str) -> list[Profile]:
        rows = conn.execute(
            "SELECT * FROM profiles WHERE mentor_id = ? AND role = 'client' ORDER BY full_name, id",
            (mentor_id,),
        ).fetchall()
        return [Profile.from_row(r) for r in rows]

    def list_mentors_of(self, conn: sqlite3.Connection, director_id: str) -> list[Profile]:
        rows = conn.execute(
            "SELECT * FROM profiles WHERE director_id = ? AND role = 'mentor' ORDER BY full_name, id",
            (director_id,),
        ).fetchall()
        return [Profile.from_row(r) for r in rows]

    def update_profile_fields(
        self,
        conn: sqlite3.Connection,
        profile_id: str,
        full_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Profile | None:
        """Update display fields. Returns the updated profile or None if missing."""
        existing = self.get_profile(conn, profile_id)
        if existing is None:
            return None
        if full_name is not None:
            if not full_name.strip():
                raise IntegrityViolationError("full_name must not be empty")
            existing.full_name = full_name
        if avatar_url is not None:
            existing.avatar_url = avatar_url
        conn.execute(
            "UPDATE profiles SET full_name = ?, avatar_url = ? WHERE id = ?",
            (existing.full_name, existing.avatar_url, profile_id),
        )
        return existing

    def set_mentor(self, conn: sqlite3.Connection, client_id: str, mentor_id: str | None) -> Profile:
        """Point a client profile at a mentor (or clear it).

        Raises:
            IntegrityViolationError: If either profile is missing or has the wrong role
        """
        self._require_role(conn, client_id, Role.CLIENT, "client_id")
        if mentor_id is not None:
            self._require_role(conn, mentor_id, Role.MENTOR, "mentor_id")
        conn.execute("UPDATE profiles SET mentor_id = ? WHERE id = ?", (mentor_id, client_id))
        return self._require_role(conn, client_id, Role.CLIENT, "client_id")

    def set_director(
        self, conn: sqlite3.Connection, mentor_id: str, director_id: str | None
    ) -> Profile:
        """Point a mentor profile at a training director (or clear it).

        Raises:
            IntegrityViolationError: If either profile is missing or has the wrong role
        """
        self._require_role(conn, mentor_id, Role.MENTOR, "mentor_id")
        if director_id is not None:
            self._require_role(conn, director_id, Role.TRAINING_DIRECTOR, "director_id")
        conn.execute("UPDATE profiles SET director_id = ? WHERE id = ?", (director_id, mentor_id))
        return self._require_role(conn, mentor_id, Role.MENTOR, "mentor_id")

    def delete_profile(self, conn: sqlite3.Connection, profile_id: str) -> bool:
        cursor = conn.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Conversations and membership
    # ------------------------------------------------------------------

    def insert_conversation(
        self,
        conn: sqlite3.Connection,
        client_id: str,
        mentor_id: str,
        conversation_id: str | None = None,
        created_at: int | None = None,
    ) -> Conversation:
        """Insert a conversation row.

        Raises:
            IntegrityViolationError: If client_id is not a client or mentor_id is not a mentor
        """
        self._require_role(conn, client_id, Role.CLIENT, "client_id")
        self._require_role(conn, mentor_id, Role.MENTOR, "mentor_id")

        conversation_id = conversation_id or new_id()
        now = created_at or now_ms()
        conn.execute(
            "INSERT INTO conversations (id, created_at, client_id, mentor_id) VALUES (?, ?, ?, ?)",
            (conversation_id, now, client_id, mentor_id),
        )
        return Conversation(id=conversation_id, client_id=client_id, mentor_id=mentor_id, created_at=now)

    def get_conversation(self, conn: sqlite3.Connection, conversation_id: str) -> Conversation | None:
        row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return Conversation.from_row(row) if row else None

    def find_conversation(
        self, conn: sqlite3.Connection, client_id: str, mentor_id: str
    ) -> Conversation | None:
        """Return the oldest conversation between a client and a mentor, if any."""
        row = conn.execute(
            """
            SELECT * FROM conversations WHERE client_id = ? AND mentor_id = ?
            ORDER BY created_at, id LIMIT 1
            """,
            (client_id, mentor_id),
        ).fetchone()
        return Conversation.from_row(row) if row else None

    def list_conversations(self, conn: sqlite3.Connection) -> list[Conversation]:
        rows = conn.execute("SELECT * FROM conversations ORDER BY created_at DESC, id").fetchall()
        return [Conversation.from_row(r) for r in rows]

    def list_candidate_conversations(
        self, conn: sqlite3.Connection, user_id: str
    ) -> list[Conversation]:
        """Conversations a user may be able to see.

        Includes every conversation with a membership row for the user, plus
        conversations with no membership rows at all (legacy data), which the
        policy engine resolves against the live hierarchy.
        """
        rows = conn.execute(
            """
            SELECT c.* FROM conversations c
            WHERE EXISTS (
                SELECT 1 FROM conversation_participants p
                WHERE p.conversation_id = c.id AND p.user_id = ?
            )
            OR NOT EXISTS (
                SELECT 1 FROM conversation_participants p WHERE p.conversation_id = c.id
            )
            ORDER BY c.created_at DESC, c.id
            """,
            (user_id,),
        ).fetchall()
        return [Conversation.from_row(r) for r in rows]

    def list_conversations_for_mentor(
        self, conn: sqlite3.Connection, mentor_id: str
    ) -> list[Conversation]:
        rows = conn.execute(
            "SELECT * FROM conversations WHERE mentor_id = ? ORDER BY created_at, id", (mentor_id,)
        ).fetchall()
        return [Conversation.from_row(r) for r in rows]

    def insert_participant(
        self, conn: sqlite3.Connection, conversation_id: str, user_id: str, role: Role
    ) -> bool:
        """Insert a membership row; an existing row is left untouched. Returns True if inserted."""
        cursor = conn.execute(
            """
            INSERT INTO conversation_participants (conversation_id, user_id, role)
            VALUES (?, ?, ?)
            ON CONFLICT (conversation_id, user_id) DO NOTHING
            """,
            (conversation_id, user_id, role.value),
        )
        return cursor.rowcount > 0

    def delete_participants(
        self, conn: sqlite3.Connection, conversation_id: str, role: Role | None = None
    ) -> int:
        if role is None:
            cursor = conn.execute(
                "DELETE FROM conversation_participants WHERE conversation_id = ?",
                (conversation_id,),
            )
        else:
            cursor = conn.execute(
                "DELETE FROM conversation_participants WHERE conversation_id = ? AND role = ?",
                (conversation_id, role.value),
            )
        return cursor.rowcount

    def list_participants(self, conn: sqlite3.Connection, conversation_id: str) -> list[Participant]:
        rows = conn.execute(
            "SELECT * FROM conversation_participants WHERE conversation_id = ? ORDER BY role, user_id",
            (conversation_id,),
        ).fetchall()
        return [Participant.from_row(r) for r in rows]

    def has_participant(self, conn: sqlite3.Connection, conversation_id: str, user_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM conversation_participants WHERE conversation_id = ? AND user_id = ?",
            (conversation_id, user_id),
        ).fetchone()
        return row is not None

    def count_participants(self, conn: sqlite3.Connection, conversation_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM conversation_participants WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_message(
        self,
        conn: sqlite3.Connection,
        conversation_id: str,
        sender_id: str,
        audio_url: str | None = None,
        duration: float = 0.0,
        text_transcript: str | None = None,
        message_id: str | None = None,
        created_at: int | None = None,
    ) -> AudioMessage:
        """Insert a message row.

        Raises:
            IntegrityViolationError: If the message carries neither audio nor text,
                or its duration is outside 0..max_message_duration_sec
        """
        if not audio_url and not (text_transcript and text_transcript.strip()):
            raise IntegrityViolationError("A message needs an audio locator or a text transcript")
        if duration < 0 or duration > self.max_message_duration_sec:
            raise IntegrityViolationError(
                f"duration {duration} outside 0..{self.max_message_duration_sec} seconds"
            )

        message_id = message_id or new_id()
        now = created_at or now_ms()
        conn.execute(
            """
            INSERT INTO audio_messages
                (id, created_at, conversation_id, sender_id, audio_url, duration, text_transcript)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (message_id, now, conversation_id, sender_id, audio_url, duration, text_transcript),
        )
        return AudioMessage(
            id=message_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            audio_url=audio_url,
            duration=duration,
            text_transcript=text_transcript,
            created_at=now,
        )

    def get_message(self, conn: sqlite3.Connection, message_id: str) -> AudioMessage | None:
        row = conn.execute("SELECT * FROM audio_messages WHERE id = ?", (message_id,)).fetchone()
        return AudioMessage.from_row(row) if row else None

    def list_messages(
        self,
        conn: sqlite3.Connection,
        conversation_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AudioMessage]:
        """Messages of a conversation in chronological order."""
        rows = conn.execute(
            """
            SELECT * FROM audio_messages WHERE conversation_id = ?
            ORDER BY created_at, id LIMIT ? OFFSET ?
            """,
            (conversation_id, limit, offset),
        ).fetchall()
        return [AudioMessage.from_row(r) for r in rows]

    def list_recent_messages(
        self, conn: sqlite3.Connection, conversation_ids: list[str], limit: int = 20
    ) -> list[AudioMessage]:
        """Newest messages across several conversations."""
        if not conversation_ids:
            return []
        placeholders = ",".join("?" for _ in conversation_ids)
        rows = conn.execute(
            f"""
            SELECT * FROM audio_messages WHERE conversation_id IN ({placeholders})
            ORDER BY created_at DESC, id LIMIT ?
            """,
            (*conversation_ids, limit),
        ).fetchall()
        return [AudioMessage.from_row(r) for r in rows]

    def delete_message(self, conn: sqlite3.Connection, message_id: str) -> bool:
        cursor = conn.execute("DELETE FROM audio_messages WHERE id = ?", (message_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------

    def insert_bookmark(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        message_id: str,
        timestamp_sec: float = 0.0,
        label: str | None = None,
    ) -> Bookmark:
        if timestamp_sec < 0:
            raise IntegrityViolationError("timestamp_sec must not be negative")
        bookmark = Bookmark(
            id=new_id(),
            message_id=message_id,
            user_id=user_id,
            timestamp_sec=timestamp_sec,
            label=label,
            created_at=now_ms(),
        )
        conn.execute(
            """
            INSERT INTO bookmarks (id, created_at, message_id, user_id, timestamp_sec, label)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                bookmark.id,
                bookmark.created_at,
                message_id,
                user_id,
                timestamp_sec,
                label,
            ),
        )
        return bookmark

    def get_bookmark(self, conn: sqlite3.Connection, bookmark_id: str) -> Bookmark | None:
        row = conn.execute("SELECT * FROM bookmarks WHERE id = ?", (bookmark_id,)).fetchone()
        return Bookmark.from_row(row) if row else None

    def list_bookmarks(
        self, conn: sqlite3.Connection, user_id: str, message_id: str | None = None
    ) -> list[Bookmark]:
        if message_id is None:
            rows = conn.execute(
                "SELECT * FROM bookmarks WHERE user_id = ? ORDER BY created_at DESC, id",
                (user_id,),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM bookmarks WHERE user_id = ? AND message_id = ?
                ORDER BY timestamp_sec, id
                """,
                (user_id, message_id),
            ).fetchall()
        return [Bookmark.from_row(r) for r in rows]

    def update_bookmark(
        self,
        conn: sqlite3.Connection,
        bookmark_id: str,
        label: str | None = None,
        timestamp_sec: float | None = None,
    ) -> Bookmark | None:
        existing = self.get_bookmark(conn, bookmark_id)
        if existing is None:
            return None
        if label is not None:
            existing.label = label
        if timestamp_sec is not None:
            if timestamp_sec < 0:
                raise IntegrityViolationError("timestamp_sec must not be negative")
            existing.timestamp_sec = timestamp_sec
        conn.execute(
            "UPDATE bookmarks SET label = ?, timestamp_sec = ? WHERE id = ?",
            (existing.label, existing.timestamp_sec, bookmark_id),
        )
        return existing

    def delete_bookmark(self, conn: sqlite3.Connection, bookmark_id: str) -> bool:
        cursor = conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    def insert_favorite(self, conn: sqlite3.Connection, user_id: str, message_id: str) -> Favorite:
        """Star a message; starring twice keeps the original row."""
        conn.execute(
            """
            INSERT INTO favorites (user_id, message_id, created_at) VALUES (?, ?, ?)
            ON CONFLICT (user_id, message_id) DO NOTHING
            """,
            (user_id, message_id, now_ms()),
        )
        favorite = self.get_favorite(conn, user_id, message_id)
        if favorite is None:
            raise IntegrityViolationError(f"Favorite on {message_id} was not stored")
        return favorite

    def get_favorite(
        self, conn: sqlite3.Connection, user_id: str, message_id: str
    ) -> Favorite | None:
        row = conn.execute(
            "SELECT * FROM favorites WHERE user_id = ? AND message_id = ?", (user_id, message_id)
        ).fetchone()
        return Favorite.from_row(row) if row else None

    def list_favorites(self, conn: sqlite3.Connection, user_id: str) -> list[Favorite]:
        rows = conn.execute(
            "SELECT * FROM favorites WHERE user_id = ? ORDER BY created_at DESC, message_id",
            (user_id,),
        ).fetchall()
        return [Favorite.from_row(r) for r in rows]

    def delete_favorite(self, conn: sqlite3.Connection, user_id: str, message_id: str) -> bool:
        cursor = conn.execute(
            "DELETE FROM favorites WHERE user_id = ? AND message_id = ?", (user_id, message_id)
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def insert_folder(self, conn: sqlite3.Connection, owner_id: str, name: str) -> Folder:
        if not name or not name.strip():
            raise IntegrityViolationError("Folder name must not be empty")
        folder = Folder(id=new_id(), owner_id=owner_id, name=name, created_at=now_ms())
        conn.execute(
            "INSERT INTO folders (id, created_at, owner_id, name) VALUES (?, ?, ?, ?)",
            (folder.id, folder.created_at, owner_id, name),
        )
        return folder

    def get_folder(self, conn: sqlite3.Connection, folder_id: str) -> Folder | None:
        row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
        return Folder.from_row(row) if row else None

    def list_folders(self, conn: sqlite3.Connection, owner_id: str) -> list[Folder]:
        rows = conn.execute(
            "SELECT * FROM folders WHERE owner_id = ? ORDER BY name, id", (owner_id,)
        ).fetchall()
        return [Folder.from_row(r) for r in rows]

    def rename_folder(self, conn: sqlite3.Connection, folder_id: str, name: str) -> Folder | None:
        if not name or not name.strip():
            raise IntegrityViolationError("Folder name must not be empty")
        cursor = conn.execute("UPDATE folders SET name = ? WHERE id = ?", (name, folder_id))
        if cursor.rowcount == 0:
            return None
        return self.get_folder(conn, folder_id)

    def delete_folder(self, conn: sqlite3.Connection, folder_id: str) -> bool:
        cursor = conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
        return cursor.rowcount > 0

    def insert_folder_item(
        self, conn: sqlite3.Connection, folder_id: str, message_id: str
    ) -> FolderItem:
        """File a message in a folder; filing it twice keeps the original row."""
        conn.execute(
            """
            INSERT INTO folder_items (folder_id, message_id, added_at) VALUES (?, ?, ?)
            ON CONFLICT (folder_id, message_id) DO NOTHING
            """,
            (folder_id, message_id, now_ms()),
        )
        item = self.get_folder_item(conn, folder_id, message_id)
        if item is None:
            raise IntegrityViolationError(f"Folder item {message_id} was not stored")
        return item

    def get_folder_item(
        self, conn: sqlite3.Connection, folder_id: str, message_id: str
    ) -> FolderItem | None:
        row = conn.execute(
            "SELECT * FROM folder_items WHERE folder_id = ? AND message_id = ?",
            (folder_id, message_id),
        ).fetchone()
        return FolderItem.from_row(row) if row else None

    def list_folder_items(self, conn: sqlite3.Connection, folder_id: str) -> list[FolderItem]:
        rows = conn.execute(
            "SELECT * FROM folder_items WHERE folder_id = ? ORDER BY added_at, message_id",
            (folder_id,),
        ).fetchall()
        return [FolderItem.from_row(r) for r in rows]

    def delete_folder_item(self, conn: sqlite3.Connection, folder_id: str, message_id: str) -> bool:
        cursor = conn.execute(
            "DELETE FROM folder_items WHERE folder_id = ? AND message_id = ?",
            (folder_id, message_id),
        )
        return cursor.rowcount > 0
