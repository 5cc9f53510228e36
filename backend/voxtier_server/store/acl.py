"""
Access control for Voxtier.

This module is the single policy layer every data access goes through:
- Principal parsing (user:X, system:X)
- Per-table, per-operation row predicates
- Visibility filtering for list queries

Invariants:
    - Predicates are evaluated on every call; nothing is cached across calls
    - Fail closed: a missing membership or ownership row denies
    - The requester is always an explicit argument, never ambient state
    - system: principals are administrative processes and pass every check
    - Conversation membership is read from the materialized table; the live
      hierarchy is consulted only for conversations with no membership rows
    - Bookmarks and favorites can only be added on messages the requester
      can read

How to change safely:
    - New tables must get an explicit entry in PolicyEngine._predicates;
      a missing entry denies everything
    - Never widen a predicate without a matching test that the other
      users are still denied
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .canonical_store import CanonicalStore, Conversation
from .hierarchy import HierarchyResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Profile columns a user may change on their own row.
PROFILE_SELF_EDITABLE = frozenset({"full_name", "avatar_url"})


class Table(Enum):
    """Protected resources."""

    PROFILES = "profiles"
    CONVERSATIONS = "conversations"
    CONVERSATION_PARTICIPANTS = "conversation_participants"
    AUDIO_MESSAGES = "audio_messages"
    BOOKMARKS = "bookmarks"
    FAVORITES = "favorites"
    FOLDERS = "folders"
    FOLDER_ITEMS = "folder_items"
    OBJECTS = "objects"


class Operation(Enum):
    """Operations checked by the policy engine."""

    READ = "read"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class AccessDeniedError(Exception):
    """Access denied by a row predicate.

    The message is deliberately generic so callers cannot tell whether the
    target exists.
    """

    def __init__(
        self,
        actor: str,
        table: Table,
        operation: Operation,
        message: str | None = None,
    ):
        self.actor = actor
        self.table = table
        self.operation = operation
        super().__init__(message or "not permitted")


@dataclass(frozen=True)
class Principal:
    """An authenticated requester.

    Principal types:
        - user:ID - An end user; ID is their profile id
        - system:NAME - An administrative process

    Attributes:
        type: Principal type (user, system)
        id: Principal identifier
    """

    type: str
    id: str

    VALID_TYPES = frozenset({"user", "system"})

    @classmethod
    def parse(cls, principal_str: str) -> Principal:
        """Parse a principal string.

        Args:
            principal_str: String like "user:42" or "system:bootstrap"

        Returns:
            Parsed Principal

        Raises:
            ValueError: If format is invalid
        """
        if not principal_str or ":" not in principal_str:
            raise ValueError(f"Invalid principal format: {principal_str}")

        type_str, id_str = principal_str.split(":", 1)
        if type_str not in cls.VALID_TYPES:
            raise ValueError(f"Invalid principal type: {type_str}")
        if not id_str:
            raise ValueError(f"Empty principal id: {principal_str}")

        return cls(type=type_str, id=id_str)

    @classmethod
    def user(cls, profile_id: str) -> Principal:
        return cls(type="user", id=profile_id)

    @property
    def is_system(self) -> bool:
        return self.type == "system"

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


SYSTEM_ACTOR = Principal(type="system", id="admin")


Predicate = Callable[[sqlite3.Connection, str, Operation, Any, frozenset], bool]


class PolicyEngine:
    """Evaluates row predicates for a requester.

    Rows are the dataclasses from canonical_store (or an ObjectRef for
    Table.OBJECTS). For inserts the row is the proposed row.

    Example:
        >>> policy = PolicyEngine(store, resolver)
        >>> with store.read() as conn:
        ...     policy.check(conn, Principal.user("u1"), Table.AUDIO_MESSAGES,
        ...                  Operation.READ, message)
        True
    """

    def __init__(self, store: CanonicalStore, resolver: HierarchyResolver) -> None:
        self.store = store
        self.resolver = resolver
        self._predicates: dict[Table, Predicate] = {
            Table.PROFILES: self._profiles,
            Table.CONVERSATIONS: self._conversations,
            Table.CONVERSATION_PARTICIPANTS: self._participants,
            Table.AUDIO_MESSAGES: self._audio_messages,
            Table.BOOKMARKS: self._annotations,
            Table.FAVORITES: self._annotations,
            Table.FOLDERS: self._owned_by("owner_id"),
            Table.FOLDER_ITEMS: self._folder_items,
            Table.OBJECTS: self._objects,
        }

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def is_member(self, conn: sqlite3.Connection, user_id: str, conversation: Conversation) -> bool:
        """Membership as used for authorization.

        The materialized table decides. Only a conversation with no
        membership rows at all falls back to the live hierarchy.
        """
        if self.store.has_participant(conn, conversation.id, user_id):
            return True
        if self.store.count_participants(conn, conversation.id) == 0:
            return self.resolver.is_member(conn, user_id, conversation)
        return False

    def is_member_of(self, conn: sqlite3.Connection, user_id: str, conversation_id: str) -> bool:
        conversation = self.store.get_conversation(conn, conversation_id)
        if conversation is None:
            return False
        return self.is_member(conn, user_id, conversation)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def _profiles(
        self, conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
    ) -> bool:
        if op == Operation.READ:
            return True
        if op == Operation.INSERT:
            return row.id == uid
        if op == Operation.UPDATE:
            return row.id == uid and changes <= PROFILE_SELF_EDITABLE
        return False

    def _conversations(
        self, conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
    ) -> bool:
        if op == Operation.READ:
            return self.is_member(conn, uid, row)
        if op == Operation.INSERT:
            return self.resolver.can_create(conn, uid, row.client_id, row.mentor_id)
        return False

    def _participants(
        self, conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
    ) -> bool:
        if op == Operation.READ:
            return self.is_member_of(conn, uid, row.conversation_id)
        return False

    def _audio_messages(
        self, conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
    ) -> bool:
        if op == Operation.READ:
            return self.is_member_of(conn, uid, row.conversation_id)
        if op == Operation.INSERT:
            return row.sender_id == uid and self.is_member_of(conn, uid, row.conversation_id)
        if op == Operation.DELETE:
            return row.sender_id == uid
        return False

    def _owned_by(self, owner_field: str) -> Predicate:
        def predicate(
            conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
        ) -> bool:
            return getattr(row, owner_field) == uid

        return predicate

    def _annotations(
        self, conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
    ) -> bool:
        if row.user_id != uid:
            return False
        if op == Operation.INSERT:
            message = self.store.get_message(conn, row.message_id)
            return message is not None and self.is_member_of(conn, uid, message.conversation_id)
        return True

    def _folder_items(
        self, conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
    ) -> bool:
        folder = self.store.get_folder(conn, row.folder_id)
        if folder is None or folder.owner_id != uid:
            return False
        if op == Operation.INSERT:
            message = self.store.get_message(conn, row.message_id)
            if message is None:
                return False
            return self.is_member_of(conn, uid, message.conversation_id)
        return True

    def _objects(
        self, conn: sqlite3.Connection, uid: str, op: Operation, row: Any, changes: frozenset
    ) -> bool:
        if op == Operation.READ:
            return self.is_member_of(conn, uid, row.conversation_id)
        if op == Operation.INSERT:
            return row.owner_id == uid and self.is_member_of(conn, uid, row.conversation_id)
        return False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check(
        self,
        conn: sqlite3.Connection,
        principal: Principal,
        table: Table,
        operation: Operation,
        row: Any,
        changes: Iterable[str] = (),
    ) -> bool:
        """Check whether a principal may perform an operation on a row.

        Args:
            conn: Open store connection (the caller's transaction, for writes)
            principal: Requester
            table: Protected resource
            operation: Requested operation
            row: Existing row, or proposed row for inserts
            changes: Column names being changed (updates only)

        Returns:
            True if allowed
        """
        if principal.is_system:
            return True
        if principal.type != "user" or row is None:
            return False

        predicate = self._predicates.get(table)
        if predicate is None:
            return False

        allowed = predicate(conn, principal.id, operation, row, frozenset(changes))
        if not allowed:
            logger.debug(
                "Access denied",
                extra={
                    "actor": str(principal),
                    "table": table.value,
                    "operation": operation.value,
                },
            )
        return allowed

    def check_or_raise(
        self,
        conn: sqlite3.Connection,
        principal: Principal,
        table: Table,
        operation: Operation,
        row: Any,
        changes: Iterable[str] = (),
    ) -> None:
        """Check a predicate and raise if denied.

        Raises:
            AccessDeniedError: If access is denied
        """
        if not self.check(conn, principal, table, operation, row, changes):
            raise AccessDeniedError(str(principal), table, operation)

    def filter_visible(
        self,
        conn: sqlite3.Connection,
        principal: Principal,
        table: Table,
        rows: Iterable[T],
    ) -> list[T]:
        """Keep only the rows the principal may read."""
        return [row for row in rows if self.check(conn, principal, table, Operation.READ, row)]
