"""
Participant materialization for Voxtier conversations.

The materializer snapshots the hierarchy resolver's answer into the
conversation_participants table so that later authorization checks are a
single keyed lookup instead of a walk over profiles.

Invariants:
    - Materialization runs on the caller's connection, inside the same
      transaction that inserted the conversation
    - Every conversation has exactly one client row, one mentor row and
      zero-or-one training_director row (present iff the mentor currently
      has a director)
    - Duplicate membership rows are absorbed; any other failure propagates
      and rolls the whole transaction back
    - When a mentor's director changes, the director rows of all of that
      mentor's conversations are replaced in the same transaction

How to change safely:
    - Keep every write on the connection passed in; never open a new one
    - Run backfill() after changing membership rules to repair old rows
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field

from .canonical_store import CanonicalStore, Conversation, Role
from .hierarchy import HierarchyResolver

logger = logging.getLogger(__name__)


class ConsistencyError(Exception):
    """Materialized membership disagrees with the hierarchy inside a write.

    Indicates a transaction-boundary bug; the write is rolled back.
    """

    def __init__(self, conversation_id: str, expected: dict[str, Role], actual: dict[str, Role]):
        self.conversation_id = conversation_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Membership of conversation {conversation_id} is inconsistent: "
            f"expected {_fmt(expected)}, materialized {_fmt(actual)}"
        )


def _fmt(members: dict[str, Role]) -> str:
    return ", ".join(f"{uid}/{role.value}" for uid, role in sorted(members.items())) or "nothing"


@dataclass
class MembershipReport:
    """Comparison of materialized and resolved membership for one conversation.

    Attributes:
        conversation_id: Conversation checked
        expected: Members according to the live hierarchy
        materialized: Members according to conversation_participants
    """

    conversation_id: str
    expected: dict[str, Role] = field(default_factory=dict)
    materialized: dict[str, Role] = field(default_factory=dict)

    @property
    def consistent(self) -> bool:
        return self.expected == self.materialized

    @property
    def missing(self) -> dict[str, Role]:
        return {u: r for u, r in self.expected.items() if self.materialized.get(u) != r}

    @property
    def extra(self) -> dict[str, Role]:
        return {u: r for u, r in self.materialized.items() if self.expected.get(u) != r}

    def to_dict(self) -> dict[str, object]:
        return {
            "conversation_id": self.conversation_id,
            "consistent": self.consistent,
            "expected": {u: r.value for u, r in self.expected.items()},
            "materialized": {u: r.value for u, r in self.materialized.items()},
        }


class ParticipantMaterializer:
    """Keeps conversation_participants in step with the hierarchy."""

    def __init__(self, store: CanonicalStore, resolver: HierarchyResolver) -> None:
        self.store = store
        self.resolver = resolver

    def _materialized(self, conn: sqlite3.Connection, conversation_id: str) -> dict[str, Role]:
        return {p.user_id: p.role for p in self.store.list_participants(conn, conversation_id)}

    def _insert_expected(
        self, conn: sqlite3.Connection, conversation: Conversation
    ) -> dict[str, Role]:
        expected = self.resolver.expected_members(conn, conversation)
        for user_id, role in expected.items():
            inserted = self.store.insert_participant(conn, conversation.id, user_id, role)
            if not inserted:
                logger.debug(
                    "Membership row already present",
                    extra={"conversation_id": conversation.id, "user_id": user_id},
                )
        return expected

    def on_conversation_created(self, conn: sqlite3.Connection, conversation: Conversation) -> None:
        """Materialize membership for a freshly inserted conversation.

        Must be called on the connection that inserted the conversation,
        before the transaction commits.

        Raises:
            ConsistencyError: If the resulting rows differ from the resolved set
        """
        expected = self._insert_expected(conn, conversation)
        actual = self._materialized(conn, conversation.id)
        if actual != expected:
            logger.error(
                "Partial membership after conversation insert",
                extra={"conversation_id": conversation.id},
            )
            raise ConsistencyError(conversation.id, expected, actual)

        logger.debug(
            "Materialized conversation membership",
            extra={"conversation_id": conversation.id, "members": len(actual)},
        )

    def rematerialize_for_mentor(self, conn: sqlite3.Connection, mentor_id: str) -> int:
        """Replace director rows on every conversation of a mentor.

        Called in the same transaction that changes the mentor's director.

        Returns:
            Number of conversations touched
        """
        conversations = self.store.list_conversations_for_mentor(conn, mentor_id)
        for conversation in conversations:
            self.store.delete_participants(conn, conversation.id, Role.TRAINING_DIRECTOR)
            self.on_conversation_created(conn, conversation)

        if conversations:
            logger.info(
                "Re-materialized director membership",
                extra={"mentor_id": mentor_id, "conversations": len(conversations)},
            )
        return len(conversations)

    def backfill(self, conn: sqlite3.Connection) -> int:
        """Insert any missing membership rows for every conversation.

        Existing rows are left alone, so the pass is safe to repeat.

        Returns:
            Number of membership rows inserted
        """
        inserted = 0
        for conversation in self.store.list_conversations(conn):
            expected = self.resolver.expected_members(conn, conversation)
            for user_id, role in expected.items():
                if self.store.insert_participant(conn, conversation.id, user_id, role):
                    inserted += 1

        logger.info("Membership backfill complete", extra={"rows_inserted": inserted})
        return inserted

    def verify(self, conn: sqlite3.Connection, conversation: Conversation) -> MembershipReport:
        """Compare materialized membership with the live hierarchy."""
        report = MembershipReport(
            conversation_id=conversation.id,
            expected=self.resolver.expected_members(conn, conversation),
            materialized=self._materialized(conn, conversation.id),
        )
        if not report.consistent:
            logger.warning(
                "Membership drift detected",
                extra={
                    "conversation_id": conversation.id,
                    "missing": sorted(report.missing),
                    "extra": sorted(report.extra),
                },
            )
        return report
