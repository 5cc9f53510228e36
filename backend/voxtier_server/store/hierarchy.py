"""
Hierarchy resolution for Voxtier conversations.

Computes conversation membership directly from profiles and conversations,
without consulting the materialized participant table. This is the ground
truth the materializer snapshots and the verifier compares against.

Invariants:
    - Resolution only reads profiles and conversations
    - Null or dangling director/mentor pointers resolve to "no membership",
      never to an error
    - A training director is a member only through the conversation
      mentor's current director pointer

How to change safely:
    - Any new membership path must be mirrored in expected_members() so
      materialization and verification stay in agreement
"""

from __future__ import annotations

import logging
import sqlite3

from .canonical_store import CanonicalStore, Conversation, Role

logger = logging.getLogger(__name__)


class HierarchyResolver:
    """Pure membership predicates over the profile hierarchy.

    Example:
        >>> resolver = HierarchyResolver(store)
        >>> with store.read() as conn:
        ...     resolver.is_member(conn, "director-1", conversation)
        True
    """

    def __init__(self, store: CanonicalStore) -> None:
        self.store = store

    def director_of(self, conn: sqlite3.Connection, mentor_id: str) -> str | None:
        """Return the training director currently supervising a mentor.

        Returns None when the mentor is missing, has no director, or the
        pointer dangles to a profile that is not a training director.
        """
        mentor = self.store.get_profile(conn, mentor_id)
        if mentor is None or mentor.director_id is None:
            return None
        director = self.store.get_profile(conn, mentor.director_id)
        if director is None or director.role != Role.TRAINING_DIRECTOR:
            logger.debug(
                "Ignoring dangling director pointer",
                extra={"mentor_id": mentor_id, "director_id": mentor.director_id},
            )
            return None
        return director.id

    def is_member(
        self, conn: sqlite3.Connection, principal_id: str, conversation: Conversation
    ) -> bool:
        """True iff principal is the client, the mentor, or the mentor's director."""
        if principal_id in (conversation.client_id, conversation.mentor_id):
            return True
        return self.director_of(conn, conversation.mentor_id) == principal_id

    def can_create(
        self,
        conn: sqlite3.Connection,
        requester_id: str,
        client_id: str,
        mentor_id: str,
    ) -> bool:
        """True iff requester may open a conversation for this client/mentor pair.

        The requester must be the client, the mentor, or the mentor already
        recorded on the client's profile.
        """
        if requester_id in (client_id, mentor_id):
            return True
        client = self.store.get_profile(conn, client_id)
        return client is not None and client.mentor_id == requester_id

    def expected_members(
        self, conn: sqlite3.Connection, conversation: Conversation
    ) -> dict[str, Role]:
        """The membership set a conversation should have right now."""
        members = {
            conversation.client_id: Role.CLIENT,
            conversation.mentor_id: Role.MENTOR,
        }
        director_id = self.director_of(conn, conversation.mentor_id)
        if director_id is not None:
            members[director_id] = Role.TRAINING_DIRECTOR
        return members
