"""
Store module for Voxtier - persistence, membership and access control.

This module handles:
- Canonical SQLite store (profiles, conversations, messages, annotations)
- Hierarchy resolution and participant materialization
- The policy engine gating every data access
- Realtime fan-out of committed inserts
- The requester-parameterized data service

Invariants:
    - Conversation creation and membership materialization are atomic
    - The materialized membership table is authoritative for reads
    - Policy checks are re-evaluated on every call

How to change safely:
    - Use transactions for all multi-statement operations
    - Re-run the membership backfill after changing membership rules
"""

from .acl import SYSTEM_ACTOR, AccessDeniedError, Operation, PolicyEngine, Principal, Table
from .canonical_store import (
    CanonicalStore,
    IntegrityViolationError,
    Role,
    StoreUnavailableError,
)
from .hierarchy import HierarchyResolver
from .participants import ConsistencyError, MembershipReport, ParticipantMaterializer
from .realtime import ChangeEvent, RealtimeHub, Subscription
from .service import DataService

__all__ = [
    "SYSTEM_ACTOR",
    "AccessDeniedError",
    "CanonicalStore",
    "ChangeEvent",
    "ConsistencyError",
    "DataService",
    "HierarchyResolver",
    "IntegrityViolationError",
    "MembershipReport",
    "Operation",
    "ParticipantMaterializer",
    "PolicyEngine",
    "Principal",
    "RealtimeHub",
    "Role",
    "StoreUnavailableError",
    "Subscription",
    "Table",
]
