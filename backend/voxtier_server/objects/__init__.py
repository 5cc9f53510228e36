"""
Object store module for Voxtier voice recordings.

Invariants:
    - Recordings live at {conversationId}/{messageId}.{ext}
    - Backends never decide access; the data service does

How to change safely:
    - Implement the ObjectStore protocol for new backends
"""

from .object_store import (
    InMemoryObjectStore,
    InvalidObjectPathError,
    ObjectExistsError,
    ObjectRef,
    ObjectStore,
    ObjectStoreUnavailableError,
    StoredObject,
    build_object_path,
    create_object_store,
    parse_object_path,
)

__all__ = [
    "InMemoryObjectStore",
    "InvalidObjectPathError",
    "ObjectExistsError",
    "ObjectRef",
    "ObjectStore",
    "ObjectStoreUnavailableError",
    "StoredObject",
    "build_object_path",
    "create_object_store",
    "parse_object_path",
]
