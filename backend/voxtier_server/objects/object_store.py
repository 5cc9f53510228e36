"""
Binary object store interface for Voxtier audio blobs.

Recordings live at `{conversationId}/{messageId}.{ext}` inside a single
bucket. The first path segment names the conversation whose members may read
the object; the uploader is recorded as the object owner.

Invariants:
    - Paths always have exactly two segments and a file extension
    - A stored object always records the uploader as its owner
    - Objects are write-once: put() never replaces an existing object and
      raises ObjectExistsError instead
    - Backends never make authorization decisions; the data service checks
      Table.OBJECTS before calling them

How to change safely:
    - New backends implement the ObjectStore protocol and raise
      ObjectStoreUnavailableError for transient failures
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Protocol

from ..config import ObjectStoreBackend, ObjectStoreConfig

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
_EXTENSION = re.compile(r"^[A-Za-z0-9]{1,8}$")


class ObjectStoreUnavailableError(Exception):
    """The object store could not be reached. Transient; callers may retry."""

    retryable = True


class InvalidObjectPathError(ValueError):
    """An object path is not of the form {conversationId}/{messageId}.{ext}."""

    pass


class ObjectExistsError(Exception):
    """An object is already stored at the requested path."""

    pass


@dataclass(frozen=True)
class ObjectRef:
    """A parsed object path plus the declared owner.

    Attributes:
        conversation_id: Conversation named by the first path segment
        message_id: Message the recording belongs to
        extension: File extension without the dot
        owner_id: Declared uploader (None when only reading)
    """

    conversation_id: str
    message_id: str
    extension: str
    owner_id: str | None = None

    @property
    def path(self) -> str:
        return build_object_path(self.conversation_id, self.message_id, self.extension)

    def with_owner(self, owner_id: str) -> ObjectRef:
        return ObjectRef(self.conversation_id, self.message_id, self.extension, owner_id)


def build_object_path(conversation_id: str, message_id: str, extension: str = "mp3") -> str:
    """Build the storage path of a recording."""
    return f"{conversation_id}/{message_id}.{extension.lstrip('.')}"


def parse_object_path(path: str, bucket: str = "voices") -> ObjectRef:
    """Parse a storage path into an ObjectRef.

    A leading `{bucket}/` prefix is tolerated, since older messages stored
    the bucket name inside audio_url.

    Raises:
        InvalidObjectPathError: If the path is malformed
    """
    if path.startswith(f"{bucket}/"):
        path = path[len(bucket) + 1 :]

    parts = path.split("/")
    if len(parts) != 2:
        raise InvalidObjectPathError(f"Invalid object path: {path}")

    conversation_id, filename = parts
    message_id, dot, extension = filename.rpartition(".")
    if not dot or not _SEGMENT.match(conversation_id) or not _SEGMENT.match(message_id):
        raise InvalidObjectPathError(f"Invalid object path: {path}")
    if not _EXTENSION.match(extension):
        raise InvalidObjectPathError(f"Invalid object extension: {path}")

    return ObjectRef(conversation_id=conversation_id, message_id=message_id, extension=extension)


@dataclass
class StoredObject:
    """A blob with its metadata."""

    path: str
    data: bytes
    content_type: str
    owner_id: str

    @property
    def size(self) -> int:
        return len(self.data)


class ObjectStore(Protocol):
    """Backend contract for audio blobs."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def put(self, ref: ObjectRef, data: bytes, content_type: str) -> StoredObject: ...

    async def get(self, ref: ObjectRef) -> StoredObject | None: ...

    async def owner_of(self, ref: ObjectRef) -> str | None: ...


class InMemoryObjectStore:
    """Dictionary-backed object store for tests and local development.

    Example:
        >>> store = InMemoryObjectStore()
        >>> await store.put(parse_object_path("c1/m1.mp3").with_owner("u1"), b"...", "audio/mp3")
    """

    def __init__(self) -> None:
        self._objects: dict[str, StoredObject] = {}
        self._lock = asyncio.Lock()
        self.connected = False

    async def connect(self) -> None:
        self.connected = True
        logger.debug("InMemoryObjectStore connected")

    async def close(self) -> None:
        self.connected = False
        logger.debug("InMemoryObjectStore closed")

    async def put(self, ref: ObjectRef, data: bytes, content_type: str) -> StoredObject:
        if ref.owner_id is None:
            raise ValueError("owner_id is required to store an object")
        stored = StoredObject(path=ref.path, data=data, content_type=content_type, owner_id=ref.owner_id)
        async with self._lock:
            if ref.path in self._objects:
                raise ObjectExistsError(f"Object already exists: {ref.path}")
            self._objects[ref.path] = stored
        return stored

    async def get(self, ref: ObjectRef) -> StoredObject | None:
        return self._objects.get(ref.path)

    async def owner_of(self, ref: ObjectRef) -> str | None:
        stored = self._objects.get(ref.path)
        return stored.owner_id if stored else None


def create_object_store(config: ObjectStoreConfig) -> ObjectStore:
    """Create the configured object store backend.

    Raises:
        ValueError: If the backend is not supported
    """
    if config.backend == ObjectStoreBackend.MEMORY:
        return InMemoryObjectStore()
    if config.backend == ObjectStoreBackend.S3:
        from .s3 import S3ObjectStore

        return S3ObjectStore(config)
    raise ValueError(f"Unsupported object store backend: {config.backend}")
