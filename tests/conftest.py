"""
Shared fixtures for Voxtier tests.

The seeded hierarchy used across unit and integration tests:

    director-1 <- mentor-1 <- client-1
    director-2 <- mentor-2 <- client-2
                              client-3 (no mentor)
"""

import tempfile
from dataclasses import dataclass

import pytest
import pytest_asyncio

from backend.voxtier_server.objects.object_store import InMemoryObjectStore
from backend.voxtier_server.store.acl import SYSTEM_ACTOR, Principal
from backend.voxtier_server.store.canonical_store import CanonicalStore, Role
from backend.voxtier_server.store.service import DataService


@dataclass(frozen=True)
class Hierarchy:
    """Profile ids of the seeded hierarchy."""

    director: str = "director-1"
    director2: str = "director-2"
    mentor: str = "mentor-1"
    mentor2: str = "mentor-2"
    client: str = "client-1"
    client2: str = "client-2"
    loner: str = "client-3"

    def user(self, profile_id: str) -> Principal:
        return Principal.user(profile_id)


def seed_store(store: CanonicalStore, ids: Hierarchy = Hierarchy()) -> Hierarchy:
    """Insert the seeded hierarchy with the store's row helpers."""
    with store.transaction() as conn:
        store.insert_profile(conn, ids.director, Role.TRAINING_DIRECTOR, "Dana Director")
        store.insert_profile(conn, ids.director2, Role.TRAINING_DIRECTOR, "Drew Director")
        store.insert_profile(conn, ids.mentor, Role.MENTOR, "Mia Mentor", director_id=ids.director)
        store.insert_profile(conn, ids.mentor2, Role.MENTOR, "Max Mentor", director_id=ids.director2)
        store.insert_profile(conn, ids.client, Role.CLIENT, "Cleo Client", mentor_id=ids.mentor)
        store.insert_profile(conn, ids.client2, Role.CLIENT, "Cal Client", mentor_id=ids.mentor2)
        store.insert_profile(conn, ids.loner, Role.CLIENT, "Lou Loner")
    return ids


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(data_dir):
    """Create a store without WAL mode."""
    return CanonicalStore(data_dir, wal_mode=False)


@pytest.fixture
def objects():
    """Create an in-memory object store."""
    return InMemoryObjectStore()


@pytest.fixture
def service(store, objects):
    """Create a data service over the store."""
    return DataService(store, objects)


@pytest_asyncio.fixture
async def seeded(store):
    """Initialize the schema and insert the seeded hierarchy with row helpers."""
    await store.initialize()
    return seed_store(store)


@pytest_asyncio.fixture
async def ids(service):
    """Initialize the schema and register the seeded hierarchy through the service."""
    ids = Hierarchy()
    await service.store.initialize()

    for profile_id, role, name in [
        (ids.director, Role.TRAINING_DIRECTOR, "Dana Director"),
        (ids.director2, Role.TRAINING_DIRECTOR, "Drew Director"),
        (ids.mentor, Role.MENTOR, "Mia Mentor"),
        (ids.mentor2, Role.MENTOR, "Max Mentor"),
        (ids.client, Role.CLIENT, "Cleo Client"),
        (ids.client2, Role.CLIENT, "Cal Client"),
        (ids.loner, Role.CLIENT, "Lou Loner"),
    ]:
        await service.register_profile(Principal.user(profile_id), role, name)

    await service.assign_director(SYSTEM_ACTOR, ids.mentor, ids.director)
    await service.assign_director(SYSTEM_ACTOR, ids.mentor2, ids.director2)
    await service.assign_mentor(SYSTEM_ACTOR, ids.client, ids.mentor)
    await service.assign_mentor(SYSTEM_ACTOR, ids.client2, ids.mentor2)
    return ids
