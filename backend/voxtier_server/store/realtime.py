"""
Realtime change fan-out for Voxtier.

After a write commits, the data service publishes an insert event here. The
hub delivers a copy to each subscriber that could have read the row with a
direct query, re-running the READ predicate for that subscriber against the
current store.

Invariants:
    - Only committed rows are published
    - Each delivery is preceded by a fresh READ check for that subscriber
    - Delivery is at-most-once per subscription; a full queue drops the event
    - There is no replay: a subscriber that reconnects must re-query

How to change safely:
    - Never deliver a row without a policy check for that subscriber
    - Keep publish() non-blocking; a slow subscriber must not stall writers
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

from .acl import Operation, PolicyEngine, Principal, Table
from .canonical_store import CanonicalStore

logger = logging.getLogger(__name__)

REALTIME_TABLES = frozenset(
    {Table.AUDIO_MESSAGES, Table.CONVERSATIONS, Table.FAVORITES, Table.BOOKMARKS}
)

_subscription_ids = itertools.count(1)


@dataclass
class ChangeEvent:
    """A committed row insert.

    Attributes:
        table: Table the row was inserted into
        row: The inserted row (store dataclass)
        conversation_id: Conversation the row belongs to, if any
        commit_ts: Publish timestamp (Unix ms)
    """

    table: Table
    row: Any
    conversation_id: str | None = None
    commit_ts: int = field(default_factory=lambda: int(time.time() * 1000))
    operation: str = "INSERT"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "change",
            "table": self.table.value,
            "event": self.operation,
            "conversation_id": self.conversation_id,
            "commit_timestamp": self.commit_ts,
            "record": self.row.to_dict(),
        }


class Subscription:
    """One subscriber session on the change feed.

    Attributes:
        id: Subscription identifier
        principal: Subscriber identity used for every policy check
        tables: Tables the subscriber wants (None = all published tables)
        conversation_id: Optional conversation filter
        dropped: Events discarded because the queue was full
    """

    def __init__(
        self,
        principal: Principal,
        tables: frozenset[Table] | None,
        conversation_id: str | None,
        queue_size: int,
    ) -> None:
        self.id = next(_subscription_ids)
        self.principal = principal
        self.tables = tables
        self.conversation_id = conversation_id
        self.dropped = 0
        self.closed = False
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue(maxsize=queue_size)

    def wants(self, event: ChangeEvent) -> bool:
        if self.tables is not None and event.table not in self.tables:
            return False
        if self.conversation_id is not None and event.conversation_id != self.conversation_id:
            return False
        return True

    def offer(self, event: ChangeEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Dropping realtime event for slow subscriber",
                extra={
                    "subscription_id": self.id,
                    "actor": str(self.principal),
                    "table": event.table.value,
                    "dropped": self.dropped,
                },
            )
            return False
        return True

    async def get(self) -> ChangeEvent | None:
        """Wait for the next event; None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake any waiter; make room for the sentinel if needed.
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class RealtimeHub:
    """Policy-filtered fan-out of committed inserts.

    Example:
        >>> hub = RealtimeHub(store, policy)
        >>> sub = hub.subscribe(Principal.user("u1"))
        >>> await hub.publish(Table.AUDIO_MESSAGES, message)
        >>> event = await sub.get()
    """

    def __init__(
        self,
        store: CanonicalStore,
        policy: PolicyEngine,
        tables: Iterable[Table] = REALTIME_TABLES,
        queue_size: int = 256,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.policy = policy
        self.tables = frozenset(tables)
        self.queue_size = queue_size
        self.enabled = enabled
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        principal: Principal,
        tables: Iterable[Table] | None = None,
        conversation_id: str | None = None,
    ) -> Subscription:
        """Register a subscriber.

        Args:
            principal: Subscriber identity
            tables: Restrict to these tables (default: every published table)
            conversation_id: Only deliver rows of this conversation
        """
        subscription = Subscription(
            principal=principal,
            tables=frozenset(tables) if tables is not None else None,
            conversation_id=conversation_id,
            queue_size=self.queue_size,
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            "Realtime subscriber added",
            extra={"subscription_id": subscription.id, "actor": str(principal)},
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)
        subscription.close()
        logger.debug("Realtime subscriber removed", extra={"subscription_id": subscription.id})

    def _conversation_of(self, conn: Any, table: Table, row: Any) -> str | None:
        if table == Table.CONVERSATIONS:
            return row.id
        if table == Table.AUDIO_MESSAGES:
            return row.conversation_id
        if table in (Table.FAVORITES, Table.BOOKMARKS):
            message = self.store.get_message(conn, row.message_id)
            return message.conversation_id if message else None
        return None

    async def publish(self, table: Table, row: Any) -> int:
        """Fan a committed insert out to every subscriber allowed to read it.

        Returns:
            Number of subscribers the event was queued for
        """
        if not self.enabled or table not in self.tables or not self._subscriptions:
            return 0

        delivered = 0
        with self.store.read() as conn:
            event = ChangeEvent(table=table, row=row, conversation_id=self._conversation_of(conn, table, row))
            for subscription in list(self._subscriptions.values()):
                if not subscription.wants(event):
                    continue
                if not self.policy.check(conn, subscription.principal, table, Operation.READ, row):
                    continue
                if subscription.offer(event):
                    delivered += 1

        logger.debug(
            "Published realtime event",
            extra={"table": table.value, "delivered": delivered},
        )
        return delivered

    def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)
