"""
AyurTrace - Offline Sync Queue
Client-side helper for collector devices: collections recorded without
connectivity wait here until they can be posted to the API (see
ayurtrace.demo for a device draining its queue). The server never holds one.
The queue is an immutable value: every operation returns a new queue.
"""

import json
import logging
from typing import Any, Callable, Iterator, Tuple

logger = logging.getLogger(__name__)


class SyncQueue:
    """Pending items in the order they were recorded"""

    def __init__(self, items=()):
        self._items = tuple(items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._items)

    def __eq__(self, other) -> bool:
        return isinstance(other, SyncQueue) and self._items == other._items

    def __repr__(self) -> str:
        return f"SyncQueue({list(self._items)!r})"

    def enqueue(self, item: Any) -> 'SyncQueue':
        return SyncQueue(self._items + (item,))

    def drain(self, sync: Callable[[Any], bool]) -> Tuple[int, 'SyncQueue']:
        """
        Call `sync` on each item in order. Returns the number synced and a
        queue of the items that failed (sync returned False or raised).
        """
        synced = 0
        remaining = []

        for item in self._items:
            try:
                ok = sync(item)
            except Exception as e:
                logger.warning("Error syncing item: %s", e)
                ok = False

            if ok is False:
                remaining.append(item)
            else:
                synced += 1

        return synced, SyncQueue(remaining)

    def to_json(self) -> str:
        return json.dumps(list(self._items))

    @classmethod
    def from_json(cls, text: str) -> 'SyncQueue':
        if not text:
            return cls()
        return cls(json.loads(text))
