# qbroker/services/locks.py
import asyncio
import weakref


class QueryLocks:
    """
    One asyncio.Lock per query id, shared by every writer of a query document.

    Locks live in a WeakValueDictionary, so an id nobody is waiting on drops out.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def for_query(self, query_id: str) -> asyncio.Lock:
        lock = self._locks.get(query_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[query_id] = lock
        return lock
