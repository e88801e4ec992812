"""
In-memory Ledger Store.

Durable keyed storage for accounts, tasks, completions, transactions and
settings. Every call is individually atomic; there are no cross-collection
transactions. Read-modify-write sequences that must be linearizable take a
per-key lock (``store.lock("account", account_id)``) and write with
``expected_version`` so a conflicting writer surfaces as
``ConcurrentModificationError`` instead of a lost update.
"""

import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from pydantic import BaseModel


ACCOUNTS = "accounts"
TASKS = "tasks"
COMPLETIONS = "completions"
TRANSACTIONS = "transactions"
SETTINGS = "settings"

R = TypeVar("R", bound=BaseModel)


class ConcurrentModificationError(Exception):
    """The stored record changed between read and write."""


class InMemoryStorage:
    def __init__(self):
        self._collections: dict[str, dict[str, BaseModel]] = defaultdict(dict)
        self._idempotency_index: dict[str, str] = {}
        self._mutex = threading.RLock()
        self._key_locks: dict[tuple, list] = {}

    def get(self, collection: str, record_id) -> Optional[BaseModel]:
        with self._mutex:
            record = self._collections[collection].get(str(record_id))
            return record.model_copy(deep=True) if record is not None else None

    def put(self, collection: str, record: R, expected_version: Optional[int] = None) -> R:
        key = str(record.id)
        with self._mutex:
            current = self._collections[collection].get(key)
            if expected_version is not None:
                stored_version = current.version if current is not None else None
                if stored_version != expected_version:
                    raise ConcurrentModificationError(
                        f"{collection}/{key}: expected version {expected_version}, found {stored_version}"
                    )
            stored = record.model_copy(deep=True, update={"version": (current.version + 1) if current else 1})
            self._collections[collection][key] = stored
            return stored.model_copy(deep=True)

    def insert(self, collection: str, record: R) -> R:
        key = str(record.id)
        with self._mutex:
            if key in self._collections[collection]:
                raise ConcurrentModificationError(f"{collection}/{key} already exists")
            return self.put(collection, record)

    def query(self, collection: str, predicate: Callable[[BaseModel], bool] = lambda r: True) -> list:
        with self._mutex:
            return [r.model_copy(deep=True) for r in self._collections[collection].values() if predicate(r)]

    def find_one(self, collection: str, predicate: Callable[[BaseModel], bool]) -> Optional[BaseModel]:
        with self._mutex:
            for record in self._collections[collection].values():
                if predicate(record):
                    return record.model_copy(deep=True)
        return None

    def count(self, collection: str, predicate: Callable[[BaseModel], bool] = lambda r: True) -> int:
        with self._mutex:
            return sum(1 for r in self._collections[collection].values() if predicate(r))

    def delete(self, collection: str, record_id) -> bool:
        with self._mutex:
            return self._collections[collection].pop(str(record_id), None) is not None

    @contextmanager
    def lock(self, *key) -> Iterator[None]:
        """
        Per-key re-entrant mutual exclusion, e.g. ``lock("task", task_id)``.

        Entries are [lock, holders] and are dropped once no thread holds or
        waits on them.
        """
        lock_key = tuple(str(k) for k in key)
        with self._mutex:
            entry = self._key_locks.setdefault(lock_key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._mutex:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[lock_key]

    def lookup_idempotency_key(self, key: str) -> Optional[str]:
        with self._mutex:
            return self._idempotency_index.get(key)

    def claim_idempotency_key(self, key: str, transaction_id) -> bool:
        with self._mutex:
            if key in self._idempotency_index:
                return False
            self._idempotency_index[key] = str(transaction_id)
            return True
