"""
In-memory ledger store.

Rows are plain dicts keyed by id, one dict per table. Rows are never
mutated in place: every write replaces the stored dict, which is what
lets ``atomic()`` roll back by restoring shallow table copies.

Versioned tables (users, loans, transactions, repayments) carry
``version`` and ``updated_at`` columns; ``compare_and_swap`` is the only
way to change them.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from .errors import ConflictError, DuplicateError, NotFoundError, TransientError


TABLES = (
    "users",
    "loans",
    "transactions",
    "repayments",
    "notifications",
    "sync_queue",
    "sync_checkpoints",
    "sync_conflicts",
    "sequences",
)

VERSIONED_TABLES = frozenset({"users", "loans", "transactions", "repayments"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow
        self.online = True
        self._lock = threading.RLock()
        self._tables: dict[str, dict[Any, dict]] = {name: {} for name in TABLES}
        # unique indexes
        self._indexes: dict[str, dict[Any, Any]] = {
            "users.phone": {},
            "repayments.transaction_loan": {},
            "transactions.external_id": {},
        }

    def now(self) -> datetime:
        return self.clock()

    def _ensure_online(self) -> None:
        if not self.online:
            raise TransientError("Ledger store is unreachable")

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        """Run a block of writes as one unit; any exception restores every table."""
        with self._lock:
            self._ensure_online()
            tables = {name: dict(rows) for name, rows in self._tables.items()}
            indexes = {name: dict(idx) for name, idx in self._indexes.items()}
            try:
                yield self
            except BaseException:
                self._tables = tables
                self._indexes = indexes
                raise

    def insert(self, table: str, row: dict) -> dict:
        with self._lock:
            self._ensure_online()
            rows = self._tables[table]
            if row["id"] in rows:
                raise DuplicateError(f"{table} row {row['id']} already exists")
            row = dict(row)
            if table in VERSIONED_TABLES:
                now = self.now()
                row.setdefault("version", 1)
                row.setdefault("created_at", now)
                row.setdefault("updated_at", row["created_at"])
            self._claim_unique_keys(table, row)
            rows[row["id"]] = row
            return dict(row)

    def _claim_unique_keys(self, table: str, row: dict) -> None:
        if table == "users":
            self._claim("users.phone", row["phone"], row["id"])
        elif table == "repayments":
            self._claim("repayments.transaction_loan", (row["transaction_id"], row["loan_id"]), row["id"])
        elif table == "transactions" and row.get("external_id"):
            self._claim("transactions.external_id", row["external_id"], row["id"])

    def _claim(self, index: str, key: Any, row_id: Any) -> None:
        idx = self._indexes[index]
        if key in idx:
            raise DuplicateError(f"{index} {key} already recorded")
        idx[key] = row_id

    def get(self, table: str, row_id: Any) -> Optional[dict]:
        with self._lock:
            self._ensure_online()
            row = self._tables[table].get(row_id)
            return dict(row) if row is not None else None

    def lookup(self, index: str, key: Any) -> Optional[Any]:
        with self._lock:
            self._ensure_online()
            return self._indexes[index].get(key)

    def select(
        self,
        table: str,
        where: Optional[Callable[[dict], bool]] = None,
        order_by: Optional[Callable[[dict], Any]] = None,
    ) -> list[dict]:
        """Rows matching ``where``; ``order_by`` sorts stably so insertion order breaks ties."""
        with self._lock:
            self._ensure_online()
            rows = [dict(r) for r in self._tables[table].values() if where is None or where(r)]
        if order_by is not None:
            rows.sort(key=order_by)
        return rows

    def compare_and_swap(self, table: str, row_id: Any, expected_version: int, changes: dict) -> dict:
        """Apply ``changes`` only if the stored version still equals ``expected_version``."""
        with self._lock:
            self._ensure_online()
            current = self._tables[table].get(row_id)
            if current is None:
                raise NotFoundError(f"{table} row {row_id} not found")
            if current["version"] != expected_version:
                raise ConflictError(
                    f"{table} row {row_id} is at version {current['version']}, expected {expected_version}"
                )
            updated = {**current, **changes}
            updated["version"] = current["version"] + 1
            updated["updated_at"] = self.now()
            self._tables[table][row_id] = updated
            return dict(updated)

    def update(self, table: str, row_id: Any, changes: dict) -> dict:
        """Unversioned update, for bookkeeping tables such as the sync queue."""
        if table in VERSIONED_TABLES:
            raise ValueError(f"{table} is versioned; use compare_and_swap")
        with self._lock:
            self._ensure_online()
            current = self._tables[table].get(row_id)
            if current is None:
                raise NotFoundError(f"{table} row {row_id} not found")
            updated = {**current, **changes}
            self._tables[table][row_id] = updated
            return dict(updated)

    def upsert(self, table: str, row_id: Any, row: dict) -> dict:
        if table in VERSIONED_TABLES:
            raise ValueError(f"{table} is versioned; use compare_and_swap")
        with self._lock:
            self._ensure_online()
            self._tables[table][row_id] = dict(row)
            return dict(row)

    def next_sequence(self, name: str) -> int:
        """Monotonic counter shared by every writer of this store."""
        with self._lock:
            self._ensure_online()
            current = self._tables["sequences"].get(name, {"value": 0})["value"]
            self._tables["sequences"][name] = {"id": name, "value": current + 1}
            return current + 1

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables[table])
