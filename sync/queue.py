"""
Durable per-phone FIFO of mutations made while offline.

Item lifecycle::

    PENDING --replay ok--> SYNCED
    PENDING --replay fails--> PENDING (retry_count + 1)
    PENDING with retry_count >= threshold == DEAD_LETTER (derived view)
    DEAD_LETTER / needs_review --requeue--> PENDING
    any unsynced --discard--> DISCARDED

Rows are never deleted and the payload column is written once.
"""

import logging
from typing import Any, Optional, Union
from uuid import uuid4

from ledger.errors import NotFoundError, ValidationError
from ledger.storage import InMemoryStorage
from ledger.validation import normalize_phone

from .models import ConflictStrategy, EntityType, Operation, SyncQueueItem
from .payloads import AnyPayload, decode_payload, encode_payload

logger = logging.getLogger(__name__)

TABLE = "sync_queue"

STATUS_FIELDS = frozenset({
    "synced",
    "synced_at",
    "retry_count",
    "last_retry_at",
    "last_error",
    "conflict_strategy",
    "needs_review",
    "conflict_details",
    "discarded_at",
    "discard_reason",
})


class SyncQueueManager:
    def __init__(self, storage: InMemoryStorage, max_retries: int = 5):
        self.storage = storage
        self.max_retries = max_retries

    def enqueue(
        self,
        entity_type: Union[EntityType, str],
        operation: Union[Operation, str],
        payload: dict,
        owner_phone: str,
        conflict_strategy: Optional[ConflictStrategy] = None,
    ) -> SyncQueueItem:
        phone = normalize_phone(owner_phone)
        try:
            entity_type = EntityType(entity_type)
            operation = Operation(operation)
        except ValueError as e:
            raise ValidationError(str(e))
        # rejects bad input before it is ever queued
        decode_payload(entity_type, operation, payload)

        item = SyncQueueItem(
            id=f"queue-{uuid4()}",
            entity_type=entity_type,
            operation=operation,
            payload=encode_payload(payload),
            owner_phone=phone,
            created_at=self.storage.now(),
            conflict_strategy=conflict_strategy,
        )
        row = item.model_dump()
        row["seq"] = self.storage.next_sequence(TABLE)
        self.storage.insert(TABLE, row)
        logger.info("Queued %s %s %s for %s", item.id, operation.value, entity_type.value, phone)
        return item

    def get(self, item_id: str) -> SyncQueueItem:
        row = self.storage.get(TABLE, item_id)
        if row is None:
            raise NotFoundError(f"Queue item {item_id} not found")
        return SyncQueueItem(**row)

    def list_pending(self, owner_phone: str) -> list[SyncQueueItem]:
        """Unsynced, undiscarded items for ``owner_phone``, oldest first."""
        phone = normalize_phone(owner_phone)
        return self._select(
            lambda r: r["owner_phone"] == phone and not r["synced"] and r["discarded_at"] is None
        )

    def list_dead_letter(self, max_retries: Optional[int] = None) -> list[SyncQueueItem]:
        threshold = self.max_retries if max_retries is None else max_retries
        return self._select(
            lambda r: not r["synced"] and r["discarded_at"] is None and r["retry_count"] >= threshold
        )

    def list_needs_review(self, owner_phone: Optional[str] = None) -> list[SyncQueueItem]:
        phone = normalize_phone(owner_phone) if owner_phone else None
        return self._select(
            lambda r: r["needs_review"] and not r["synced"] and r["discarded_at"] is None
            and (phone is None or r["owner_phone"] == phone)
        )

    def _select(self, where) -> list[SyncQueueItem]:
        rows = self.storage.select(TABLE, where=where, order_by=lambda r: (r["created_at"], r["seq"]))
        return [SyncQueueItem(**r) for r in rows]

    def decode_payload(self, item: SyncQueueItem) -> AnyPayload:
        return decode_payload(item.entity_type, item.operation, item.payload)

    def mark_synced(self, item_id: str) -> SyncQueueItem:
        item = self.get(item_id)
        if item.synced:
            return item
        return self._update(item_id, {
            "synced": True,
            "synced_at": self.storage.now(),
            "needs_review": False,
        })

    def record_failure(self, item_id: str, error_message: str) -> SyncQueueItem:
        item = self.get(item_id)
        updated = self._update(item_id, {
            "retry_count": item.retry_count + 1,
            "last_retry_at": self.storage.now(),
            "last_error": error_message,
        })
        if updated.retry_count >= self.max_retries:
            logger.error(
                "Queue item %s reached %d failed attempts and needs manual attention: %s",
                item_id, updated.retry_count, error_message,
            )
        return updated

    def flag_conflict(self, item_id: str, details: dict[str, Any]) -> SyncQueueItem:
        return self._update(item_id, {"needs_review": True, "conflict_details": details})

    def requeue(self, item_id: str, conflict_strategy: Optional[ConflictStrategy] = None) -> SyncQueueItem:
        """Operator exit for dead letters and items held for review."""
        item = self.get(item_id)
        if item.synced or item.discarded_at is not None:
            raise ValidationError(f"Queue item {item_id} is already settled")
        changes: dict[str, Any] = {
            "retry_count": 0,
            "needs_review": False,
            "conflict_details": None,
        }
        if conflict_strategy is not None:
            changes["conflict_strategy"] = ConflictStrategy(conflict_strategy)
        logger.info("Requeued %s (strategy %s)", item_id, conflict_strategy or item.conflict_strategy)
        return self._update(item_id, changes)

    def discard(self, item_id: str, reason: str) -> SyncQueueItem:
        item = self.get(item_id)
        if item.synced:
            raise ValidationError(f"Queue item {item_id} is already synced")
        if item.discarded_at is not None:
            return item
        logger.warning("Discarding queue item %s: %s", item_id, reason)
        return self._update(item_id, {"discarded_at": self.storage.now(), "discard_reason": reason})

    def _update(self, item_id: str, changes: dict[str, Any]) -> SyncQueueItem:
        illegal = set(changes) - STATUS_FIELDS
        if illegal:
            raise ValueError(f"Queue items only change status fields, not {sorted(illegal)}")
        return SyncQueueItem(**self.storage.update(TABLE, item_id, changes))
