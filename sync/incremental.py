import logging
from datetime import datetime, timezone
from typing import Any

from ledger.storage import InMemoryStorage
from ledger.validation import normalize_phone

from .models import ChangeRecord, EntityType

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

CHECKPOINTS = "sync_checkpoints"


def as_utc(moment: datetime) -> datetime:
    """Naive timestamps from clients are read as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class IncrementalSyncManager:
    """Per-phone change feed over loans, transactions and repayments."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def get_checkpoint(self, owner_phone: str) -> datetime:
        row = self.storage.get(CHECKPOINTS, normalize_phone(owner_phone))
        return row["synced_until"] if row else EPOCH

    def advance_checkpoint(self, owner_phone: str, timestamp: datetime) -> datetime:
        """Move the checkpoint forward; an older ``timestamp`` leaves it unchanged."""
        phone = normalize_phone(owner_phone)
        timestamp = as_utc(timestamp)
        with self.storage.atomic():
            current = self.get_checkpoint(phone)
            if timestamp <= current:
                logger.debug("Checkpoint for %s stays at %s (got %s)", phone, current, timestamp)
                return current
            self.storage.upsert(CHECKPOINTS, phone, {
                "id": phone,
                "synced_until": timestamp,
                "advanced_at": self.storage.now(),
            })
        return timestamp

    def get_changes_since(self, owner_phone: str, since: datetime) -> list[ChangeRecord]:
        phone = normalize_phone(owner_phone)
        since = as_utc(since)

        def party(row: dict[str, Any]) -> bool:
            return row["borrower_phone"] == phone or row["lender_phone"] == phone

        sources = (
            (EntityType.LOAN, "loans", party),
            (EntityType.TRANSACTION, "transactions", lambda r: r["user_phone"] == phone),
            (EntityType.REPAYMENT, "repayments", party),
        )
        changes = []
        for entity_type, table, owns in sources:
            for row in self.storage.select(table, where=lambda r: owns(r) and r["updated_at"] > since):
                changes.append(ChangeRecord(
                    entity_type=entity_type,
                    entity_id=str(row["id"]),
                    version=row["version"],
                    updated_at=row["updated_at"],
                    data=row,
                ))
        changes.sort(key=lambda c: c.updated_at)
        return changes
