"""
Conflict detection and resolution for replayed offline writes.

A conflict exists when the version a client last saw differs from the
version the ledger holds now. Resolution picks a winner by strategy:

  * ``LOCAL_WINS``: higher version wins, later timestamp breaks ties
  * ``SERVER_WINS``: the ledger copy always stands
  * ``MERGE``: caller-supplied field-level merge
  * ``MANUAL``: no winner; the write waits for an operator

Every resolution is journaled in ``sync_conflicts``.
"""

import logging
from typing import Any, Callable, Optional
from uuid import uuid4

from ledger.storage import InMemoryStorage

from .models import (
    Conflict,
    ConflictRecord,
    ConflictStrategy,
    EntityType,
    Resolution,
    Winner,
)

logger = logging.getLogger(__name__)

MergeFunc = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


class ConflictResolver:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @staticmethod
    def detect(
        local: Optional[dict[str, Any]],
        server: Optional[dict[str, Any]],
        entity_type: EntityType = EntityType.LOAN,
    ) -> Optional[Conflict]:
        if not local or not server:
            return None
        local_version = int(local.get("version") or 1)
        server_version = int(server.get("version") or 1)
        if local_version == server_version:
            return None
        return Conflict(
            entity_type=entity_type,
            entity_id=str(server.get("id") or local.get("id") or ""),
            local=local,
            server=server,
            local_version=local_version,
            server_version=server_version,
            local_timestamp=local.get("updated_at"),
            server_timestamp=server.get("updated_at"),
        )

    def resolve(
        self,
        conflict: Conflict,
        strategy: ConflictStrategy = ConflictStrategy.LOCAL_WINS,
        merge: Optional[MergeFunc] = None,
        queue_item_id: Optional[str] = None,
    ) -> Resolution:
        if strategy == ConflictStrategy.LOCAL_WINS:
            resolution = self._local_wins(conflict)
        elif strategy == ConflictStrategy.SERVER_WINS:
            resolution = Resolution(
                strategy=strategy, winner=Winner.SERVER, reason="Server version takes precedence",
            )
        elif strategy == ConflictStrategy.MERGE:
            if merge is None:
                raise ValueError("MERGE resolution needs a merge function")
            resolution = Resolution(
                strategy=strategy,
                winner=Winner.MERGED,
                reason="Records merged at field level",
                merged=merge(dict(conflict.local), dict(conflict.server)),
            )
        else:
            resolution = Resolution(
                strategy=ConflictStrategy.MANUAL,
                winner=Winner.NONE,
                reason="Held for manual review",
                requires_review=True,
            )
        self._journal(conflict, resolution, queue_item_id)
        return resolution

    @staticmethod
    def _local_wins(conflict: Conflict) -> Resolution:
        if conflict.local_version != conflict.server_version:
            local_newer = conflict.local_version > conflict.server_version
            basis = "version"
        else:
            local_newer = (
                conflict.local_timestamp is not None
                and conflict.server_timestamp is not None
                and conflict.local_timestamp > conflict.server_timestamp
            )
            basis = "timestamp"
        winner = Winner.LOCAL if local_newer else Winner.SERVER
        return Resolution(
            strategy=ConflictStrategy.LOCAL_WINS,
            winner=winner,
            reason=f"{'Local' if local_newer else 'Server'} record is newer by {basis}",
        )

    def escalate(self, conflict: Conflict, reason: str, queue_item_id: Optional[str] = None) -> Resolution:
        """Turn an automatic resolution that could not be applied into a manual one."""
        resolution = Resolution(
            strategy=ConflictStrategy.MANUAL, winner=Winner.NONE, reason=reason, requires_review=True,
        )
        self._journal(conflict, resolution, queue_item_id)
        return resolution

    def _journal(self, conflict: Conflict, resolution: Resolution, queue_item_id: Optional[str]) -> None:
        record = ConflictRecord(
            id=str(uuid4()),
            entity_type=conflict.entity_type,
            entity_id=conflict.entity_id,
            local_version=conflict.local_version,
            server_version=conflict.server_version,
            strategy=resolution.strategy,
            winner=resolution.winner,
            reason=resolution.reason,
            queue_item_id=queue_item_id,
            recorded_at=self.storage.now(),
        )
        self.storage.insert("sync_conflicts", record.model_dump())
        logger.info(
            "Conflict on %s %s (local v%d, server v%d): %s -> %s (%s)",
            conflict.entity_type.value, conflict.entity_id, conflict.local_version,
            conflict.server_version, resolution.strategy.value, resolution.winner.value, resolution.reason,
        )

    def history(self, entity_id: Optional[str] = None) -> list[ConflictRecord]:
        rows = self.storage.select(
            "sync_conflicts",
            where=lambda r: entity_id is None or r["entity_id"] == entity_id,
            order_by=lambda r: r["recorded_at"],
        )
        return [ConflictRecord(**r) for r in rows]
