"""
Offline Sync Package

Queues mutations made while a client is offline, replays them against
the ledger with conflict detection, and serves the per-phone change feed
clients use to catch up.
"""

from .conflict_resolver import ConflictResolver
from .engine import SyncEngine
from .incremental import IncrementalSyncManager
from .models import (
    ConflictStrategy,
    EntityType,
    Operation,
    SyncQueueItem,
    SyncResult,
)
from .queue import SyncQueueManager

__all__ = [
    "ConflictResolver",
    "SyncEngine",
    "IncrementalSyncManager",
    "SyncQueueManager",
    "ConflictStrategy",
    "EntityType",
    "Operation",
    "SyncQueueItem",
    "SyncResult",
]
