from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import ConflictStrategy


class EntityType(str, Enum):
    LOAN = "loan"
    TRANSACTION = "transaction"
    REPAYMENT = "repayment"
    USER = "user"


class Operation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class Winner(str, Enum):
    LOCAL = "local"
    SERVER = "server"
    MERGED = "merged"
    NONE = "none"


class QueueItemState(str, Enum):
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    DEAD_LETTER = "DEAD_LETTER"
    DISCARDED = "DISCARDED"


class SyncQueueItem(BaseModel):
    id: str
    entity_type: EntityType
    operation: Operation
    payload: str
    owner_phone: str
    created_at: datetime
    synced: bool = False
    synced_at: Optional[datetime] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    conflict_strategy: Optional[ConflictStrategy] = None
    needs_review: bool = False
    conflict_details: Optional[dict[str, Any]] = None
    discarded_at: Optional[datetime] = None
    discard_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def state(self, max_retries: int) -> QueueItemState:
        """Dead letter is a view over a pending item, not a stored state."""
        if self.synced:
            return QueueItemState.SYNCED
        if self.discarded_at is not None:
            return QueueItemState.DISCARDED
        if self.retry_count >= max_retries:
            return QueueItemState.DEAD_LETTER
        return QueueItemState.PENDING


class Conflict(BaseModel):
    entity_type: EntityType
    entity_id: str
    local: dict[str, Any]
    server: dict[str, Any]
    local_version: int
    server_version: int
    local_timestamp: Optional[datetime] = None
    server_timestamp: Optional[datetime] = None


class Resolution(BaseModel):
    strategy: ConflictStrategy
    winner: Winner
    reason: str
    requires_review: bool = False
    merged: Optional[dict[str, Any]] = None


class ConflictRecord(BaseModel):
    id: str
    entity_type: EntityType
    entity_id: str
    local_version: int
    server_version: int
    strategy: ConflictStrategy
    winner: Winner
    reason: str
    queue_item_id: Optional[str] = None
    recorded_at: datetime


class ChangeRecord(BaseModel):
    entity_type: EntityType
    entity_id: str
    version: int
    updated_at: datetime
    data: dict[str, Any]


class ItemOutcome(BaseModel):
    id: str
    entity_type: EntityType
    operation: Operation
    error: Optional[str] = None
    resolution: Optional[Resolution] = None
    conflict: Optional[Conflict] = None
    detail: Optional[str] = None


class SyncResult(BaseModel):
    owner_phone: str
    synced: list[ItemOutcome] = Field(default_factory=list)
    failed: list[ItemOutcome] = Field(default_factory=list)
    conflicts: list[ItemOutcome] = Field(default_factory=list)
    skipped: list[ItemOutcome] = Field(default_factory=list)
    total_items: int = 0
    duration_ms: float = 0.0
    message: Optional[str] = None


class IncrementalResult(BaseModel):
    since: datetime
    change_count: int
    changes: list[ChangeRecord]


class FullSyncResult(BaseModel):
    owner_phone: str
    success: bool = False
    queue: Optional[SyncResult] = None
    incremental: Optional[IncrementalResult] = None
    checkpoint: Optional[datetime] = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    message: Optional[str] = None


class QueueOperationRequest(BaseModel):
    phone: str
    entity_type: EntityType
    operation: Operation
    data: dict[str, Any]
    conflict_strategy: Optional[ConflictStrategy] = None


class SyncStatus(BaseModel):
    owner_phone: str
    last_sync_at: Optional[datetime] = None
    pending_operations: int
    needs_review: int
    dead_letter: int
    oldest_pending_at: Optional[datetime] = None


class PhoneRequest(BaseModel):
    phone: str


class RequeueRequest(BaseModel):
    conflict_strategy: Optional[ConflictStrategy] = None


class DiscardRequest(BaseModel):
    reason: str = Field(..., min_length=1)
