"""
Sync engine: replays a phone's offline queue against the ledger, then
reports what changed on the ledger since that phone last synced.

Items of one phone are replayed strictly in order under a per-phone
lock; each item lands in exactly one of synced / failed / conflicts
(or skipped, when it is dead-lettered or waiting for review). One
item's exception never stops the rest of the batch.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import NAMESPACE_URL, UUID, uuid5

from ledger.errors import (
    ConflictError,
    DuplicateError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from ledger.models import (
    CreateLoanRequest,
    IncomingTransactionRequest,
    Loan,
    LoanStatus,
    LOAN_TRANSITIONS,
    Transaction,
    TransactionDirection,
    TransactionSource,
)
from ledger.service import LedgerService
from ledger.validation import loan_reference, normalize_phone

from .conflict_resolver import ConflictResolver
from .incremental import EPOCH, IncrementalSyncManager
from .models import (
    Conflict,
    ConflictStrategy,
    EntityType,
    FullSyncResult,
    IncrementalResult,
    ItemOutcome,
    Operation,
    Resolution,
    SyncQueueItem,
    SyncResult,
    SyncStatus,
    Winner,
)
from .payloads import (
    LoanCreatePayload,
    LoanUpdatePayload,
    RepaymentCreatePayload,
    TransactionCreatePayload,
    UserUpdatePayload,
)
from .queue import SyncQueueManager

logger = logging.getLogger(__name__)

LOAN_TERM_FIELDS = ("repayment_method", "repayment_amount")
USER_PROFILE_FIELDS = ("name", "email")


class HeldForReview(ConflictError):
    """A conflict no strategy could settle; the item waits for an operator."""

    def __init__(self, conflict: Conflict, resolution: Resolution):
        super().__init__(resolution.reason, conflict)
        self.resolution = resolution


def derived_id(item: SyncQueueItem) -> UUID:
    """Stable id for a record created by replaying ``item``, so a re-drive finds it."""
    return uuid5(NAMESPACE_URL, item.id)


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 3)


class SyncEngine:
    def __init__(
        self,
        service: LedgerService,
        queue: Optional[SyncQueueManager] = None,
        incremental: Optional[IncrementalSyncManager] = None,
        resolver: Optional[ConflictResolver] = None,
    ):
        self.service = service
        self.storage = service.storage
        self.settings = service.settings
        self.queue = queue or SyncQueueManager(self.storage, self.settings.sync_max_retries)
        self.incremental = incremental or IncrementalSyncManager(self.storage)
        self.resolver = resolver or ConflictResolver(self.storage)
        self.default_strategy = self.settings.queue_default_strategy
        self._phone_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._handlers: dict[tuple[EntityType, Operation], Callable[..., tuple]] = {
            (EntityType.LOAN, Operation.CREATE): self._create_loan,
            (EntityType.LOAN, Operation.UPDATE): self._update_loan,
            (EntityType.TRANSACTION, Operation.CREATE): self._create_transaction,
            (EntityType.REPAYMENT, Operation.CREATE): self._create_repayment,
            (EntityType.USER, Operation.UPDATE): self._update_user,
        }

    def _lock_for(self, phone: str) -> threading.Lock:
        with self._locks_guard:
            return self._phone_locks.setdefault(phone, threading.Lock())

    # facade

    def queue_operation(
        self,
        entity_type: Any,
        operation: Any,
        payload: dict,
        owner_phone: str,
        conflict_strategy: Optional[ConflictStrategy] = None,
    ) -> SyncQueueItem:
        return self.queue.enqueue(entity_type, operation, payload, owner_phone, conflict_strategy)

    def get_pending_items(self, owner_phone: str) -> list[SyncQueueItem]:
        return self.queue.list_pending(owner_phone)

    def get_dead_letter_items(self, max_retries: Optional[int] = None) -> list[SyncQueueItem]:
        return self.queue.list_dead_letter(max_retries)

    def get_changes_since(self, owner_phone: str, since: Optional[datetime] = None):
        if since is None:
            since = self.incremental.get_checkpoint(owner_phone)
        return self.incremental.get_changes_since(owner_phone, since)

    def sync_status(self, owner_phone: str) -> SyncStatus:
        phone = normalize_phone(owner_phone)
        pending = self.queue.list_pending(phone)
        checkpoint = self.incremental.get_checkpoint(phone)
        return SyncStatus(
            owner_phone=phone,
            last_sync_at=checkpoint if checkpoint > EPOCH else None,
            pending_operations=len(pending),
            needs_review=sum(1 for i in pending if i.needs_review),
            dead_letter=sum(1 for i in pending if i.retry_count >= self.queue.max_retries),
            oldest_pending_at=pending[0].created_at if pending else None,
        )

    # queue drain

    def process_queue(self, owner_phone: str) -> SyncResult:
        started = time.monotonic()
        phone = normalize_phone(owner_phone)
        result = SyncResult(owner_phone=phone)

        with self._lock_for(phone):
            items = self.queue.list_pending(phone)
            result.total_items = len(items)
            for item in items:
                if item.needs_review:
                    result.skipped.append(self._outcome(item, detail="Held for manual review"))
                elif item.retry_count >= self.queue.max_retries:
                    result.skipped.append(self._outcome(item, detail="Dead letter; needs manual requeue"))
                else:
                    self._replay(item, result)

        result.duration_ms = _elapsed_ms(started)
        result.message = (
            f"{len(result.synced)} synced, {len(result.failed)} failed, "
            f"{len(result.conflicts)} conflicts, {len(result.skipped)} skipped"
            if items else "No items to sync"
        )
        return result

    process_sync_queue = process_queue

    def _outcome(self, item: SyncQueueItem, **fields) -> ItemOutcome:
        return ItemOutcome(id=item.id, entity_type=item.entity_type, operation=item.operation, **fields)

    def _replay(self, item: SyncQueueItem, result: SyncResult) -> None:
        outcome = self._outcome(item)
        try:
            payload = self.queue.decode_payload(item)
            handler = self._handlers[(item.entity_type, item.operation)]
            outcome.detail, outcome.resolution = handler(item, payload)
            self.queue.mark_synced(item.id)
        except DuplicateError as e:
            outcome.detail = f"Already applied: {e}"
            self._settle_duplicate(item, outcome, result)
            return
        except HeldForReview as e:
            outcome.conflict = e.conflict
            outcome.resolution = e.resolution
            self._hold(item, e)
            result.conflicts.append(outcome)
            return
        except ConflictError as e:
            # the record moved between read and write; next drain re-reads it
            logger.warning("Queue item %s hit a concurrent write: %s", item.id, e)
            outcome.error = str(e)
            outcome.conflict = e.conflict
            result.conflicts.append(outcome)
            return
        except LedgerServiceError as e:
            self._fail(item, outcome, str(e), result)
            return
        except Exception as e:
            logger.exception("Unexpected error replaying queue item %s", item.id)
            self._fail(item, outcome, f"{type(e).__name__}: {e}", result)
            return
        result.synced.append(outcome)

    def _settle_duplicate(self, item: SyncQueueItem, outcome: ItemOutcome, result: SyncResult) -> None:
        try:
            self.queue.mark_synced(item.id)
        except LedgerServiceError as e:
            self._fail(item, outcome, str(e), result)
            return
        result.synced.append(outcome)

    def _hold(self, item: SyncQueueItem, held: HeldForReview) -> None:
        try:
            self.queue.flag_conflict(item.id, {
                "entity_id": held.conflict.entity_id,
                "local_version": held.conflict.local_version,
                "server_version": held.conflict.server_version,
                "reason": held.resolution.reason,
            })
        except LedgerServiceError as e:
            logger.error("Could not flag queue item %s for review: %s", item.id, e)

    def _fail(self, item: SyncQueueItem, outcome: ItemOutcome, error: str, result: SyncResult) -> None:
        logger.warning("Replay of queue item %s failed: %s", item.id, error)
        outcome.error = error
        result.failed.append(outcome)
        try:
            self.queue.record_failure(item.id, error)
        except LedgerServiceError as e:
            logger.error("Could not record failure for queue item %s: %s", item.id, e)

    # full cycle

    def full_sync(self, owner_phone: str) -> FullSyncResult:
        started = time.monotonic()
        phone = normalize_phone(owner_phone)
        result = FullSyncResult(owner_phone=phone)
        try:
            logger.info("Sync phase 1: processing offline queue for %s", phone)
            result.queue = self.process_queue(phone)

            logger.info("Sync phase 2: collecting changes for %s", phone)
            since = self.incremental.get_checkpoint(phone)
            fetched_at = self.storage.now()
            changes = self.incremental.get_changes_since(phone, since)
            result.incremental = IncrementalResult(since=since, change_count=len(changes), changes=changes)

            logger.info("Sync phase 3: advancing checkpoint for %s", phone)
            result.checkpoint = self.incremental.advance_checkpoint(phone, fetched_at)
            result.success = True
        except Exception as e:
            logger.exception("Full sync for %s failed", phone)
            result.success = False
            result.error = str(e)
        result.duration_ms = _elapsed_ms(started)
        result.message = (
            f"Sync completed in {result.duration_ms}ms" if result.success
            else f"Sync failed after {result.duration_ms}ms"
        )
        return result

    # handlers return (detail, resolution)

    def _create_loan(self, item: SyncQueueItem, payload: LoanCreatePayload) -> tuple:
        loan_id = derived_id(item)
        if self.storage.get("loans", loan_id):
            raise DuplicateError(f"Loan {loan_id} already created")
        loan = self.service.request_loan(CreateLoanRequest(**payload.model_dump()), loan_id=loan_id)
        return f"Created loan {loan.id}", None

    def _update_loan(self, item: SyncQueueItem, payload: LoanUpdatePayload) -> tuple:
        server = self.storage.get("loans", payload.loan_id)
        if server is None:
            raise NotFoundError(f"Loan {payload.loan_id} not found")
        requested = payload.changes()
        local = {
            "id": str(payload.loan_id),
            "version": payload.version,
            "updated_at": payload.updated_at or item.created_at,
            **requested,
        }

        conflict = self.resolver.detect(local, server, EntityType.LOAN)
        if conflict is None:
            loan = self._apply_loan_changes(Loan(**server), requested, server["version"])
            return f"Loan {loan.id} updated to v{loan.version}", None

        # the offline edit produced the version after the one the client read
        conflict = conflict.model_copy(update={"local_version": payload.version + 1})
        strategy = item.conflict_strategy or ConflictStrategy.MERGE
        resolution = self.resolver.resolve(conflict, strategy, merge=merge_loan, queue_item_id=item.id)

        if resolution.winner == Winner.NONE:
            raise HeldForReview(conflict, resolution)
        if resolution.winner == Winner.SERVER:
            return f"Kept server loan v{server['version']}", resolution

        if resolution.winner == Winner.LOCAL:
            changes = requested
        else:
            changes = {k: resolution.merged[k] for k in requested if resolution.merged[k] != server[k]}
            if not changes:
                raise HeldForReview(conflict, self.resolver.escalate(
                    conflict, "No offline loan change applies to the current loan", item.id,
                ))
        try:
            loan = self._apply_loan_changes(Loan(**server), changes, server["version"])
        except InvalidStateTransitionError as e:
            raise HeldForReview(conflict, self.resolver.escalate(conflict, str(e), item.id))
        return f"Loan {loan.id} updated to v{loan.version}", resolution

    def _apply_loan_changes(self, loan: Loan, changes: dict, expected_version: int) -> Loan:
        terms = {k: v for k, v in changes.items() if k in LOAN_TERM_FIELDS}
        if terms:
            loan = self.service.update_loan_terms(loan, terms, expected_version)
            expected_version = loan.version
        status = changes.get("status")
        if status is not None and LoanStatus(status) != loan.status:
            loan = self.service.set_loan_status(loan, LoanStatus(status), expected_version)
        return loan

    def _create_transaction(self, item: SyncQueueItem, payload: TransactionCreatePayload) -> tuple:
        response = self.service.record_incoming_transaction(
            IncomingTransactionRequest(
                phone=payload.user_phone,
                amount=payload.amount,
                source=payload.source,
                reference=payload.reference,
                external_id=payload.external_id,
                description=payload.description,
            ),
            transaction_id=payload.transaction_id or derived_id(item),
            best_effort=False,
        )
        return _allocation_detail(response.transaction, response.allocation), None

    def _create_repayment(self, item: SyncQueueItem, payload: RepaymentCreatePayload) -> tuple:
        loan = self.service.get_loan(payload.loan_id)
        transaction_id = payload.transaction_id or derived_id(item)
        existing = self.storage.get("transactions", transaction_id)

        if existing is None:
            if payload.amount is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            description = "Offline loan repayment"
            if payload.payer_phone:
                description += f" paid by {normalize_phone(payload.payer_phone)}"
            response = self.service.record_incoming_transaction(
                IncomingTransactionRequest(
                    phone=loan.borrower_phone,
                    amount=payload.amount,
                    source=TransactionSource.OFFLINE,
                    reference=loan_reference(loan.id),
                    description=description,
                ),
                transaction_id=transaction_id,
                best_effort=False,
            )
            return _allocation_detail(response.transaction, response.allocation), None

        transaction = Transaction(**existing)
        if transaction.direction != TransactionDirection.INCOMING or transaction.user_id != loan.borrower_id:
            raise ValidationError(
                f"Transaction {transaction.id} is not an incoming payment of borrower {loan.borrower_phone}"
            )
        allocation = self.service.allocator.allocate(
            loan.borrower_id, transaction.amount, transaction.id, loan_id=loan.id,
        )
        if allocation.is_partial:
            raise TransientError("; ".join(f.error for f in allocation.errors))
        return _allocation_detail(transaction, allocation), None

    def _update_user(self, item: SyncQueueItem, payload: UserUpdatePayload) -> tuple:
        phone = normalize_phone(payload.phone)
        if phone != item.owner_phone:
            raise ValidationError(f"{item.owner_phone} cannot update the profile of {phone}")
        user = self.service.get_user_by_phone(phone)
        server = self.storage.get("users", user.id)
        requested = payload.changes()
        local = {
            "id": str(user.id),
            "version": payload.version,
            "updated_at": payload.updated_at or item.created_at,
            **requested,
        }

        conflict = self.resolver.detect(local, server, EntityType.USER)
        if conflict is None:
            row = self.storage.compare_and_swap("users", user.id, server["version"], requested)
            return f"User {phone} updated to v{row['version']}", None

        conflict = conflict.model_copy(update={"local_version": payload.version + 1})
        strategy = item.conflict_strategy or self.default_strategy
        resolution = self.resolver.resolve(conflict, strategy, merge=merge_user, queue_item_id=item.id)

        if resolution.winner == Winner.NONE:
            raise HeldForReview(conflict, resolution)
        if resolution.winner == Winner.SERVER:
            return f"Kept server profile v{server['version']}", resolution
        source = requested if resolution.winner == Winner.LOCAL else resolution.merged
        changes = {k: source[k] for k in USER_PROFILE_FIELDS if k in requested}
        row = self.storage.compare_and_swap("users", user.id, server["version"], changes)
        return f"User {phone} updated to v{row['version']}", resolution


def merge_loan(local: dict, server: dict) -> dict:
    """Server keeps the money fields; local status applies only as a legal forward move."""
    merged = dict(server)
    server_status = LoanStatus(server["status"])
    if local.get("status") is not None:
        wanted = LoanStatus(local["status"])
        if wanted in LOAN_TRANSITIONS[server_status] and wanted != LoanStatus.COMPLETED:
            merged["status"] = wanted
    if server_status == LoanStatus.PENDING:
        for field in LOAN_TERM_FIELDS:
            if local.get(field) is not None:
                merged[field] = local[field]
    return merged


def merge_user(local: dict, server: dict) -> dict:
    merged = dict(server)
    for field in USER_PROFILE_FIELDS:
        if local.get(field) is not None:
            merged[field] = local[field]
    return merged


def _allocation_detail(transaction: Transaction, allocation) -> str:
    if allocation is None:
        return f"Transaction {transaction.id} recorded"
    if allocation.skipped_reason:
        return f"Transaction {transaction.id} recorded; {allocation.skipped_reason}"
    return (
        f"Transaction {transaction.id} recorded; Ksh {allocation.allocated_amount} applied "
        f"across {len(allocation.allocations)} loan(s), Ksh {allocation.unallocated_amount} left in wallet"
    )
