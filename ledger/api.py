import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from sync.engine import SyncEngine
from sync.incremental import as_utc
from sync.models import (
    DiscardRequest,
    FullSyncResult,
    IncrementalResult,
    PhoneRequest,
    QueueOperationRequest,
    RequeueRequest,
    SyncQueueItem,
    SyncResult,
    SyncStatus,
)

from .config import Settings, get_settings
from .errors import (
    ConflictError,
    DuplicateError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from .gateway import CarrierGateway, GatewayResponse, SandboxGateway
from .logging_setup import setup_logging
from .models import (
    AddFundsRequest,
    CollectionRequest,
    CreateLoanRequest,
    IncomingTransactionRequest,
    Loan,
    LoanDecisionRequest,
    Notification,
    RegisterUserRequest,
    Repayment,
    Transaction,
    TransactionResponse,
    User,
)
from .service import LedgerService
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidStateTransitionError, status.HTTP_400_BAD_REQUEST),
    (DuplicateError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(error: LedgerServiceError) -> HTTPException:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    gateway: Optional[CarrierGateway] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    ledger_service = LedgerService(
        storage=storage or InMemoryStorage(),
        settings=settings,
        gateway=gateway or SandboxGateway(),
    )
    sync_engine = SyncEngine(ledger_service)

    app = FastAPI(
        title="Pesa Ledger API",
        description="Peer-to-peer lending ledger with mobile-money repayments and offline sync",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger_service = ledger_service
    app.state.sync_engine = sync_engine

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "pesa-ledger"}

    # users

    @app.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def register_user(request: RegisterUserRequest) -> User:
        try:
            return ledger_service.register_user(request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/users/{phone}", response_model=User, tags=["Users"])
    def get_user(phone: str) -> User:
        try:
            return ledger_service.get_user_by_phone(phone)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/users/{phone}/loans", response_model=list[Loan], tags=["Users"])
    def list_user_loans(phone: str, role: Optional[str] = None) -> list[Loan]:
        try:
            return ledger_service.list_loans(phone, role)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/users/{phone}/transactions", response_model=list[Transaction], tags=["Users"])
    def list_user_transactions(phone: str) -> list[Transaction]:
        try:
            return ledger_service.list_transactions(phone)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/users/{phone}/notifications", response_model=list[Notification], tags=["Users"])
    def list_user_notifications(phone: str, unread_only: bool = False) -> list[Notification]:
        try:
            user = ledger_service.get_user_by_phone(phone)
            return ledger_service.list_notifications(user.id, unread_only)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/users/{phone}/wallet/add-funds", response_model=User, tags=["Users"])
    def add_funds(phone: str, request: AddFundsRequest) -> User:
        try:
            return ledger_service.add_funds(phone, request.amount)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/users/{phone}/repayments", response_model=list[Repayment], tags=["Users"])
    def list_user_repayments(phone: str, role: str = "borrower") -> list[Repayment]:
        try:
            return ledger_service.list_repayments_for(phone, role)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/users/{phone}/notifications/unread-count", tags=["Users"])
    def unread_notification_count(phone: str):
        try:
            user = ledger_service.get_user_by_phone(phone)
            return {"unread_count": ledger_service.unread_notification_count(user.id)}
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/notifications/{notification_id}/read", response_model=Notification, tags=["Users"])
    def mark_notification_read(notification_id: UUID) -> Notification:
        try:
            return ledger_service.mark_notification_read(notification_id)
        except LedgerServiceError as e:
            raise http_error(e)

    # loans

    @app.post("/loans", response_model=Loan, status_code=status.HTTP_201_CREATED, tags=["Loans"])
    def request_loan(request: CreateLoanRequest) -> Loan:
        try:
            return ledger_service.request_loan(request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/loans/{loan_id}", response_model=Loan, tags=["Loans"])
    def get_loan(loan_id: UUID) -> Loan:
        try:
            return ledger_service.get_loan(loan_id)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/loans/{loan_id}/decision", response_model=Loan, tags=["Loans"])
    def decide_loan(loan_id: UUID, request: LoanDecisionRequest) -> Loan:
        try:
            return ledger_service.decide_loan(loan_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/loans/{loan_id}/repayments", response_model=list[Repayment], tags=["Loans"])
    def list_loan_repayments(loan_id: UUID) -> list[Repayment]:
        try:
            return ledger_service.list_repayments(loan_id)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/loans/{loan_id}/collect", response_model=GatewayResponse, tags=["Loans"])
    def collect_repayment(loan_id: UUID, request: CollectionRequest) -> GatewayResponse:
        try:
            return ledger_service.initiate_collection(loan_id, request)
        except LedgerServiceError as e:
            raise http_error(e)

    # money in

    @app.post(
        "/transactions/incoming",
        response_model=TransactionResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Transactions"],
    )
    def record_incoming(request: IncomingTransactionRequest) -> TransactionResponse:
        try:
            return ledger_service.record_incoming_transaction(request)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
    def get_transaction(transaction_id: UUID) -> Transaction:
        try:
            return ledger_service.get_transaction(transaction_id)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/mpesa/c2b/validation", tags=["Carrier"])
    def c2b_validation(payload: dict):
        return {"ResultCode": 0, "ResultDesc": "Accepted"}

    @app.post("/mpesa/c2b/confirmation", tags=["Carrier"])
    def c2b_confirmation(payload: dict):
        # the carrier retries on anything but an acknowledgement
        try:
            ledger_service.handle_c2b_confirmation(payload)
        except LedgerServiceError as e:
            logger.error("C2B confirmation %s rejected: %s", payload.get("TransID"), e)
            return {"ResultCode": 1, "ResultDesc": str(e)}
        return {"ResultCode": 0, "ResultDesc": "Accepted"}

    @app.post("/mpesa/b2c/result", tags=["Carrier"])
    def b2c_result(payload: dict):
        try:
            ledger_service.handle_b2c_result(payload)
        except LedgerServiceError as e:
            logger.error("B2C result rejected: %s", e)
            return {"success": False}
        return {"success": True}

    @app.get("/mpesa/stk-status/{request_id}", response_model=GatewayResponse, tags=["Carrier"])
    def stk_status(request_id: str) -> GatewayResponse:
        try:
            return ledger_service.query_collection_status(request_id)
        except LedgerServiceError as e:
            raise http_error(e)

    # offline sync

    @app.post("/sync/queue-operation", response_model=SyncQueueItem, status_code=status.HTTP_201_CREATED, tags=["Sync"])
    def queue_operation(request: QueueOperationRequest) -> SyncQueueItem:
        try:
            return sync_engine.queue_operation(
                request.entity_type, request.operation, request.data, request.phone, request.conflict_strategy,
            )
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/sync/queue", response_model=SyncResult, tags=["Sync"])
    def process_queue(request: PhoneRequest) -> SyncResult:
        try:
            return sync_engine.process_queue(request.phone)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/sync/full", response_model=FullSyncResult, tags=["Sync"])
    def full_sync(request: PhoneRequest) -> FullSyncResult:
        try:
            return sync_engine.full_sync(request.phone)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/sync/pending/{phone}", response_model=list[SyncQueueItem], tags=["Sync"])
    def pending_items(phone: str) -> list[SyncQueueItem]:
        try:
            return sync_engine.get_pending_items(phone)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.get("/sync/changes/{phone}", response_model=IncrementalResult, tags=["Sync"])
    def changes_since(phone: str, since: Optional[datetime] = None) -> IncrementalResult:
        try:
            since = as_utc(since) if since is not None else sync_engine.incremental.get_checkpoint(phone)
            changes = sync_engine.get_changes_since(phone, since)
        except LedgerServiceError as e:
            raise http_error(e)
        return IncrementalResult(since=since, change_count=len(changes), changes=changes)

    @app.get("/sync/dead-letter", response_model=list[SyncQueueItem], tags=["Sync"])
    def dead_letter_items(max_retries: Optional[int] = None) -> list[SyncQueueItem]:
        return sync_engine.get_dead_letter_items(max_retries)

    @app.get("/sync/status/{phone}", response_model=SyncStatus, tags=["Sync"])
    def sync_status(phone: str) -> SyncStatus:
        try:
            return sync_engine.sync_status(phone)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/sync/items/{item_id}/requeue", response_model=SyncQueueItem, tags=["Sync"])
    def requeue_item(item_id: str, request: RequeueRequest) -> SyncQueueItem:
        try:
            return sync_engine.queue.requeue(item_id, request.conflict_strategy)
        except LedgerServiceError as e:
            raise http_error(e)

    @app.post("/sync/items/{item_id}/discard", response_model=SyncQueueItem, tags=["Sync"])
    def discard_item(item_id: str, request: DiscardRequest) -> SyncQueueItem:
        try:
            return sync_engine.queue.discard(item_id, request.reason)
        except LedgerServiceError as e:
            raise http_error(e)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    uvicorn.run(app, host="0.0.0.0", port=8000)
