import logging
from decimal import Decimal
from typing import Optional
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

from .allocator import RepaymentAllocator
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
from .gateway import CarrierGateway, GatewayResponse
from .models import (
    CollectionRequest,
    CreateLoanRequest,
    IncomingTransactionRequest,
    Loan,
    LoanDecisionRequest,
    LoanStatus,
    Notification,
    NotificationType,
    RegisterUserRequest,
    Repayment,
    RepaymentMethod,
    Transaction,
    TransactionDirection,
    TransactionResponse,
    TransactionSource,
    TransactionStatus,
    User,
)
from .notifications import notify
from .storage import InMemoryStorage
from .validation import loan_reference, normalize_phone, parse_amount, parse_loan_reference

logger = logging.getLogger(__name__)

WALLET_CAS_ATTEMPTS = 5


def disbursement_id(loan_id: UUID) -> UUID:
    """One outgoing B2C row per loan, whoever ends up paying it."""
    return uuid5(NAMESPACE_URL, f"disbursement:{loan_id}")


class LedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        gateway: Optional[CarrierGateway] = None,
        allocator: Optional[RepaymentAllocator] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.allocator = allocator or RepaymentAllocator(self.storage, self.settings)

    # users

    def register_user(self, request: RegisterUserRequest) -> User:
        phone = normalize_phone(request.phone)
        if self.storage.lookup("users.phone", phone):
            raise DuplicateError(f"User with phone {phone} already exists")
        row = self.storage.insert("users", {
            "id": uuid4(),
            "phone": phone,
            "name": request.name,
            "email": request.email,
            "wallet_balance": Decimal("0"),
        })
        return User(**row)

    def get_user(self, user_id: UUID) -> User:
        row = self.storage.get("users", user_id)
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return User(**row)

    def get_user_by_phone(self, phone: str) -> User:
        phone = normalize_phone(phone)
        user_id = self.storage.lookup("users.phone", phone)
        if not user_id:
            raise NotFoundError(f"User with phone {phone} not found")
        return self.get_user(user_id)

    def add_funds(self, phone: str, amount: Decimal) -> User:
        """Top up a wallet directly; no transaction row and no repayment allocation."""
        user = self.get_user_by_phone(phone)
        amount = parse_amount(amount)
        for attempt in range(WALLET_CAS_ATTEMPTS):
            try:
                row = self.storage.compare_and_swap("users", user.id, user.version, {
                    "wallet_balance": user.wallet_balance + amount,
                })
                logger.info("Added Ksh %s to wallet of %s", amount, user.phone)
                return User(**row)
            except ConflictError:
                user = self.get_user(user.id)
        raise ConflictError(f"Could not credit wallet of {user.phone}")

    # loans

    def request_loan(self, request: CreateLoanRequest, loan_id: Optional[UUID] = None) -> Loan:
        borrower = self.get_user_by_phone(request.borrower_phone)
        lender = self.get_user_by_phone(request.lender_phone)
        if borrower.id == lender.id:
            raise ValidationError("Cannot request a loan from yourself")

        principal = parse_amount(
            request.principal_amount, self.settings.min_loan_amount, self.settings.max_loan_amount,
        )
        if request.repayment_method == RepaymentMethod.PERCENTAGE and request.repayment_amount > 100:
            raise ValidationError("Repayment percentage cannot exceed 100")
        if request.repayment_method == RepaymentMethod.FIXED and request.repayment_amount > principal:
            raise ValidationError("Fixed repayment amount cannot exceed the principal")

        row = self.storage.insert("loans", {
            "id": loan_id or uuid4(),
            "borrower_id": borrower.id,
            "lender_id": lender.id,
            "borrower_phone": borrower.phone,
            "lender_phone": lender.phone,
            "principal_amount": principal,
            "remaining_balance": principal,
            "repayment_method": request.repayment_method,
            "repayment_amount": request.repayment_amount,
            "status": LoanStatus.PENDING,
        })
        loan = Loan(**row)
        notify(
            self.storage, lender.id, NotificationType.LOAN_REQUEST,
            f"{borrower.name} ({borrower.phone}) requests a loan of Ksh {principal}",
            loan_id=loan.id,
        )
        return loan

    def get_loan(self, loan_id: UUID) -> Loan:
        row = self.storage.get("loans", loan_id)
        if not row:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan(**row)

    def list_loans(self, phone: str, role: Optional[str] = None) -> list[Loan]:
        phone = normalize_phone(phone)
        roles = ("borrower", "lender") if role is None else (role,)
        rows = self.storage.select(
            "loans",
            where=lambda r: any(r[f"{name}_phone"] == phone for name in roles),
            order_by=lambda r: r["created_at"],
        )
        return [Loan(**r) for r in rows]

    def decide_loan(self, loan_id: UUID, request: LoanDecisionRequest) -> Loan:
        loan = self.get_loan(loan_id)
        status = LoanStatus.ACTIVE if request.approve else LoanStatus.DECLINED
        return self.set_loan_status(loan, status)

    def set_loan_status(self, loan: Loan, status: LoanStatus, expected_version: Optional[int] = None) -> Loan:
        """Move ``loan`` forward to ``status``; activation disburses through the gateway.

        ``expected_version`` defaults to the version of ``loan`` as passed in,
        so a stale caller gets a ``ConflictError`` rather than overwriting.
        Activation claims the loan before any money moves: only the caller
        whose compare-and-swap wins disburses, and a rejected disbursement
        puts the loan back to pending.
        """
        if not loan.can_transition_to(status):
            raise InvalidStateTransitionError(f"Cannot move loan {loan.id} from {loan.status.value} to {status.value}")
        if status == LoanStatus.COMPLETED:
            raise InvalidStateTransitionError("Loans complete only through repayment")

        row = self.storage.compare_and_swap(
            "loans", loan.id, expected_version if expected_version is not None else loan.version,
            {"status": status},
        )
        updated = Loan(**row)
        if status == LoanStatus.ACTIVE:
            try:
                response = self._request_disbursement(updated)
            except Exception:
                self._release_claim(updated, loan.status)
                raise
            # the carrier accepted, so the claim stands even if recording fails
            if response is not None:
                self._record_disbursement(updated, response)
            notify(
                self.storage, loan.borrower_id, NotificationType.LOAN_APPROVED,
                f"Your loan of Ksh {loan.principal_amount} from {loan.lender_phone} was approved",
                loan_id=loan.id,
            )
        else:
            notify(
                self.storage, loan.borrower_id, NotificationType.LOAN_DECLINED,
                f"Your loan request of Ksh {loan.principal_amount} to {loan.lender_phone} was declined",
                loan_id=loan.id,
            )
        return updated

    def _release_claim(self, claimed: Loan, previous: LoanStatus) -> None:
        try:
            self.storage.compare_and_swap("loans", claimed.id, claimed.version, {"status": previous})
        except LedgerServiceError as e:
            logger.error("Could not return loan %s to %s after a failed disbursement: %s", claimed.id, previous.value, e)
            raise
        logger.warning("Loan %s returned to %s; disbursement did not go through", claimed.id, previous.value)

    def update_loan_terms(self, loan: Loan, changes: dict, expected_version: int) -> Loan:
        if loan.status != LoanStatus.PENDING:
            raise InvalidStateTransitionError(f"Terms of loan {loan.id} are fixed once it is {loan.status.value}")
        allowed = {k: v for k, v in changes.items() if k in ("repayment_method", "repayment_amount")}
        return Loan(**self.storage.compare_and_swap("loans", loan.id, expected_version, allowed))

    def _request_disbursement(self, loan: Loan) -> Optional[GatewayResponse]:
        if self.gateway is None:
            logger.info("No carrier gateway configured; loan %s activated without disbursement", loan.id)
            return None
        if self.storage.get("transactions", disbursement_id(loan.id)):
            logger.warning("Loan %s already has a disbursement on record; not paying again", loan.id)
            return None
        response = self.gateway.initiate_disbursement(
            loan.borrower_phone, loan.principal_amount, loan_reference(loan.id),
        )
        if not response.success:
            raise TransientError(f"Disbursement for loan {loan.id} failed: {response.error}")
        return response

    def _record_disbursement(self, loan: Loan, response: GatewayResponse) -> None:
        self.storage.insert("transactions", {
            "id": disbursement_id(loan.id),
            "user_id": loan.lender_id,
            "user_phone": loan.lender_phone,
            "amount": loan.principal_amount,
            "direction": TransactionDirection.OUTGOING,
            "source": TransactionSource.B2C,
            "reference": loan_reference(loan.id),
            "external_id": response.external_request_id,
            "description": f"Loan disbursement to {loan.borrower_phone}",
            "status": TransactionStatus.PENDING,
        })

    def handle_b2c_result(self, payload: dict) -> Transaction:
        """Carrier B2C result callback; settles the disbursement named by ``ConversationID``."""
        result = payload.get("Result") or {}
        conversation_id = result.get("ConversationID") or result.get("OriginatorConversationID")
        if not conversation_id or result.get("ResultCode") is None:
            raise ValidationError("B2C result missing ConversationID or ResultCode")
        transaction_id = self.storage.lookup("transactions.external_id", conversation_id)
        if not transaction_id:
            raise NotFoundError(f"No disbursement for conversation {conversation_id}")
        transaction = Transaction(**self.storage.get("transactions", transaction_id))
        if transaction.status != TransactionStatus.PENDING:
            return transaction

        if int(result["ResultCode"]) == 0:
            changes = {"status": TransactionStatus.COMPLETED, "receipt": result.get("TransactionID")}
            logger.info("Disbursement %s completed (%s)", transaction.id, result.get("TransactionID"))
        else:
            changes = {"status": TransactionStatus.FAILED}
            logger.error(
                "Disbursement %s for %s failed at the carrier: %s",
                transaction.id, transaction.reference, result.get("ResultDesc"),
            )
        return Transaction(**self.storage.compare_and_swap("transactions", transaction.id, transaction.version, changes))

    # money in

    def record_incoming_transaction(
        self,
        request: IncomingTransactionRequest,
        transaction_id: Optional[UUID] = None,
        best_effort: bool = True,
    ) -> TransactionResponse:
        """Record money received by a user and run repayment allocation.

        Live callers use ``best_effort=True``: allocation errors are logged
        and the recorded transaction stands. Sync replay passes False so a
        failed allocation marks the queue item for retry. Re-recording the
        same ``transaction_id`` or carrier ``external_id`` does not credit
        twice, but allocation still runs so an interrupted run completes.
        """
        user = self.get_user_by_phone(request.phone)
        amount = parse_amount(request.amount)

        existing = self._find_existing_transaction(transaction_id, request.external_id)
        if existing:
            if existing.direction != TransactionDirection.INCOMING or existing.user_id != user.id:
                raise ValidationError(
                    f"Transaction {existing.id} is not an incoming payment of {user.phone}"
                )
            transaction = existing
            message = "Transaction already recorded"
        else:
            transaction = self._insert_incoming(user, amount, request, transaction_id or uuid4())
            message = "Transaction recorded successfully"

        allocation = None
        loan_id = parse_loan_reference(transaction.reference)
        try:
            allocation = self.allocator.allocate(user.id, transaction.amount, transaction.id, loan_id=loan_id)
        except LedgerServiceError as e:
            if not best_effort:
                raise
            logger.error("Repayment processing for transaction %s failed: %s", transaction.id, e)
        if allocation is not None and allocation.is_partial and not best_effort:
            raise TransientError(
                f"Repayment for transaction {transaction.id} incomplete: "
                + "; ".join(f.error for f in allocation.errors)
            )

        return TransactionResponse(transaction=transaction, allocation=allocation, message=message)

    def _find_existing_transaction(
        self, transaction_id: Optional[UUID], external_id: Optional[str],
    ) -> Optional[Transaction]:
        if transaction_id is not None:
            row = self.storage.get("transactions", transaction_id)
            if row:
                return Transaction(**row)
        if external_id:
            existing_id = self.storage.lookup("transactions.external_id", external_id)
            if existing_id:
                return Transaction(**self.storage.get("transactions", existing_id))
        return None

    def _insert_incoming(
        self, user: User, amount: Decimal, request: IncomingTransactionRequest, transaction_id: UUID,
    ) -> Transaction:
        for attempt in range(WALLET_CAS_ATTEMPTS):
            try:
                with self.storage.atomic():
                    row = self.storage.insert("transactions", {
                        "id": transaction_id,
                        "user_id": user.id,
                        "user_phone": user.phone,
                        "amount": amount,
                        "direction": TransactionDirection.INCOMING,
                        "source": request.source,
                        "reference": request.reference,
                        "external_id": request.external_id,
                        "description": request.description or f"{request.source.value} transfer",
                    })
                    self.storage.compare_and_swap("users", user.id, user.version, {
                        "wallet_balance": user.wallet_balance + amount,
                    })
                return Transaction(**row)
            except ConflictError:
                logger.warning("Wallet of %s changed while crediting; retrying", user.phone)
                user = self.get_user(user.id)
        raise ConflictError(f"Could not credit wallet of {user.phone}")

    def handle_c2b_confirmation(self, payload: dict) -> TransactionResponse:
        """Carrier C2B confirmation callback (``MSISDN``, ``Amount``, ``TransID``, ``BillRefNumber``)."""
        missing = [k for k in ("MSISDN", "Amount", "TransID") if not payload.get(k)]
        if missing:
            raise ValidationError(f"C2B confirmation missing {', '.join(missing)}")
        logger.info(
            "C2B confirmation %s: %s Ksh %s ref %s",
            payload["TransID"], payload["MSISDN"], payload["Amount"], payload.get("BillRefNumber"),
        )
        return self.record_incoming_transaction(IncomingTransactionRequest(
            phone=payload["MSISDN"],
            amount=parse_amount(payload["Amount"]),
            source=TransactionSource.C2B,
            reference=payload.get("BillRefNumber"),
            external_id=payload["TransID"],
            description="M-PESA C2B payment",
        ))

    def initiate_collection(self, loan_id: UUID, request: CollectionRequest) -> GatewayResponse:
        loan = self.get_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise InvalidStateTransitionError(f"Loan {loan_id} is {loan.status.value}; nothing to collect")
        if self.gateway is None:
            raise TransientError("No carrier gateway configured")
        response = self.gateway.initiate_collection(
            normalize_phone(request.phone), request.amount, loan_reference(loan_id),
        )
        if not response.success:
            raise TransientError(f"Collection request failed: {response.error}")
        return response

    def query_collection_status(self, external_request_id: str) -> GatewayResponse:
        if self.gateway is None:
            raise TransientError("No carrier gateway configured")
        response = self.gateway.query_status(external_request_id)
        if response.status == "not_found":
            raise NotFoundError(f"Carrier request {external_request_id} not found")
        if not response.success:
            raise TransientError(f"Status query for {external_request_id} failed: {response.error}")
        return response

    # history

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        row = self.storage.get("transactions", transaction_id)
        if not row:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction(**row)

    def list_transactions(self, phone: str) -> list[Transaction]:
        phone = normalize_phone(phone)
        rows = self.storage.select(
            "transactions", where=lambda r: r["user_phone"] == phone,
            order_by=lambda r: r["created_at"],
        )
        rows.reverse()
        return [Transaction(**r) for r in rows]

    def list_repayments(self, loan_id: UUID) -> list[Repayment]:
        self.get_loan(loan_id)
        rows = self.storage.select(
            "repayments", where=lambda r: r["loan_id"] == loan_id, order_by=lambda r: r["created_at"],
        )
        return [Repayment(**r) for r in rows]

    def list_repayments_for(self, phone: str, role: str = "borrower") -> list[Repayment]:
        """Every repayment on loans where ``phone`` is the borrower or the lender, newest first."""
        if role not in ("borrower", "lender"):
            raise ValidationError(f"Unknown role {role!r}; expected borrower or lender")
        phone = normalize_phone(phone)
        rows = self.storage.select(
            "repayments", where=lambda r: r[f"{role}_phone"] == phone, order_by=lambda r: r["created_at"],
        )
        rows.reverse()
        return [Repayment(**r) for r in rows]

    def list_notifications(self, user_id: UUID, unread_only: bool = False) -> list[Notification]:
        rows = self.storage.select(
            "notifications",
            where=lambda r: r["user_id"] == user_id and (not unread_only or not r["is_read"]),
            order_by=lambda r: r["created_at"],
        )
        rows.reverse()
        return [Notification(**r) for r in rows]

    def unread_notification_count(self, user_id: UUID) -> int:
        return len(self.storage.select(
            "notifications", where=lambda r: r["user_id"] == user_id and not r["is_read"],
        ))

    def mark_notification_read(self, notification_id: UUID) -> Notification:
        if not self.storage.get("notifications", notification_id):
            raise NotFoundError(f"Notification {notification_id} not found")
        return Notification(**self.storage.update("notifications", notification_id, {"is_read": True}))
