from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, model_validator


CENTS = Decimal("0.01")


class LoanStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DECLINED = "declined"


# Allowed forward moves; anything else is a regression.
LOAN_TRANSITIONS: dict[LoanStatus, frozenset] = {
    LoanStatus.PENDING: frozenset({LoanStatus.ACTIVE, LoanStatus.DECLINED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.DECLINED: frozenset(),
}


class RepaymentMethod(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class TransactionDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class TransactionSource(str, Enum):
    C2B = "c2b"
    STK_PUSH = "stk_push"
    B2C = "b2c"
    MANUAL = "manual"
    OFFLINE = "offline"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Lives here rather than in sync.models so Settings can validate it.
class ConflictStrategy(str, Enum):
    LOCAL_WINS = "LOCAL_WINS"
    SERVER_WINS = "SERVER_WINS"
    MERGE = "MERGE"
    MANUAL = "MANUAL"


class NotificationType(str, Enum):
    LOAN_REQUEST = "loan_request"
    LOAN_APPROVED = "loan_approved"
    LOAN_DECLINED = "loan_declined"
    REPAYMENT = "repayment"
    DISBURSEMENT = "disbursement"


class User(BaseModel):
    id: UUID
    phone: str
    name: str
    email: Optional[str] = None
    wallet_balance: Decimal = Decimal("0")
    version: int = 1
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Loan(BaseModel):
    id: UUID
    borrower_id: UUID
    lender_id: UUID
    borrower_phone: str
    lender_phone: str
    principal_amount: Decimal
    remaining_balance: Decimal
    repayment_method: RepaymentMethod
    repayment_amount: Decimal
    status: LoanStatus = LoanStatus.PENDING
    version: int = 1
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _check_balance(self) -> "Loan":
        if not (Decimal("0") <= self.remaining_balance <= self.principal_amount):
            raise ValueError(
                f"remaining_balance {self.remaining_balance} outside [0, {self.principal_amount}]"
            )
        return self

    def can_transition_to(self, status: LoanStatus) -> bool:
        return status in LOAN_TRANSITIONS[self.status]

    def due_for(self, incoming_amount: Decimal) -> Decimal:
        """Nominal amount this loan asks of a payment of ``incoming_amount``."""
        if self.repayment_method == RepaymentMethod.PERCENTAGE:
            return (incoming_amount * self.repayment_amount / Decimal("100")).quantize(CENTS)
        return self.repayment_amount


class Transaction(BaseModel):
    id: UUID
    user_id: UUID
    user_phone: str
    amount: Decimal
    direction: TransactionDirection = TransactionDirection.INCOMING
    source: TransactionSource = TransactionSource.MANUAL
    reference: Optional[str] = None
    external_id: Optional[str] = None
    description: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED
    receipt: Optional[str] = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Repayment(BaseModel):
    id: UUID
    loan_id: UUID
    transaction_id: UUID
    amount_deducted: Decimal
    balance_after: Decimal
    borrower_phone: str
    lender_phone: str
    version: int = 1
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Notification(BaseModel):
    id: UUID
    user_id: UUID
    loan_id: Optional[UUID] = None
    repayment_id: Optional[UUID] = None
    notification_type: NotificationType
    message: str
    is_read: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RegisterUserRequest(BaseModel):
    phone: str
    name: str
    email: Optional[str] = None


class CreateLoanRequest(BaseModel):
    borrower_phone: str
    lender_phone: str
    principal_amount: Decimal = Field(..., gt=0)
    repayment_method: RepaymentMethod = RepaymentMethod.FIXED
    repayment_amount: Decimal = Field(..., gt=0, description="Amount per payment, or percent for percentage loans")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "borrower_phone": "254712345678",
            "lender_phone": "254702345678",
            "principal_amount": 5000,
            "repayment_method": "fixed",
            "repayment_amount": 500,
        }
    })


class LoanDecisionRequest(BaseModel):
    approve: bool
    performed_by: Optional[str] = None


class IncomingTransactionRequest(BaseModel):
    phone: str
    amount: Decimal = Field(..., gt=0)
    source: TransactionSource = TransactionSource.MANUAL
    reference: Optional[str] = None
    external_id: Optional[str] = None
    description: Optional[str] = None


class AddFundsRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class CollectionRequest(BaseModel):
    phone: str
    amount: Decimal = Field(..., gt=0)


class AllocationLine(BaseModel):
    loan_id: UUID
    repayment_id: UUID
    amount_deducted: Decimal
    balance_after: Decimal
    completed: bool
    already_applied: bool = False


class AllocationFailure(BaseModel):
    loan_id: UUID
    error: str


class AllocationResult(BaseModel):
    borrower_id: UUID
    transaction_id: UUID
    incoming_amount: Decimal
    allocations: list[AllocationLine] = Field(default_factory=list)
    unallocated_amount: Decimal = Decimal("0")
    skipped_reason: Optional[str] = None
    errors: list[AllocationFailure] = Field(default_factory=list)

    @property
    def allocated_amount(self) -> Decimal:
        return sum((a.amount_deducted for a in self.allocations), Decimal("0"))

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)


class TransactionResponse(BaseModel):
    transaction: Transaction
    allocation: Optional[AllocationResult] = None
    message: str
