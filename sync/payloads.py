"""
Queue payload schemas, one per (entity type, operation).

Offline clients send camelCase keys; snake_case is accepted too. A
payload is validated when it is queued and decoded again when it is
replayed, so nothing unchecked reaches a handler.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ledger.errors import ValidationError
from ledger.models import LoanStatus, RepaymentMethod, TransactionSource

from .models import EntityType, Operation


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LoanCreatePayload(Payload):
    borrower_phone: str
    lender_phone: str
    principal_amount: Decimal = Field(..., gt=0)
    repayment_method: RepaymentMethod = RepaymentMethod.FIXED
    repayment_amount: Decimal = Field(..., gt=0)


class LoanUpdatePayload(Payload):
    loan_id: UUID
    version: int = Field(..., ge=1)
    updated_at: Optional[datetime] = None
    status: Optional[LoanStatus] = None
    repayment_method: Optional[RepaymentMethod] = None
    repayment_amount: Optional[Decimal] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _has_change(self) -> "LoanUpdatePayload":
        if self.status is None and self.repayment_method is None and self.repayment_amount is None:
            raise ValueError("loan update carries no changes")
        return self

    def changes(self) -> dict:
        return self.model_dump(
            include={"status", "repayment_method", "repayment_amount"}, exclude_none=True,
        )


class TransactionCreatePayload(Payload):
    user_phone: str
    amount: Decimal = Field(..., gt=0)
    transaction_id: Optional[UUID] = None
    source: TransactionSource = TransactionSource.OFFLINE
    reference: Optional[str] = None
    external_id: Optional[str] = None
    description: Optional[str] = None


class RepaymentCreatePayload(Payload):
    loan_id: UUID
    amount: Optional[Decimal] = Field(default=None, gt=0)
    transaction_id: Optional[UUID] = None
    payer_phone: Optional[str] = None

    @model_validator(mode="after")
    def _has_money(self) -> "RepaymentCreatePayload":
        if self.amount is None and self.transaction_id is None:
            raise ValueError("repayment needs an amount or an existing transaction id")
        return self


class UserUpdatePayload(Payload):
    phone: str
    version: int = Field(..., ge=1)
    updated_at: Optional[datetime] = None
    name: Optional[str] = None
    email: Optional[str] = None

    @model_validator(mode="after")
    def _has_change(self) -> "UserUpdatePayload":
        if self.name is None and self.email is None:
            raise ValueError("user update carries no changes")
        return self

    def changes(self) -> dict:
        return self.model_dump(include={"name", "email"}, exclude_none=True)


AnyPayload = Union[
    LoanCreatePayload,
    LoanUpdatePayload,
    TransactionCreatePayload,
    RepaymentCreatePayload,
    UserUpdatePayload,
]

PAYLOAD_SCHEMAS: dict[tuple[EntityType, Operation], type] = {
    (EntityType.LOAN, Operation.CREATE): LoanCreatePayload,
    (EntityType.LOAN, Operation.UPDATE): LoanUpdatePayload,
    (EntityType.TRANSACTION, Operation.CREATE): TransactionCreatePayload,
    (EntityType.REPAYMENT, Operation.CREATE): RepaymentCreatePayload,
    (EntityType.USER, Operation.UPDATE): UserUpdatePayload,
}


def decode_payload(entity_type: EntityType, operation: Operation, data: Union[str, dict]) -> AnyPayload:
    try:
        schema = PAYLOAD_SCHEMAS.get((EntityType(entity_type), Operation(operation)))
    except ValueError:
        schema = None
    if schema is None:
        raise ValidationError(f"Unsupported operation {operation} for {entity_type}")
    try:
        if isinstance(data, str):
            return schema.model_validate_json(data)
        return schema.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {entity_type} {operation} payload: {e.errors(include_url=False)}")


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def encode_payload(data: dict) -> str:
    return json.dumps(data, default=_json_default, sort_keys=True)
