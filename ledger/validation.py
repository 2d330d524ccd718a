import re
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID

from .errors import ValidationError

PHONE_PATTERN = re.compile(r"^(?:\+254|254|0)?([1-9]\d{8})$")
LOAN_REFERENCE_PREFIX = "LOAN-"


def normalize_phone(phone: Optional[str]) -> str:
    """Normalize a Kenyan MSISDN (``+254``, ``254`` or ``0`` prefix) to ``254XXXXXXXXX``."""
    if not phone:
        raise ValidationError("Phone number is required")
    match = PHONE_PATTERN.match(re.sub(r"\s", "", str(phone)))
    if not match:
        raise ValidationError(f"Invalid phone number: {phone}")
    return f"254{match.group(1)}"


def parse_amount(value, minimum: Decimal = Decimal("0"), maximum: Optional[Decimal] = None) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value}")
    if not amount.is_finite() or amount <= 0 or amount < minimum:
        raise ValidationError(f"Amount must be at least {minimum}")
    if maximum is not None and amount > maximum:
        raise ValidationError(f"Amount must not exceed {maximum}")
    return amount


def loan_reference(loan_id: UUID) -> str:
    return f"{LOAN_REFERENCE_PREFIX}{loan_id}"


def parse_loan_reference(reference: Optional[str]) -> Optional[UUID]:
    """Loan id from a carrier bill reference of the form ``LOAN-<id>``, else None."""
    if not reference or not reference.startswith(LOAN_REFERENCE_PREFIX):
        return None
    try:
        return UUID(reference[len(LOAN_REFERENCE_PREFIX):])
    except ValueError:
        return None
