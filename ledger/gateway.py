"""
Mobile-money carrier gateway.

The ledger only needs three calls from the carrier: an STK push
collection, a B2C disbursement and a status query. Callbacks come back
through ``LedgerService.handle_c2b_confirmation`` keyed by the
``LOAN-<id>`` reference passed here, and B2C results through
``LedgerService.handle_b2c_result`` keyed by the returned request id.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class GatewayResponse(BaseModel):
    success: bool
    external_request_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class CarrierGateway(ABC):
    @abstractmethod
    def initiate_collection(self, phone: str, amount: Decimal, reference: str) -> GatewayResponse:
        ...

    @abstractmethod
    def initiate_disbursement(self, phone: str, amount: Decimal, reference: str) -> GatewayResponse:
        ...

    @abstractmethod
    def query_status(self, external_request_id: str) -> GatewayResponse:
        ...


class SandboxGateway(CarrierGateway):
    """Accepts every request and remembers it. Used locally and in tests."""

    def __init__(self, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.requests: dict[str, dict] = {}

    def _submit(self, kind: str, phone: str, amount: Decimal, reference: str) -> GatewayResponse:
        if self.fail_with:
            logger.warning("Sandbox %s to %s rejected: %s", kind, phone, self.fail_with)
            return GatewayResponse(success=False, error=self.fail_with)
        request_id = f"ws_CO_{uuid4().hex[:20]}"
        self.requests[request_id] = {
            "kind": kind, "phone": phone, "amount": amount,
            "reference": reference, "status": "pending",
        }
        logger.info("Sandbox %s %s: %s Ksh %s (%s)", kind, request_id, phone, amount, reference)
        return GatewayResponse(success=True, external_request_id=request_id, status="pending")

    def initiate_collection(self, phone: str, amount: Decimal, reference: str) -> GatewayResponse:
        return self._submit("collection", phone, amount, reference)

    def initiate_disbursement(self, phone: str, amount: Decimal, reference: str) -> GatewayResponse:
        return self._submit("disbursement", phone, amount, reference)

    def query_status(self, external_request_id: str) -> GatewayResponse:
        request = self.requests.get(external_request_id)
        if request is None:
            return GatewayResponse(success=False, status="not_found", error="Request not found")
        return GatewayResponse(
            success=True, external_request_id=external_request_id, status=request["status"],
        )

    def settle(self, external_request_id: str, status: str = "completed") -> None:
        """Mark a recorded request as finished, as the carrier would after the customer acts."""
        self.requests[external_request_id]["status"] = status
