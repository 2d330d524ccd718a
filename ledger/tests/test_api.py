"""
HTTP Tests for the Ledger API

Tests cover:
1. Ledger routes and error mapping
2. Carrier callbacks
3. Offline sync routes
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi.testclient import TestClient

from ledger.api import create_app
from ledger.config import Settings
from ledger.gateway import SandboxGateway
from ledger.storage import InMemoryStorage


BORROWER_PHONE = "254712345678"
LENDER_PHONE = "254722345678"


class Clock:
    def __init__(self):
        self.current = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


def make_client(gateway=None):
    app = create_app(
        settings=Settings(),
        storage=InMemoryStorage(clock=Clock()),
        gateway=gateway or SandboxGateway(),
    )
    client = TestClient(app)
    for phone, name in ((BORROWER_PHONE, "Wanjiru Kamau"), (LENDER_PHONE, "Otieno Odhiambo")):
        assert client.post("/users", json={"phone": phone, "name": name}).status_code == 201
    return client


def create_active_loan(client, principal=5000, repayment=500):
    loan = client.post("/loans", json={
        "borrower_phone": BORROWER_PHONE,
        "lender_phone": LENDER_PHONE,
        "principal_amount": principal,
        "repayment_method": "fixed",
        "repayment_amount": repayment,
    }).json()
    response = client.post(f"/loans/{loan['id']}/decision", json={"approve": True})
    assert response.status_code == 200
    return response.json()


class TestLedgerRoutes:
    """Tests for users, loans and transactions over HTTP."""

    def test_health(self):
        client = make_client()

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_duplicate_user_conflicts(self):
        """Test registering a phone twice returns 409."""
        client = make_client()

        response = client.post("/users", json={"phone": "0712345678", "name": "Again"})

        assert response.status_code == 409

    def test_invalid_phone_is_bad_request(self):
        client = make_client()

        response = client.post("/users", json={"phone": "12", "name": "Nobody"})

        assert response.status_code == 400

    def test_unknown_loan_not_found(self):
        client = make_client()

        response = client.get("/loans/3f1c9a52-52b4-4c77-a8a4-0d5ae5e1e001")

        assert response.status_code == 404

    def test_loan_lifecycle(self):
        """Test request, approve, repay and list over HTTP."""
        client = make_client()
        loan = create_active_loan(client)
        assert loan["status"] == "active"

        response = client.post("/transactions/incoming", json={"phone": BORROWER_PHONE, "amount": 1000})
        assert response.status_code == 201
        allocation = response.json()["allocation"]
        assert Decimal(allocation["allocations"][0]["amount_deducted"]) == Decimal("500")
        assert Decimal(allocation["unallocated_amount"]) == Decimal("500")

        current = client.get(f"/loans/{loan['id']}").json()
        assert Decimal(current["remaining_balance"]) == Decimal("4500")
        assert len(client.get(f"/loans/{loan['id']}/repayments").json()) == 1
        assert len(client.get(f"/users/{BORROWER_PHONE}/loans", params={"role": "borrower"}).json()) == 1

    def test_second_decision_is_bad_request(self):
        """Test deciding an already active loan returns 400."""
        client = make_client()
        loan = create_active_loan(client)

        response = client.post(f"/loans/{loan['id']}/decision", json={"approve": False})

        assert response.status_code == 400

    def test_disbursement_failure_is_unavailable(self):
        """Test a carrier rejection maps to 503."""
        client = make_client(gateway=SandboxGateway(fail_with="Insufficient float"))
        loan = client.post("/loans", json={
            "borrower_phone": BORROWER_PHONE,
            "lender_phone": LENDER_PHONE,
            "principal_amount": 1000,
            "repayment_amount": 100,
        }).json()

        response = client.post(f"/loans/{loan['id']}/decision", json={"approve": True})

        assert response.status_code == 503

    def test_wallet_top_up(self):
        """Test funds added over HTTP land in the wallet."""
        client = make_client()

        response = client.post(f"/users/{BORROWER_PHONE}/wallet/add-funds", json={"amount": 250})

        assert response.status_code == 200
        assert Decimal(response.json()["wallet_balance"]) == Decimal("250")
        assert client.post(f"/users/{BORROWER_PHONE}/wallet/add-funds", json={"amount": 0}).status_code == 422
        assert client.post("/users/0799999999/wallet/add-funds", json={"amount": 10}).status_code == 404

    def test_repayments_per_party(self):
        """Test borrower and lender repayment lists and role validation."""
        client = make_client()
        create_active_loan(client)
        client.post("/transactions/incoming", json={"phone": BORROWER_PHONE, "amount": 500})

        mine = client.get(f"/users/{BORROWER_PHONE}/repayments").json()
        theirs = client.get(f"/users/{LENDER_PHONE}/repayments", params={"role": "lender"}).json()

        assert len(mine) == 1
        assert [r["id"] for r in theirs] == [mine[0]["id"]]
        assert client.get(f"/users/{LENDER_PHONE}/repayments", params={"role": "guarantor"}).status_code == 400

    def test_notifications(self):
        """Test the lender inbox and marking a notification read."""
        client = make_client()
        create_active_loan(client)

        [note] = client.get(f"/users/{LENDER_PHONE}/notifications", params={"unread_only": True}).json()
        assert client.get(f"/users/{LENDER_PHONE}/notifications/unread-count").json() == {"unread_count": 1}
        response = client.post(f"/notifications/{note['id']}/read")

        assert response.json()["is_read"] is True
        assert client.get(f"/users/{LENDER_PHONE}/notifications", params={"unread_only": True}).json() == []
        assert client.get(f"/users/{LENDER_PHONE}/notifications/unread-count").json() == {"unread_count": 0}


class TestCarrierRoutes:
    """Tests for carrier callbacks and collections."""

    def test_c2b_confirmation_accepted(self):
        client = make_client()
        loan = create_active_loan(client)

        response = client.post("/mpesa/c2b/confirmation", json={
            "TransID": "QKT4XYZ789",
            "MSISDN": BORROWER_PHONE,
            "Amount": "500",
            "BillRefNumber": f"LOAN-{loan['id']}",
        })

        assert response.json()["ResultCode"] == 0
        assert Decimal(client.get(f"/loans/{loan['id']}").json()["remaining_balance"]) == Decimal("4500")

    def test_c2b_confirmation_rejected_with_result_code(self):
        """Test a malformed callback is acknowledged with a failure code, not an HTTP error."""
        client = make_client()

        response = client.post("/mpesa/c2b/confirmation", json={"MSISDN": BORROWER_PHONE})

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 1

    def test_collect(self):
        client = make_client()
        loan = create_active_loan(client)

        response = client.post(f"/loans/{loan['id']}/collect", json={"phone": BORROWER_PHONE, "amount": 500})

        assert response.status_code == 200
        assert response.json()["external_request_id"].startswith("ws_CO_")

    def test_stk_status(self):
        """Test the STK status route reads the carrier and 404s unknown requests."""
        client = make_client()
        loan = create_active_loan(client)
        request_id = client.post(
            f"/loans/{loan['id']}/collect", json={"phone": BORROWER_PHONE, "amount": 500},
        ).json()["external_request_id"]

        response = client.get(f"/mpesa/stk-status/{request_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert client.get("/mpesa/stk-status/ws_CO_unknown").status_code == 404

    def test_b2c_result_settles_disbursement(self):
        """Test the B2C result callback completes the lender's payout row."""
        client = make_client()
        create_active_loan(client)
        [payout] = client.get(f"/users/{LENDER_PHONE}/transactions").json()
        assert payout["status"] == "pending"

        response = client.post("/mpesa/b2c/result", json={"Result": {
            "ResultCode": 0,
            "ResultDesc": "The service request is processed successfully.",
            "ConversationID": payout["external_id"],
            "TransactionID": "QKT4B2C001",
        }})

        assert response.json() == {"success": True}
        settled = client.get(f"/transactions/{payout['id']}").json()
        assert settled["status"] == "completed"
        assert settled["receipt"] == "QKT4B2C001"
        unknown = client.post("/mpesa/b2c/result", json={"Result": {"ResultCode": 0, "ConversationID": "AG_x"}})
        assert unknown.json() == {"success": False}


class TestSyncRoutes:
    """Tests for the offline sync routes."""

    def test_queue_and_full_sync(self):
        """Test a queued offline loan is created by a full sync."""
        client = make_client()

        response = client.post("/sync/queue-operation", json={
            "phone": BORROWER_PHONE,
            "entity_type": "loan",
            "operation": "CREATE",
            "data": {
                "borrowerPhone": BORROWER_PHONE,
                "lenderPhone": LENDER_PHONE,
                "principalAmount": 2000,
                "repaymentAmount": 200,
            },
        })
        assert response.status_code == 201
        assert len(client.get(f"/sync/pending/{BORROWER_PHONE}").json()) == 1

        result = client.post("/sync/full", json={"phone": BORROWER_PHONE}).json()

        assert result["success"] is True
        assert len(result["queue"]["synced"]) == 1
        assert result["incremental"]["change_count"] == 1
        assert client.get(f"/sync/pending/{BORROWER_PHONE}").json() == []
        status = client.get(f"/sync/status/{BORROWER_PHONE}").json()
        assert status["last_sync_at"] is not None
        assert status["pending_operations"] == 0

    def test_invalid_payload_rejected(self):
        """Test a payload that fails validation is never queued."""
        client = make_client()

        response = client.post("/sync/queue-operation", json={
            "phone": BORROWER_PHONE,
            "entity_type": "loan",
            "operation": "CREATE",
            "data": {"borrowerPhone": BORROWER_PHONE},
        })

        assert response.status_code == 400
        assert client.get(f"/sync/pending/{BORROWER_PHONE}").json() == []

    def test_changes_feed(self):
        """Test the lender sees the loan and its own disbursement."""
        client = make_client()
        loan = create_active_loan(client)

        body = client.get(f"/sync/changes/{LENDER_PHONE}").json()

        assert body["change_count"] == 2
        assert {c["entity_type"] for c in body["changes"]} == {"loan", "transaction"}
        assert loan["id"] in {c["entity_id"] for c in body["changes"]}

        later = client.get(f"/sync/changes/{LENDER_PHONE}", params={"since": "2030-01-01T00:00:00+00:00"})
        assert later.json()["change_count"] == 0

    def test_changes_feed_accepts_naive_since(self):
        """Test a since without an offset is read as UTC and a malformed one is rejected."""
        client = make_client()
        create_active_loan(client)

        response = client.get(f"/sync/changes/{LENDER_PHONE}", params={"since": "2026-01-01T00:00:00"})

        assert response.status_code == 200
        assert response.json()["change_count"] == 2
        assert response.json()["since"].startswith("2026-01-01T00:00:00")
        later = client.get(f"/sync/changes/{LENDER_PHONE}", params={"since": "2030-01-01T00:00:00"})
        assert later.json()["change_count"] == 0
        assert client.get(f"/sync/changes/{LENDER_PHONE}", params={"since": "yesterday"}).status_code == 422

    def test_discard_and_requeue(self):
        """Test the operator routes settle queue items."""
        client = make_client()
        payload = {
            "phone": BORROWER_PHONE,
            "entity_type": "transaction",
            "operation": "CREATE",
            "data": {"userPhone": BORROWER_PHONE, "amount": 300},
        }
        first = client.post("/sync/queue-operation", json=payload).json()
        second = client.post("/sync/queue-operation", json=payload).json()

        requeued = client.post(f"/sync/items/{first['id']}/requeue", json={"conflict_strategy": "SERVER_WINS"})
        discarded = client.post(f"/sync/items/{second['id']}/discard", json={"reason": "Entered twice"})

        assert requeued.json()["conflict_strategy"] == "SERVER_WINS"
        assert discarded.json()["discard_reason"] == "Entered twice"
        assert [i["id"] for i in client.get(f"/sync/pending/{BORROWER_PHONE}").json()] == [first["id"]]
        assert client.post(f"/sync/items/{second['id']}/requeue", json={}).status_code == 400
        assert client.post("/sync/items/queue-missing/discard", json={"reason": "x"}).status_code == 404
        assert client.get("/sync/dead-letter").json() == []
