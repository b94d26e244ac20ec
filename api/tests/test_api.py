"""
API Tests

Exercise the routers end to end through FastAPI's TestClient with the
background workers disabled and a fake gateway.
"""

import pytest
from decimal import Decimal
from uuid import UUID, uuid4
from fastapi.testclient import TestClient

from api.app import create_app
from api.services import Services
from core.config import Settings
from ledger.models import EntryType
from payments.gateway import compute_secure_hash

SALT = "salt"


class FakeGateway:
    def __init__(self):
        self.inquiries = []

    def submit_payment(self, payload):
        return {"pp_ResponseCode": "124", "pp_ResponseMessage": "Pending"}

    def inquire_status(self, txn_ref):
        self.inquiries.append(txn_ref)
        return {"pp_ResponseCode": "000", "pp_PaymentResponseCode": "000", "pp_TxnRefNo": txn_ref}

    def close(self):
        pass


@pytest.fixture
def services():
    settings = Settings(jazzcash_integrity_salt=SALT, run_workers=False)
    return Services(settings, gateway=FakeGateway())


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


def register(client, username, code=None):
    response = client.post("/accounts", json={
        "name": username.title(), "username": username, "email": f"{username}@example.com", "referral_code": code,
    })
    assert response.status_code == 201
    return response.json()


def pay_and_confirm(client, account_id):
    """Initiate a 1000 payment and confirm it through a signed callback."""
    started = client.post("/payments", json={
        "account_id": account_id, "amount": "1000", "mobile_number": "03123456789",
    })
    assert started.status_code == 201
    txn_ref = started.json()["data"]["txn_ref"]

    payload = {"pp_TxnRefNo": txn_ref, "pp_ResponseCode": "000", "pp_Amount": "100000", "ppmpf_1": account_id}
    payload["pp_SecureHash"] = compute_secure_hash(payload, SALT)
    confirmed = client.post("/payments/callback", json=payload)
    assert confirmed.status_code == 200
    return txn_ref, confirmed.json()


class TestSystem:
    """Tests for the health endpoint."""

    def test_health(self, client):
        """Health reports the workers as stopped when disabled."""
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["workers"] == {"settlement-scan": False, "subscription-expiry": False}


class TestAccountsApi:
    """Tests for registration and account views."""

    def test_register_without_code(self, client):
        """Registration without a code leaves the account unlinked."""
        body = register(client, "sana")

        assert body["referral"]["linked"] is False
        assert body["account"]["referral"]["referrer"] is None

    def test_duplicate_registration_conflicts(self, client):
        """Reusing a username is a conflict."""
        register(client, "sana")

        response = client.post("/accounts", json={"name": "S", "username": "sana", "email": "x@example.com"})

        assert response.status_code == 409

    def test_unknown_account_is_404(self, client):
        """Account views 404 on unknown ids."""
        assert client.get(f"/accounts/{uuid4()}/balance").status_code == 404
        assert client.get(f"/referrals/{uuid4()}/stats").status_code == 404

    def test_withdrawal_flow(self, client, services):
        """Bank details, request and approval through the API."""
        account_id = register(client, "sana")["account"]["id"]
        services.ledger.credit(UUID(account_id), Decimal("100"), EntryType.WALLET_CREDIT)

        assert client.post(f"/accounts/{account_id}/withdrawals").status_code == 400

        client.put(f"/accounts/{account_id}/bank-details", json={
            "account_number": "0123", "bank_name": "HBL", "account_holder": "Sana",
        })
        requested = client.post(f"/accounts/{account_id}/withdrawals")
        assert requested.status_code == 201
        withdrawal = requested.json()["withdrawal"]
        assert Decimal(withdrawal["amount_paid"]) == Decimal("90")

        approved = client.post(f"/accounts/{account_id}/withdrawals/{withdrawal['id']}/approve")
        assert approved.status_code == 200
        assert Decimal(approved.json()["total_earnings"]) == Decimal("0")


class TestPaymentsApi:
    """Tests for the payment envelope endpoints."""

    def test_payment_activates_and_enables_referrals(self, client):
        """A confirmed payment activates the subscription and its code links new accounts."""
        zara = register(client, "zara")["account"]["id"]

        _, confirmed = pay_and_confirm(client, zara)

        assert confirmed["success"] is True
        assert confirmed["data"]["status"] == "success"
        subscription = client.get(f"/accounts/{zara}/subscription").json()
        assert subscription["is_active"] is True
        assert subscription["days_remaining"] == 30

        ali = register(client, "ali", subscription["referral_code"])
        assert ali["referral"]["linked"] is True

        stats = client.get(f"/referrals/{zara}/stats").json()
        assert stats["counts"]["level1"] == 1

    def test_commission_reaches_referrer(self, client):
        """The buyer's payment pays the level-1 referrer 20%."""
        zara = register(client, "zara")["account"]["id"]
        pay_and_confirm(client, zara)
        code = client.get(f"/accounts/{zara}").json()["referral_code"]
        ali = register(client, "ali", code)["account"]["id"]

        pay_and_confirm(client, ali)

        balance = client.get(f"/accounts/{zara}/balance").json()
        assert Decimal(balance["earnings_by_level"]["level1"]) == Decimal("200")
        history = client.get(f"/accounts/{zara}/ledger").json()
        assert history["total_count"] == 1

    def test_status_before_first_inquiry_waits(self, client, services):
        """Checking straight after submission waits without calling the gateway."""
        account_id = register(client, "sana")["account"]["id"]
        started = client.post("/payments", json={
            "account_id": account_id, "amount": "1000", "mobile_number": "03123456789",
        }).json()

        response = client.get(f"/payments/{started['data']['txn_ref']}/status")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "waiting"
        assert response.json()["data"]["remaining_time_ms"] > 0
        assert services.gateway.inquiries == []

    def test_unknown_account_payment(self, client):
        """Payments for unknown accounts answer 404 in the envelope."""
        response = client.post("/payments", json={
            "account_id": str(uuid4()), "amount": "10", "mobile_number": "03123456789",
        })

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_unknown_reference_status(self, client):
        """Status of an unknown reference is a 404 envelope."""
        response = client.get("/payments/T-missing/status")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_bad_signature_callback(self, client):
        """A callback with a wrong hash is refused."""
        response = client.post("/payments/callback", json={
            "pp_TxnRefNo": "T1", "pp_ResponseCode": "000", "pp_SecureHash": "BAD",
        })

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unexpected_error_is_generic(self, client, services, monkeypatch):
        """Internal failures surface as a generic message without details."""
        def boom(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(services.reconciler, "check_now", boom)

        response = client.get("/payments/T1/status")

        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Payment processing failed", "data": None}

    def test_account_transactions(self, client):
        """Settled transactions are listed per account."""
        zara = register(client, "zara")["account"]["id"]
        txn_ref, _ = pay_and_confirm(client, zara)

        body = client.get(f"/payments/accounts/{zara}").json()

        assert [t["txn_ref"] for t in body["data"]] == [txn_ref]


class TestOrdersApi:
    """Tests for the order endpoints."""

    def _order(self, client, account_id):
        response = client.post("/orders", json={
            "account_id": account_id,
            "shipping_address": "Lahore",
            "items": [{"product_id": "soap", "actual_price": "60", "discounted_price": "35", "quantity": 2}],
        })
        assert response.status_code == 201
        return response.json()

    def test_delivery_releases_credit_once(self, client):
        """The delivered transition credits 50; the manual claim then reports it as already done."""
        account_id = register(client, "sana")["account"]["id"]
        pay_and_confirm(client, account_id)
        order = self._order(client, account_id)

        for status in ("processing", "shipped"):
            assert client.patch(f"/orders/{order['id']}/status", json={"status": status}).status_code == 200
        delivered = client.patch(f"/orders/{order['id']}/status", json={"status": "delivered"}).json()

        assert delivered["order"]["wallet_credit"]["credited"] is True
        assert Decimal(delivered["wallet_credit"]["amount"]) == Decimal("50")

        repeat = client.post(f"/orders/{order['id']}/wallet-credit").json()
        assert repeat["already_credited"] is True
        balance = client.get(f"/accounts/{account_id}/balance").json()
        assert Decimal(balance["wallet_credits"]) == Decimal("50")

    def test_invalid_transition(self, client):
        """Jumping from pending to delivered is a bad request."""
        account_id = register(client, "sana")["account"]["id"]
        order = self._order(client, account_id)

        response = client.patch(f"/orders/{order['id']}/status", json={"status": "delivered"})

        assert response.status_code == 400

    def test_claim_before_delivery(self, client):
        """Claiming the credit of an undelivered order is a bad request."""
        account_id = register(client, "sana")["account"]["id"]
        order = self._order(client, account_id)

        assert client.post(f"/orders/{order['id']}/wallet-credit").status_code == 400

    def test_unknown_order(self, client):
        """Unknown orders are 404."""
        assert client.get(f"/orders/{uuid4()}").status_code == 404
