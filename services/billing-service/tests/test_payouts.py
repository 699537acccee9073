from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from billing_service.gateway import GatewayConnectedAccount


@pytest.fixture()
def coach_headers(headers):
    return headers("coach-1", role="coach", email="coach@example.com")


@pytest.fixture()
def connected(client: TestClient, coach_headers) -> str:
    r = client.post("/coach/connect-stripe", json={}, headers=coach_headers)
    assert r.status_code == 200, r.text
    return r.json()["stripe_account_id"]


def test_coach_routes_require_coach_role(client: TestClient, headers):
    r = client.get("/coach/earnings", headers=headers())
    assert r.status_code == 403
    assert r.json() == {"success": False, "message": "Coach access required"}


def test_status_before_connecting(client: TestClient, coach_headers):
    r = client.get("/coach/stripe-status", headers=coach_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["connected"] is False
    assert body["status"] == "not_connected"


def test_connect_creates_account_once_and_issues_fresh_links(client: TestClient, coach_headers, gateway):
    first = client.post("/coach/connect-stripe", json={}, headers=coach_headers)
    second = client.post("/coach/connect-stripe", headers=coach_headers)
    assert first.status_code == 200, first.text
    assert second.status_code == 200, second.text
    assert first.json()["stripe_account_id"] == "acct_coach-1"
    assert second.json()["stripe_account_id"] == "acct_coach-1"
    assert first.json()["onboarding_url"] == "https://connect.stripe.test/setup/acct_coach-1"

    accounts = gateway.called("create_connected_account")
    assert len(accounts) == 1
    assert accounts[0]["country"] == "US"
    assert accounts[0]["idempotency_key"] == "connect-account-coach-1"

    links = gateway.called("create_onboarding_link")
    assert len(links) == 2
    assert links[0]["refresh_url"] == "http://localhost:3000/coach/stripe-connect"
    assert links[0]["return_url"] == "http://localhost:3000/coach/earnings"


def test_connect_passes_country_and_urls(client: TestClient, coach_headers, gateway):
    r = client.post(
        "/coach/connect-stripe",
        json={"country": "gb", "business_type": "company", "return_url": "https://app.test/done"},
        headers=coach_headers,
    )
    assert r.status_code == 200, r.text
    assert gateway.called("create_connected_account")[0]["country"] == "GB"
    assert gateway.called("create_onboarding_link")[0]["return_url"] == "https://app.test/done"


@pytest.mark.parametrize(
    "flags, expected",
    [
        ((True, True, True), "active"),
        ((False, False, True), "pending"),
        ((False, False, False), "incomplete"),
    ],
)
def test_status_maps_account_flags(client: TestClient, coach_headers, gateway, connected, flags, expected):
    charges, payouts, submitted = flags
    gateway.account = GatewayConnectedAccount(
        id=connected,
        charges_enabled=charges,
        payouts_enabled=payouts,
        details_submitted=submitted,
        requirements={"currently_due": [] if submitted else ["individual.dob.day"]},
    )
    r = client.get("/coach/stripe-status", headers=coach_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["connected"] is True
    assert body["status"] == expected
    assert body["charges_enabled"] is charges


def test_payout_requires_connected_account(client: TestClient, coach_headers):
    r = client.post("/coach/payout", json={"amount": 10}, headers=coach_headers)
    assert r.status_code == 409
    assert r.json()["message"] == "Please connect your Stripe account first"


def test_payout_over_balance_fails_without_row(client: TestClient, coach_headers, gateway, connected, db_rows):
    gateway.available = Decimal("10.00")
    r = client.post("/coach/payout", json={"amount": 50}, headers=coach_headers)
    assert r.status_code == 400
    assert r.json() == {"success": False, "message": "Insufficient balance. Available: $10.00"}
    assert gateway.called("create_payout") == []
    assert db_rows("SELECT id FROM coach_payout_requests") == []


@pytest.mark.parametrize("amount", [0, -5, "12.345"])
def test_invalid_payout_amount(client: TestClient, coach_headers, connected, amount):
    r = client.post("/coach/payout", json={"amount": amount}, headers=coach_headers)
    assert r.status_code == 422
    assert r.json()["success"] is False


def test_payout_creates_audit_row(client: TestClient, coach_headers, gateway, connected, db_rows):
    gateway.available = Decimal("100.00")
    r = client.post("/coach/payout", json={"amount": "40.00"}, headers={**coach_headers, "Idempotency-Key": "wd-1"})
    assert r.status_code == 200, r.text
    payout = r.json()["payout"]
    assert payout["amount"] == pytest.approx(40.0)
    assert payout["status"] == "pending"
    assert payout["currency"] == "usd"
    assert gateway.called("create_payout")[0]["idempotency_key"] == "wd-1"

    rows = db_rows("SELECT coach_id, stripe_payout_id, status FROM coach_payout_requests")
    assert rows == [{"coach_id": "coach-1", "stripe_payout_id": payout["stripe_payout_id"], "status": "pending"}]


def test_payout_gateway_failure_is_bad_gateway(client: TestClient, coach_headers, gateway, connected, db_rows):
    gateway.available = Decimal("100.00")
    gateway.failing.add("create_payout")
    r = client.post("/coach/payout", json={"amount": 10}, headers=coach_headers)
    assert r.status_code == 502
    assert db_rows("SELECT id FROM coach_payout_requests") == []


def test_earnings_without_account(client: TestClient, coach_headers):
    r = client.get("/coach/earnings", headers=coach_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["connected"] is False
    assert body["available_balance"] == 0
    assert body["recent_payouts"] == []


def test_earnings_sum_completed_payments(client: TestClient, coach_headers, gateway, connected, customer, send_event):
    for pi_id in ("pi_a", "pi_b"):
        send_event(
            "payment_intent.succeeded",
            {
                "id": pi_id,
                "customer": customer,
                "amount": 2500,
                "currency": "usd",
                "metadata": {"coach_id": "coach-1"},
            },
        )
    gateway.available = Decimal("30.00")
    gateway.pending = Decimal("20.00")

    r = client.get("/coach/earnings", headers=coach_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["connected"] is True
    assert body["total_earnings"] == pytest.approx(50.0)
    assert body["available_balance"] == pytest.approx(30.0)
    assert body["pending_balance"] == pytest.approx(20.0)
    assert body["currency"] == "USD"
    assert body["stripe_account_id"] == connected


def test_list_payouts_refreshes_open_payouts(client: TestClient, coach_headers, gateway, connected):
    gateway.available = Decimal("100.00")
    payout = client.post("/coach/payout", json={"amount": 25}, headers=coach_headers).json()["payout"]
    gateway.payouts[payout["stripe_payout_id"]].status = "paid"

    cached = client.get("/coach/payouts", headers=coach_headers).json()["payouts"]
    assert cached[0]["status"] == "pending"

    refreshed = client.get("/coach/payouts", params={"refresh": "true"}, headers=coach_headers)
    assert refreshed.status_code == 200, refreshed.text
    row = refreshed.json()["payouts"][0]
    assert row["status"] == "paid"
    assert row["status_refreshed_at"] is not None

    again = client.get("/coach/payouts", params={"refresh": "true"}, headers=coach_headers).json()["payouts"]
    assert again[0]["status"] == "paid"
    assert len(gateway.called("retrieve_payout")) == 1
