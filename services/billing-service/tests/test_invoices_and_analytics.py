import time
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from billing_service.gateway import GatewayInvoice

DAY = 86400


@pytest.fixture()
def invoices(customer, send_event, db_rows) -> dict[str, int]:
    now = int(time.time())
    events = [
        ("invoice.payment_succeeded", {"id": "in_recent", "amount_paid": 4900, "created": now,
                                       "invoice_pdf": "https://pay.stripe.test/in_recent.pdf"}),
        ("invoice.payment_failed", {"id": "in_failed", "amount_due": 1000, "created": now - 40 * DAY}),
        ("invoice.payment_succeeded", {"id": "in_old", "amount_paid": 2000, "created": now - 400 * DAY}),
    ]
    for event_type, obj in events:
        r = send_event(event_type, {"customer": customer, "currency": "usd", **obj})
        assert r.status_code == 200, r.text
    return {row["stripe_invoice_id"]: row["id"] for row in db_rows("SELECT id, stripe_invoice_id FROM invoices")}


def test_list_invoices_newest_first(client: TestClient, headers, invoices):
    r = client.get("/billing/invoices", headers=headers())
    assert r.status_code == 200
    assert [i["stripe_invoice_id"] for i in r.json()["invoices"]] == ["in_recent", "in_failed", "in_old"]

    limited = client.get("/billing/invoices", params={"limit": 2}, headers=headers()).json()["invoices"]
    assert len(limited) == 2


def test_invoices_are_scoped_to_caller(client: TestClient, headers, invoices):
    assert client.get("/billing/invoices", headers=headers("user-2")).json()["invoices"] == []
    r = client.get(f"/billing/invoices/{invoices['in_recent']}/pdf", headers=headers("user-2"), follow_redirects=False)
    assert r.status_code == 404


def test_pdf_redirects_to_stored_link(client: TestClient, headers, invoices, gateway):
    r = client.get(f"/billing/invoices/{invoices['in_recent']}/pdf", headers=headers(), follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "https://pay.stripe.test/in_recent.pdf"
    assert gateway.called("retrieve_invoice") == []


def test_pdf_is_fetched_from_gateway_and_stored(client: TestClient, headers, invoices, gateway):
    gateway.invoices["in_old"] = GatewayInvoice(id="in_old", number="INV-7", invoice_pdf="https://pay.stripe.test/old.pdf")
    url = f"/billing/invoices/{invoices['in_old']}/pdf"

    first = client.get(url, headers=headers(), follow_redirects=False)
    assert first.status_code == 302
    assert first.headers["location"] == "https://pay.stripe.test/old.pdf"

    second = client.get(url, headers=headers(), follow_redirects=False)
    assert second.status_code == 302
    assert len(gateway.called("retrieve_invoice")) == 1


def test_pdf_not_available(client: TestClient, headers, invoices):
    r = client.get(f"/billing/invoices/{invoices['in_failed']}/pdf", headers=headers(), follow_redirects=False)
    assert r.status_code == 404
    assert r.json()["message"] == "PDF not available for this invoice"


def test_email_invoice(client: TestClient, headers, invoices, notifier):
    r = client.post(f"/billing/invoices/{invoices['in_recent']}/email", headers=headers())
    assert r.status_code == 200, r.text
    kind, user_id, context = notifier.sent[-1]
    assert (kind, user_id) == ("invoice_email", "user-1")
    assert context["invoice_id"] == invoices["in_recent"]


def test_email_invoice_dispatch_failure(client: TestClient, headers, invoices, notifier):
    notifier.ok = False
    r = client.post(f"/billing/invoices/{invoices['in_recent']}/email", headers=headers())
    assert r.status_code == 500
    assert r.json() == {"success": False, "message": "Failed to email invoice"}


def test_analytics_default_period(client: TestClient, headers, invoices):
    r = client.get("/billing/analytics", headers=headers())
    assert r.status_code == 200, r.text
    analytics = r.json()["analytics"]
    assert analytics["total_spent"] == pytest.approx(69.0)
    assert analytics["period_days"] == 30
    this_month = datetime.now(UTC).strftime("%Y-%m")
    assert analytics["monthly_spending"] == [{"month": this_month, "total": pytest.approx(49.0)}]
    assert len(analytics["recent_invoices"]) == 3
    assert analytics["subscription"] is None
    assert analytics["payment_methods"] == []


def test_analytics_longer_period_and_method_counts(client: TestClient, headers, invoices):
    client.post("/billing/payment-methods", json={"payment_method_id": "pm_1"}, headers=headers())
    client.post("/billing/payment-methods", json={"payment_method_id": "pm_2"}, headers=headers())

    analytics = client.get("/billing/analytics", params={"period": 500}, headers=headers()).json()["analytics"]
    assert len(analytics["monthly_spending"]) == 2
    assert sum(m["total"] for m in analytics["monthly_spending"]) == pytest.approx(69.0)
    assert analytics["payment_methods"] == [{"type": "card", "count": 2}]


def test_analytics_reports_active_subscription(client: TestClient, headers):
    client.post(
        "/billing/subscriptions", json={"plan_id": "price_pro", "payment_method_id": "pm_s"}, headers=headers()
    )
    subscription = client.get("/billing/analytics", headers=headers()).json()["analytics"]["subscription"]
    assert subscription["plan_id"] == "price_pro"
    assert subscription["status"] == "active"
    assert subscription["days_until_renewal"] in (29, 30)


def test_history_totals_and_pagination(client: TestClient, headers, invoices):
    r = client.get("/billing/history", headers=headers())
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["history"]["total"] == 3
    assert body["history"]["last_page"] == 1
    assert body["totals"] == {
        "total": pytest.approx(79.0),
        "paid": pytest.approx(69.0),
        "failed": pytest.approx(10.0),
        "pending": 0,
    }

    page = client.get("/billing/history", params={"limit": 1, "page": 2}, headers=headers()).json()["history"]
    assert [i["stripe_invoice_id"] for i in page["data"]] == ["in_failed"]
    assert page["last_page"] == 3
    assert page["current_page"] == 2


def test_history_filters(client: TestClient, headers, invoices):
    paid = client.get("/billing/history", params={"status": "paid"}, headers=headers()).json()
    assert {i["stripe_invoice_id"] for i in paid["history"]["data"]} == {"in_recent", "in_old"}
    assert paid["totals"]["total"] == pytest.approx(69.0)
    assert paid["totals"]["failed"] == pytest.approx(10.0)

    since = (datetime.now(UTC) - timedelta(days=60)).date().isoformat()
    recent = client.get("/billing/history", params={"start_date": since}, headers=headers()).json()
    assert {i["stripe_invoice_id"] for i in recent["history"]["data"]} == {"in_recent", "in_failed"}


@pytest.mark.parametrize(
    "params",
    [
        {"status": "refunded"},
        {"start_date": "2026-02-01", "end_date": "2026-01-01"},
    ],
)
def test_history_rejects_bad_filters(client: TestClient, headers, params):
    r = client.get("/billing/history", params=params, headers=headers())
    assert r.status_code == 422
    assert r.json()["success"] is False
