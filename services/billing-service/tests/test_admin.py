import time

import pytest
from fastapi.testclient import TestClient


@pytest.fixture()
def admin_headers(headers):
    return headers("admin-1", role="admin", email="admin@example.com")


@pytest.fixture()
def coaches(client: TestClient, headers):
    """coach-1 with a connected account, coach-2 without."""
    for coach_id in ("coach-1", "coach-2"):
        r = client.get("/coach/stripe-status", headers=headers(coach_id, role="coach"))
        assert r.status_code == 200, r.text
    r = client.post("/coach/connect-stripe", json={}, headers=headers("coach-1", role="coach"))
    assert r.status_code == 200, r.text
    return ["coach-1", "coach-2"]


@pytest.fixture()
def invoice_id(customer, send_event, db_rows) -> int:
    r = send_event(
        "invoice.payment_succeeded",
        {
            "id": "in_doc",
            "customer": customer,
            "number": "INV-0042",
            "amount_paid": 1999,
            "currency": "usd",
            "created": int(time.time()),
        },
    )
    assert r.status_code == 200, r.text
    return db_rows("SELECT id FROM invoices WHERE stripe_invoice_id = 'in_doc'")[0]["id"]


def test_admin_routes_require_admin_role(client: TestClient, headers):
    r = client.get("/admin/billing/coaches", headers=headers("coach-1", role="coach"))
    assert r.status_code == 403
    assert r.json() == {"success": False, "message": "Admin access required"}


def test_coach_payment_statuses(client: TestClient, admin_headers, coaches, customer, send_event):
    send_event(
        "payment_intent.succeeded",
        {"id": "pi_c1", "customer": customer, "amount": 2500, "currency": "usd", "metadata": {"coach_id": "coach-1"}},
    )

    r = client.get("/admin/billing/coaches", headers=admin_headers)
    assert r.status_code == 200, r.text
    listed = {c["coach_id"]: c for c in r.json()["coaches"]}
    assert set(listed) == {"coach-1", "coach-2"}
    assert listed["coach-1"]["has_stripe_connected"] is True
    assert listed["coach-1"]["total_earnings"] == pytest.approx(25.0)
    assert listed["coach-1"]["last_payment_date"] is not None
    assert listed["coach-2"]["has_stripe_connected"] is False
    assert listed["coach-2"]["total_earnings"] == 0


def test_toggle_coach_status_is_audited(client: TestClient, admin_headers, coaches, db_rows):
    r = client.put("/admin/billing/coaches/coach-2/status", json={"is_active": False}, headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["message"] == "Coach deactivated successfully"

    assert db_rows("SELECT is_active FROM billing_users WHERE user_id = 'coach-2'")[0]["is_active"] == 0
    actions = db_rows("SELECT admin_id, action, target_id FROM admin_actions")
    assert actions == [{"admin_id": "admin-1", "action": "toggle_coach_status", "target_id": "coach-2"}]


def test_toggle_non_coach_is_not_found(client: TestClient, admin_headers, customer):
    r = client.put("/admin/billing/coaches/user-1/status", json={"is_active": False}, headers=admin_headers)
    assert r.status_code == 404


def test_bulk_disable_coaches_without_connect(client: TestClient, admin_headers, coaches, db_rows):
    r = client.post("/admin/billing/coaches/bulk-disable", json={"disable_without_stripe": True}, headers=admin_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["count"] == 1
    assert body["coach_ids"] == ["coach-2"]

    active = {row["user_id"]: row["is_active"] for row in db_rows("SELECT user_id, is_active FROM billing_users")}
    assert active["coach-1"] == 1
    assert active["coach-2"] == 0
    assert db_rows("SELECT action FROM admin_actions")[0]["action"] == "bulk_disable_coaches_without_stripe"


def test_bulk_disable_without_flag_is_rejected(client: TestClient, admin_headers, coaches, db_rows):
    r = client.post("/admin/billing/coaches/bulk-disable", json={"disable_without_stripe": False}, headers=admin_headers)
    assert r.status_code == 400
    assert r.json() == {"success": False, "message": "No action specified"}
    assert {row["is_active"] for row in db_rows("SELECT is_active FROM billing_users")} == {1}
    assert db_rows("SELECT id FROM admin_actions") == []


def test_payment_reminder(client: TestClient, admin_headers, customer, notifier, db_rows):
    r = client.post("/admin/billing/reminders", json={"user_id": "user-1"}, headers=admin_headers)
    assert r.status_code == 200, r.text
    assert notifier.sent == [("payment_reminder", "user-1", {"reminder_type": "payment_overdue"})]
    assert db_rows("SELECT action FROM admin_actions")[0]["action"] == "send_payment_reminder"


def test_payment_reminder_validation(client: TestClient, admin_headers, customer, notifier):
    bad_type = client.post(
        "/admin/billing/reminders", json={"user_id": "user-1", "reminder_type": "spam"}, headers=admin_headers
    )
    assert bad_type.status_code == 422

    unknown = client.post("/admin/billing/reminders", json={"user_id": "ghost"}, headers=admin_headers)
    assert unknown.status_code == 404

    notifier.ok = False
    failed = client.post("/admin/billing/reminders", json={"user_id": "user-1"}, headers=admin_headers)
    assert failed.status_code == 500
    assert failed.json()["message"] == "Failed to send payment reminder"


def test_store_list_and_download_invoice_document(client: TestClient, admin_headers, invoice_id, db_rows):
    content = b"%PDF-1.4\n% test document\n"
    r = client.put(
        f"/admin/billing/invoices/{invoice_id}/document",
        content=content,
        headers={**admin_headers, "Content-Type": "application/pdf"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["document_path"].startswith(f"{invoice_id}/")

    listed = client.get("/admin/billing/invoices/documents", headers=admin_headers).json()["invoices"]
    assert [i["id"] for i in listed] == [invoice_id]
    assert listed[0]["invoice_number"] == "INV-0042"

    download = client.get(f"/admin/billing/invoices/{invoice_id}/document", headers=admin_headers)
    assert download.status_code == 200
    assert download.content == content
    assert download.headers["content-type"] == "application/pdf"
    assert "invoice-INV-0042.pdf" in download.headers["content-disposition"]

    assert db_rows("SELECT action FROM admin_actions")[0]["action"] == "store_invoice_document"


@pytest.mark.parametrize(
    "content, message",
    [
        (b"", "Document is empty"),
        (b"PK\x03\x04 not a pdf", "Document must be a PDF"),
    ],
)
def test_invalid_documents_are_rejected(client: TestClient, admin_headers, invoice_id, content, message):
    r = client.put(f"/admin/billing/invoices/{invoice_id}/document", content=content, headers=admin_headers)
    assert r.status_code == 422
    assert r.json() == {"success": False, "message": message}


def test_document_for_unknown_invoice(client: TestClient, admin_headers):
    r = client.put("/admin/billing/invoices/999999/document", content=b"%PDF-1.4", headers=admin_headers)
    assert r.status_code == 404


def test_download_without_document_is_not_found(client: TestClient, admin_headers, invoice_id):
    r = client.get(f"/admin/billing/invoices/{invoice_id}/document", headers=admin_headers)
    assert r.status_code == 404
    assert r.json()["message"] == "No document stored for this invoice"
