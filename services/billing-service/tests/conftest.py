import hashlib
import hmac
import itertools
import json
import os
import sys
import tempfile
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure the service package is importable
SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

_TMP_DIR = Path(tempfile.mkdtemp(prefix="billing_tests_"))
WEBHOOK_SECRET = "whsec_test_secret"

# Settings and the engine are read at import time.
os.environ["BILLING_DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test_billing.db'}"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake"
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["ADMIN_DOCUMENTS_DIR"] = str(_TMP_DIR / "documents")
os.environ["APP_ENV"] = "test"
os.environ.pop("SENTRY_DSN", None)

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402
from sqlalchemy import create_engine, text  # noqa: E402

from billing_service.exceptions import GatewaySyncError  # noqa: E402
from billing_service.gateway import (  # noqa: E402
    GatewayBalance,
    GatewayConnectedAccount,
    GatewayInvoice,
    GatewayPaymentMethod,
    GatewayPayout,
    GatewaySubscription,
    SetupIntentResult,
    verify_stripe_signature,
)
from billing_service.timeutils import utcnow  # noqa: E402


def _alembic_upgrade_head() -> None:
    cfg = Config(str(SERVICE_ROOT / "alembic.ini"))
    # Pin script_location explicitly to avoid picking up wrong migrations when running from repo root
    cfg.set_main_option("script_location", str(SERVICE_ROOT / "alembic"))
    command.upgrade(cfg, "head")


class FakeGateway:
    """In-memory stand-in for the Stripe adapter.

    Put an operation name into ``failing`` to make that call raise
    ``GatewaySyncError``.
    """

    def __init__(self):
        self.failing: set[str] = set()
        self.calls: list[tuple[str, dict]] = []
        self.subscriptions: dict[str, GatewaySubscription] = {}
        self.invoices: dict[str, GatewayInvoice] = {}
        self.payouts: dict[str, GatewayPayout] = {}
        self.payment_methods: dict[str, GatewayPaymentMethod] = {}
        self.attached: dict[str, str] = {}
        self.available = Decimal("0.00")
        self.pending = Decimal("0.00")
        self.account = GatewayConnectedAccount(
            id="acct_pending", charges_enabled=False, payouts_enabled=False, details_submitted=False
        )
        self._ids = itertools.count(1)

    def _call(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if operation in self.failing:
            raise GatewaySyncError(operation)

    def called(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def create_customer(self, *, user_id, email, name, idempotency_key):
        self._call("create_customer", user_id=user_id, idempotency_key=idempotency_key)
        return f"cus_{user_id}"

    def create_setup_intent(self, *, customer_id, user_id):
        self._call("create_setup_intent", customer_id=customer_id)
        return SetupIntentResult(id="seti_1", client_secret="seti_1_secret_abc")

    def attach_payment_method(self, *, payment_method_id, customer_id):
        self._call("attach_payment_method", payment_method_id=payment_method_id, customer_id=customer_id)
        self.attached.setdefault(payment_method_id, customer_id)
        return self.payment_methods.get(
            payment_method_id,
            GatewayPaymentMethod(id=payment_method_id, type="card", brand="visa", last4="4242"),
        )

    def detach_payment_method(self, *, payment_method_id):
        self._call("detach_payment_method", payment_method_id=payment_method_id)

    def retrieve_payment_method(self, *, payment_method_id):
        self._call("retrieve_payment_method", payment_method_id=payment_method_id)
        return GatewayPaymentMethod(
            id=payment_method_id,
            type="card",
            brand="visa",
            last4="4242",
            customer_id=self.attached.get(payment_method_id),
        )

    def set_default_payment_method(self, *, customer_id, payment_method_id):
        self._call("set_default_payment_method", customer_id=customer_id, payment_method_id=payment_method_id)

    def create_subscription(self, *, customer_id, plan_id, user_id, idempotency_key):
        self._call("create_subscription", plan_id=plan_id, idempotency_key=idempotency_key)
        now = utcnow().replace(microsecond=0)
        gsub = GatewaySubscription(
            id=f"sub_{next(self._ids)}",
            customer_id=customer_id,
            status="active",
            plan_id=plan_id,
            item_id="si_1",
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
            cancel_at_period_end=False,
        )
        self.subscriptions[gsub.id] = gsub
        return gsub

    def retrieve_subscription(self, *, subscription_id):
        self._call("retrieve_subscription", subscription_id=subscription_id)
        return self.subscriptions[subscription_id]

    def update_subscription(self, *, subscription_id, plan_id):
        self._call("update_subscription", subscription_id=subscription_id, plan_id=plan_id)
        gsub = self.subscriptions[subscription_id]
        gsub.plan_id = plan_id
        return gsub

    def cancel_subscription(self, *, subscription_id, at_period_end):
        self._call("cancel_subscription", subscription_id=subscription_id, at_period_end=at_period_end)
        gsub = self.subscriptions[subscription_id]
        if at_period_end:
            gsub.cancel_at_period_end = True
        else:
            gsub.status = "cancelled"
        return gsub

    def pause_subscription(self, *, subscription_id):
        self._call("pause_subscription", subscription_id=subscription_id)
        gsub = self.subscriptions[subscription_id]
        gsub.status = "paused"
        return gsub

    def resume_subscription(self, *, subscription_id):
        self._call("resume_subscription", subscription_id=subscription_id)
        gsub = self.subscriptions[subscription_id]
        gsub.status = "active"
        return gsub

    def retrieve_invoice(self, *, invoice_id):
        self._call("retrieve_invoice", invoice_id=invoice_id)
        return self.invoices.get(invoice_id, GatewayInvoice(id=invoice_id, number=None, invoice_pdf=None))

    def retrieve_balance(self, *, account_id, currency):
        self._call("retrieve_balance", account_id=account_id, currency=currency)
        return GatewayBalance(currency=currency, available=self.available, pending=self.pending)

    def create_payout(self, *, account_id, amount, currency, coach_id, idempotency_key):
        self._call("create_payout", account_id=account_id, amount=amount, idempotency_key=idempotency_key)
        now = utcnow().replace(microsecond=0)
        payout = GatewayPayout(
            id=f"po_{next(self._ids)}",
            amount=amount,
            currency=currency,
            status="pending",
            method="standard",
            arrival_date=now + timedelta(days=2),
            created=now,
        )
        self.payouts[payout.id] = payout
        self.available -= amount
        return payout

    def retrieve_payout(self, *, account_id, payout_id):
        self._call("retrieve_payout", account_id=account_id, payout_id=payout_id)
        return self.payouts[payout_id]

    def create_connected_account(self, *, user_id, email, name, country, business_type, idempotency_key):
        self._call("create_connected_account", user_id=user_id, country=country, idempotency_key=idempotency_key)
        return f"acct_{user_id}"

    def retrieve_connected_account(self, *, account_id):
        self._call("retrieve_connected_account", account_id=account_id)
        return self.account

    def create_onboarding_link(self, *, account_id, refresh_url, return_url):
        self._call("create_onboarding_link", account_id=account_id, refresh_url=refresh_url, return_url=return_url)
        return f"https://connect.stripe.test/setup/{account_id}"

    def verify_webhook_signature(self, *, payload, signature):
        return verify_stripe_signature(payload, signature, WEBHOOK_SECRET, 300)


class FakeNotifier:
    def __init__(self):
        self.ok = True
        self.sent: list[tuple[str, str, dict]] = []

    def dispatch(self, kind, user, context=None):
        if not self.ok:
            return False
        self.sent.append((kind.value, user.user_id, dict(context or {})))
        return True

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]


@pytest.fixture(scope="session")
def migrated_db():
    _alembic_upgrade_head()
    yield os.environ["BILLING_DATABASE_URL"]


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def client(migrated_db: str, gateway: FakeGateway, notifier: FakeNotifier):
    # Import after the environment is set and migrations have run
    from billing_service import models  # noqa: F401
    from billing_service.database import Base
    from billing_service.gateway import get_gateway
    from billing_service.main import app
    from billing_service.notifications import get_notifier

    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.pop(get_gateway, None)
    app.dependency_overrides.pop(get_notifier, None)

    engine = create_engine(migrated_db)
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    engine.dispose()


def auth_headers(user_id: str = "user-1", role: str = "user", email: str | None = "athlete@example.com") -> dict:
    headers = {"X-User-Id": user_id, "X-User-Role": role, "X-User-Name": f"Name {user_id}"}
    if email:
        headers["X-User-Email"] = email
    return headers


@pytest.fixture()
def headers():
    return auth_headers


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_type: str, obj: dict, livemode: bool = False) -> dict:
    return {
        "id": f"evt_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "livemode": livemode,
        "data": {"object": obj},
    }


@pytest.fixture()
def send_event(client: TestClient):
    def _send(event_type: str, obj: dict, livemode: bool = False):
        payload = json.dumps(make_event(event_type, obj, livemode=livemode))
        return client.post(
            "/webhooks/payment-gateway",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
        )

    return _send


@pytest.fixture()
def customer(client: TestClient) -> str:
    """Create user-1 together with its gateway customer and return the customer id."""
    r = client.post("/billing/setup-intent", headers=auth_headers())
    assert r.status_code == 200, r.text
    return r.json()["customerId"]


@pytest.fixture()
def db_rows(migrated_db: str):
    """Read rows straight from the test database, bypassing the API."""
    engine = create_engine(migrated_db)

    def _rows(sql: str, **params) -> list[dict]:
        with engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(text(sql), params)]

    yield _rows
    engine.dispose()


@pytest.fixture()
def sign():
    return sign_payload


@pytest.fixture()
def webhook_event():
    return make_event
