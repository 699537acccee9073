from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from billing_service.exceptions import ValidationError
from billing_service.services.surcharge import SurchargeConfig, calculate_surcharge

CONFIG = SurchargeConfig(
    enabled=True,
    credit_card_rate=Decimal("0.029"),
    credit_card_fixed=Decimal("0.30"),
    debit_card_rate=Decimal("0.01"),
    debit_card_fixed=Decimal("0.10"),
    restricted_states=frozenset({"CT", "MA"}),
)


def test_credit_card_surcharge_uses_rate_plus_fixed_fee():
    quote = calculate_surcharge(Decimal("100"), "card", "credit", config=CONFIG)
    assert quote.original_amount == Decimal("100.00")
    assert quote.surcharge_amount == Decimal("3.20")
    assert quote.total_amount == Decimal("103.20")
    assert quote.surcharge_enabled is True


def test_debit_card_uses_debit_schedule():
    quote = calculate_surcharge("50", "card", "debit", config=CONFIG)
    assert quote.surcharge_amount == Decimal("0.60")
    assert quote.total_amount == Decimal("50.60")


def test_bank_account_is_never_surcharged():
    quote = calculate_surcharge(Decimal("250.00"), "bank_account", config=CONFIG)
    assert quote.surcharge_amount == Decimal("0.00")
    assert quote.total_amount == Decimal("250.00")
    assert quote.surcharge_enabled is True


def test_restricted_state_disables_surcharge_case_insensitively():
    quote = calculate_surcharge(Decimal("100"), "card", "credit", state_code="ct", config=CONFIG)
    assert quote.surcharge_enabled is False
    assert quote.surcharge_amount == Decimal("0.00")
    assert quote.total_amount == Decimal("100.00")


def test_surcharge_rounds_half_up():
    # 5.00 * 0.029 + 0.30 = 0.445
    quote = calculate_surcharge(Decimal("5.00"), "card", "credit", config=CONFIG)
    assert quote.surcharge_amount == Decimal("0.45")


def test_missing_card_type_defaults_to_credit():
    quote = calculate_surcharge(Decimal("100"), "card", None, config=CONFIG)
    assert quote.surcharge_amount == Decimal("3.20")


def test_disabled_config_charges_nothing():
    disabled = SurchargeConfig(
        enabled=False,
        credit_card_rate=Decimal("0.029"),
        credit_card_fixed=Decimal("0.30"),
        debit_card_rate=Decimal("0"),
        debit_card_fixed=Decimal("0"),
        restricted_states=frozenset(),
    )
    quote = calculate_surcharge(Decimal("100"), "card", "credit", config=disabled)
    assert quote.surcharge_enabled is False
    assert quote.total_amount == Decimal("100.00")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": "-1", "payment_method_type": "card"},
        {"amount": "abc", "payment_method_type": "card"},
        {"amount": "NaN", "payment_method_type": "card"},
        {"amount": "10", "payment_method_type": "crypto"},
        {"amount": "10", "payment_method_type": "card", "card_type": "prepaid"},
        {"amount": "10", "payment_method_type": "card", "state_code": "XYZ"},
    ],
)
def test_invalid_surcharge_input_is_rejected(kwargs):
    with pytest.raises(ValidationError):
        calculate_surcharge(config=CONFIG, **kwargs)


def test_surcharge_endpoint(client: TestClient, headers):
    r = client.post(
        "/billing/surcharge/calculate",
        json={"amount": 100, "payment_method_type": "card", "card_type": "credit"},
        headers=headers(),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["surcharge_amount"] == pytest.approx(3.2)
    assert body["total_amount"] == pytest.approx(103.2)
    assert body["payment_method_type"] == "card"


def test_surcharge_endpoint_rejects_unknown_method(client: TestClient, headers):
    r = client.post(
        "/billing/surcharge/calculate",
        json={"amount": 100, "payment_method_type": "crypto"},
        headers=headers(),
    )
    assert r.status_code == 422
    assert r.json()["success"] is False


def test_surcharge_endpoint_requires_identity(client: TestClient):
    r = client.post("/billing/surcharge/calculate", json={"amount": 100, "payment_method_type": "card"})
    assert r.status_code == 401


def test_surcharge_config_endpoint(client: TestClient, headers):
    r = client.get("/billing/surcharge/config", headers=headers())
    assert r.status_code == 200
    config = r.json()["config"]
    assert config["restricted_states"] == ["CT", "MA"]
    assert config["display_name"] == "Processing Fee"
    assert config["credit_card_rate"] == pytest.approx(0.029)
