from backend_common.logging import REDACTED, scrub_payment_details


def test_top_level_card_fields_are_redacted():
    event = {"event": "payment_method_added", "user_id": "user-1", "cvc": "123", "client_secret": "seti_x"}
    scrubbed = scrub_payment_details(None, "info", event)
    assert scrubbed["cvc"] == REDACTED
    assert scrubbed["client_secret"] == REDACTED
    assert scrubbed["user_id"] == "user-1"


def test_nested_payloads_are_redacted():
    event = {
        "event": "webhook_payload_invalid",
        "payload": {
            "id": "pm_1",
            "card": {"number": "4242424242424242", "last4": "4242"},
            "sources": [{"bank_account": {"routing_number": "110000000"}}],
        },
    }
    scrubbed = scrub_payment_details(None, "warning", event)
    assert scrubbed["payload"]["id"] == "pm_1"
    assert scrubbed["payload"]["card"] == REDACTED
    assert scrubbed["payload"]["sources"] == [{"bank_account": REDACTED}]
