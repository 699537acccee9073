from prometheus_client import Counter

WEBHOOK_EVENTS_TOTAL = Counter(
    "billing_webhook_events_total",
    "Number of payment gateway webhook events received",
    ["event_type", "outcome"],  # processed | ignored | skipped | failed
)

GATEWAY_FAILURES_TOTAL = Counter(
    "billing_gateway_failures_total",
    "Number of failed payment gateway calls",
    ["operation"],
)

SUBSCRIPTIONS_CREATED_TOTAL = Counter(
    "billing_subscriptions_created_total",
    "Number of subscriptions created through the billing API",
)

SUBSCRIPTIONS_CANCELLED_TOTAL = Counter(
    "billing_subscriptions_cancelled_total",
    "Number of subscription cancellations requested through the billing API",
    ["mode"],  # immediately | period_end
)

PAYOUTS_REQUESTED_TOTAL = Counter(
    "billing_payouts_requested_total",
    "Number of coach payout requests",
    ["outcome"],  # created | insufficient_funds | failed
)

ADMIN_ACTIONS_TOTAL = Counter(
    "billing_admin_actions_total",
    "Number of audited admin billing actions",
    ["action"],
)

NOTIFICATIONS_ENQUEUED_TOTAL = Counter(
    "billing_notifications_enqueued_total",
    "Number of billing notifications handed to the task queue",
    ["kind", "outcome"],
)
