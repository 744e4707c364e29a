from datetime import datetime, timezone

import pytest

from app.domain.billing.enums import BillingAction, PaymentProvider, SubscriptionStatus
from app.services.billing_events import normalize_stripe_event, normalize_wompi_event


def _stripe(event_type: str, obj: dict) -> dict:
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def _wompi(status: str, event: str = "transaction.updated", **fields) -> dict:
    transaction = {
        "id": "tx_1",
        "status": status,
        "amount_in_cents": 3600000,
        "currency": "COP",
        "reference": "SUB_tenant-1_1700000000000",
        "customer_email": "owner@lamesa.co",
        "finalized_at": "2026-01-10T15:30:00.000Z",
    }
    transaction.update(fields)
    return {"event": event, "data": {"transaction": transaction}}


@pytest.mark.parametrize(
    "stripe_status,expected",
    [
        ("active", SubscriptionStatus.active),
        ("trialing", SubscriptionStatus.trialing),
        ("past_due", SubscriptionStatus.past_due),
        ("unpaid", SubscriptionStatus.past_due),
        ("incomplete", SubscriptionStatus.incomplete),
    ],
)
def test_stripe_subscription_update_syncs_status(stripe_status, expected):
    event = normalize_stripe_event(
        _stripe(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "customer": "cus_1",
                "status": stripe_status,
                "current_period_start": 1767225600,
                "current_period_end": 1769904000,
            },
        )
    )

    assert event.provider == PaymentProvider.stripe
    assert event.type == BillingAction.SYNC_SUBSCRIPTION
    assert event.target_status == expected
    assert event.external_transaction_id == "sub_1"
    assert event.external_subject_id == "cus_1"
    assert event.period_start == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_stripe_period_read_from_items_when_missing_on_subscription():
    event = normalize_stripe_event(
        _stripe(
            "customer.subscription.created",
            {
                "id": "sub_1",
                "status": "active",
                "items": {"data": [{"current_period_start": 1767225600, "current_period_end": 1769904000}]},
            },
        )
    )
    assert event.period_start is not None
    assert event.period_end is not None


def test_stripe_subscription_deleted_cancels():
    event = normalize_stripe_event(_stripe("customer.subscription.deleted", {"id": "sub_1", "status": "canceled"}))
    assert event.type == BillingAction.CANCEL_SUBSCRIPTION
    assert event.target_status == SubscriptionStatus.cancelled


def test_stripe_unknown_subscription_status_ignored():
    event = normalize_stripe_event(_stripe("customer.subscription.updated", {"id": "sub_1", "status": "paused"}))
    assert event.is_ignored


def test_stripe_invoice_paid_records_payment():
    event = normalize_stripe_event(
        _stripe(
            "invoice.payment_succeeded",
            {
                "id": "in_1",
                "subscription": "sub_1",
                "customer": "cus_1",
                "amount_paid": 900,
                "amount_due": 900,
                "currency": "usd",
                "status": "paid",
                "status_transitions": {"paid_at": 1767225600},
            },
        )
    )

    assert event.type == BillingAction.RECORD_PAYMENT_SUCCESS
    assert event.target_status == SubscriptionStatus.active
    assert event.external_payment_id == "in_1"
    assert event.external_transaction_id == "sub_1"
    assert event.amount_minor_units == 900
    assert event.currency == "USD"
    assert event.paid_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_stripe_invoice_subscription_from_parent_details():
    event = normalize_stripe_event(
        _stripe(
            "invoice.payment_failed",
            {
                "id": "in_2",
                "amount_due": 1400,
                "currency": "usd",
                "parent": {"subscription_details": {"subscription": "sub_9"}},
            },
        )
    )
    assert event.type == BillingAction.RECORD_PAYMENT_FAILURE
    assert event.target_status == SubscriptionStatus.past_due
    assert event.external_transaction_id == "sub_9"
    assert event.amount_minor_units == 1400


def test_stripe_unrelated_event_type_ignored():
    event = normalize_stripe_event(_stripe("charge.refunded", {"id": "ch_1"}))
    assert event.type == BillingAction.IGNORE
    assert event.event_type == "charge.refunded"


@pytest.mark.parametrize(
    "data",
    ["in_1", ["in_1"], None, {"object": "in_1"}, {"object": ["in_1"]}],
)
def test_stripe_malformed_data_ignored(data):
    event = normalize_stripe_event({"id": "evt_1", "type": "invoice.payment_succeeded", "data": data})
    assert event.is_ignored
    assert event.event_type == "invoice.payment_succeeded"


@pytest.mark.parametrize("status", ["APPROVED", "APPROVED_PARTIAL"])
def test_wompi_approved_records_payment(status):
    event = normalize_wompi_event(_wompi(status))

    assert event.provider == PaymentProvider.wompi
    assert event.type == BillingAction.RECORD_PAYMENT_SUCCESS
    assert event.target_status == SubscriptionStatus.active
    assert event.external_transaction_id == "tx_1"
    assert event.external_payment_id == "tx_1"
    assert event.reference == "SUB_tenant-1_1700000000000"
    assert event.amount_minor_units == 3600000
    assert event.currency == "COP"
    assert event.paid_at == datetime(2026, 1, 10, 15, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("status", ["DECLINED", "VOIDED", "ERROR", "declined"])
def test_wompi_failures_move_to_past_due(status):
    event = normalize_wompi_event(_wompi(status))
    assert event.type == BillingAction.RECORD_PAYMENT_FAILURE
    assert event.target_status == SubscriptionStatus.past_due
    assert event.paid_at is None


def test_wompi_pending_syncs_to_incomplete_without_payment():
    event = normalize_wompi_event(_wompi("PENDING"))
    assert event.type == BillingAction.SYNC_SUBSCRIPTION
    assert event.target_status == SubscriptionStatus.incomplete


def test_wompi_status_changed_event_accepted():
    event = normalize_wompi_event(_wompi("APPROVED", event="transaction.status_changed"))
    assert event.type == BillingAction.RECORD_PAYMENT_SUCCESS


def test_wompi_bare_data_payload():
    event = normalize_wompi_event({"event": "transaction.updated", "data": {"id": "tx_2", "status": "APPROVED"}})
    assert event.external_transaction_id == "tx_2"
    assert event.currency == "COP"


@pytest.mark.parametrize(
    "payload",
    [
        _wompi("UNKNOWN_STATUS"),
        _wompi("APPROVED", event="nequi_token.updated"),
        {"event": "transaction.updated", "data": {"transaction": {"status": "APPROVED"}}},
        {"event": "transaction.updated", "data": "tx_1"},
        {"event": "transaction.updated", "data": ["tx_1"]},
        {},
    ],
)
def test_wompi_unmapped_payloads_ignored(payload):
    assert normalize_wompi_event(payload).is_ignored
