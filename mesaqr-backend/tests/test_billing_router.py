import pytest

from app.domain.billing.enums import PaymentProvider, PlanType, SubscriptionStatus
from app.domain.billing.errors import PaymentDeclinedError, ProviderAPIError


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_get_subscription_includes_plan_limits(client, make_tenant, make_subscription):
    tenant = make_tenant()
    subscription = make_subscription(tenant, plan_type=PlanType.free)

    response = client.get(f"/subscriptions/tenant/{tenant.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == subscription.id
    assert body["plan_type"] == "free"
    assert body["limits"]["max_items"] == 15
    assert body["limits"]["realtime"] is False


def test_get_subscription_when_none(client, make_tenant):
    tenant = make_tenant()

    response = client.get(f"/subscriptions/tenant/{tenant.id}")

    assert response.status_code == 200
    assert response.json() is None


def test_create_free_subscription(client, make_tenant):
    tenant = make_tenant()

    response = client.post("/subscriptions", json={"tenant_id": tenant.id, "plan_type": "free"})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "active"
    assert body["tenant_id"] == tenant.id


def test_create_for_unknown_tenant(client):
    response = client.post("/subscriptions", json={"tenant_id": "missing", "plan_type": "free"})

    assert response.status_code == 404
    assert response.json()["detail"] == "Restaurante no encontrado"


def test_downgrade_conflict(client, make_tenant, make_subscription, stripe_gateway, wompi_client):
    tenant = make_tenant()
    make_subscription(tenant, plan_type=PlanType.premium, status=SubscriptionStatus.active)

    response = client.post(
        "/subscriptions",
        json={"tenant_id": tenant.id, "plan_type": "pro", "payment_method_id": "pm_1"},
    )

    assert response.status_code == 409
    assert not stripe_gateway.method_calls
    assert not wompi_client.method_calls


@pytest.mark.payment
def test_declined_card_returns_user_message(client, make_tenant, stripe_gateway):
    tenant = make_tenant()
    stripe_gateway.find_or_create_customer.return_value = {"id": "cus_1"}
    stripe_gateway.attach_payment_method.side_effect = PaymentDeclinedError("stripe", "card_declined")

    response = client.post(
        "/subscriptions",
        json={"tenant_id": tenant.id, "plan_type": "pro", "payment_method_id": "pm_1"},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == PaymentDeclinedError.default_user_message


@pytest.mark.payment
def test_provider_outage_returns_500(client, make_tenant, stripe_gateway):
    tenant = make_tenant()
    stripe_gateway.find_or_create_customer.side_effect = ProviderAPIError("stripe", "timeout", upstream_status=503)

    response = client.post(
        "/subscriptions",
        json={"tenant_id": tenant.id, "plan_type": "pro", "payment_method_id": "pm_1"},
    )

    assert response.status_code == 500
    assert response.json()["detail"] == ProviderAPIError.default_user_message


@pytest.mark.payment
def test_wompi_charge_sends_confirmation(client, make_tenant, wompi_client, notifier):
    tenant = make_tenant()
    wompi_client.create_transaction.return_value = {
        "id": "tx_1",
        "status": "APPROVED",
        "amount_in_cents": 3600000,
        "currency": "COP",
    }

    response = client.post(
        "/subscriptions",
        json={
            "tenant_id": tenant.id,
            "plan_type": "pro",
            "payment_provider": "wompi",
            "payment_method_id": "tok_test_1",
        },
    )

    assert response.status_code == 201
    assert response.json()["status"] == "active"
    assert len(notifier.confirmations) == 1
    assert notifier.confirmations[0].amount_minor_units == 3600000


def test_update_without_fields(client, make_tenant, make_subscription):
    subscription = make_subscription(make_tenant(), plan_type=PlanType.pro)

    response = client.put(f"/subscriptions/{subscription.id}", json={})

    assert response.status_code == 400


def test_update_unknown_subscription(client):
    response = client.put("/subscriptions/missing", json={"cancel_at_period_end": True})
    assert response.status_code == 404


def test_update_cancel_at_period_end(client, make_tenant, make_subscription, stripe_gateway):
    subscription = make_subscription(
        make_tenant(),
        plan_type=PlanType.pro,
        external_provider=PaymentProvider.stripe,
        external_id="sub_1",
    )

    response = client.put(f"/subscriptions/{subscription.id}", json={"cancel_at_period_end": True})

    assert response.status_code == 200
    assert response.json()["cancel_at_period_end"] is True
    stripe_gateway.set_cancel_at_period_end.assert_called_once_with("sub_1", True)


def test_payment_link(client):
    response = client.get("/subscriptions/wompi/payment-link", params={"plan": "pro", "tenant_id": "t1"})

    assert response.status_code == 200
    body = response.json()
    assert body["url"].startswith("https://checkout.wompi.co/l/pro_monthly?")
    assert body["reference"].startswith("SUB_t1_")
    assert body["billing_period"] == "monthly"


@pytest.mark.parametrize("plan", ["free", "enterprise"])
def test_payment_link_invalid_plan(client, plan):
    response = client.get("/subscriptions/wompi/payment-link", params={"plan": plan, "tenant_id": "t1"})
    assert response.status_code == 400


def test_payment_link_not_configured(client, monkeypatch, config):
    monkeypatch.setattr(config, "wompi_payment_link_premium_annual", None)

    response = client.get(
        "/subscriptions/wompi/payment-link",
        params={"plan": "premium", "tenant_id": "t1", "annual": "true"},
    )

    assert response.status_code == 404
