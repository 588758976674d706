import json
from unittest.mock import patch

import pytest

from enhancer.data.profiles import Grant

from conftest import (
    PREMIER_MONTHLY_PRICE,
    PREMIER_YEARLY_PRICE,
    WEEKLY_PRICE,
    checkout_object,
    make_event,
    sign,
    signed,
    subscription_object,
)

WEBHOOK = "/api/billing/webhook"


async def _deliver(client, event):
    payload, headers = signed(event)
    return await client.post(WEBHOOK, content=payload, headers=headers)


@pytest.mark.asyncio
async def test_rejects_bad_signature(client, services):
    event = make_event("checkout.session.completed", checkout_object())
    payload = json.dumps(event).encode()
    resp = await client.post(
        WEBHOOK, content=payload, headers={"stripe-signature": sign(payload, secret="whsec_wrong")}
    )
    assert resp.status_code == 400
    assert resp.json()["ok"] is False
    assert services.profiles.get("u1") is None


@pytest.mark.asyncio
async def test_rejects_missing_signature(client):
    resp = await client.post(WEBHOOK, content=b"{}")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_checkout_round_trip_activates_premier(client, services):
    resp = await _deliver(client, make_event("checkout.session.completed", checkout_object()))
    assert resp.status_code == 200
    assert resp.json()["applied"] is True

    p = services.profiles.get("u1")
    assert p.tier == "premier_monthly"
    assert p.credits == 999999
    assert p.ai_credits == 200
    assert p.billing_subscription_id == "sub_1"
    assert p.billing_customer_id == "cus_1"


@pytest.mark.asyncio
async def test_duplicate_delivery_does_not_double_credit(client, services):
    obj = checkout_object(session_id="cs_pack_1", tier="credit_pack", mode="payment")
    event = make_event("checkout.session.completed", obj, event_id="evt_pack_1")

    first = await _deliver(client, event)
    dup = await _deliver(client, event)
    # same session, new event id (e.g. async_payment_succeeded after completed)
    again = await _deliver(client, make_event("checkout.session.async_payment_succeeded", obj))

    assert first.status_code == dup.status_code == again.status_code == 200
    assert dup.json()["duplicate"] is True
    assert again.json()["applied"] is False
    assert services.profiles.get("u1").ai_credits == 50


@pytest.mark.asyncio
async def test_replayed_subscription_checkout_keeps_spent_balance(client, services):
    obj = checkout_object()
    await _deliver(client, make_event("checkout.session.completed", obj))
    services.profiles.spend_ai("u1")
    await _deliver(client, make_event("checkout.session.completed", obj))
    assert services.profiles.get("u1").ai_credits == 199


@pytest.mark.asyncio
async def test_pay_per_image_grants_five(client, services):
    obj = checkout_object(session_id="cs_ppi", tier="pay_per_image", mode="payment")
    await _deliver(client, make_event("checkout.session.completed", obj))
    p = services.profiles.get("u1")
    assert p.ai_credits == 5
    assert p.tier == "free"


@pytest.mark.asyncio
async def test_unpaid_checkout_waits_for_async_payment(client, services):
    obj = checkout_object(payment_status="unpaid")
    resp = await _deliver(client, make_event("checkout.session.completed", obj))
    assert resp.json()["pending"] is True
    assert services.profiles.get("u1") is None

    paid = dict(obj, payment_status="paid")
    await _deliver(client, make_event("checkout.session.async_payment_succeeded", paid))
    assert services.profiles.get("u1").tier == "premier_monthly"


@pytest.mark.asyncio
async def test_scenario_b_subscription_deleted_downgrades(client, services):
    services.profiles.activate_tier(
        "u1",
        "premier_yearly",
        subscription_id="sub_1",
        customer_id="cus_1",
        ai_credits=80,
        grant=Grant("cs_seed", "subscription", 80),
    )
    event = make_event(
        "customer.subscription.deleted",
        subscription_object(price_id=PREMIER_YEARLY_PRICE, status="canceled"),
    )
    resp = await _deliver(client, event)
    assert resp.status_code == 200

    p = services.profiles.get("u1")
    assert (p.tier, p.credits, p.ai_credits, p.billing_subscription_id) == ("free", 0, 0, None)


@pytest.mark.asyncio
async def test_stale_delete_is_ignored(client, services):
    services.profiles.activate_tier(
        "u1", "weekly", subscription_id="sub_new", customer_id="cus_1", ai_credits=0, grant=Grant("cs_seed", "subscription")
    )
    event = make_event("customer.subscription.deleted", subscription_object(sub_id="sub_old", status="canceled"))
    resp = await _deliver(client, event)
    assert resp.json()["ignored"] == "stale_subscription"
    assert services.profiles.get("u1").tier == "weekly"


@pytest.mark.asyncio
async def test_delete_racing_a_new_activation_keeps_the_new_plan(client, services):
    services.profiles.activate_tier(
        "u1", "weekly", subscription_id="sub_old", customer_id="cus_1", ai_credits=0, grant=Grant("cs_seed", "subscription")
    )
    snapshot = services.profiles.get("u1")
    # resubscribed after the handler read the profile
    services.profiles.activate_tier(
        "u1", "premier_monthly", subscription_id="sub_new", customer_id="cus_1", ai_credits=200, grant=Grant("cs_new", "subscription", 200)
    )
    event = make_event("customer.subscription.deleted", subscription_object(sub_id="sub_old", status="canceled"))
    with patch.object(services.webhooks, "_profile_for", return_value=snapshot):
        resp = await _deliver(client, event)
    assert resp.status_code == 200
    assert resp.json()["ignored"] == "stale_subscription"
    p = services.profiles.get("u1")
    assert (p.tier, p.ai_credits, p.billing_subscription_id) == ("premier_monthly", 200, "sub_new")


@pytest.mark.asyncio
async def test_inactive_update_only_mirrors_cancel_flag(client, services):
    services.profiles.activate_tier(
        "u1", "weekly", subscription_id="sub_1", customer_id="cus_1", ai_credits=0, grant=Grant("cs_seed", "subscription")
    )
    event = make_event(
        "customer.subscription.updated",
        subscription_object(price_id=PREMIER_MONTHLY_PRICE, status="past_due", cancel=True),
    )
    await _deliver(client, event)
    p = services.profiles.get("u1")
    assert p.tier == "weekly"
    assert p.cancel_at_period_end is True
    assert p.ai_credits == 0


@pytest.mark.asyncio
async def test_plan_change_applies_allotment_and_renewal_applies_once(client, services):
    services.profiles.activate_tier(
        "u1", "weekly", subscription_id="sub_1", customer_id="cus_1", ai_credits=0, grant=Grant("cs_seed", "subscription")
    )
    upgrade = make_event(
        "customer.subscription.updated",
        subscription_object(price_id=PREMIER_MONTHLY_PRICE),
        previous={"items": {"data": [{"price": {"id": WEEKLY_PRICE}}]}},
    )
    await _deliver(client, upgrade)
    assert services.profiles.get("u1").ai_credits == 200

    for _ in range(3):
        services.profiles.spend_ai("u1")
    renewal = make_event(
        "customer.subscription.updated",
        subscription_object(price_id=PREMIER_MONTHLY_PRICE, period_end=1792592000),
        previous={"current_period_end": 1790000000, "current_period_start": 1787408000},
    )
    await _deliver(client, renewal)
    assert services.profiles.get("u1").ai_credits == 200

    services.profiles.spend_ai("u1")
    # same renewal, different event id
    await _deliver(client, dict(renewal, id="evt_renewal_retry"))
    assert services.profiles.get("u1").ai_credits == 199


@pytest.mark.asyncio
async def test_unknown_customer_is_acknowledged(client, services):
    event = make_event("customer.subscription.updated", subscription_object(customer="cus_ghost", sub_id="sub_ghost"))
    resp = await _deliver(client, event)
    assert resp.status_code == 200
    assert resp.json()["ignored"] == "unknown_customer"


@pytest.mark.asyncio
async def test_metadata_user_is_last_lookup_fallback(client, services):
    services.profiles.ensure("u7")
    event = make_event(
        "customer.subscription.created",
        subscription_object(customer="cus_77", sub_id="sub_77", metadata={"userId": "u7"}),
    )
    await _deliver(client, event)
    p = services.profiles.get("u7")
    assert p.tier == "weekly"
    assert p.billing_customer_id == "cus_77"
    assert p.billing_subscription_id == "sub_77"


@pytest.mark.asyncio
async def test_failure_releases_event_for_retry(client, services, monkeypatch):
    event = make_event("checkout.session.completed", checkout_object(), event_id="evt_flaky")

    def boom(*args, **kwargs):
        raise RuntimeError("db went away")

    monkeypatch.setattr(services.profiles, "activate_tier", boom)
    resp = await _deliver(client, event)
    assert resp.status_code == 500

    monkeypatch.undo()
    retry = await _deliver(client, event)
    assert retry.status_code == 200
    assert services.profiles.get("u1").tier == "premier_monthly"


@pytest.mark.asyncio
async def test_unhandled_event_types_are_acknowledged(client):
    resp = await _deliver(client, make_event("invoice.paid", {"id": "in_1"}))
    assert resp.status_code == 200
    assert resp.json()["ignored"] == "invoice.paid"
