import datetime as dt

import pytest

from enhancer.services.enhancement import EnhanceRequest

from conftest import PNG_DATA_URL, PPI_PRICE, PREMIER_MONTHLY_PRICE, auth

SESSION = "guest-session-0001"


def _guest(used=0, mode="ai"):
    return {"mode": mode, "image": PNG_DATA_URL, "sessionId": SESSION, "usedCount": used}


@pytest.mark.asyncio
async def test_guest_at_quota_is_told_to_sign_up(client, inference):
    resp = await client.post("/api/guest/enhance", json=_guest(used=5))
    assert resp.status_code == 402
    detail = resp.json()["detail"]
    assert detail["reason"] == "needs_sign_up"
    assert detail["nextAction"] == "/sign-up"
    assert inference.calls == []


@pytest.mark.asyncio
async def test_server_counter_outlives_a_reset_client_counter(client, storage):
    for n in range(5):
        resp = await client.post("/api/guest/enhance", json=_guest(used=n))
        assert resp.status_code == 200
        assert resp.json()["guestRemaining"] == 4 - n

    # client cleared its local counter
    resp = await client.post("/api/guest/enhance", json=_guest(used=0))
    assert resp.status_code == 402
    assert resp.json()["detail"]["reason"] == "needs_sign_up"
    assert all(path.startswith(f"guests/{SESSION}/") for path in storage.objects)


@pytest.mark.asyncio
async def test_guest_basic_needs_sign_up(client):
    resp = await client.post("/api/guest/enhance", json=_guest(mode="basic"))
    assert resp.status_code == 402
    assert resp.json()["detail"]["reason"] == "needs_sign_up"


@pytest.mark.asyncio
async def test_signed_in_caller_spends_from_account(client, services):
    resp = await client.post(
        "/api/guest/enhance", json=_guest(mode="basic") | {"filtered": PNG_DATA_URL}, headers=auth("u1")
    )
    assert resp.status_code == 200
    assert resp.json()["credits"] == 4


@pytest.mark.asyncio
async def test_claim_grants_remaining_quota_once_and_resumes(client, services, inference):
    for n in range(2):
        await client.post("/api/guest/enhance", json=_guest(used=n))
    staged = await client.post(
        "/api/guest/stage", json={"sessionId": SESSION, "request": {"mode": "ai", "image": PNG_DATA_URL}}
    )
    assert staged.json()["staged"] is True

    resp = await client.post("/api/guest/claim", json={"sessionId": SESSION, "usedCount": 2}, headers=auth("u1"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["guestUsed"] == 2
    assert body["bonusAiCredits"] == 3
    assert body["resumed"]["mode"] == "ai"
    assert body["resumed"]["aiCredits"] == 2
    assert len(services.images.list_for_user("u1")) == 1

    again = await client.post("/api/guest/claim", json={"sessionId": SESSION, "usedCount": 0}, headers=auth("u1"))
    assert again.json()["bonusAiCredits"] == 0
    assert again.json()["resumed"] is None
    assert services.profiles.get("u1").ai_credits == 2


@pytest.mark.asyncio
async def test_claim_requires_account(client):
    resp = await client.post("/api/guest/claim", json={"sessionId": SESSION})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_expired_staged_request_is_not_resumed(services):
    long_ago = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=11)
    await services.guest.stage(SESSION, EnhanceRequest(mode="ai", image=PNG_DATA_URL), now=long_ago)
    assert await services.guest.pop_staged(SESSION) is None


@pytest.mark.asyncio
async def test_staged_request_is_consumed_once(services):
    await services.guest.stage(SESSION, EnhanceRequest(mode="ai", image=PNG_DATA_URL))
    first = await services.guest.pop_staged(SESSION)
    assert first is not None and first.mode == "ai"
    assert await services.guest.pop_staged(SESSION) is None


@pytest.mark.asyncio
async def test_effective_usage_is_the_larger_count(services):
    await services.guest.record_use(SESSION)
    assert await services.guest.used(SESSION, reported=0) == 1
    assert await services.guest.used(SESSION, reported=4) == 4
    decision = await services.guest.check(SESSION, reported=5)
    assert not decision.allowed and decision.reason == "needs_sign_up"


@pytest.mark.asyncio
async def test_request_paused_at_the_wall_resumes_after_sign_up(client, services, inference):
    for n in range(5):
        assert (await client.post("/api/guest/enhance", json=_guest(used=n))).status_code == 200
    wall = await client.post("/api/guest/enhance", json=_guest(used=5))
    assert wall.status_code == 402
    await client.post("/api/guest/stage", json={"sessionId": SESSION, "request": {"mode": "ai", "image": PNG_DATA_URL}})

    resp = await client.post("/api/guest/claim", json={"sessionId": SESSION, "usedCount": 5}, headers=auth("u9"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["guestUsed"] == 5
    assert "resumeDenied" not in body
    assert body["resumed"]["mode"] == "ai"
    # the grant covered exactly the resumed request
    assert body["bonusAiCredits"] == 1
    assert body["resumed"]["aiCredits"] == 0
    assert len(services.images.list_for_user("u9")) == 1
    assert len(inference.calls) == 6


@pytest.mark.asyncio
async def test_sign_up_grant_for_resume_is_only_given_once(client, services):
    await services.guest.stage(SESSION, EnhanceRequest(mode="ai", image=PNG_DATA_URL))
    first = await client.post("/api/guest/claim", json={"sessionId": SESSION, "usedCount": 5}, headers=auth("u9"))
    assert first.json()["resumed"] is not None

    other = "guest-session-0002"
    await services.guest.stage(other, EnhanceRequest(mode="ai", image=PNG_DATA_URL))
    second = await client.post("/api/guest/claim", json={"sessionId": other, "usedCount": 5}, headers=auth("u9"))
    body = second.json()
    assert body["bonusAiCredits"] == 0
    assert body["resumed"] is None
    assert body["resumeDenied"]["reason"] == "needs_purchase"


@pytest.mark.asyncio
async def test_plan_picked_before_sign_up_opens_checkout_on_claim(client, gateway):
    staged = await client.post("/api/guest/stage", json={"sessionId": SESSION, "checkoutTier": "premier_monthly"})
    assert staged.status_code == 200
    assert staged.json()["checkoutStaged"] is True
    assert gateway.created_sessions == []

    resp = await client.post(
        "/api/guest/claim", json={"sessionId": SESSION, "usedCount": 1}, headers=auth("u1", "u1@example.com")
    )
    body = resp.json()
    assert body["checkout"]["url"].startswith("https://checkout.stripe.test/")
    created = gateway.created_sessions[0]
    assert created["mode"] == "subscription"
    assert created["price_id"] == PREMIER_MONTHLY_PRICE
    assert created["session"].metadata == {"userId": "u1", "tier": "premier_monthly"}

    # consumed: a second claim opens nothing
    again = await client.post("/api/guest/claim", json={"sessionId": SESSION}, headers=auth("u1"))
    assert again.json()["checkout"] is None
    assert len(gateway.created_sessions) == 1


@pytest.mark.asyncio
async def test_staged_pack_checkout_with_request(client, gateway, services):
    resp = await client.post(
        "/api/guest/stage",
        json={
            "sessionId": SESSION,
            "checkoutTier": "pay_per_image",
            "request": {"mode": "ai", "image": PNG_DATA_URL},
        },
    )
    assert resp.json()["staged"] is True and resp.json()["checkoutStaged"] is True

    claim = await client.post("/api/guest/claim", json={"sessionId": SESSION, "usedCount": 5}, headers=auth("u3"))
    body = claim.json()
    assert body["resumed"]["mode"] == "ai"
    assert body["checkout"]["sessionId"].startswith("cs_test_")
    assert gateway.created_sessions[0]["price_id"] == PPI_PRICE
    assert gateway.created_sessions[0]["mode"] == "payment"


@pytest.mark.asyncio
async def test_checkout_failure_does_not_undo_the_claim(client, services, gateway):
    await services.guest.stage_checkout(SESSION, "weekly")
    gateway.down = True
    resp = await client.post("/api/guest/claim", json={"sessionId": SESSION, "usedCount": 2}, headers=auth("u4"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["checkout"] is None
    assert body["checkoutError"]["reason"] == "upstream_unavailable"
    assert services.profiles.get("u4").ai_credits == 3


@pytest.mark.asyncio
async def test_stage_rejects_unknown_plan_and_empty_body(client):
    bad = await client.post("/api/guest/stage", json={"sessionId": SESSION, "checkoutTier": "platinum"})
    assert bad.status_code == 400
    empty = await client.post("/api/guest/stage", json={"sessionId": SESSION})
    assert empty.status_code == 400


@pytest.mark.asyncio
async def test_expired_staged_checkout_is_not_resumed(services):
    long_ago = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=11)
    await services.guest.stage_checkout(SESSION, "weekly", now=long_ago)
    assert await services.guest.pop_staged_checkout(SESSION) is None
