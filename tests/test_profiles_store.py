import pytest
from sqlalchemy import text

from enhancer.billing.tiers import UNLIMITED_CREDITS
from enhancer.core.config import Settings
from enhancer.data.images import CreditRaceLost, ImageRecord, ImageStore
from enhancer.data.profiles import AI, BASIC, Grant, ProfileStore
from enhancer.data.schema import init_db
from enhancer.db import build_engine


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'store.db'}"))
    init_db(eng)
    return eng


@pytest.fixture
def profiles(engine):
    return ProfileStore(engine, free_credits=5)


def test_ensure_is_idempotent(profiles):
    first = profiles.ensure("u1")
    assert (first.tier, first.credits, first.ai_credits) == ("free", 5, 0)
    profiles.spend_basic("u1")
    again = profiles.ensure("u1")
    assert again.credits == 4


def test_spend_never_goes_negative(profiles):
    profiles.ensure("u1")
    assert [profiles.spend_basic("u1") for _ in range(6)] == [True] * 5 + [False]
    assert profiles.get("u1").credits == 0
    assert profiles.spend_ai("u1") is False
    assert profiles.get("u1").ai_credits == 0


def test_paid_tier_keeps_unlimited_sentinel(profiles):
    profiles.activate_tier(
        "u1", "monthly", subscription_id="sub_1", customer_id="cus_1", ai_credits=0, grant=Grant("cs_1", "subscription")
    )
    assert profiles.spend("u1", BASIC)
    assert profiles.get("u1").credits == UNLIMITED_CREDITS


def test_grants_apply_once(profiles):
    grant = Grant("cs_pack", "credit_pack", 50)
    assert profiles.grant_ai_credits("u1", grant, customer_id="cus_9") is True
    assert profiles.grant_ai_credits("u1", grant) is False
    p = profiles.get("u1")
    assert p.ai_credits == 50
    assert p.billing_customer_id == "cus_9"
    assert profiles.has_purchased_ai_credits("u1")


def test_apply_changes_is_conditional(profiles):
    stale = profiles.ensure("u1")
    profiles.spend_basic("u1")
    assert profiles.apply_changes(stale, {"tier": "weekly"}) is False
    fresh = profiles.get("u1")
    assert profiles.apply_changes(fresh, {"tier": "weekly", "credits": UNLIMITED_CREDITS}) is True
    assert profiles.get("u1").tier == "weekly"


def test_apply_changes_with_claimed_grant_keeps_balance(profiles):
    p = profiles.ensure("u1")
    grant = Grant("renewal:sub_1:1790000000", "renewal", 200)
    assert profiles.apply_changes(p, {"ai_credits": 200}, grant=grant)
    p = profiles.get("u1")
    profiles.spend(p.user_id, AI)
    p = profiles.get("u1")
    # replaying the same renewal leaves the spent balance alone
    assert profiles.apply_changes(p, {"ai_credits": 200, "cancel_at_period_end": True}, grant=grant)
    p = profiles.get("u1")
    assert p.ai_credits == 199
    assert p.cancel_at_period_end is True


def test_lost_update_releases_grant_claim(profiles):
    stale = profiles.ensure("u1")
    profiles.spend_basic("u1")
    grant = Grant("renewal:sub_1:1", "renewal", 100)
    assert profiles.apply_changes(stale, {"ai_credits": 100}, grant=grant) is False
    assert profiles.has_grant(grant.key) is False


def test_event_claims(profiles):
    assert profiles.claim_event("evt_1", "checkout.session.completed")
    assert not profiles.claim_event("evt_1", "checkout.session.completed")
    profiles.release_event("evt_1")
    assert profiles.claim_event("evt_1", "checkout.session.completed")


def test_downgrade_clears_subscription(profiles):
    profiles.activate_tier(
        "u1", "premier_yearly", subscription_id="sub_1", customer_id="cus_1", ai_credits=800, grant=Grant("cs_1", "subscription", 800)
    )
    assert profiles.downgrade_to_free("u1", "sub_1")
    p = profiles.get("u1")
    assert (p.tier, p.credits, p.ai_credits, p.billing_subscription_id) == ("free", 0, 0, None)
    assert p.billing_customer_id == "cus_1"


def test_late_delete_does_not_overwrite_newer_activation(profiles):
    profiles.activate_tier(
        "u1", "weekly", subscription_id="sub_old", customer_id="cus_1", ai_credits=0, grant=Grant("cs_1", "subscription")
    )
    # the user resubscribed before the deletion of the old subscription was processed
    profiles.activate_tier(
        "u1", "premier_monthly", subscription_id="sub_new", customer_id="cus_1", ai_credits=200, grant=Grant("cs_2", "subscription", 200)
    )
    assert not profiles.downgrade_to_free("u1", "sub_old")
    p = profiles.get("u1")
    assert (p.tier, p.ai_credits, p.billing_subscription_id) == ("premier_monthly", 200, "sub_new")


def test_record_enhancement_is_atomic(engine, profiles):
    images = ImageStore(engine)
    profiles.ensure("u1")
    with engine.begin() as conn:
        conn.execute(text("UPDATE profiles SET credits = 1 WHERE user_id = 'u1'"))
    first = ImageRecord("u1", "https://x/o.png", "https://x/e.png")
    images.record_enhancement(first, BASIC)
    with pytest.raises(CreditRaceLost):
        images.record_enhancement(ImageRecord("u1", "https://x/o2.png", "https://x/e2.png"), BASIC)
    assert [i.id for i in images.list_for_user("u1")] == [first.id]
    assert profiles.get("u1").credits == 0


def test_delete_owned_checks_owner(engine, profiles):
    images = ImageStore(engine)
    profiles.ensure("u1")
    rec = images.record_enhancement(ImageRecord("u1", "https://x/o.png", "https://x/e.png"), None)
    assert images.delete_owned(rec.id, "someone-else") is None
    assert images.delete_owned(rec.id, "u1").id == rec.id
    assert images.get(rec.id) is None
