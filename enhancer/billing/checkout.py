import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from enhancer.billing.gateway import StripeGateway, SubscriptionView
from enhancer.billing.tiers import (
    PACK_TAGS,
    PAID_TIERS,
    pack_price_id,
    tier_for_price_id,
)
from enhancer.billing.webhooks import WebhookHandler
from enhancer.core.config import Settings
from enhancer.core.errors import (
    Forbidden,
    InvalidRequest,
    NotConfigured,
    NotFound,
)
from enhancer.data.profiles import Profile, ProfileStore
from enhancer.services.entitlements import CHECKOUT, EntitlementReconciler, Identity, SyncResult

log = logging.getLogger("billing.checkout")

RECENT_PAYMENT_WINDOW_S = 24 * 3600


def checkout_mode(tier: str | None, price_id: str | None, settings: Settings) -> str:
    """Validate a tier/price pair and return the checkout mode. Nothing is defaulted."""
    if not tier or not price_id:
        raise InvalidRequest("Both tier and priceId are required.")
    if tier in PACK_TAGS:
        expected = pack_price_id(tier, settings)
        if not expected:
            raise NotConfigured(f"The {tier} purchase is not configured.")
        if price_id != expected:
            raise InvalidRequest("Price does not match the selected purchase.")
        return "payment"
    if tier in PAID_TIERS:
        if tier_for_price_id(price_id, settings.STRIPE_EXTRA_PRICE_TIERS) != tier:
            raise InvalidRequest("Price does not match the selected plan.")
        return "subscription"
    raise InvalidRequest(f"Unknown tier: {tier}")


def subscription_summary(sub: SubscriptionView) -> Dict[str, Any]:
    return {
        "id": sub.id,
        "status": sub.status,
        "priceId": sub.price_id,
        "amount": sub.price.unit_amount if sub.price else None,
        "interval": sub.price.interval if sub.price else None,
        "currentPeriodEnd": sub.current_period_end.isoformat() if sub.current_period_end else None,
        "cancelAtPeriodEnd": sub.cancel_at_period_end,
    }


class BillingService:
    """Checkout, verification, portal and subscription management for signed-in users."""

    def __init__(
        self,
        profiles: ProfileStore,
        reconciler: EntitlementReconciler,
        gateway: StripeGateway,
        webhooks: WebhookHandler,
        settings: Settings,
    ):
        self.profiles = profiles
        self.reconciler = reconciler
        self.gateway = gateway
        self.webhooks = webhooks
        self.settings = settings

    def _base_url(self, origin: str | None) -> str:
        base = (self.settings.PUBLIC_BASE_URL or origin or "").rstrip("/")
        if not base:
            raise NotConfigured("PUBLIC_BASE_URL is not configured.")
        return base

    def _customer_for(self, profile: Profile, email: str | None) -> str:
        if profile.billing_customer_id:
            return profile.billing_customer_id
        customer_id = self.gateway.create_customer(profile.user_id, email)
        self.profiles.set_customer_id(profile.user_id, customer_id)
        log.info("billing.customer created user=%s customer=%s", profile.user_id, customer_id)
        return customer_id

    def _live_subscription(self, profile: Profile) -> Optional[SubscriptionView]:
        if not profile.billing_subscription_id:
            return None
        return self.gateway.retrieve_subscription(profile.billing_subscription_id)

    async def start_checkout(
        self,
        identity: Identity,
        tier: str | None,
        price_id: str | None,
        origin: str | None = None,
    ) -> Dict[str, Any]:
        """Create a checkout session, or restore a cancelled-but-active subscription.

        Guests are refused before anything touches the billing platform.
        """
        decision = await self.reconciler.decide(identity, CHECKOUT)
        decision.raise_for_denial()
        mode = checkout_mode(tier, price_id, self.settings)
        base = self._base_url(origin)
        profile = self.reconciler.resolve_profile(identity.user_id)

        if mode == "subscription" and profile.billing_subscription_id and profile.cancel_at_period_end:
            live = self._live_subscription(profile)
            if live is not None and live.is_active:
                restored = self.gateway.update_subscription(
                    live.id,
                    cancel_at_period_end=False,
                    price_id=price_id if price_id != live.price_id else None,
                    item_id=live.item_id,
                    metadata={"userId": profile.user_id, "tier": tier},
                )
                result = self.reconciler.reconcile_with_billing(profile, restored)
                log.info(
                    "billing.checkout restored user=%s sub=%s tier=%s",
                    profile.user_id,
                    live.id,
                    result.profile.tier,
                )
                return {
                    "restored": True,
                    "profile": result.profile.to_public(),
                    "warnings": result.warnings(),
                }
            log.info("billing.checkout previous sub ended user=%s; new checkout", profile.user_id)

        customer_id = self._customer_for(profile, identity.email)
        metadata = {"userId": profile.user_id, "tier": tier}
        session = self.gateway.create_checkout_session(
            mode=mode,
            price_id=price_id,
            customer_id=customer_id,
            metadata=metadata,
            # session_id lets the client verify on return even before the webhook lands
            success_url=f"{base}/?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/?canceled=true",
            client_reference_id=profile.user_id,
        )
        log.info("billing.checkout user=%s tier=%s mode=%s session=%s", profile.user_id, tier, mode, session.id)
        return {"url": session.url, "sessionId": session.id}

    def verify(self, identity: Identity, session_id: str) -> Dict[str, Any]:
        """Return-from-checkout fallback: apply the session if the webhook hasn't yet."""
        if not session_id:
            raise InvalidRequest("session_id is required.")
        session = self.gateway.retrieve_checkout_session(session_id)
        if session is None:
            raise NotFound("Checkout session not found.")
        owner = session.metadata.get("userId") or session.client_reference_id
        if not owner or owner != identity.user_id:
            raise Forbidden("This checkout session belongs to another account.")
        outcome = self.webhooks.complete_checkout(session)
        profile = self.reconciler.resolve_profile(identity.user_id)
        log.info(
            "billing.verify user=%s session=%s paid=%s outcome=%s",
            identity.user_id,
            session_id,
            session.is_paid,
            outcome,
        )
        return {
            "ok": True,
            "paid": session.is_paid,
            "pending": bool(outcome.get("pending")),
            "profile": profile.to_public(),
        }

    def recent_payments(self, identity: Identity, now: dt.datetime | None = None) -> List[Dict[str, Any]]:
        """Paid checkouts of the caller from the last day, newest first.

        Lets a client that lost its session id find the purchase to verify.
        Only the caller's own customer is listed, and only sessions created
        for the caller.
        """
        profile = self.reconciler.resolve_profile(identity.user_id)
        if not profile.billing_customer_id:
            return []
        now = now or dt.datetime.now(dt.timezone.utc)
        since = int(now.timestamp()) - RECENT_PAYMENT_WINDOW_S
        out: List[Dict[str, Any]] = []
        for session in self.gateway.list_checkout_sessions(profile.billing_customer_id):
            owner = session.metadata.get("userId") or session.client_reference_id
            if not session.is_paid or owner != identity.user_id:
                continue
            if session.created is None or session.created < since:
                continue
            out.append(
                {
                    "id": session.id,
                    "amount": session.amount_total,
                    "currency": session.currency,
                    "status": session.payment_status,
                    "created": session.created,
                    "mode": session.mode,
                    "tier": session.metadata.get("tier"),
                }
            )
        out.sort(key=lambda p: p["created"], reverse=True)
        return out

    def portal(self, identity: Identity, origin: str | None = None) -> str:
        base = self._base_url(origin)
        profile = self.reconciler.resolve_profile(identity.user_id)
        customer_id = self._customer_for(profile, identity.email)
        return self.gateway.create_portal_session(customer_id, f"{base}/subscriptions")

    def details(self, identity: Identity) -> Dict[str, Any]:
        profile = self.reconciler.resolve_profile(identity.user_id)
        result = self.reconciler.sync(profile)
        profile = result.profile
        out: Dict[str, Any] = {
            "tier": profile.tier,
            "credits": profile.credits,
            "aiCredits": profile.ai_credits,
            "cancelAtPeriodEnd": profile.cancel_at_period_end,
            "isFree": profile.tier == "free",
            "verified": result.verified,
            "warnings": result.warnings(),
            "subscription": None,
        }
        if result.verified and profile.billing_subscription_id:
            live = self._live_subscription(profile)
            if live is not None:
                out["subscription"] = subscription_summary(live)
        return out

    def cancel(self, identity: Identity) -> Dict[str, Any]:
        """Cancel at period end. The local flag only changes by mirroring the platform's answer."""
        profile = self.reconciler.resolve_profile(identity.user_id)
        if not profile.billing_subscription_id:
            raise NotFound("No active subscription found.")
        sub = self.gateway.update_subscription(profile.billing_subscription_id, cancel_at_period_end=True)
        result = self.reconciler.reconcile_with_billing(profile, sub)
        log.info("billing.cancel user=%s sub=%s cancel=%s", profile.user_id, sub.id, sub.cancel_at_period_end)
        return {
            "ok": True,
            "subscription": subscription_summary(sub),
            "profile": result.profile.to_public(),
        }

    def change_plan(self, identity: Identity, tier: str | None, price_id: str | None) -> Dict[str, Any]:
        if checkout_mode(tier, price_id, self.settings) != "subscription":
            raise InvalidRequest("Only subscription plans can be changed.")
        profile = self.reconciler.resolve_profile(identity.user_id)
        live = self._live_subscription(profile)
        if live is None or not live.is_active:
            raise NotFound("No active subscription found.")
        updated = self.gateway.update_subscription(
            live.id,
            cancel_at_period_end=False,
            price_id=price_id,
            item_id=live.item_id,
            metadata={"userId": profile.user_id, "tier": tier},
        )
        result = self.reconciler.reconcile_with_billing(profile, updated)
        log.info("billing.change_plan user=%s from=%s to=%s", profile.user_id, profile.tier, result.profile.tier)
        return {
            "ok": True,
            "subscription": subscription_summary(updated),
            "profile": result.profile.to_public(),
            "warnings": result.warnings(),
        }

    def sync(self, identity: Identity) -> SyncResult:
        profile = self.reconciler.resolve_profile(identity.user_id)
        return self.reconciler.sync(profile)
