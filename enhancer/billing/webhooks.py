import logging
from typing import Any, Dict, Optional

from enhancer.billing.gateway import CheckoutSessionView, StripeGateway, SubscriptionView, get_field
from enhancer.billing.tiers import PACK_TAGS, ai_allotment, is_paid, pack_credits
from enhancer.core.config import Settings
from enhancer.data.profiles import Grant, Profile, ProfileStore
from enhancer.services.entitlements import EntitlementReconciler

log = logging.getLogger("billing.webhooks")

CHECKOUT_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
SUBSCRIPTION_EVENTS = ("customer.subscription.created", "customer.subscription.updated")
PERIOD_FIELDS = ("current_period_end", "current_period_start")


def _is_renewal(previous: Any) -> bool:
    """True when the event's previous_attributes show the billing period rolled over."""
    if not previous:
        return False
    if any(get_field(previous, f) is not None for f in PERIOD_FIELDS):
        return True
    # Newer API versions carry the period on subscription items
    for item in get_field(get_field(previous, "items"), "data") or []:
        if any(get_field(item, f) is not None for f in PERIOD_FIELDS):
            return True
    return False


class WebhookHandler:
    def __init__(
        self,
        profiles: ProfileStore,
        reconciler: EntitlementReconciler,
        gateway: StripeGateway,
        settings: Settings,
    ):
        self.profiles = profiles
        self.reconciler = reconciler
        self.gateway = gateway
        self.settings = settings

    def handle(self, payload: bytes, signature: str | None) -> Dict[str, Any]:
        """Verify, de-duplicate and apply one billing event.

        The event id is claimed before processing and released on failure so
        the platform's retry gets another chance.
        """
        event = self.gateway.verify_event(payload, signature)
        event_id = event.get("id")
        etype = event.get("type")
        if event_id and not self.profiles.claim_event(event_id, etype):
            log.info("stripe.webhook duplicate event=%s id=%s", etype, event_id)
            return {"ok": True, "duplicate": True}
        try:
            outcome = self.dispatch(event)
        except Exception:
            if event_id:
                self.profiles.release_event(event_id)
            raise
        return {"ok": True, **outcome}

    def dispatch(self, event: Dict[str, Any]) -> Dict[str, Any]:
        etype = event.get("type")
        data = event.get("data") or {}
        obj = data.get("object") or {}

        if etype in CHECKOUT_EVENTS:
            return self.complete_checkout(CheckoutSessionView.parse(obj))
        if etype in SUBSCRIPTION_EVENTS:
            return self.subscription_changed(
                SubscriptionView.parse(obj),
                renewed=_is_renewal(data.get("previous_attributes")),
                metadata_user=get_field(get_field(obj, "metadata"), "userId"),
            )
        if etype == "customer.subscription.deleted":
            return self.subscription_deleted(SubscriptionView.parse(obj))

        log.info("stripe.webhook ignored event=%s", etype)
        return {"ignored": etype}

    # --- profile lookup ---

    def _profile_for(self, sub: SubscriptionView, metadata_user: str | None = None) -> Optional[Profile]:
        profile = self.profiles.find_by_customer(sub.customer_id)
        if profile is None:
            profile = self.profiles.find_by_subscription(sub.id)
        if profile is None and metadata_user:
            profile = self.profiles.get(metadata_user)
        return profile

    # --- checkout ---

    def complete_checkout(self, session: CheckoutSessionView) -> Dict[str, Any]:
        """Apply a completed checkout, routed by its `{userId, tier}` metadata.

        Grants are keyed by the session id, so the webhook and the
        return-from-checkout verification can both run without double credit.
        """
        user_id = session.metadata.get("userId") or session.client_reference_id
        tag = session.metadata.get("tier")
        if not user_id or not tag:
            log.warning("stripe.webhook checkout missing metadata session=%s", session.id)
            return {"ignored": "missing_metadata"}
        if not session.is_paid:
            log.info(
                "stripe.webhook checkout pending session=%s status=%s", session.id, session.payment_status
            )
            return {"pending": True, "userId": user_id}

        if tag in PACK_TAGS:
            amount = pack_credits(tag, self.settings)
            applied = self.profiles.grant_ai_credits(
                user_id, Grant(session.id, tag, amount), customer_id=session.customer_id
            )
            log.info(
                "stripe.webhook event=checkout.completed user=%s pack=%s credits=%s applied=%s",
                user_id,
                tag,
                amount,
                applied,
            )
            return {"userId": user_id, "pack": tag, "applied": applied}

        if is_paid(tag):
            allotment = ai_allotment(tag, self.settings)
            applied = self.profiles.activate_tier(
                user_id,
                tag,
                subscription_id=session.subscription_id,
                customer_id=session.customer_id,
                ai_credits=allotment,
                grant=Grant(session.id, "subscription", allotment),
            )
            log.info(
                "stripe.webhook event=checkout.completed user=%s tier=%s sub=%s applied=%s",
                user_id,
                tag,
                session.subscription_id,
                applied,
            )
            return {"userId": user_id, "tier": tag, "applied": applied}

        log.warning("stripe.webhook checkout unknown tier=%r session=%s", tag, session.id)
        return {"ignored": "unknown_tier"}

    # --- subscription lifecycle ---

    def subscription_changed(
        self, sub: SubscriptionView, renewed: bool = False, metadata_user: str | None = None
    ) -> Dict[str, Any]:
        profile = self._profile_for(sub, metadata_user)
        if profile is None:
            log.warning(
                "stripe.webhook unknown customer=%s sub=%s status=%s", sub.customer_id, sub.id, sub.status
            )
            return {"ignored": "unknown_customer"}

        if not sub.is_active:
            if profile.billing_subscription_id and profile.billing_subscription_id != sub.id:
                log.info("stripe.webhook stale sub=%s user=%s", sub.id, profile.user_id)
                return {"ignored": "stale_subscription"}
            updated = self.reconciler.mirror_cancel_flag(profile, sub.cancel_at_period_end)
            log.info(
                "stripe.webhook event=subscription.updated user=%s sub=%s status=%s cancel=%s",
                profile.user_id,
                sub.id,
                sub.status,
                updated.cancel_at_period_end,
            )
            return {"userId": profile.user_id, "tier": updated.tier}

        grant_key = None
        if renewed and sub.current_period_end:
            grant_key = f"renewal:{sub.id}:{int(sub.current_period_end.timestamp())}"
        result = self.reconciler.reconcile_with_billing(
            profile, sub, renewed=renewed, grant_key=grant_key
        )
        log.info(
            "stripe.webhook event=subscription.updated user=%s sub=%s status=%s tier=%s renewed=%s",
            profile.user_id,
            sub.id,
            sub.status,
            result.profile.tier,
            renewed,
        )
        out: Dict[str, Any] = {"userId": profile.user_id, "tier": result.profile.tier}
        if result.drift:
            out["warnings"] = result.warnings()
        return out

    def subscription_deleted(self, sub: SubscriptionView) -> Dict[str, Any]:
        profile = self._profile_for(sub)
        if profile is None:
            log.warning("stripe.webhook unknown customer=%s sub=%s deleted", sub.customer_id, sub.id)
            return {"ignored": "unknown_customer"}
        if profile.billing_subscription_id and profile.billing_subscription_id != sub.id:
            # The user already moved to a newer subscription
            log.info("stripe.webhook stale delete sub=%s user=%s", sub.id, profile.user_id)
            return {"ignored": "stale_subscription"}
        if not self.profiles.downgrade_to_free(profile.user_id, sub.id):
            # A newer activation landed between the read and the write
            log.info("stripe.webhook delete lost to newer sub=%s user=%s", sub.id, profile.user_id)
            return {"ignored": "stale_subscription"}
        log.info("stripe.webhook event=subscription.deleted user=%s sub=%s", profile.user_id, sub.id)
        return {"userId": profile.user_id, "tier": "free"}
