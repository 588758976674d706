"""Entitlement decisions and profile/billing reconciliation.

Two pure functions hold the rules (``check_entitlement`` and
``plan_reconciliation``); ``EntitlementReconciler`` applies them against the
stores and the billing gateway. Every route goes through the reconciler
instead of doing tier or credit math itself.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from enhancer.billing.gateway import StripeGateway, SubscriptionView
from enhancer.billing.tiers import (
    UNLIMITED_CREDITS,
    ai_allotment,
    is_paid,
    is_premier,
    resolve_tier,
)
from enhancer.core.config import Settings
from enhancer.core.errors import (
    NEEDS_PURCHASE,
    NEEDS_SIGN_UP,
    InsufficientEntitlement,
    IntegrityDrift,
    Unauthenticated,
    UpstreamUnavailable,
)
from enhancer.data.images import ImageStore
from enhancer.data.profiles import AI, BASIC, Grant, Profile, ProfileStore

log = logging.getLogger("entitlements")

CHECKOUT = "checkout"
ACTIONS = (BASIC, AI, CHECKOUT)
SIGN_IN_REQUIRED = "sign_in_required"

# Conditional writes retried this many times when a concurrent writer wins
RECONCILE_ATTEMPTS = 3


@dataclass(frozen=True)
class Identity:
    """Caller identity: an authenticated subject, or a guest session (possibly neither)."""

    user_id: Optional[str] = None
    email: Optional[str] = None
    guest_session: Optional[str] = None
    reported_guest_uses: int = 0

    @property
    def is_guest(self) -> bool:
        return not self.user_id


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    # Counter the action draws from when allowed
    spend: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, spend: str | None = None, **extra: Any) -> "Decision":
        return cls(True, spend=spend, extra=extra)

    @classmethod
    def deny(cls, reason: str, message: str, **extra: Any) -> "Decision":
        return cls(False, reason=reason, message=message, extra=extra)

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        if self.reason == SIGN_IN_REQUIRED:
            raise Unauthenticated(self.message or "Please sign in or sign up to continue.")
        raise InsufficientEntitlement(self.reason or NEEDS_PURCHASE, self.message or "", **self.extra)

    def to_public(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"allowed": self.allowed}
        if not self.allowed:
            out["reason"] = self.reason
            out["message"] = self.message
        out.update(self.extra)
        return out


def check_entitlement(
    profile: Optional[Profile],
    action: str,
    *,
    free_credits: int,
    ai_records: int = 0,
    purchased_ai: bool = False,
) -> Decision:
    """Decide whether `profile` may perform `action`. `None` means a guest."""
    if action not in ACTIONS:
        raise ValueError(f"Unknown action: {action}")

    if profile is None:
        if action == CHECKOUT:
            return Decision.deny(SIGN_IN_REQUIRED, "Create an account before purchasing a plan.")
        return Decision.deny(NEEDS_SIGN_UP, "Sign up to keep enhancing your photos.")

    if action == CHECKOUT:
        return Decision.allow()

    if action == BASIC:
        if profile.tier != "free" or profile.credits >= 1:
            return Decision.allow(BASIC)
        return Decision.deny(
            NEEDS_PURCHASE, "You've used all your free enhancements. Choose a plan to continue."
        )

    # AI
    if profile.ai_credits < 1:
        return Decision.deny(
            NEEDS_PURCHASE, "You're out of AI credits. Upgrade or buy a credit pack to continue."
        )
    if is_premier(profile.tier) or ai_records < free_credits or purchased_ai:
        return Decision.allow(AI)
    return Decision.deny(
        NEEDS_PURCHASE, "AI enhancement needs a Premier plan or an AI credit pack."
    )


@dataclass(frozen=True)
class ReconcilePlan:
    changes: Dict[str, Any]
    target_tier: Optional[str] = None
    drift: Optional[IntegrityDrift] = None


def _diff(profile: Profile, wanted: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in wanted.items() if getattr(profile, k) != v}


def plan_reconciliation(
    profile: Profile,
    live: Optional[SubscriptionView],
    settings: Settings,
    renewed: bool = False,
) -> ReconcilePlan:
    """Compute the profile changes that bring `profile` in line with `live`.

    Billing wins for tier and the cancellation flag. Credit balances are kept,
    except that switching into (or renewing) an active paid tier restores the
    unlimited sentinel and resets ai_credits to the tier allotment when it is
    greater than zero. An unresolvable price keeps the local tier and reports
    drift. `live=None` means the billing platform has no active subscription.
    """
    if live is None or live.has_ended:
        wanted: Dict[str, Any] = {"billing_subscription_id": None, "cancel_at_period_end": False}
        if is_paid(profile.tier):
            wanted.update({"tier": "free", "credits": 0})
        return ReconcilePlan(_diff(profile, wanted), target_tier="free")

    wanted = {"cancel_at_period_end": live.cancel_at_period_end}
    if live.customer_id:
        wanted["billing_customer_id"] = live.customer_id

    if not live.is_active:
        # past_due / unpaid / incomplete: mirror the flag, leave credits alone
        return ReconcilePlan(_diff(profile, wanted), target_tier=profile.tier)

    wanted["billing_subscription_id"] = live.id
    price = live.price
    tier = resolve_tier(
        price.id if price else None,
        price.unit_amount if price else None,
        price.interval if price else None,
        settings.STRIPE_EXTRA_PRICE_TIERS,
    )
    if tier is None:
        drift = IntegrityDrift(
            code="unknown_price",
            message="The billing platform reports a price this service does not recognise; "
            "your plan was left unchanged.",
            price_id=price.id if price else None,
        )
        return ReconcilePlan(_diff(profile, wanted), target_tier=profile.tier, drift=drift)

    wanted["tier"] = tier
    wanted["credits"] = UNLIMITED_CREDITS
    allotment = ai_allotment(tier, settings)
    if allotment > 0 and (tier != profile.tier or renewed):
        wanted["ai_credits"] = allotment
    return ReconcilePlan(_diff(profile, wanted), target_tier=tier)


@dataclass(frozen=True)
class SyncResult:
    profile: Profile
    verified: bool
    changed: bool = False
    drift: Optional[IntegrityDrift] = None

    def warnings(self) -> List[Dict[str, Any]]:
        return [self.drift.as_warning()] if self.drift else []


class EntitlementReconciler:
    def __init__(
        self,
        profiles: ProfileStore,
        images: ImageStore,
        gateway: StripeGateway,
        settings: Settings,
        guest=None,
    ):
        self.profiles = profiles
        self.images = images
        self.gateway = gateway
        self.settings = settings
        self.guest = guest

    def resolve_profile(self, user_id: str) -> Profile:
        """Fetch-or-create; new profiles start on `free` with the configured quota."""
        profile = self.profiles.get(user_id)
        if profile is None:
            profile = self.profiles.ensure(user_id)
            log.info("entitlements.profile created user=%s credits=%s", user_id, profile.credits)
        return profile

    async def decide(
        self, identity: Identity, action: str, profile: Profile | None = None
    ) -> Decision:
        if identity.is_guest:
            if action == AI and self.guest is not None and identity.guest_session:
                return await self.guest.check(identity.guest_session, identity.reported_guest_uses)
            return check_entitlement(None, action, free_credits=self.settings.FREE_CREDITS)

        profile = profile or self.resolve_profile(identity.user_id)
        ai_records = 0
        purchased = False
        if action == AI and profile.ai_credits >= 1 and not is_premier(profile.tier):
            ai_records = self.images.count_ai_for_user(profile.user_id)
            if ai_records >= self.settings.FREE_CREDITS:
                purchased = self.profiles.has_purchased_ai_credits(profile.user_id)
        decision = check_entitlement(
            profile,
            action,
            free_credits=self.settings.FREE_CREDITS,
            ai_records=ai_records,
            purchased_ai=purchased,
        )
        if not decision.allowed:
            log.info(
                "entitlements.denied user=%s action=%s reason=%s tier=%s credits=%s ai=%s",
                profile.user_id,
                action,
                decision.reason,
                profile.tier,
                profile.credits,
                profile.ai_credits,
            )
        return decision

    def reconcile_with_billing(
        self,
        profile: Profile,
        live: Optional[SubscriptionView],
        *,
        renewed: bool = False,
        grant_key: str | None = None,
    ) -> SyncResult:
        """Apply the reconciliation plan with a conditional write.

        When a concurrent writer changed the row first, re-read and re-plan.
        `grant_key` makes an allotment reset replay-safe (renewals).
        """
        current = profile
        plan = plan_reconciliation(current, live, self.settings, renewed=renewed)
        for _ in range(RECONCILE_ATTEMPTS):
            if not plan.changes:
                return SyncResult(current, verified=True, drift=plan.drift)
            grant = None
            if grant_key and "ai_credits" in plan.changes:
                grant = Grant(grant_key, "renewal", plan.changes["ai_credits"])
            if self.profiles.apply_changes(current, plan.changes, grant=grant):
                updated = self.profiles.get(current.user_id) or current
                log.info(
                    "entitlements.reconciled user=%s from=%s to=%s fields=%s",
                    current.user_id,
                    current.tier,
                    updated.tier,
                    ",".join(sorted(plan.changes)),
                )
                return SyncResult(updated, verified=True, changed=True, drift=plan.drift)
            log.info("entitlements.reconcile lost race user=%s; re-reading", current.user_id)
            current = self.profiles.get(current.user_id) or current
            plan = plan_reconciliation(current, live, self.settings, renewed=renewed)
        log.warning("entitlements.reconcile gave up user=%s", current.user_id)
        return SyncResult(current, verified=True, drift=plan.drift)

    def mirror_cancel_flag(self, profile: Profile, cancel_at_period_end: bool) -> Profile:
        """Copy only the platform's cancellation flag; tier and credits stay as they are."""
        current = profile
        for _ in range(RECONCILE_ATTEMPTS):
            if current.cancel_at_period_end == cancel_at_period_end:
                return current
            if self.profiles.apply_changes(
                current, {"cancel_at_period_end": cancel_at_period_end}
            ):
                return self.profiles.get(current.user_id) or current
            current = self.profiles.get(current.user_id) or current
        log.warning("entitlements.cancel_flag gave up user=%s", current.user_id)
        return current

    def fetch_live(self, profile: Profile) -> Optional[SubscriptionView]:
        live = None
        if profile.billing_subscription_id:
            live = self.gateway.retrieve_subscription(profile.billing_subscription_id)
        if (live is None or not live.is_active) and profile.billing_customer_id:
            replacement = self.gateway.find_active_subscription(profile.billing_customer_id)
            if replacement is not None:
                live = replacement
        return live

    def sync(self, profile: Profile) -> SyncResult:
        """Best-effort reconcile against live billing state.

        A billing outage never denies access: the local profile comes back
        unmodified with verified=False.
        """
        if not (profile.billing_subscription_id or profile.billing_customer_id):
            return SyncResult(profile, verified=True)
        if not self.gateway.configured:
            return SyncResult(profile, verified=False)
        try:
            live = self.fetch_live(profile)
        except UpstreamUnavailable:
            log.warning("entitlements.sync unverified user=%s", profile.user_id)
            return SyncResult(profile, verified=False)
        return self.reconcile_with_billing(profile, live)
