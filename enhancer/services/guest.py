"""Guest usage tracking.

The client keeps its own counter; the server mirrors it per guest session and
uses the larger of the two. This is a UX guard only: a cleared session gets
a fresh counter, and real spend limits apply once the user has an account.
"""
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from enhancer.billing.checkout import checkout_mode
from enhancer.billing.tiers import current_price_id
from enhancer.core.config import Settings
from enhancer.core.errors import NEEDS_SIGN_UP, EnhancerError, InsufficientEntitlement
from enhancer.data.profiles import AI, Grant, ProfileStore
from enhancer.services.cache import KeyValueCache
from enhancer.services.enhancement import EnhanceOutcome, EnhanceRequest
from enhancer.services.entitlements import Decision, Identity

log = logging.getLogger("guest")


def _counter_key(session_id: str) -> str:
    return f"enh:guest:uses:{session_id}"


def _stage_key(session_id: str) -> str:
    return f"enh:guest:staged:{session_id}"


def _checkout_key(session_id: str) -> str:
    return f"enh:guest:checkout:{session_id}"


def _now(now: dt.datetime | None) -> dt.datetime:
    return now or dt.datetime.now(dt.timezone.utc)


@dataclass
class ClaimResult:
    user_id: str
    guest_used: int
    bonus_ai_credits: int
    granted: bool
    resumed: Optional[EnhanceOutcome] = None
    resume_denied: Optional[Dict[str, Any]] = None
    checkout: Optional[Dict[str, Any]] = None
    checkout_error: Optional[Dict[str, Any]] = None

    def to_public(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "userId": self.user_id,
            "guestUsed": self.guest_used,
            "bonusAiCredits": self.bonus_ai_credits if self.granted else 0,
            "resumed": self.resumed.to_public() if self.resumed else None,
            "checkout": self.checkout,
        }
        if self.resume_denied:
            out["resumeDenied"] = self.resume_denied
        if self.checkout_error:
            out["checkoutError"] = self.checkout_error
        return out


class GuestUsageTracker:
    def __init__(
        self,
        cache: KeyValueCache,
        profiles: ProfileStore,
        settings: Settings,
        orchestrator=None,
        billing=None,
    ):
        self.cache = cache
        self.profiles = profiles
        self.settings = settings
        self.orchestrator = orchestrator
        self.billing = billing

    @property
    def quota(self) -> int:
        return self.settings.FREE_CREDITS

    async def used(self, session_id: str, reported: int = 0) -> int:
        server = await self.cache.aget(_counter_key(session_id)) or 0
        try:
            server = int(server)
        except (TypeError, ValueError):
            server = 0
        return max(int(reported or 0), server)

    async def check(self, session_id: str | None, reported: int = 0) -> Decision:
        if not session_id:
            return Decision.deny(NEEDS_SIGN_UP, "Sign up to keep enhancing your photos.")
        used = await self.used(session_id, reported)
        if used >= self.quota:
            return Decision.deny(
                NEEDS_SIGN_UP,
                "You've used your free AI enhancements. Create an account to keep going.",
                used=used,
                remaining=0,
            )
        return Decision.allow(None, used=used, remaining=self.quota - used)

    async def record_use(self, session_id: str, reported: int = 0) -> int:
        ttl = self.settings.GUEST_COUNTER_TTL_S
        count = await self.cache.aincr(_counter_key(session_id), ttl_seconds=ttl)
        reported = int(reported or 0)
        if count <= reported:
            # The client has seen more uses than we have; catch up
            count = reported + 1
            await self.cache.aset(_counter_key(session_id), count, ttl_seconds=ttl)
        return count

    async def _stash(self, key: str, payload: Dict[str, Any], now: dt.datetime | None) -> str:
        staged_at = _now(now)
        ttl = self.settings.GUEST_RESUME_TTL_S
        await self.cache.aset(key, {**payload, "staged_at": staged_at.timestamp()}, ttl_seconds=ttl)
        expires = staged_at + dt.timedelta(seconds=ttl)
        return expires.replace(microsecond=0).isoformat()

    async def _pop_fresh(self, key: str, now: dt.datetime | None) -> Optional[Dict[str, Any]]:
        entry = await self.cache.apop(key)
        if not entry:
            return None
        age = _now(now).timestamp() - float(entry.get("staged_at") or 0)
        if age > self.settings.GUEST_RESUME_TTL_S:
            log.info("guest.staged expired key=%s age_s=%d", key, int(age))
            return None
        return entry

    async def stage(
        self, session_id: str, request: EnhanceRequest, now: dt.datetime | None = None
    ) -> Dict[str, Any]:
        """Park the request that hit the quota wall so it can resume after sign-up."""
        expires = await self._stash(_stage_key(session_id), {"request": request.to_dict()}, now)
        log.info("guest.staged session=%s mode=%s", session_id, request.mode)
        return {"staged": True, "expiresAt": expires}

    async def pop_staged(
        self, session_id: str, now: dt.datetime | None = None
    ) -> Optional[EnhanceRequest]:
        """Consume the staged request. Entries past the resume window are discarded."""
        entry = await self._pop_fresh(_stage_key(session_id), now)
        if entry is None:
            return None
        return EnhanceRequest.from_dict(entry.get("request") or {})

    async def stage_checkout(
        self,
        session_id: str,
        tier: str,
        price_id: str | None = None,
        now: dt.datetime | None = None,
    ) -> Dict[str, Any]:
        """Remember the plan a guest picked so checkout starts once they have an account."""
        price_id = price_id or current_price_id(tier, self.settings)
        checkout_mode(tier, price_id, self.settings)
        expires = await self._stash(
            _checkout_key(session_id), {"tier": tier, "priceId": price_id}, now
        )
        log.info("guest.checkout_staged session=%s tier=%s", session_id, tier)
        return {"checkoutStaged": True, "checkoutTier": tier, "expiresAt": expires}

    async def pop_staged_checkout(
        self, session_id: str, now: dt.datetime | None = None
    ) -> Optional[Dict[str, str]]:
        entry = await self._pop_fresh(_checkout_key(session_id), now)
        if entry is None or not entry.get("tier"):
            return None
        return {"tier": entry["tier"], "priceId": entry.get("priceId")}

    async def claim(
        self,
        identity: Identity,
        session_id: str,
        reported: int = 0,
        now: dt.datetime | None = None,
        origin: str | None = None,
    ) -> ClaimResult:
        """Move a guest session onto a new account.

        The unused part of the free quota becomes AI credits, once per account.
        A staged AI request is paid for by that grant even when the guest
        stopped at the wall with nothing left. The staged request then runs as
        the new user, and a plan picked before sign-up opens its checkout.
        """
        user_id = identity.user_id
        used = await self.used(session_id, reported)
        staged = await self.pop_staged(session_id, now)
        pending_checkout = await self.pop_staged_checkout(session_id, now)

        bonus = max(0, self.quota - used)
        if staged is not None and staged.mode == AI:
            bonus = max(bonus, 1)
        granted = False
        if bonus > 0:
            granted = self.profiles.grant_ai_credits(
                user_id, Grant(f"signup:{user_id}", "signup", bonus)
            )
        else:
            self.profiles.ensure(user_id)
        await self.cache.adelete(_counter_key(session_id))
        log.info(
            "guest.claimed session=%s user=%s used=%d bonus=%d granted=%s staged=%s",
            session_id,
            user_id,
            used,
            bonus,
            granted,
            staged.mode if staged else None,
        )

        result = ClaimResult(user_id, used, bonus, granted)
        if staged is not None and self.orchestrator is not None:
            try:
                result.resumed = await self.orchestrator.enhance(identity, staged)
            except InsufficientEntitlement as e:
                result.resume_denied = e.to_detail()
        if pending_checkout is not None and self.billing is not None:
            try:
                result.checkout = await self.billing.start_checkout(
                    identity, pending_checkout["tier"], pending_checkout["priceId"], origin=origin
                )
            except EnhancerError as e:
                log.warning(
                    "guest.checkout_resume failed user=%s tier=%s reason=%s",
                    user_id,
                    pending_checkout["tier"],
                    e.reason,
                )
                result.checkout_error = e.to_detail()
        return result
