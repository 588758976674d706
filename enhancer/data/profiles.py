import datetime as dt
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from enhancer.billing.tiers import UNLIMITED_CREDITS
from enhancer.data.schema import utc_now_iso
from enhancer.db import is_postgres

log = logging.getLogger("profiles")

PROFILE_COLUMNS = (
    "user_id, tier, credits, ai_credits, billing_customer_id, "
    "billing_subscription_id, cancel_at_period_end, created_at, updated_at"
)
# Columns a conditional update may assign
MUTABLE_COLUMNS = (
    "tier",
    "credits",
    "ai_credits",
    "billing_customer_id",
    "billing_subscription_id",
    "cancel_at_period_end",
)
PACK_KINDS = ("credit_pack", "pay_per_image")

BASIC = "basic"
AI = "ai"


@dataclass(frozen=True)
class Profile:
    user_id: str
    tier: str = "free"
    credits: int = 0
    ai_credits: int = 0
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        return cls(
            user_id=row["user_id"],
            tier=row["tier"] or "free",
            credits=int(row["credits"] or 0),
            ai_credits=int(row["ai_credits"] or 0),
            billing_customer_id=row["billing_customer_id"],
            billing_subscription_id=row["billing_subscription_id"],
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "tier": self.tier,
            "credits": self.credits,
            "aiCredits": self.ai_credits,
            "billingCustomerId": self.billing_customer_id,
            "billingSubscriptionId": self.billing_subscription_id,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "updatedAt": self.updated_at,
        }

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Grant:
    """A replay-safe credit grant, keyed by checkout session, renewal period or sign-up."""

    key: str
    kind: str
    ai_credits: int = 0


def _insert_ignore(engine: Engine, table: str, cols: str, values: str, conflict: str) -> str:
    if is_postgres(engine):
        return f"INSERT INTO {table} ({cols}) VALUES ({values}) ON CONFLICT ({conflict}) DO NOTHING"
    return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({values})"


def spend_in(conn: Connection, user_id: str, kind: str, now_iso: str) -> bool:
    """Atomic conditional decrement; True if a credit was spent.

    Paid tiers keep the unlimited sentinel for basic enhancements.
    """
    if kind == BASIC:
        sql = (
            "UPDATE profiles SET "
            "credits = CASE WHEN tier = 'free' THEN credits - 1 ELSE credits END, "
            "updated_at = :now "
            "WHERE user_id = :uid AND (tier <> 'free' OR credits >= 1)"
        )
    elif kind == AI:
        sql = (
            "UPDATE profiles SET ai_credits = ai_credits - 1, updated_at = :now "
            "WHERE user_id = :uid AND ai_credits >= 1"
        )
    else:
        raise ValueError(f"Unknown credit kind: {kind}")
    res = conn.execute(text(sql), {"uid": user_id, "now": now_iso})
    return (res.rowcount or 0) > 0


class ProfileStore:
    def __init__(self, engine: Engine, free_credits: int):
        self.engine = engine
        self.free_credits = free_credits

    # --- reads ---

    def _one(self, where: str, params: Dict[str, Any]) -> Optional[Profile]:
        with self.engine.begin() as conn:
            row = (
                conn.execute(
                    text(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE {where} LIMIT 1"),
                    params,
                )
                .mappings()
                .first()
            )
        return Profile.from_row(row) if row else None

    def get(self, user_id: str) -> Optional[Profile]:
        if not user_id:
            return None
        return self._one("user_id = :uid", {"uid": user_id})

    def find_by_customer(self, customer_id: str | None) -> Optional[Profile]:
        if not customer_id:
            return None
        return self._one("billing_customer_id = :cid", {"cid": customer_id})

    def find_by_subscription(self, subscription_id: str | None) -> Optional[Profile]:
        if not subscription_id:
            return None
        return self._one("billing_subscription_id = :sid", {"sid": subscription_id})

    def has_purchased_ai_credits(self, user_id: str) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    "SELECT 1 FROM billing_grants WHERE user_id = :uid "
                    "AND kind IN ('credit_pack', 'pay_per_image') LIMIT 1"
                ),
                {"uid": user_id},
            ).first()
        return row is not None

    def has_grant(self, grant_key: str) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(
                text("SELECT 1 FROM billing_grants WHERE grant_key = :k LIMIT 1"),
                {"k": grant_key},
            ).first()
        return row is not None

    # --- writes ---

    def _ensure_in(self, conn: Connection, user_id: str, now_iso: str) -> None:
        sql = _insert_ignore(
            self.engine,
            "profiles",
            "user_id, tier, credits, ai_credits, cancel_at_period_end, created_at, updated_at",
            ":uid, 'free', :credits, 0, 0, :now, :now",
            "user_id",
        )
        conn.execute(text(sql), {"uid": user_id, "credits": self.free_credits, "now": now_iso})

    def _claim_grant_in(
        self, conn: Connection, user_id: str, grant: Grant, now_iso: str
    ) -> bool:
        sql = _insert_ignore(
            self.engine,
            "billing_grants",
            "grant_key, user_id, kind, ai_credits, created_at",
            ":key, :uid, :kind, :ai, :now",
            "grant_key",
        )
        res = conn.execute(
            text(sql),
            {
                "key": grant.key,
                "uid": user_id,
                "kind": grant.kind,
                "ai": grant.ai_credits,
                "now": now_iso,
            },
        )
        return (res.rowcount or 0) > 0

    def ensure(self, user_id: str, now: dt.datetime | None = None) -> Profile:
        """Fetch-or-create with tier=free and the configured free quota."""
        with self.engine.begin() as conn:
            self._ensure_in(conn, user_id, utc_now_iso(now))
        profile = self.get(user_id)
        if profile is None:  # pragma: no cover - insert just ran
            raise RuntimeError(f"profile row missing after insert for {user_id}")
        return profile

    def set_customer_id(self, user_id: str, customer_id: str) -> None:
        if not user_id or not customer_id:
            return
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "UPDATE profiles SET billing_customer_id = :cid, updated_at = :now "
                    "WHERE user_id = :uid"
                ),
                {"uid": user_id, "cid": customer_id, "now": utc_now_iso()},
            )

    def apply_changes(
        self,
        current: Profile,
        changes: Mapping[str, Any],
        grant: Grant | None = None,
        now: dt.datetime | None = None,
    ) -> bool:
        """Conditionally apply `changes` if the row still matches `current`.

        Guarded on tier, both counters and the cancellation flag so a concurrent
        webhook or spend makes this a no-op (False) instead of a blind overwrite.
        When `grant` is given and was already applied, `ai_credits` is dropped
        from the change set.
        """
        unknown = set(changes) - set(MUTABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Not mutable: {sorted(unknown)}")
        now_iso = utc_now_iso(now)
        with self.engine.begin() as conn:
            values = dict(changes)
            claimed = False
            if grant is not None and "ai_credits" in values:
                claimed = self._claim_grant_in(conn, current.user_id, grant, now_iso)
                if not claimed:
                    log.info(
                        "profiles.grant already applied user=%s key=%s", current.user_id, grant.key
                    )
                    values.pop("ai_credits")
            params: Dict[str, Any] = {
                "uid": current.user_id,
                "now": now_iso,
                "exp_tier": current.tier,
                "exp_credits": current.credits,
                "exp_ai": current.ai_credits,
                "exp_cancel": int(current.cancel_at_period_end),
            }
            sets = ["updated_at = :now"]
            for col, val in values.items():
                sets.append(f"{col} = :set_{col}")
                params[f"set_{col}"] = int(val) if col == "cancel_at_period_end" else val
            res = conn.execute(
                text(
                    f"UPDATE profiles SET {', '.join(sets)} "
                    "WHERE user_id = :uid AND tier = :exp_tier AND credits = :exp_credits "
                    "AND ai_credits = :exp_ai AND cancel_at_period_end = :exp_cancel"
                ),
                params,
            )
            applied = (res.rowcount or 0) > 0
            if claimed and not applied:
                # Lost the race; leave the grant for the retry
                conn.execute(
                    text("DELETE FROM billing_grants WHERE grant_key = :k"), {"k": grant.key}
                )
            return applied

    def spend(self, user_id: str, kind: str, now: dt.datetime | None = None) -> bool:
        with self.engine.begin() as conn:
            return spend_in(conn, user_id, kind, utc_now_iso(now))

    def spend_basic(self, user_id: str) -> bool:
        return self.spend(user_id, BASIC)

    def spend_ai(self, user_id: str) -> bool:
        return self.spend(user_id, AI)

    def activate_tier(
        self,
        user_id: str,
        tier: str,
        *,
        subscription_id: str | None,
        customer_id: str | None,
        ai_credits: int,
        grant: Grant,
        now: dt.datetime | None = None,
    ) -> bool:
        """Apply a completed subscription checkout once per grant key."""
        now_iso = utc_now_iso(now)
        with self.engine.begin() as conn:
            self._ensure_in(conn, user_id, now_iso)
            if not self._claim_grant_in(conn, user_id, grant, now_iso):
                return False
            conn.execute(
                text(
                    "UPDATE profiles SET tier = :tier, credits = :credits, ai_credits = :ai, "
                    "billing_subscription_id = COALESCE(:sid, billing_subscription_id), "
                    "billing_customer_id = COALESCE(:cid, billing_customer_id), "
                    "cancel_at_period_end = 0, updated_at = :now WHERE user_id = :uid"
                ),
                {
                    "uid": user_id,
                    "tier": tier,
                    "credits": UNLIMITED_CREDITS,
                    "ai": int(ai_credits),
                    "sid": subscription_id,
                    "cid": customer_id,
                    "now": now_iso,
                },
            )
        return True

    def grant_ai_credits(
        self,
        user_id: str,
        grant: Grant,
        *,
        customer_id: str | None = None,
        now: dt.datetime | None = None,
    ) -> bool:
        """Increment ai_credits by the grant amount once per grant key. Never touches tier."""
        now_iso = utc_now_iso(now)
        with self.engine.begin() as conn:
            self._ensure_in(conn, user_id, now_iso)
            if not self._claim_grant_in(conn, user_id, grant, now_iso):
                return False
            conn.execute(
                text(
                    "UPDATE profiles SET ai_credits = ai_credits + :n, "
                    "billing_customer_id = COALESCE(billing_customer_id, :cid), "
                    "updated_at = :now WHERE user_id = :uid"
                ),
                {"uid": user_id, "n": int(grant.ai_credits), "cid": customer_id, "now": now_iso},
            )
        return True

    def downgrade_to_free(
        self, user_id: str, subscription_id: str | None, now: dt.datetime | None = None
    ) -> bool:
        """End the subscription `subscription_id` on the profile.

        Guarded on the subscription id: once a newer activation has replaced it
        the row is left alone and False is returned.
        """
        with self.engine.begin() as conn:
            res = conn.execute(
                text(
                    "UPDATE profiles SET tier = 'free', credits = 0, ai_credits = 0, "
                    "billing_subscription_id = NULL, cancel_at_period_end = 0, "
                    "updated_at = :now WHERE user_id = :uid "
                    "AND (billing_subscription_id IS NULL OR billing_subscription_id = :sid)"
                ),
                {"uid": user_id, "sid": subscription_id, "now": utc_now_iso(now)},
            )
            return (res.rowcount or 0) > 0

    # --- webhook delivery bookkeeping ---

    def claim_event(self, event_id: str, event_type: str | None) -> bool:
        """Record a webhook event id. False if it was already recorded (duplicate delivery)."""
        sql = _insert_ignore(
            self.engine,
            "webhook_events",
            "event_id, event_type, received_at",
            ":eid, :etype, :now",
            "event_id",
        )
        with self.engine.begin() as conn:
            res = conn.execute(
                text(sql), {"eid": event_id, "etype": event_type, "now": utc_now_iso()}
            )
            return (res.rowcount or 0) > 0

    def release_event(self, event_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM webhook_events WHERE event_id = :eid"), {"eid": event_id})
