# Tier catalogue: price id -> tier, price point fallback, AI allotments
import logging
from typing import Dict, Literal, Mapping, Optional, Tuple, get_args

from enhancer.core.config import Settings

log = logging.getLogger("tiers")

Tier = Literal[
    "free",
    "weekly",
    "monthly",
    "yearly",
    "premier_weekly",
    "premier_monthly",
    "premier_yearly",
]
PackTag = Literal["credit_pack", "pay_per_image"]

TIERS: Tuple[str, ...] = get_args(Tier)
PAID_TIERS: Tuple[str, ...] = tuple(t for t in TIERS if t != "free")
PACK_TAGS: Tuple[str, ...] = get_args(PackTag)

# Sentinel for "unlimited" basic enhancements on paid tiers
UNLIMITED_CREDITS = 999999

PRICE_TO_TIER: Dict[str, str] = {
    # Basic plans
    "price_1SUw6GJtYXMzJCdNZ5NTI75B": "weekly",  # $2.99/week
    "price_1SUw6nJtYXMzJCdNEo2C9Z2K": "monthly",  # $5.99/month
    "price_1SUw7jJtYXMzJCdNG6QlCFhJ": "yearly",  # $14.99/year
    # Premier plans
    "price_1SUwfWJtYXMzJCdNKfekXIXv": "premier_weekly",  # $6.99/week
    "price_1SUw74JtYXMzJCdNdo7CymJs": "premier_monthly",  # $14.99/month
    "price_1SUwZsJtYXMzJCdNuoGh5VrV": "premier_yearly",  # $79.00/year
    # Legacy prices still attached to older subscriptions
    "price_1SSsLiJtYXMzJCdN3oQB39hZ": "weekly",
    "price_1SSsMCJtYXMzJCdN1xaQfKmu": "monthly",
    "price_1SSsNbJtYXMzJCdNcdAOA1ZK": "yearly",
    "price_1ST7PDJtYXMzJCdNjd51XXUb": "premier_weekly",
    "price_1ST7OPJtYXMzJCdNu32G50TH": "premier_monthly",
    "price_1ST7NrJtYXMzJCdNB9QpyiY5": "premier_yearly",
}

# (unit_amount in cents, recurring interval) -> tier
PRICE_POINTS: Dict[Tuple[int, str], str] = {
    (299, "week"): "weekly",
    (599, "month"): "monthly",
    (1499, "year"): "yearly",
    (699, "week"): "premier_weekly",
    (1499, "month"): "premier_monthly",
    (7900, "year"): "premier_yearly",
}


def is_tier(value: str | None) -> bool:
    return value in TIERS


def is_paid(tier: str) -> bool:
    return tier in PAID_TIERS


def is_premier(tier: str) -> bool:
    return tier.startswith("premier_")


def ai_allotment(tier: str, settings: Settings) -> int:
    """AI credits a tier grants per billing period (0 for basic tiers and free)."""
    return {
        "premier_weekly": settings.AI_CREDITS_PREMIER_WEEKLY,
        "premier_monthly": settings.AI_CREDITS_PREMIER_MONTHLY,
        "premier_yearly": settings.AI_CREDITS_PREMIER_YEARLY,
    }.get(tier, 0)


def pack_credits(tag: str, settings: Settings) -> int:
    if tag == "credit_pack":
        return settings.CREDIT_PACK_AI_CREDITS
    if tag == "pay_per_image":
        return settings.PAY_PER_IMAGE_AI_CREDITS
    raise ValueError(f"Unknown pack tag: {tag}")


def pack_price_id(tag: str, settings: Settings) -> str | None:
    if tag == "credit_pack":
        return settings.STRIPE_CREDIT_PACK_PRICE_ID
    if tag == "pay_per_image":
        return settings.STRIPE_PAY_PER_IMAGE_PRICE_ID
    return None


def price_table(extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    table = dict(PRICE_TO_TIER)
    for price_id, tier in (extra or {}).items():
        if is_paid(tier):
            table[price_id] = tier
        else:
            log.warning("Ignoring extra price mapping %s=%r; not a paid tier", price_id, tier)
    return table


def tier_for_price_id(price_id: str | None, extra: Optional[Mapping[str, str]] = None) -> str | None:
    if not price_id:
        return None
    return price_table(extra).get(price_id)


def resolve_tier(
    price_id: str | None,
    unit_amount: int | None = None,
    interval: str | None = None,
    extra: Optional[Mapping[str, str]] = None,
) -> str | None:
    """Map a billing price to a tier.

    Tries the static id table first, then an exact (amount, interval) match.
    Returns None when neither matches; callers must keep the local tier rather
    than guess.
    """
    tier = tier_for_price_id(price_id, extra)
    if tier:
        return tier
    if unit_amount is not None and interval:
        tier = PRICE_POINTS.get((int(unit_amount), interval))
        if tier:
            log.info(
                "tiers.resolve price=%s matched by price point amount=%s interval=%s tier=%s",
                price_id,
                unit_amount,
                interval,
                tier,
            )
            return tier
    log.warning(
        "tiers.resolve unknown price=%s amount=%s interval=%s", price_id, unit_amount, interval
    )
    return None


def current_price_id(tier: str | None, settings: Settings) -> str | None:
    """Price a new checkout for `tier` (or pack tag) should use. Legacy ids are never offered."""
    if tier in PACK_TAGS:
        return pack_price_id(tier, settings)
    if not tier or not is_paid(tier):
        return None
    # the current ids come first in PRICE_TO_TIER
    for price_id, mapped in PRICE_TO_TIER.items():
        if mapped == tier:
            return price_id
    return None
