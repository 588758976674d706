"""Billing platform adapter (Stripe).

Stripe objects are read through small frozen views holding exactly the fields
the reconciler and webhook handler consume. Everything else on the SDK
objects is ignored.
"""
import datetime as dt
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe

from enhancer.core.config import Settings
from enhancer.core.errors import InvalidRequest, NotConfigured, UpstreamUnavailable

log = logging.getLogger("billing.gateway")

ACTIVE_STATUSES = ("active", "trialing")
ENDED_STATUSES = ("canceled", "incomplete_expired")


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read `key` from a dict or a StripeObject."""
    if obj is None:
        return default
    try:
        val = obj[key]
    except (KeyError, TypeError, IndexError):
        val = None if isinstance(obj, dict) else getattr(obj, key, None)
    return default if val is None else val


def _to_utc_dt_from_unix(ts: int | str | None) -> dt.datetime | None:
    try:
        if ts is None:
            return None
        # Stripe uses unix seconds; tolerate strings
        val = int(ts)
        if val <= 0:
            return None
        return dt.datetime.fromtimestamp(val, tz=dt.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _to_int(val: Any) -> int | None:
    try:
        return int(val) if val is not None else None
    except (TypeError, ValueError):
        return None


def _first_item(sub: Any) -> Any:
    items = get_field(get_field(sub, "items"), "data") or []
    return items[0] if items else None


def derive_period_end(sub: Any) -> dt.datetime | None:
    """Best-effort current_period_end for a subscription.

    Falls back to the first item's period end (newer API versions moved it
    there), then trial_end, then an approximation from the price interval.
    """
    cpe = _to_utc_dt_from_unix(get_field(sub, "current_period_end"))
    if cpe:
        return cpe

    item = _first_item(sub)
    cpe = _to_utc_dt_from_unix(get_field(item, "current_period_end"))
    if cpe:
        return cpe

    trial_end = _to_utc_dt_from_unix(get_field(sub, "trial_end"))
    if trial_end:
        return trial_end

    recurring = get_field(get_field(item, "price"), "recurring")
    interval = get_field(recurring, "interval")
    try:
        interval_count = int(get_field(recurring, "interval_count", 1))
    except (TypeError, ValueError):
        interval_count = 1
    start = derive_period_start(sub) or dt.datetime.now(dt.timezone.utc)
    days = {"week": 7, "month": 30, "year": 365}.get(interval or "")
    if days:
        return start + dt.timedelta(days=days * interval_count)
    return None


def derive_period_start(sub: Any) -> dt.datetime | None:
    start = _to_utc_dt_from_unix(get_field(sub, "current_period_start"))
    if start:
        return start
    return _to_utc_dt_from_unix(get_field(_first_item(sub), "current_period_start"))


@dataclass(frozen=True)
class PriceView:
    id: Optional[str]
    unit_amount: Optional[int] = None
    interval: Optional[str] = None

    @classmethod
    def parse(cls, price: Any) -> Optional["PriceView"]:
        if price is None:
            return None
        if isinstance(price, str):
            return cls(id=price)
        amount = get_field(price, "unit_amount")
        return cls(
            id=get_field(price, "id"),
            unit_amount=int(amount) if amount is not None else None,
            interval=get_field(get_field(price, "recurring"), "interval"),
        )


@dataclass(frozen=True)
class SubscriptionView:
    id: str
    customer_id: Optional[str]
    status: str
    cancel_at_period_end: bool = False
    current_period_start: Optional[dt.datetime] = None
    current_period_end: Optional[dt.datetime] = None
    price: Optional[PriceView] = None
    item_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_ended(self) -> bool:
        return self.status in ENDED_STATUSES

    @property
    def price_id(self) -> Optional[str]:
        return self.price.id if self.price else None

    @classmethod
    def parse(cls, sub: Any) -> "SubscriptionView":
        item = _first_item(sub)
        customer = get_field(sub, "customer")
        if not isinstance(customer, str):
            customer = get_field(customer, "id")
        return cls(
            id=get_field(sub, "id"),
            customer_id=customer,
            status=get_field(sub, "status", "incomplete"),
            cancel_at_period_end=bool(get_field(sub, "cancel_at_period_end", False)),
            current_period_start=derive_period_start(sub),
            current_period_end=derive_period_end(sub),
            price=PriceView.parse(get_field(item, "price")),
            item_id=get_field(item, "id"),
        )


@dataclass(frozen=True)
class CheckoutSessionView:
    id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    mode: Optional[str]
    payment_status: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)
    client_reference_id: Optional[str] = None
    url: Optional[str] = None
    created: Optional[int] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")

    @classmethod
    def parse(cls, session: Any) -> "CheckoutSessionView":
        sub = get_field(session, "subscription")
        if sub is not None and not isinstance(sub, str):
            sub = get_field(sub, "id")
        customer = get_field(session, "customer")
        if customer is not None and not isinstance(customer, str):
            customer = get_field(customer, "id")
        raw_meta = get_field(session, "metadata") or {}
        try:
            metadata = {str(k): str(v) for k, v in dict(raw_meta).items()}
        except (TypeError, ValueError):
            metadata = {}
        return cls(
            id=get_field(session, "id"),
            customer_id=customer,
            subscription_id=sub,
            mode=get_field(session, "mode"),
            payment_status=get_field(session, "payment_status"),
            metadata=metadata,
            client_reference_id=get_field(session, "client_reference_id"),
            url=get_field(session, "url"),
            created=_to_int(get_field(session, "created")),
            amount_total=_to_int(get_field(session, "amount_total")),
            currency=get_field(session, "currency"),
        )


class StripeGateway:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.api_key = settings.STRIPE_SECRET_KEY
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require(self) -> None:
        if not self.api_key:
            raise NotConfigured("Billing is not configured.")

    def _call(self, op: str, fn, **params: Any) -> Any:
        self._require()
        try:
            return fn(api_key=self.api_key, **params)
        except stripe.InvalidRequestError as e:
            log.warning("stripe.%s invalid request code=%s msg=%s", op, e.code, e.user_message)
            raise UpstreamUnavailable("billing", f"Billing request rejected: {op}", retryable=False) from e
        except stripe.StripeError as e:
            log.warning("stripe.%s failed err=%s", op, type(e).__name__)
            raise UpstreamUnavailable("billing", "Billing service is unavailable. Please retry.") from e

    def _retrieve_or_none(self, op: str, fn, object_id: str) -> Any:
        self._require()
        try:
            return fn(object_id, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                return None
            log.warning("stripe.%s invalid request code=%s", op, e.code)
            raise UpstreamUnavailable("billing", f"Billing request rejected: {op}", retryable=False) from e
        except stripe.StripeError as e:
            log.warning("stripe.%s failed err=%s", op, type(e).__name__)
            raise UpstreamUnavailable("billing", "Billing service is unavailable. Please retry.") from e

    # --- customers & checkout ---

    def create_customer(self, user_id: str, email: str | None = None) -> str:
        cust = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email or None,
            metadata={"user_id": user_id},
        )
        return get_field(cust, "id")

    def create_checkout_session(
        self,
        *,
        mode: str,
        price_id: str,
        customer_id: str | None,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        client_reference_id: str | None = None,
    ) -> CheckoutSessionView:
        payload: Dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": dict(metadata),
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if client_reference_id:
            payload["client_reference_id"] = client_reference_id
        if customer_id:
            payload["customer"] = customer_id
        if mode == "subscription":
            payload["subscription_data"] = {"metadata": dict(metadata)}
        else:
            payload["payment_intent_data"] = {"metadata": dict(metadata)}
        session = self._call("checkout.create", stripe.checkout.Session.create, **payload)
        return CheckoutSessionView.parse(session)

    def retrieve_checkout_session(self, session_id: str) -> Optional[CheckoutSessionView]:
        session = self._retrieve_or_none(
            "checkout.retrieve", stripe.checkout.Session.retrieve, session_id
        )
        return CheckoutSessionView.parse(session) if session is not None else None

    def list_checkout_sessions(self, customer_id: str, limit: int = 10) -> List[CheckoutSessionView]:
        """Most recent checkout sessions for a customer, newest first."""
        res = self._call(
            "checkout.list", stripe.checkout.Session.list, customer=customer_id, limit=limit
        )
        return [CheckoutSessionView.parse(s) for s in get_field(res, "data") or []]

    # --- subscriptions ---

    def retrieve_subscription(self, subscription_id: str) -> Optional[SubscriptionView]:
        sub = self._retrieve_or_none(
            "subscription.retrieve", stripe.Subscription.retrieve, subscription_id
        )
        return SubscriptionView.parse(sub) if sub is not None else None

    def find_active_subscription(self, customer_id: str) -> Optional[SubscriptionView]:
        """Most recent active/trialing subscription for a customer, if any."""
        res = self._call(
            "subscription.list", stripe.Subscription.list, customer=customer_id, status="all", limit=10
        )
        for sub in get_field(res, "data") or []:
            view = SubscriptionView.parse(sub)
            if view.is_active:
                return view
        return None

    def update_subscription(
        self,
        subscription_id: str,
        *,
        cancel_at_period_end: bool | None = None,
        price_id: str | None = None,
        item_id: str | None = None,
        metadata: Dict[str, str] | None = None,
    ) -> SubscriptionView:
        params: Dict[str, Any] = {}
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        if price_id:
            if not item_id:
                current = self.retrieve_subscription(subscription_id)
                item_id = current.item_id if current else None
            if not item_id:
                raise InvalidRequest("Subscription has no item to change.")
            params["items"] = [{"id": item_id, "price": price_id}]
            # plan changes take effect at the next renewal
            params["proration_behavior"] = "none"
        if metadata:
            params["metadata"] = dict(metadata)
        sub = self._call(
            "subscription.update",
            lambda **kw: stripe.Subscription.modify(subscription_id, **kw),
            **params,
        )
        return SubscriptionView.parse(sub)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        params: Dict[str, Any] = {"customer": customer_id, "return_url": return_url}
        if self.settings.STRIPE_PORTAL_CONFIGURATION_ID:
            params["configuration"] = self.settings.STRIPE_PORTAL_CONFIGURATION_ID
        ps = self._call("portal.create", stripe.billing_portal.Session.create, **params)
        return get_field(ps, "url")

    # --- webhooks ---

    def verify_event(self, payload: bytes, signature: str | None) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a plain dict."""
        if not self.webhook_secret:
            raise NotConfigured("Billing webhooks are not configured.")
        if not signature:
            raise InvalidRequest("Missing webhook signature.")
        try:
            body = payload.decode("utf-8")
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            log.warning("stripe.webhook rejected err=%s", type(e).__name__)
            raise InvalidRequest("Invalid webhook signature.") from e
        return json.loads(body)
