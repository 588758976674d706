import base64
import dataclasses
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, List

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from enhancer.adapters.inference import InferenceResult, InferenceTimeout, ReplicateInference
from enhancer.adapters.storage import SupabaseStorage
from enhancer.billing.gateway import CheckoutSessionView, PriceView, StripeGateway, SubscriptionView
from enhancer.core.config import Settings
from enhancer.core.errors import UpstreamUnavailable
from enhancer.main import create_app
from enhancer.services.cache import KeyValueCache
from enhancer.services.container import build_services
from enhancer.services.notify import Notifier

JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"
WEBHOOK_SECRET = "whsec_test_secret"
PACK_PRICE = "price_test_credit_pack"
PPI_PRICE = "price_test_pay_per_image"

# Current price ids from the static table
WEEKLY_PRICE = "price_1SUw6GJtYXMzJCdNZ5NTI75B"
PREMIER_MONTHLY_PRICE = "price_1SUw74JtYXMzJCdNdo7CymJs"
PREMIER_YEARLY_PRICE = "price_1SUwZsJtYXMzJCdNuoGh5VrV"

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(PNG).decode()
ENHANCED_PNG = b"\x89PNG\r\n\x1a\n" + b"\x01" * 48


class FakeStorage(SupabaseStorage):
    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.objects: Dict[str, Any] = {}
        self.deleted: List[str] = []
        self.fail_uploads = False

    async def upload(self, path, data, content_type="image/png"):
        if self.fail_uploads:
            raise UpstreamUnavailable("storage", "Storage is unavailable. Please retry.")
        self.objects[path] = (data, content_type)
        return self.public_url(path)

    async def delete(self, url):
        path = self.path_from_url(url)
        if path is None:
            return False
        self.objects.pop(path, None)
        self.deleted.append(path)
        return True


class FakeInference(ReplicateInference):
    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.calls: List[str] = []
        self.time_out = False

    async def enhance(self, image_url, model="gfpgan"):
        self.calls.append(image_url)
        if self.time_out:
            raise InferenceTimeout("pred_slow", self.max_attempts)
        return InferenceResult("pred_1", "https://replicate.delivery/out/enhanced.png", model)

    async def fetch_artifact(self, url):
        return ENHANCED_PNG, "image/png"


class FakeGateway(StripeGateway):
    """In-memory billing platform. Webhook signature verification is the real one."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.subscriptions: Dict[str, SubscriptionView] = {}
        self.sessions: Dict[str, CheckoutSessionView] = {}
        self.created_sessions: List[Dict[str, Any]] = []
        self.updates: List[Dict[str, Any]] = []
        self.down = False
        self._seq = 0

    def _next(self) -> int:
        if self.down:
            raise UpstreamUnavailable("billing", "Billing service is unavailable. Please retry.")
        self._seq += 1
        return self._seq

    def create_customer(self, user_id, email=None):
        return f"cus_{self._next()}"

    def create_checkout_session(
        self, *, mode, price_id, customer_id, metadata, success_url, cancel_url, client_reference_id=None
    ):
        n = self._next()
        session = CheckoutSessionView(
            id=f"cs_test_{n}",
            customer_id=customer_id,
            subscription_id=None,
            mode=mode,
            payment_status="unpaid",
            metadata=dict(metadata),
            client_reference_id=client_reference_id,
            url=f"https://checkout.stripe.test/c/{n}",
            created=int(time.time()),
        )
        self.sessions[session.id] = session
        self.created_sessions.append(
            {"mode": mode, "price_id": price_id, "success_url": success_url, "session": session}
        )
        return session

    def retrieve_checkout_session(self, session_id):
        self._next()
        return self.sessions.get(session_id)

    def list_checkout_sessions(self, customer_id, limit=10):
        self._next()
        mine = [s for s in self.sessions.values() if s.customer_id == customer_id]
        return sorted(mine, key=lambda s: s.created or 0, reverse=True)[:limit]

    def retrieve_subscription(self, subscription_id):
        self._next()
        return self.subscriptions.get(subscription_id)

    def find_active_subscription(self, customer_id):
        self._next()
        for sub in self.subscriptions.values():
            if sub.customer_id == customer_id and sub.is_active:
                return sub
        return None

    def update_subscription(
        self, subscription_id, *, cancel_at_period_end=None, price_id=None, item_id=None, metadata=None
    ):
        self._next()
        sub = self.subscriptions[subscription_id]
        changes: Dict[str, Any] = {}
        if cancel_at_period_end is not None:
            changes["cancel_at_period_end"] = cancel_at_period_end
        if price_id:
            changes["price"] = PriceView(price_id)
        sub = dataclasses.replace(sub, **changes)
        self.subscriptions[subscription_id] = sub
        self.updates.append({"id": subscription_id, "price_id": price_id, **changes})
        return sub

    def create_portal_session(self, customer_id, return_url):
        self._next()
        return f"https://billing.stripe.test/p/{customer_id}"


def make_sub(
    sub_id="sub_1",
    customer="cus_1",
    price_id=WEEKLY_PRICE,
    status="active",
    cancel=False,
    amount=None,
    interval=None,
) -> SubscriptionView:
    return SubscriptionView(
        id=sub_id,
        customer_id=customer,
        status=status,
        cancel_at_period_end=cancel,
        price=PriceView(price_id, amount, interval),
        item_id=f"si_{sub_id}",
    )


def subscription_object(
    sub_id="sub_1",
    customer="cus_1",
    price_id=WEEKLY_PRICE,
    status="active",
    cancel=False,
    period_end=1790000000,
    metadata=None,
) -> Dict[str, Any]:
    """A subscription as it appears inside a webhook event."""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel,
        "current_period_start": period_end - 30 * 86400,
        "current_period_end": period_end,
        "metadata": metadata or {},
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{sub_id}",
                    "price": {"id": price_id, "recurring": {"interval": "month"}},
                }
            ],
        },
    }


def checkout_object(
    session_id="cs_test_1",
    user_id="u1",
    tier="premier_monthly",
    mode="subscription",
    payment_status="paid",
    customer="cus_1",
    subscription="sub_1",
) -> Dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": mode,
        "payment_status": payment_status,
        "customer": customer,
        "subscription": subscription if mode == "subscription" else None,
        "client_reference_id": user_id,
        "metadata": {"userId": user_id, "tier": tier},
    }


def make_event(etype: str, obj: Dict[str, Any], event_id=None, previous=None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"object": obj}
    if previous is not None:
        data["previous_attributes"] = previous
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": etype,
        "data": data,
    }


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, ts: int | None = None) -> str:
    ts = ts or int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def signed(event: Dict[str, Any]):
    payload = json.dumps(event).encode()
    return payload, {"stripe-signature": sign(payload), "content-type": "application/json"}


def token_for(user_id: str, email: str | None = None, ttl: int = 3600) -> str:
    claims = {"sub": user_id, "exp": int(time.time()) + ttl}
    if email:
        claims["email"] = email
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


def auth(user_id: str, email: str | None = None) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user_id, email)}"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'enhancer.db'}",
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_CREDIT_PACK_PRICE_ID=PACK_PRICE,
        STRIPE_PAY_PER_IMAGE_PRICE_ID=PPI_PRICE,
        PUBLIC_BASE_URL="https://enhance.example.com",
        AUTH_JWT_SECRET=JWT_SECRET,
        REPLICATE_API_TOKEN="r8_test",
        INFERENCE_POLL_INTERVAL_S=0,
        INFERENCE_MAX_ATTEMPTS=3,
        SUPABASE_URL="https://proj.supabase.co",
        SUPABASE_SERVICE_ROLE_KEY="service-role-key",
        CLEANUP_API_TOKEN="cleanup-token",
    )


@pytest.fixture
def gateway(settings):
    return FakeGateway(settings)


@pytest.fixture
def storage(settings):
    return FakeStorage(settings)


@pytest.fixture
def inference(settings):
    return FakeInference(settings)


@pytest.fixture
def services(settings, gateway, storage, inference, tmp_path):
    return build_services(
        settings,
        gateway=gateway,
        storage=storage,
        inference=inference,
        cache=KeyValueCache(None),
        notifier=Notifier(settings, outbox_dir=str(tmp_path / "outbox")),
    )


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
