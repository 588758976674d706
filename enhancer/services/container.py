"""Process-wide collaborators, built once by ``create_app`` and kept on ``app.state``."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.engine import Engine

from enhancer.adapters.inference import ReplicateInference
from enhancer.adapters.storage import SupabaseStorage
from enhancer.billing.checkout import BillingService
from enhancer.billing.gateway import StripeGateway
from enhancer.billing.webhooks import WebhookHandler
from enhancer.core.auth import TokenVerifier
from enhancer.core.config import Settings
from enhancer.data.images import ImageStore
from enhancer.data.profiles import ProfileStore
from enhancer.data.schema import init_db
from enhancer.db import build_engine
from enhancer.services.cache import KeyValueCache
from enhancer.services.enhancement import EnhancementOrchestrator
from enhancer.services.entitlements import EntitlementReconciler
from enhancer.services.guest import GuestUsageTracker
from enhancer.services.notify import Notifier
from enhancer.services.rate_limit import RateLimiter
from enhancer.services.retention import RetentionService


@dataclass
class Services:
    settings: Settings
    engine: Engine
    auth: TokenVerifier
    cache: KeyValueCache
    limiter: RateLimiter
    profiles: ProfileStore
    images: ImageStore
    gateway: StripeGateway
    storage: SupabaseStorage
    inference: ReplicateInference
    notifier: Notifier
    reconciler: EntitlementReconciler
    guest: GuestUsageTracker
    orchestrator: EnhancementOrchestrator
    webhooks: WebhookHandler
    billing: BillingService
    retention: RetentionService


def build_services(
    settings: Settings,
    *,
    engine: Optional[Engine] = None,
    gateway: Optional[StripeGateway] = None,
    storage: Optional[SupabaseStorage] = None,
    inference: Optional[ReplicateInference] = None,
    cache: Optional[KeyValueCache] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    """Wire every collaborator from `settings`. Keyword overrides replace external clients."""
    engine = engine or build_engine(settings)
    init_db(engine)
    cache = cache or KeyValueCache(settings.REDIS_URL, max_ttl_seconds=settings.GUEST_COUNTER_TTL_S)
    gateway = gateway or StripeGateway(settings)
    storage = storage or SupabaseStorage(settings)
    inference = inference or ReplicateInference(settings)
    notifier = notifier or Notifier(settings)

    profiles = ProfileStore(engine, settings.FREE_CREDITS)
    images = ImageStore(engine)
    guest = GuestUsageTracker(cache, profiles, settings)
    reconciler = EntitlementReconciler(profiles, images, gateway, settings, guest=guest)
    orchestrator = EnhancementOrchestrator(
        reconciler, images, storage, inference, settings, guest=guest
    )
    webhooks = WebhookHandler(profiles, reconciler, gateway, settings)
    billing = BillingService(profiles, reconciler, gateway, webhooks, settings)
    # claim() resumes staged requests and pending checkouts for the new account
    guest.orchestrator = orchestrator
    guest.billing = billing

    return Services(
        settings=settings,
        engine=engine,
        auth=TokenVerifier(settings),
        cache=cache,
        limiter=RateLimiter(cache, settings.USER_RL_PER_MIN, settings.IP_RL_PER_MIN),
        profiles=profiles,
        images=images,
        gateway=gateway,
        storage=storage,
        inference=inference,
        notifier=notifier,
        reconciler=reconciler,
        guest=guest,
        orchestrator=orchestrator,
        webhooks=webhooks,
        billing=billing,
        retention=RetentionService(images, storage, notifier, settings),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
