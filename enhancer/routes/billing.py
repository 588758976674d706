import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from enhancer.core.auth import get_current_user, get_optional_user
from enhancer.core.errors import InvalidRequest, NotConfigured
from enhancer.core.types import CheckoutBody, CheckoutResponse
from enhancer.services.container import Services, get_services
from enhancer.services.entitlements import Identity
from enhancer.services.rate_limit import enforce_limits

router = APIRouter(prefix="/api/billing")
log = logging.getLogger("routes.billing")


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    body: CheckoutBody,
    request: Request,
    user: Optional[Identity] = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    identity = user or Identity()
    await enforce_limits(services.limiter, request, identity.user_id)
    result = await services.billing.start_checkout(
        identity, body.tier, body.priceId, origin=request.headers.get("origin")
    )
    return CheckoutResponse(**result)


@router.get("/verify")
async def verify(
    session_id: str,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.billing.verify(user, session_id)


@router.get("/recent-payments")
async def recent_payments(
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Paid checkouts from the last 24h, for clients that lost the session id."""
    return {"sessions": services.billing.recent_payments(user)}


@router.post("/portal")
async def portal(
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    url = services.billing.portal(user, origin=request.headers.get("origin"))
    return {"url": url}


@router.post("/webhook")
async def webhook(request: Request, services: Services = Depends(get_services)):
    # Only endpoint without auth; protected by signature verification
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        result = services.webhooks.handle(payload, signature)
    except NotConfigured:
        return JSONResponse({"ok": False, "reason": "stripe_not_configured"}, status_code=400)
    except InvalidRequest:
        return JSONResponse({"ok": False, "reason": "invalid_signature"}, status_code=400)
    except Exception:
        # The event id was released; returning 500 makes the platform retry
        log.exception("stripe.webhook handler error")
        return JSONResponse({"ok": False}, status_code=500)
    return result
