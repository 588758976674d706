from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from enhancer.core.auth import get_current_user, get_optional_user
from enhancer.core.errors import InvalidRequest
from enhancer.core.types import GuestClaimBody, GuestEnhanceBody, GuestStageBody
from enhancer.services.container import Services, get_services
from enhancer.services.entitlements import Identity
from enhancer.services.rate_limit import enforce_limits

router = APIRouter(prefix="/api/guest")


@router.post("/enhance")
async def guest_enhance(
    body: GuestEnhanceBody,
    request: Request,
    user: Optional[Identity] = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    await enforce_limits(services.limiter, request, user.user_id if user else None)
    if user is not None:
        # Signed in mid-session: spend from the account, not the guest quota
        outcome = await services.orchestrator.enhance(user, body.to_request())
    else:
        identity = Identity(guest_session=body.sessionId, reported_guest_uses=body.usedCount)
        outcome = await services.orchestrator.enhance_guest(identity, body.to_request())
    return {"ok": True, **outcome.to_public()}


@router.post("/stage")
async def guest_stage(body: GuestStageBody, services: Services = Depends(get_services)):
    if body.request is None and not body.checkoutTier:
        raise InvalidRequest("Nothing to stage: send a request or a checkoutTier.")
    out: Dict[str, Any] = {}
    if body.checkoutTier:
        out.update(
            await services.guest.stage_checkout(body.sessionId, body.checkoutTier, body.checkoutPriceId)
        )
    if body.request is not None:
        out.update(await services.guest.stage(body.sessionId, body.request.to_request()))
    return out


@router.post("/claim")
async def guest_claim(
    body: GuestClaimBody,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await enforce_limits(services.limiter, request, user.user_id)
    result = await services.guest.claim(
        user, body.sessionId, body.usedCount, origin=request.headers.get("origin")
    )
    return {"ok": True, **result.to_public()}
