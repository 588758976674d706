import logging

from fastapi import APIRouter, Depends

from enhancer.core.auth import get_current_user
from enhancer.core.types import ProfileResponse
from enhancer.services.container import Services, get_services
from enhancer.services.entitlements import Identity

router = APIRouter(prefix="/api")
log = logging.getLogger("routes.profile")


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    profile = services.reconciler.resolve_profile(user.user_id)
    # Best-effort: a billing outage returns the local copy with verified=False
    result = services.reconciler.sync(profile)
    log.info(
        "/api/profile user=%s tier=%s verified=%s", user.user_id, result.profile.tier, result.verified
    )
    return ProfileResponse(
        profile=result.profile.to_public(), verified=result.verified, warnings=result.warnings()
    )
