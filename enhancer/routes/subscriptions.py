from fastapi import APIRouter, Depends

from enhancer.core.auth import get_current_user
from enhancer.core.types import PlanChangeBody, ProfileResponse
from enhancer.services.container import Services, get_services
from enhancer.services.entitlements import Identity

router = APIRouter(prefix="/api/subscriptions")


@router.get("")
async def subscription_details(
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.billing.details(user)


@router.delete("")
async def cancel_subscription(
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.billing.cancel(user)


@router.post("/update")
async def change_plan(
    body: PlanChangeBody,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.billing.change_plan(user, body.tier, body.priceId)


@router.post("/sync", response_model=ProfileResponse)
async def sync_subscription(
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = services.billing.sync(user)
    return ProfileResponse(
        profile=result.profile.to_public(), verified=result.verified, warnings=result.warnings()
    )
