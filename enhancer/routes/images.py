import logging

from fastapi import APIRouter, Depends, Request

from enhancer.core.auth import get_current_user
from enhancer.core.errors import EnhancerError, NotFound
from enhancer.core.types import EnhanceBody
from enhancer.services.container import Services, get_services
from enhancer.services.entitlements import Identity
from enhancer.services.rate_limit import enforce_limits

router = APIRouter(prefix="/api")
log = logging.getLogger("routes.images")


@router.post("/enhance")
async def enhance(
    body: EnhanceBody,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await enforce_limits(services.limiter, request, user.user_id)
    outcome = await services.orchestrator.enhance(user, body.to_request())
    return {"ok": True, **outcome.to_public()}


@router.get("/images")
async def list_images(
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    images = services.images.list_for_user(user.user_id)
    return {"images": [img.to_public() for img in images]}


@router.delete("/images/{image_id}")
async def delete_image(
    image_id: str,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    image = services.images.delete_owned(image_id, user.user_id)
    if image is None:
        raise NotFound("Image not found.")
    for url in (image.original_url, image.enhanced_url):
        try:
            await services.storage.delete(url)
        except EnhancerError as e:
            # The record is gone; the retention sweep can't see this object any more
            log.warning("images.delete storage failed image=%s err=%s", image_id, e.message)
    log.info("images.delete user=%s image=%s", user.user_id, image_id)
    return {"ok": True, "id": image_id}
