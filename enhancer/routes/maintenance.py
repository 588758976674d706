import hmac
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from enhancer.services.container import Services, get_services

router = APIRouter()
log = logging.getLogger("routes.maintenance")


def _token_ok(request: Request, expected: str | None) -> bool:
    if not expected:
        return True
    provided = request.headers.get("authorization") or ""
    return hmac.compare_digest(provided, f"Bearer {expected}")


@router.delete("/api/cleanup")
async def cleanup(request: Request, services: Services = Depends(get_services)):
    """Retention sweep; meant for a scheduler."""
    if not _token_ok(request, services.settings.CLEANUP_API_TOKEN):
        return JSONResponse({"ok": False, "reason": "unauthorized"}, status_code=401)
    report = await services.retention.sweep()
    return report.to_public()


@router.get("/api/cleanup")
async def storage_usage(request: Request, services: Services = Depends(get_services)):
    if not _token_ok(request, services.settings.CLEANUP_API_TOKEN):
        return JSONResponse({"ok": False, "reason": "unauthorized"}, status_code=401)
    return services.retention.storage_usage()


@router.get("/healthz")
async def healthz():
    return {"ok": True}


@router.get("/api/_db/health")
async def db_health(request: Request, services: Services = Depends(get_services)):
    """Lightweight DB check. Optionally protected by X-Health-Token when HEALTH_TOKEN is set."""
    required = services.settings.HEALTH_TOKEN
    if required:
        provided = request.headers.get("x-health-token")
        if not provided or not hmac.compare_digest(provided, required):
            return JSONResponse({"ok": False}, status_code=401)
    try:
        with services.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"ok": True, "dialect": services.engine.dialect.name}
    except Exception:
        log.exception("db.health failed")
        return JSONResponse({"ok": False}, status_code=500)
