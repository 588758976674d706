import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware

from enhancer.core.config import get_settings
from enhancer.core.errors import EnhancerError
from enhancer.core.logging import setup_logging
from enhancer.routes import billing, guest, images, maintenance, profile, subscriptions
from enhancer.services.container import Services, build_services

log = logging.getLogger("enhancer")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, hsts: bool = False):
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # Baseline headers
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if self.hsts:
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=63072000; includeSubDomains; preload",
            )
        return response


async def _enhancer_error(request: Request, exc: EnhancerError):
    if exc.status_code >= 500:
        log.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.reason)
    return JSONResponse({"detail": exc.to_detail()}, status_code=exc.status_code)


async def _validation_error(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        {
            "detail": {
                "reason": "invalid_request",
                "message": "The request body is invalid.",
                "errors": errors,
            }
        },
        status_code=400,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Pass prebuilt `services` to swap external clients (tests)."""
    setup_logging()
    if services is None:
        services = build_services(get_settings())
    cfg = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(
            "startup db=%s cache=%s billing=%s",
            services.engine.dialect.name,
            services.cache.backend,
            services.gateway.configured,
        )
        yield
        await services.cache.aclose()

    swagger = cfg.ENABLE_SWAGGER
    app = FastAPI(
        title="Image Enhancer",
        version="1.0",
        docs_url="/docs" if swagger else None,
        redoc_url="/redoc" if swagger else None,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(SecurityHeadersMiddleware, hsts=cfg.ENABLE_HSTS)

    app.add_exception_handler(EnhancerError, _enhancer_error)
    app.add_exception_handler(RequestValidationError, _validation_error)

    for module in (profile, images, guest, billing, subscriptions, maintenance):
        app.include_router(module.router)
    return app
