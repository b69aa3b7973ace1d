import asyncio
from pathlib import Path
from typing import Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from miorah.api.auth import router as auth_router
from miorah.api.cart import router as cart_router
from miorah.api.categories import router as categories_router
from miorah.api.contact import router as contact_router
from miorah.api.metrics import router as metrics_router
from miorah.api.orders import router as orders_router
from miorah.api.products import router as products_router
from miorah.api.security import router as security_router
from miorah.api.users import router as users_router
from miorah.config import get_settings
from miorah.models.schemas import format_validation_errors
from miorah.observability.logging import configure_logging
from miorah.observability.middleware import RequestContextMiddleware
from miorah.security.csrf import HEADER_NAME as CSRF_HEADER
from miorah.security.csrf import CSRFMiddleware, get_csrf_store
from miorah.security.headers import (
    BruteForceMiddleware,
    IPFilterMiddleware,
    RequestSizeLimitMiddleware,
    SecurityHeadersMiddleware,
    SecurityLoggerMiddleware,
    get_brute_force_guard,
    get_cors_origins,
)
from miorah.security.rate_limit import RateLimitExceeded, RateLimitMiddleware, get_rate_limit_store
from miorah.services.auth_service import get_token_blacklist

logger = structlog.get_logger(__name__)

RATE_LIMIT_SWEEP_SECONDS = 5 * 60
SECURITY_SWEEP_SECONDS = 15 * 60

app = FastAPI(title="Miorah Collections", version="1.0.0")

# Added innermost first; the last one added sees the request first.
app.add_middleware(CSRFMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(BruteForceMiddleware)
app.add_middleware(SecurityLoggerMiddleware)
app.add_middleware(IPFilterMiddleware)
app.add_middleware(RequestSizeLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", get_settings().auth_header_name, CSRF_HEADER],
    expose_headers=["RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset", "RateLimit-Policy", "Retry-After"],
    max_age=3600,
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(products_router)
app.include_router(categories_router)
app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(contact_router)
app.include_router(security_router)
app.include_router(metrics_router)

_background_tasks: list[asyncio.Task] = []


@app.exception_handler(RateLimitExceeded)
async def _rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return exc.to_response()


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = format_validation_errors(exc.errors())
    return JSONResponse(
        status_code=400,
        content={"msg": errors[0]["msg"] if errors else "Invalid request", "errors": errors},
    )


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Server Error"})


async def _sweep_every(interval: float, *sweepers: Callable[[], object]) -> None:
    while True:
        await asyncio.sleep(interval)
        for sweep in sweepers:
            try:
                sweep()
            except Exception:
                logger.exception("sweep_failed", sweeper=getattr(sweep, "__qualname__", repr(sweep)))


@app.on_event("startup")
async def _startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file or None)
    settings.product_upload_path.mkdir(parents=True, exist_ok=True)

    _background_tasks.append(asyncio.create_task(_sweep_every(RATE_LIMIT_SWEEP_SECONDS, get_rate_limit_store().sweep)))
    _background_tasks.append(
        asyncio.create_task(
            _sweep_every(
                SECURITY_SWEEP_SECONDS,
                get_csrf_store().sweep,
                get_token_blacklist().sweep,
                get_brute_force_guard().sweep,
            )
        )
    )
    logger.info("startup", environment=settings.environment)


@app.on_event("shutdown")
async def _shutdown() -> None:
    for task in _background_tasks:
        task.cancel()
    _background_tasks.clear()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.mount("/uploads", StaticFiles(directory=get_settings().upload_dir, check_dir=False), name="uploads")

_client_build = Path(get_settings().client_build_dir) if get_settings().client_build_dir else None
if _client_build is not None and _client_build.is_dir():
    app.mount("/", StaticFiles(directory=str(_client_build), html=True), name="client")
