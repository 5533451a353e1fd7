import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from slipcheck.api.v1.slips import router as slips_router
from slipcheck.api.v1.validate import router as validate_router
from slipcheck.core.config import get_settings
from slipcheck.core.dependencies import SessionLocal
from slipcheck.services.slip_service import create_audit_log
from slipcheck.utils.rate_limit import get_client_ip, get_user_agent, rate_limiter

settings = get_settings()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="slipcheck API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(validate_router, prefix="/api/v1", tags=["validation"])
app.include_router(slips_router, prefix="/api/v1", tags=["slips"])

SYSTEM_ENTITY_ID = "00000000-0000-0000-0000-000000000000"


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    headers = getattr(exc, "headers", None)
    # 5xx bodies stay generic unless explicitly enabled; 502 keeps its detail.
    if exc.status_code >= 500 and exc.status_code != 502 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"}, headers=headers)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _record_rate_limit_block(request: Request, ip: str, key: str, limit: int, window_seconds: int) -> None:
    if SessionLocal is None:
        return
    db = SessionLocal()
    try:
        create_audit_log(
            db,
            entity_type="system",
            entity_id=SYSTEM_ENTITY_ID,
            action="RATE_LIMIT_BLOCKED",
            old_value=None,
            new_value=None,
            actor_type="SYSTEM",
            actor_id=None,
            ip_address=ip,
            user_agent=get_user_agent(request),
            metadata={"path": request.url.path, "key": key, "limit": limit, "window_seconds": window_seconds},
        )
        db.commit()
    except Exception:
        logger.exception("Failed to record rate limit block")
    finally:
        db.close()


@app.middleware("http")
async def api_rate_limit_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)

    path = request.url.path
    if not path.startswith("/api/v1"):
        return await call_next(request)

    if not settings.rate_limit_api_enabled:
        return await call_next(request)

    ip = get_client_ip(request) or "unknown"
    key = f"api:ip:{ip}"
    allowed, retry_after = rate_limiter.allow(key, settings.rate_limit_api_per_min, 60)
    if not allowed:
        _record_rate_limit_block(request, ip, key, settings.rate_limit_api_per_min, 60)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too Many Requests"},
            headers={"Retry-After": str(retry_after)},
        )

    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if "Strict-Transport-Security" not in headers:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if "Content-Security-Policy" not in headers:
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"
    if request.url.path.startswith("/api/v1/slips"):
        # Slip records carry payer details.
        headers["Cache-Control"] = "no-store"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
