import logging
import os
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from campus.api.admin import router as admin_router
from campus.api.audit_logs import router as audit_logs_router
from campus.api.auth import router as auth_router
from campus.api.lost_found import router as lost_found_router
from campus.api.marketplace import router as marketplace_router
from campus.api.news import router as news_router
from campus.api.notifications import router as notifications_router
from campus.api.profile import router as profile_router
from campus.core.api_response import error_response_payload, get_request_id, success_response_payload
from campus.core.audit import AuditRecorder, audit_requests, pending_audit_task
from campus.core.bootstrap import SuperadminSettings, ensure_superadmin
from campus.core.errors import AppError
from campus.core.metrics import increment_counter, prometheus_text, snapshot_metrics
from campus.core.security import require_permission
from campus.db.models.user import User
from campus.db.session import SessionLocal
from campus.services import files

logger = logging.getLogger(__name__)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

APP_ENV = os.getenv("APP_ENV", "production").strip().lower()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(_: FastAPI):
    files.listing_dir().mkdir(parents=True, exist_ok=True)
    db = SessionLocal()
    try:
        ensure_superadmin(db, SuperadminSettings.from_env())
    finally:
        db.close()
    yield


app = FastAPI(title="Campus API", lifespan=lifespan)
app.state.audit_recorder = AuditRecorder(SessionLocal)

app.include_router(auth_router)
app.include_router(profile_router)
app.include_router(admin_router)
app.include_router(audit_logs_router)
app.include_router(marketplace_router)
app.include_router(lost_found_router)
app.include_router(news_router)
app.include_router(notifications_router)
app.mount("/uploads", StaticFiles(directory=files.UPLOAD_DIR, check_dir=False), name="uploads")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Registered before request_context_middleware, so it runs inside it and sees request_id.
app.middleware("http")(audit_requests)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started_at) * 1000
    response.headers["X-Request-ID"] = request_id
    if request.url.path not in {"/metrics", "/metrics/prometheus"}:
        increment_counter(
            "http_requests_total",
            method=request.method.upper(),
            status=str(response.status_code),
        )
    logger.info(
        "http_request request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


def _count_error(request: Request, status_code: int) -> None:
    increment_counter(
        "http_errors_total",
        code=str(status_code),
        method=request.method.upper(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    _count_error(request, exc.status_code)
    if exc.status_code >= 500:
        logger.error("app_error request_id=%s code=%s message=%s", get_request_id(request), exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response_payload(request, code=exc.code, message=exc.message, errors=exc.errors),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request failed"
    _count_error(request, exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response_payload(request, code=f"http_{exc.status_code}", message=message),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    _count_error(request, 400)
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_response_payload(
            request,
            code="validation_error",
            message=errors[0]["message"] if errors else "Validation error",
            errors=errors,
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _count_error(request, 500)
    logger.exception("Unhandled error request_id=%s", get_request_id(request), exc_info=exc)
    message = f"Internal server error: {exc}" if APP_ENV == "development" else "Internal server error"
    return JSONResponse(
        status_code=500,
        content=error_response_payload(request, code="internal_error", message=message),
        background=pending_audit_task(request),
    )


@app.get("/health")
def health(request: Request):
    return {"ok": True, "status": "ok", "request_id": get_request_id(request)}


@app.get("/metrics")
def metrics(request: Request, _: User = Depends(require_permission("metrics.view"))):
    return success_response_payload(request, data={"counters": snapshot_metrics()})


@app.get("/metrics/prometheus")
def metrics_prometheus(_: User = Depends(require_permission("metrics.view"))):
    return PlainTextResponse(content=prometheus_text(), media_type="text/plain; version=0.0.4; charset=utf-8")
