from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.auth import router as auth_router
from .routers.users import router as users_router
from .routers.categories import router as categories_router
from .routers.products import router as products_router
from .routers.customers import router as customers_router
from .routers.suppliers import router as suppliers_router
from .routers.purchase_orders import router as purchase_orders_router
from .routers.sales import router as sales_router
from .routers.ncf_sequences import router as ncf_sequences_router
from .routers.rnc import router as rnc_router
from .routers.dgii_reports import router as dgii_reports_router
from .routers.reports import router as reports_router
from .routers.dashboard import router as dashboard_router
from .routers.analytics import router as analytics_router
from .routers.business_settings import router as business_settings_router
from .routers.receipts import router as receipts_router
from .routers.employees import router as employees_router
from .routers.delivery import router as delivery_router
from .routers.whatsapp import router as whatsapp_router
from .routers.audit import router as audit_router
from .routers.finance import router as finance_router
from .config import settings
from .db import get_conn, close_pools
from .logging_utils import json_log

SERVICE_NAME = "posrd-backend"

app = FastAPI(title="POS República Dominicana API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _db_error(status_code: int, detail: str, exc: Exception) -> JSONResponse:
    content = {"detail": detail}
    if settings.is_dev:
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. malformed uuid in a path parameter
    return _db_error(400, "Valor inválido", exc)


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return _db_error(400, "Referencia inválida", exc)


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    return _db_error(409, "Conflicto: el registro ya existe", exc)


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return _db_error(400, "Restricción violada", exc)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "Datos inválidos"}
    if settings.is_dev and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "Error interno del servidor", "request_id": rid}
    if settings.is_dev:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if not path.startswith("/health"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response

# The web front end runs on a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(categories_router)
app.include_router(products_router)
app.include_router(customers_router)
app.include_router(suppliers_router)
app.include_router(purchase_orders_router)
app.include_router(sales_router)
app.include_router(ncf_sequences_router)
app.include_router(rnc_router)
app.include_router(dgii_reports_router)
app.include_router(reports_router)
app.include_router(dashboard_router)
app.include_router(analytics_router)
app.include_router(business_settings_router)
app.include_router(receipts_router)
app.include_router(employees_router)
app.include_router(delivery_router)
app.include_router(whatsapp_router)
app.include_router(audit_router)
app.include_router(finance_router)


@app.on_event("startup")
def _startup():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.db_check_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }
    if not ok:
        if settings.is_dev:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ready" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": request_id,
    }
    if not ok:
        if settings.is_dev:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "itbis_rate": str(settings.itbis_rate),
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
