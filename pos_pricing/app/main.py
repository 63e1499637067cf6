from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import re
import time
import uuid
from datetime import datetime, timezone
from .routers.pricing import router as pricing_router
from .config import settings
from .db import open_pool, close_pool
from .log import json_log


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    await open_pool()
    try:
        yield
    finally:
        await close_pool()


app = FastAPI(title="POS Pricing API", version=settings.api_version, lifespan=_lifespan)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"

# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. invalid enum cast: 'retail'::unit_kind
    content = {"detail": "invalid value"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


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
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


_PRICING_PATH_IDS = re.compile(r"^/pricing/(customers|orders)/(\d+)(?:/|$)")


def _pricing_log_fields(path: str, query_params) -> dict:
    # Which pricing operation ran and for whom, taken from the URL only (the body stays unread).
    if not path.startswith("/pricing/"):
        return {}
    fields = {"pricing_op": path.split("/")[2]}
    m = _PRICING_PATH_IDS.match(path)
    if m:
        fields["customer_id" if m.group(1) == "customers" else "order_id"] = int(m.group(2))
    cid = (query_params.get("cid") or "").strip()
    if cid.isdigit():
        fields["customer_id"] = int(cid)
    return fields


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)
    pricing_fields = _pricing_log_fields(path, request.query_params)

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
            **pricing_fields,
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if path != "/health":
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
            **pricing_fields,
        )
    return response

# Cashier/kiosk front-ends run on a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pricing_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "env": settings.env,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
    }
