import json
import logging
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from core.config import get_settings
from core.contracts import API_VERSION_HEADER, ErrorCode, error_body, resolve_api_version
from core.db import Base, SessionLocal, engine
from core.deps import ACTOR_HEADER
from core.errors import ConflictError, ConsentEngineError
from core.failure_modes import failure_policy, record_operation_failure
from core.logging_utils import configure_logging, log_request, log_structured_warning, monotonic_ms, request_id_from_request
import models  # noqa: F401  registers every table on Base.metadata
from routers.contracts import router as contracts_router
from routers.health import router as health_router

settings = get_settings()
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Consent Contract Engine API",
    description=(
        "Grants, evaluates and revokes time-bounded data-access contracts between patients and requesters. "
        "Callers identify the acting user with `X-Actor-Id`; authentication is enforced upstream."
    ),
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    openapi_tags=[
        {"name": "consent", "description": "Consent contract lifecycle, access logs and audit trail."},
        {"name": "health", "description": "Operational liveness and diagnostics."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-Id", ACTOR_HEADER, API_VERSION_HEADER],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    try:
        api_version = resolve_api_version(request.headers.get(API_VERSION_HEADER))
    except ValueError as exc:
        return JSONResponse(
            status_code=400,
            content=error_body(
                ErrorCode.VALIDATION_ERROR,
                str(exc),
                request_id_from_request(request),
            ),
        )

    request_id = request_id_from_request(request)
    request.state.request_id = request_id
    request.state.api_version = api_version
    started = monotonic_ms()
    response = await call_next(request)
    if response.status_code < 400 and response.headers.get("content-type", "").startswith("application/json"):
        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        try:
            decoded = json.loads(body.decode("utf-8")) if body else None
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict) and ("data" in decoded or "error" in decoded):
            wrapped = decoded
        else:
            wrapped = {"data": decoded}
        response = JSONResponse(content=wrapped, status_code=response.status_code)
    response.headers["X-Request-Id"] = request_id
    response.headers[API_VERSION_HEADER] = api_version
    elapsed = monotonic_ms() - started
    log_request(request_id, request.method, request.url.path, response.status_code, elapsed)
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _map_http_error_code(status_code: int) -> ErrorCode:
    if status_code == 404:
        return ErrorCode.NOT_FOUND
    if status_code == 409:
        return ErrorCode.CONFLICT
    if status_code in {400, 422}:
        return ErrorCode.VALIDATION_ERROR
    if status_code == 503:
        return ErrorCode.STORE_UNAVAILABLE
    return ErrorCode.INTERNAL_ERROR


@app.exception_handler(ConsentEngineError)
async def engine_exception_handler(request: Request, exc: ConsentEngineError):
    content = error_body(exc.code, exc.message, _request_id(request))
    if isinstance(exc, ConflictError) and exc.current_status:
        content["error"]["current_status"] = exc.current_status
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.http_status, content=content, headers=headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    message = "Request could not be processed"
    if exc.status_code in {400, 404, 405, 409, 422}:
        message = str(exc.detail) if isinstance(exc.detail, str) else message
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(_map_http_error_code(exc.status_code), message, _request_id(request)),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    log_structured_warning(
        "http.validation_error",
        request_id=_request_id(request),
        method=request.method,
        path=request.url.path,
        status_code=422,
    )
    return JSONResponse(
        status_code=422,
        content=error_body(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            _request_id(request),
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    policy = failure_policy(exc)
    record_operation_failure(
        operation="http.request",
        exc=exc,
        resource_type="request",
        extra_payload={"request_id": _request_id(request)},
    )
    return JSONResponse(
        status_code=policy.http_status,
        content=error_body(
            ErrorCode.INTERNAL_ERROR,
            "Internal server error",
            _request_id(request),
        ),
    )


app.include_router(health_router)


@app.get("/")
def root():
    return {"status": "Consent Contract Engine API running"}


app.include_router(contracts_router)


def _current_alembic_heads() -> str:
    ini_path = Path(__file__).resolve().parent / "alembic.ini"
    alembic_cfg = AlembicConfig(str(ini_path))
    script = ScriptDirectory.from_config(alembic_cfg)
    return ",".join(sorted(script.get_heads()))


@app.on_event("startup")
async def on_startup() -> None:
    migration_heads = _current_alembic_heads()
    logger.info("startup env=%s version=%s migration_head=%s", settings.env, settings.app_version, migration_heads)

    if settings.expected_alembic_head and settings.expected_alembic_head != migration_heads:
        raise RuntimeError(
            f"migration head mismatch: expected {settings.expected_alembic_head}, found {migration_heads}"
        )
    if settings.env == "prod" and not settings.expected_alembic_head:
        logger.warning("EXPECTED_ALEMBIC_HEAD is not set; skipping migration-head enforcement")

    if settings.env == "dev" and settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)

    connectivity_session = SessionLocal()
    try:
        connectivity_session.execute(text("SELECT 1"))
    except Exception as exc:
        raise RuntimeError("database connectivity check failed") from exc
    finally:
        connectivity_session.close()

    if settings.notification_webhook_url:
        logger.info("notifications delivered via webhook")
    else:
        logger.warning("NOTIFICATION_WEBHOOK_URL is not set; notifications are logged only")
