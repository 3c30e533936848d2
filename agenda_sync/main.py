from contextlib import asynccontextmanager
from typing import List
import logging
import time
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from agenda_sync.config.loader import (
    get_cors_origins,
    get_database_url,
    get_health_settings,
    get_host_user_ids,
    get_identity_provider_settings,
    get_long_poll_settings,
    get_realtime_settings,
    get_timer_settings,
)
from agenda_sync.data.session_repository import SessionRepository
from agenda_sync.database import create_db_engine, init_db, make_session_factory
from agenda_sync.routers import auth as auth_router
from agenda_sync.routers import realtime as realtime_router
from agenda_sync.routers import sessions as sessions_router
from agenda_sync.services.errors import SessionError
from agenda_sync.services.host_policy import HostAllowListConfig
from agenda_sync.services.identity_provider import (
    IdentityProvider,
    IdentityProviderSettings,
)
from agenda_sync.services.room_actor import RoomRegistry
from agenda_sync.services.session_machine import now_ms
from agenda_sync.services.session_store import SessionStore
from agenda_sync.utils.logging_config import setup_logging
from agenda_sync.utils.websocket_manager import WebSocketManager

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger = logging.getLogger("agenda_sync")

    engine = create_db_engine(get_database_url())
    init_db(engine)
    repository = SessionRepository(
        make_session_factory(engine),
        failure_threshold=get_health_settings()["persistence_failure_threshold"],
    )

    host_config = HostAllowListConfig.parse(get_host_user_ids())
    timer_settings = get_timer_settings()
    realtime_settings = get_realtime_settings()

    store = SessionStore(
        repository,
        host_config,
        max_extension_multiple=timer_settings["max_extension_multiple"],
        max_wait_ms=get_long_poll_settings()["max_wait_ms"],
    )
    loaded = store.load()
    app.state.session_store = store
    app.state.room_registry = RoomRegistry(
        WebSocketManager(),
        host_config,
        vote_batch_window_ms=realtime_settings["vote_batch_window_ms"],
        allow_host_key_fallback=realtime_settings["allow_host_key_fallback"],
        max_extension_multiple=timer_settings["max_extension_multiple"],
    )
    app.state.identity_provider = IdentityProvider(
        IdentityProviderSettings.from_config(get_identity_provider_settings())
    )
    logger.info(
        "Service started: sessions_loaded=%s host_ids=%s allow_all=%s",
        loaded,
        len(host_config.host_ids),
        host_config.allow_all,
    )
    yield
    await app.state.room_registry.shutdown()
    engine.dispose()
    logger.info("Service shutdown.")


app = FastAPI(
    title="agenda-sync",
    description="Shared meeting agenda, timer and voting service",
    lifespan=lifespan,
)


async def audit_action_middleware(
    request: Request, call_next: RequestResponseEndpoint
) -> Response:
    method = request.method.upper()
    if method not in MUTATING_METHODS:
        return await call_next(request)

    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000

    logging.getLogger("audit").info(
        "Audit action: %s",
        {
            "method": method,
            "path": request.url.path,
            "status": response.status_code,
            "durationMs": round(duration_ms, 1),
        },
    )
    return response


app.add_middleware(BaseHTTPMiddleware, dispatch=audit_action_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router.router)
app.include_router(sessions_router.router)
app.include_router(realtime_router.router)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": code, "message": message}
    )


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    logger = logging.getLogger("agenda_sync")
    if exc.status_code >= 500:
        logger.error("Request failed: %s %s -> %s", request.method, request.url.path, exc.code)
    else:
        logger.info("Request rejected: %s %s -> %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger = logging.getLogger("agenda_sync")
    logger.error(f"Global exception: {str(exc)}\n{traceback.format_exc()}")
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "Internal Server Error. Please check logs.",
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger = logging.getLogger("agenda_sync")
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code} error: {exc.detail}")
    else:
        logger.info(f"HTTP {exc.status_code}: {exc.detail}")
    code = "not_found" if exc.status_code == 404 else "http_error"
    return _error_response(exc.status_code, code, str(exc.detail))


def _missing_fields(errors: List[dict]) -> List[str]:
    missing = []
    for err in errors:
        loc = err.get("loc") or ()
        if len(loc) < 2 or loc[0] != "body":
            continue
        value = err.get("input")
        blank = value is None or (isinstance(value, str) and not value.strip())
        if err.get("type") == "missing" or (
            blank and err.get("type") in {"string_too_short", "value_error"}
        ):
            missing.append(str(loc[-1]))
    return missing


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger = logging.getLogger("agenda_sync")
    errors = exc.errors()
    error_messages = [err["msg"] for err in errors]
    logger.info(f"Validation error on {request.url.path}: {error_messages}")

    missing = _missing_fields(errors)
    if len(missing) == 1:
        return _error_response(
            status.HTTP_400_BAD_REQUEST, f"missing_{missing[0]}", f"{missing[0]} is required"
        )
    if missing or any(tuple(err.get("loc") or ()) == ("body",) for err in errors):
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "missing_fields",
            "Required fields are missing: " + ", ".join(missing or ["body"]),
        )
    return _error_response(
        status.HTTP_400_BAD_REQUEST, "invalid_request", "; ".join(error_messages)
    )


@app.get("/health", tags=["healthcheck"])
async def health_check(request: Request):
    store: SessionStore = request.app.state.session_store
    registry: RoomRegistry = request.app.state.room_registry
    provider: IdentityProvider = request.app.state.identity_provider

    diagnostics = store.diagnostics()
    warnings = provider.settings.warnings()
    host_auth = diagnostics["hostAuth"]
    if not host_auth["configured"]:
        warnings.append("HOST_USER_IDS not configured; nobody can create sessions")
    if not diagnostics["persistence"]["ok"]:
        warnings.append("Session persistence is failing")

    return {
        "ok": bool(diagnostics["persistence"]["ok"]),
        "timestamp": now_ms(),
        "config": provider.diagnostics(),
        "hostAuth": host_auth,
        "sessions": diagnostics["sessions"],
        "persistence": diagnostics["persistence"],
        "realtime": registry.diagnostics(),
        "warnings": warnings,
    }
