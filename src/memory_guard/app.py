"""This module contains the FastAPI application for the memory service.

It defines the write endpoint (``POST /api/post-memory``), the read endpoint
(``GET /api/get-memories``), health and version endpoints, and the security
middleware that enforces the origin policy and adds security headers. Every
write runs through the AdmissionPipeline before it reaches the store.
"""
from __future__ import annotations
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import make_asgi_app
from starlette.concurrency import run_in_threadpool

from .config import DEFAULT_CONFIG, make_config
from .errors import (
    AccessDenied,
    DatabaseError,
    GuardError,
    InternalError,
    ValidationError,
    configure_logging,
    generate_request_id,
    log_event,
    shutdown_logging,
)
from .guard import AdmissionPipeline
from .ratelimit import get_client_ip
from .store import MemoryStore, StoreError
from .validation import is_valid_content_type, is_valid_user_agent, validate_request_body

VERSION = "1.0.0"
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
PRODUCTION = os.getenv("ENVIRONMENT", "development") == "production"
LOGGING_ENDPOINT = os.getenv("LOGGING_ENDPOINT")
REQUIRE_BROWSER_UA = os.getenv("REQUIRE_BROWSER_UA", "0") == "1"

CORS_HEADERS = {
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

logger = logging.getLogger(__name__)
router = APIRouter()


def _env_list(name: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, "").split(",") if v.strip()]


def default_allowed_origins() -> List[str]:
    origins = [os.getenv("SITE_URL", "http://localhost:3000")]
    origins += ["http://localhost:3000", "http://localhost:3001"]
    origins += _env_list("ALLOWED_ORIGINS")
    return list(dict.fromkeys(origins))


def _origin_violation(request: Request, allowed: List[str]) -> Optional[str]:
    """Returns why the request breaks the origin policy, or None."""
    origin = request.headers.get("origin")
    if request.method == "POST" and not origin:
        return "Origin header required"
    if origin and origin not in allowed:
        return "CORS policy violation"
    if request.method == "POST":
        referer = request.headers.get("referer")
        if referer:
            parsed = urlparse(referer)
            if not parsed.scheme or not parsed.netloc:
                return "Invalid referer"
            if f"{parsed.scheme}://{parsed.netloc}" not in allowed:
                return "Invalid referer"
    return None


def _error_response(exc: GuardError, production: bool) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status, content=exc.to_body(production), headers=exc.headers
    )


@router.get("/health")
def health():
    """Returns the health status of the service."""
    return {"status": "ok"}


@router.get("/version")
def version():
    """Returns the version of the service."""
    return {"version": VERSION}


@router.options("/api/{path:path}")
def preflight(request: Request, path: str):
    """Answers CORS preflight requests for allowed origins."""
    origin = request.headers.get("origin")
    if origin and origin in request.app.state.allowed_origins:
        return Response(
            status_code=204,
            headers={"Access-Control-Allow-Origin": origin, **CORS_HEADERS},
        )
    return Response(status_code=403)


@router.post("/api/post-memory", status_code=201)
async def post_memory(request: Request):
    """Admits, sanitizes and stores one memory."""
    state = request.app.state
    request_id = generate_request_id()
    try:
        # Shape checks come first so unparseable input never spends rate
        # budget or lands in duplicate history.
        if not is_valid_content_type(request.headers.get("content-type")):
            raise ValidationError(
                "Content-Type must be application/json", request_id, status=415
            )
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Invalid JSON", request_id)
        memory = validate_request_body(body)

        if state.require_browser_ua and not is_valid_user_agent(
            request.headers.get("user-agent")
        ):
            raise AccessDenied("Invalid user agent", request_id)

        client_ip = get_client_ip(request.headers)
        decision = await run_in_threadpool(
            state.pipeline.admit_write, client_ip, request.url.path, memory, request_id
        )
        if not decision.allowed:
            raise decision.to_error()

        try:
            data = await run_in_threadpool(
                state.store.insert,
                {
                    "memory": decision.sanitized_text,
                    "memory_id": state.config["anonymous_user_id"],
                },
            )
        except StoreError as e:
            log_event(
                logger, logging.ERROR, "Database error",
                request_id=request_id, error_message=str(e),
            )
            raise DatabaseError("Failed to save memory", request_id)

        log_event(
            logger, logging.INFO, "Memory saved successfully",
            request_id=request_id, memory_id=data[0].get("id") if data else None,
        )
        headers = decision.rate.headers() if decision.rate else {}
        return JSONResponse(
            status_code=201,
            content={"message": "Saved", "data": data, "requestId": request_id},
            headers=headers,
        )
    except GuardError as e:
        e.request_id = e.request_id or request_id
        raise
    except Exception as e:
        log_event(
            logger, logging.ERROR, "Unhandled error in post-memory",
            request_id=request_id, error=repr(e),
        )
        raise InternalError("Internal server error", request_id) from e


@router.get("/api/get-memories")
def get_memories(request: Request):
    """Returns the newest memories."""
    state = request.app.state
    request_id = generate_request_id()
    try:
        client_ip = get_client_ip(request.headers)
        decision = state.pipeline.admit_read(client_ip, request.url.path, request_id)
        if not decision.allowed:
            raise decision.to_error()
        try:
            rows = state.store.query(state.config["query_limit"])
        except StoreError as e:
            log_event(
                logger, logging.ERROR, "Failed to fetch memories from database",
                request_id=request_id, endpoint=request.url.path, error_message=str(e),
            )
            raise DatabaseError("Fetch error", request_id)
        headers = decision.rate.headers() if decision.rate else {}
        return JSONResponse(content=rows, headers=headers)
    except GuardError:
        raise
    except Exception as e:
        log_event(
            logger, logging.ERROR, "Unhandled error in get-memories",
            request_id=request_id, error=repr(e),
        )
        raise InternalError("Internal server error", request_id) from e


def create_app(
    config: Optional[Dict[str, Any]] = None,
    store: Optional[Any] = None,
    pipeline: Optional[AdmissionPipeline] = None,
    production: Optional[bool] = None,
    allowed_origins: Optional[List[str]] = None,
    require_browser_ua: Optional[bool] = None,
) -> FastAPI:
    """Builds the application and its process-wide state.

    Args:
        config: Pipeline configuration; defaults to DEFAULT_CONFIG plus any
            ``BLOCKED_IPS`` from the environment.
        store: Persistence backend with ``insert``/``query``.
        pipeline: A prebuilt AdmissionPipeline (tests inject a clock this way).
        production: Generic error messages when True; defaults to
            ``ENVIRONMENT == "production"``.
        allowed_origins: Origins accepted by the origin policy.
        require_browser_ua: Reject writes from non-browser user agents.
    """
    if config is None:
        config = make_config(
            blocked_ips=DEFAULT_CONFIG["blocked_ips"] + _env_list("BLOCKED_IPS")
        )
    production = PRODUCTION if production is None else production

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(production, LOGGING_ENDPOINT)
        if app.state.pipeline is None:
            app.state.pipeline = AdmissionPipeline(config)
        yield
        app.state.pipeline.close()
        shutdown_logging()

    app = FastAPI(title="Memory Guard API", version=VERSION, lifespan=lifespan)
    app.state.config = config
    app.state.production = production
    # Built at startup unless injected.
    app.state.pipeline = pipeline
    app.state.store = store if store is not None else MemoryStore()
    app.state.allowed_origins = (
        allowed_origins if allowed_origins is not None else default_allowed_origins()
    )
    app.state.require_browser_ua = (
        REQUIRE_BROWSER_UA if require_browser_ua is None else require_browser_ua
    )

    @app.exception_handler(GuardError)
    async def guard_error_handler(request: Request, exc: GuardError):
        return _error_response(exc, request.app.state.production)

    @app.middleware("http")
    async def security_middleware(request: Request, call_next):
        """Applies the origin policy to /api/ and sets security headers."""
        state = request.app.state
        origin = request.headers.get("origin")
        if request.url.path.startswith("/api/"):
            if state.pipeline.is_blocked(get_client_ip(request.headers)):
                violation = "Access denied"
            else:
                violation = _origin_violation(request, state.allowed_origins)
            if violation:
                response = _error_response(
                    AccessDenied(violation, generate_request_id()), state.production
                )
                response.headers.update(SECURITY_HEADERS)
                return response
        response = await call_next(request)
        if (
            request.url.path.startswith("/api/")
            and origin
            and origin in state.allowed_origins
        ):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers.update(CORS_HEADERS)
        response.headers.update(SECURITY_HEADERS)
        return response

    app.include_router(router)
    if PROMETHEUS_ENABLED:
        app.mount("/metrics", make_asgi_app())
    return app


app = create_app()
