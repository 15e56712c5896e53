"""FastAPI application exposing login, cluster lookup and release endpoints."""
from __future__ import annotations

import logging
from typing import Dict, Optional

import anyio
from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .allocator import Allocator
from .config import Settings
from .database import Database
from .errors import StoreFailure, WorkshopError
from .models import ClusterCredentials, Participant
from .security import SessionTokenAuth
from .sessions import SessionGate
from .stats import PoolStats, collect_stats

logger = logging.getLogger("workshop.api")


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class LogoutRequest(BaseModel):
    token: Optional[str] = None


class ClusterView(BaseModel):
    name: str
    url: str
    username: str
    password: str


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    cluster: ClusterView


class ClusterResponse(BaseModel):
    cluster: ClusterView


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


def credentials_to_view(credentials: ClusterCredentials) -> ClusterView:
    return ClusterView(
        name=credentials.name,
        url=credentials.url,
        username=credentials.username,
        password=credentials.password,
    )


def stats_to_dict(stats: PoolStats) -> Dict[str, Dict[str, int]]:
    return {
        "clusters": {
            "total": stats.clusters.total,
            "reserved": stats.clusters.reserved,
            "available": stats.clusters.available,
        },
        "demoUsers": {
            "total": stats.demo_users.total,
            "reserved": stats.demo_users.reserved,
            "available": stats.demo_users.available,
        },
        "workshopUsers": {
            "total": stats.participants.total,
            "withClusters": stats.participants.with_binding,
        },
    }


_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
}

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."


async def _add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


def _rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    # slowapi's middleware calls this handler synchronously.
    logger.warning("Rate limit exceeded for %s: %s", get_remote_address(request), exc.detail)
    return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content={"error": RATE_LIMIT_MESSAGE})


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if location:
        return f"Invalid request body: {location}: {first.get('msg', 'invalid value')}"
    return f"Invalid request body: {first.get('msg', 'invalid value')}"


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
    allocator: Allocator | None = None,
) -> FastAPI:
    if settings is None:
        settings = Settings.from_env()

    if database is None:
        database = Database(settings.database_path)
        database.initialize()

    if allocator is None:
        allocator = Allocator(database)

    gate = SessionGate(
        database,
        allocator,
        min_password_length=settings.min_password_length,
        session_ttl=settings.session_ttl,
    )
    auth = SessionTokenAuth(gate)

    app = FastAPI(
        title="Workshop Cluster Allocator",
        description="Hands out workshop clusters and demo users to participants",
        version="1.0.0",
    )
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit] if settings.rate_limit else [],
        enabled=settings.rate_limit is not None,
    )

    # Added innermost first: CORS and headers wrap every response, and the
    # limiter sees the client address resolved from proxy headers.
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxies)
    app.middleware("http")(_add_security_headers)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.database = database
    app.state.gate = gate
    app.state.limiter = limiter

    async def get_current_participant(request: Request) -> Participant:
        return await auth(request)

    @app.get("/health")
    @limiter.exempt
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/auth/login", response_model=LoginResponse)
    async def login(payload: LoginRequest) -> LoginResponse:
        result = await anyio.to_thread.run_sync(gate.login, payload.email, payload.password)
        return LoginResponse(token=result.token, cluster=credentials_to_view(result.cluster))

    @app.post("/api/auth/logout", response_model=SuccessResponse, response_model_exclude_none=True)
    async def logout(payload: LogoutRequest) -> SuccessResponse:
        await anyio.to_thread.run_sync(gate.logout, payload.token)
        return SuccessResponse()

    @app.get("/api/user/cluster", response_model=ClusterResponse)
    async def read_assigned_cluster(
        participant: Participant = Depends(get_current_participant),
    ) -> ClusterResponse:
        credentials = await anyio.to_thread.run_sync(gate.assigned_cluster, participant)
        return ClusterResponse(cluster=credentials_to_view(credentials))

    @app.get("/api/shared/cluster", response_model=ClusterResponse)
    async def read_shared_cluster(
        participant: Participant = Depends(get_current_participant),
    ) -> ClusterResponse:
        credentials = await anyio.to_thread.run_sync(gate.shared_cluster, participant)
        return ClusterResponse(cluster=credentials_to_view(credentials))

    @app.post("/api/user/release", response_model=SuccessResponse)
    async def release_cluster(
        participant: Participant = Depends(get_current_participant),
    ) -> SuccessResponse:
        await anyio.to_thread.run_sync(allocator.release, participant)
        return SuccessResponse(message="Cluster released successfully")

    @app.get("/api/admin/stats")
    async def read_stats() -> Dict[str, Dict[str, int]]:
        stats = await anyio.to_thread.run_sync(collect_stats, database)
        return stats_to_dict(stats)

    @app.exception_handler(WorkshopError)
    async def handle_workshop_error(_: Request, exc: WorkshopError) -> JSONResponse:
        if isinstance(exc, StoreFailure):
            logger.error("Store failure while handling request: %s", exc, exc_info=exc)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Internal server error"},
            )
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": _validation_message(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = "Route not found" if exc.status_code == status.HTTP_404_NOT_FOUND else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded)

    return app


__all__ = ["create_app"]
