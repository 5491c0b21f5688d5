from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import PlainTextResponse

from .. import __version__
from ..config import WatcherConfig
from ..coordinator import WatchCoordinator
from ..ingress import IngressKind, get_client_ip
from ..subscriptions.connection import WebSocketConnection


logger = structlog.get_logger(__name__)

RATE_LIMITED_TEXT = "You have been rate limited"
NOT_FOUND_TEXT = "404 not found"


def create_app(
    config: WatcherConfig | None = None,
    *,
    coordinator: WatchCoordinator | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    app = FastAPI(title="ETag Watch", version=__version__)
    app.state.config = config or WatcherConfig()
    app.state.coordinator = coordinator or WatchCoordinator(app.state.config, client=client)

    trust_proxy = app.state.config.server.trust_proxy_headers

    @app.on_event("startup")
    async def startup_event() -> None:
        await app.state.coordinator.start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await app.state.coordinator.stop()

    @app.middleware("http")
    async def ingress_limit(request: Request, call_next):
        limiter = app.state.coordinator.limiter
        origin = get_client_ip(request, trust_proxy_headers=trust_proxy)
        if not limiter.admit(origin, IngressKind.HTTP):
            return PlainTextResponse(
                RATE_LIMITED_TEXT,
                status_code=429,
                headers={"Retry-After": str(limiter.retry_after(origin, IngressKind.HTTP))},
            )

        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "HTTP request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            origin=origin,
            duration_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return response

    @app.exception_handler(404)
    async def not_found(request: Request, exc: Exception) -> PlainTextResponse:
        return PlainTextResponse(NOT_FOUND_TEXT, status_code=404)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        status = app.state.coordinator.board.snapshot()
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "latest_token": status.token,
            "poller_running": status.running,
        }

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return "Server running"

    @app.websocket("/ws")
    async def subscribe(websocket: WebSocket) -> None:
        origin = get_client_ip(websocket, trust_proxy_headers=trust_proxy)
        await websocket.accept()
        await app.state.coordinator.subscriptions.serve(WebSocketConnection(websocket), origin)

    return app
