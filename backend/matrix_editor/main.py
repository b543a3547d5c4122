from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Response, Request, status
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import asyncio
import logging
import os
import time
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from . import models, presence, rbac
from .auth import resolve_user
from .database import SessionLocal
from .routes import (
    auth,
    matrix_editor,
)

logger = logging.getLogger(__name__)

dsn = os.getenv("SENTRY_DSN")
if dsn:
    sentry_sdk.init(dsn=dsn, integrations=[FastApiIntegration()])

REQUEST_COUNT = Counter("request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram(
    "request_latency_seconds", "Request latency", ["endpoint"]
)

app = FastAPI(title="Matrix Editor API")

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, lambda r, e: Response("Too Many Requests", status_code=429))
if os.getenv("TESTING") != "1":
    app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    endpoint = request.url.path
    REQUEST_COUNT.labels(request.method, endpoint).inc()
    REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
    return response

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

app.include_router(auth.router)
app.include_router(matrix_editor.router)


def audit_routes():
    from fastapi.routing import APIRoute
    from .auth import get_current_user

    public_paths = {
        "/api/auth/login",
        "/api/auth/register",
        "/metrics",
    }
    for route in app.routes:
        if isinstance(route, APIRoute) and route.path.startswith("/api") and route.path not in public_paths:
            calls = [dep.call for dep in route.dependant.dependencies]
            if get_current_user not in calls:
                raise RuntimeError(f"Route {route.path} missing authentication")


audit_routes()


def _authorize_presence(token: str, matrix_id: int) -> int | None:
    db = SessionLocal()
    try:
        user = resolve_user(db, token)
        if user is None:
            return None
        matrix = db.get(models.Matrix, matrix_id)
        if matrix is None or not rbac.is_project_member(db, matrix.project_id, user):
            return None
        return user.id
    finally:
        db.close()


async def _focused_cells(registry: presence.PresenceRegistry, matrix_id: int) -> list[dict[str, int]]:
    return presence.editing_cells(await registry.sessions(matrix_id))


@app.websocket("/ws/matrices/{matrix_id}")
async def matrix_presence(websocket: WebSocket, matrix_id: int, token: str = ""):
    user_id = _authorize_presence(token, matrix_id)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    registry = presence.get_registry()
    session = await registry.register(matrix_id, user_id)
    logger.info("presence session %s opened on matrix %s by user %s", session.token, matrix_id, user_id)
    await websocket.send_json(
        {"type": "init", "client_id": session.token, "cells": await _focused_cells(registry, matrix_id)}
    )

    async def keepalive():
        while True:
            await asyncio.sleep(presence.PRESENCE_KEEPALIVE_SECONDS)
            await websocket.send_json({"type": "keepalive"})
            await registry.refresh(matrix_id, session.token)

    async def forward():
        async for event in registry.listen(session):
            await websocket.send_json(event)

    tasks = [asyncio.create_task(keepalive()), asyncio.create_task(forward())]
    try:
        while True:
            message = await websocket.receive_json()
            if message.get("type") != "EDIT_CELL":
                logger.warning("rejected presence event %r on matrix %s", message.get("type"), matrix_id)
                await websocket.send_json({"type": "error", "errors": ["Invalid type"]})
                continue
            cell = None
            if message.get("enable"):
                try:
                    cell = (int(message["taxon_id"]), int(message["character_id"]))
                except (KeyError, TypeError, ValueError):
                    logger.warning("rejected malformed EDIT_CELL event on matrix %s", matrix_id)
                    continue
            await registry.set_editing_cell(matrix_id, session.token, cell)
            await registry.broadcast(
                matrix_id,
                {"type": "EDIT_CELLS", "cells": await _focused_cells(registry, matrix_id)},
                exclude_token=session.token,
            )
    except WebSocketDisconnect:
        logger.info("presence session %s disconnected", session.token)
    finally:
        for task in tasks:
            task.cancel()
        await registry.remove(matrix_id, session.token)
        await registry.broadcast(
            matrix_id,
            {"type": "EDIT_CELLS", "cells": await _focused_cells(registry, matrix_id)},
        )
