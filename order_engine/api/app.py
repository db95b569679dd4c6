from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from order_engine import __version__
from order_engine.common.config import EngineConfig
from order_engine.common.errors import AppError, NotFoundError, ValidationError, get_error_message
from order_engine.common.logging import install_fastapi_request_id_middleware, log_event
from order_engine.api.schemas import parse_order_request
from order_engine.runtime import OrderEngine

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 1000
DEFAULT_PAGE_LIMIT = 50


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_frame(message: str, order_id: Optional[str] = None) -> str:
    body: dict[str, Any] = {"error": True, "message": message}
    if order_id:
        body["orderId"] = order_id
    body["timestamp"] = int(time.time() * 1000)
    return json.dumps(body, separators=(",", ":"))


def create_app(config: Optional[EngineConfig] = None, engine: Optional[OrderEngine] = None) -> FastAPI:
    """
    Build the HTTP/WebSocket app around one `OrderEngine`.

    The engine is started in the lifespan and drained on shutdown, so queued
    orders finish before storage is closed.
    """
    cfg = config or (engine.config if engine is not None else EngineConfig.from_env())
    eng = engine or OrderEngine.from_config(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await eng.start()
        app.state.engine = eng
        try:
            yield
        finally:
            await eng.stop()

    app = FastAPI(title="Order Execution Engine", version=__version__, lifespan=lifespan)
    install_fastapi_request_id_middleware(app, service=cfg.service_name)

    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        log_event(
            logger,
            "http.app_error",
            severity="WARNING" if exc.status_code < 500 else "ERROR",
            path=str(request.url.path),
            status_code=exc.status_code,
            error=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": exc.message, "statusCode": exc.status_code}},
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log_event(
            logger,
            "http.unhandled_error",
            severity="ERROR",
            path=str(request.url.path),
            error_type=type(exc).__name__,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "statusCode": 500}},
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        try:
            checks = await eng.health()
        except Exception as e:
            log_event(logger, "health.check_failed", severity="ERROR", error=get_error_message(e))
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "timestamp": _utcnow_iso(),
                    "services": {"database": "down", "cache": "down", "queue": "down"},
                },
            )
        return JSONResponse(
            status_code=200,
            content={
                "status": "healthy" if all(checks.values()) else "degraded",
                "timestamp": _utcnow_iso(),
                "services": {k: ("up" if ok else "down") for k, ok in checks.items()},
            },
        )

    @app.get("/api/orders")
    async def list_orders(
        limit: int = Query(default=DEFAULT_PAGE_LIMIT, description="Page size, capped at 1000"),
        offset: int = Query(default=0, description="Rows to skip"),
    ) -> dict[str, Any]:
        limit = min(max(int(limit), 1), MAX_PAGE_LIMIT)
        offset = max(int(offset), 0)
        orders = await eng.repository.list_orders(limit, offset)
        return {
            "orders": [o.to_dict() for o in orders],
            "pagination": {"limit": limit, "offset": offset, "count": len(orders)},
        }

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str) -> dict[str, Any]:
        oid = (order_id or "").strip()
        if not oid:
            raise ValidationError("orderId is required")
        order = await eng.cache.get(oid)
        if order is None:
            order = await eng.repository.get_order_by_id(oid)
        if order is None:
            raise NotFoundError("Order", oid)
        return order.to_dict()

    @app.websocket("/api/orders/execute")
    async def execute_orders(websocket: WebSocket) -> None:
        await websocket.accept()
        log_event(logger, "ws.connected")
        bound: list[str] = []
        try:
            # The pipeline closes the socket after `confirmed`; stop reading once it has.
            while websocket.application_state == WebSocketState.CONNECTED:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                order_id: Optional[str] = None
                try:
                    raw = frame.get("text")
                    if raw is None:
                        raise ValidationError("Request body must be a JSON text frame")
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError as e:
                        raise ValidationError("Request body must be valid JSON") from e
                    request = parse_order_request(payload)
                    order = await eng.intake.submit(request, websocket)
                    bound.append(order.id)
                except Exception as e:
                    order_id = getattr(e, "order_id", None)
                    log_event(
                        logger,
                        "ws.order_rejected",
                        severity="WARNING" if isinstance(e, ValidationError) else "ERROR",
                        order_id=order_id,
                        error=get_error_message(e),
                        error_type=type(e).__name__,
                    )
                    if websocket.application_state == WebSocketState.CONNECTED:
                        await websocket.send_text(_error_frame(get_error_message(e), order_id))
                        await websocket.close()
                    break
        except WebSocketDisconnect:
            log_event(logger, "ws.disconnected", orders=len(bound))
        finally:
            for oid in bound:
                await eng.queue.unregister_websocket(oid, websocket)

    return app
