"""
JSON-line logging for the engine, with request and order correlation.

Every line carries service/env/version plus the `request_id` and `order_id`
bound in the current context, so a single order can be followed from the
WebSocket handler through the worker that executes it.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional


_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_ORDER_ID: ContextVar[Optional[str]] = ContextVar("order_id", default=None)

_CORE_FIELDS = ("service", "env", "version", "request_id", "order_id", "event_type", "severity", "message", "timestamp")

# Attributes every LogRecord has; anything else on a record came from `extra=`.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | frozenset({"message", "asctime", "taskName", *_CORE_FIELDS})

_SEVERITIES = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_SEVERITY_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def _clean_text(v: Any, *, max_len: int = 2000) -> str:
    s = "" if v is None else str(v)
    s = " ".join(s.splitlines()).strip()
    return s if len(s) <= max_len else s[: max_len - 1] + "…"


def _first_env(*names: str, default: str) -> str:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return _clean_text(value, max_len=128)
    return default


def _severity(level: str | int | None) -> str:
    if isinstance(level, int):
        level = logging.getLevelName(level)
    s = str(level or "INFO").strip().upper()
    s = _SEVERITY_ALIASES.get(s, s)
    return s if s in _SEVERITIES else "INFO"


def default_service_name() -> str:
    return _first_env("SERVICE_NAME", "SERVICE", default="order-engine")


def default_env_name() -> str:
    return _first_env("ENVIRONMENT", "ENV", "APP_ENV", default="unknown")


def default_version() -> str:
    return _first_env("APP_VERSION", "VERSION", "GIT_SHA", default="unknown")


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def get_order_id() -> Optional[str]:
    return _ORDER_ID.get()


@contextmanager
def bind_request_id(*, request_id: str | None = None) -> Iterator[str]:
    rid = _clean_text(request_id, max_len=128) or uuid.uuid4().hex
    token = _REQUEST_ID.set(rid)
    try:
        yield rid
    finally:
        _REQUEST_ID.reset(token)


@contextmanager
def bind_order_id(order_id: str) -> Iterator[str]:
    """
    Tag every log line emitted inside the block with `order_id`.

    ContextVars are copied per asyncio task, so concurrent pipelines never see
    each other's id.
    """
    oid = _clean_text(order_id, max_len=128)
    token = _ORDER_ID.set(oid or None)
    try:
        yield oid
    finally:
        _ORDER_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str | None = None, env: str | None = None, version: str | None = None) -> None:
        super().__init__()
        self._service = _clean_text(service, max_len=128) or default_service_name()
        self._env = _clean_text(env, max_len=64) or default_env_name()
        self._version = _clean_text(version, max_len=128) or default_version()

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (format required by logging)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "severity": _severity(getattr(record, "severity", None) or record.levelname),
            "service": getattr(record, "service", None) or self._service,
            "env": self._env,
            "version": self._version,
            "request_id": getattr(record, "request_id", None) or get_request_id(),
            "order_id": getattr(record, "order_id", None) or get_order_id(),
            "event_type": getattr(record, "event_type", None) or "log",
            "message": _clean_text(record.getMessage(), max_len=4000),
            "logger": record.name,
        }
        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]
        elif record.stack_info:
            payload["stack"] = _clean_text(record.stack_info, max_len=8000)

        payload.update(
            (k, v) for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS and not k.startswith("_")
        )
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    version: str | None = None,
    level: str | int | None = None,
) -> None:
    """Route all stdlib logging (uvicorn included) to one JSON handler on stdout. Last call wins."""
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, version=version))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    logging.captureWarnings(True)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    exc_info: Any = None,
    **fields: Any,
) -> None:
    """Log a semantic event; `event_type` is the stable key dashboards filter on."""
    logger.log(
        logging.getLevelName(_severity(severity)),
        message or event_type,
        exc_info=exc_info,
        extra={"event_type": event_type, **fields},
    )


def install_fastapi_request_id_middleware(app: Any, *, service: str | None = None) -> None:
    """Echo or mint `X-Request-ID`, bind it for the request, and log one `http.request` line."""
    from starlette.requests import Request  # noqa: WPS433

    http_logger = logging.getLogger("http")
    svc = _clean_text(service, max_len=128) or default_service_name()

    @app.middleware("http")
    async def _request_id_mw(request: Request, call_next):
        start = time.perf_counter()
        status_code = 500
        with bind_request_id(request_id=request.headers.get("x-request-id")) as rid:
            try:
                resp = await call_next(request)
                status_code = resp.status_code
            finally:
                log_event(
                    http_logger,
                    "http.request",
                    service=svc,
                    method=request.method,
                    path=request.url.path,
                    status_code=status_code,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                )
        resp.headers["X-Request-ID"] = rid
        return resp
