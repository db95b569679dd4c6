from __future__ import annotations

import logging
import os
import random
import threading
import time
from typing import Callable, Optional, TypeVar

from google.api_core import exceptions as gexc

from order_engine.common.logging import log_event

T = TypeVar("T")
logger = logging.getLogger(__name__)

_init_lock = threading.Lock()

_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    gexc.Aborted,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
)


def _resolve_project_id(explicit_project_id: Optional[str] = None) -> Optional[str]:
    if explicit_project_id:
        return explicit_project_id
    return os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or None


def init_firebase_admin(*, project_id: Optional[str] = None) -> None:
    """
    Initialize Firebase Admin SDK exactly once, with Application Default Credentials.
    """
    import firebase_admin
    from firebase_admin import credentials

    if firebase_admin._apps:
        return

    with _init_lock:
        if firebase_admin._apps:
            return
        try:
            cred = credentials.ApplicationDefault()
        except Exception as e:
            raise RuntimeError(
                "Failed to load Application Default Credentials (ADC) for Firebase Admin SDK. "
                "Locally: run `gcloud auth application-default login` or set FIRESTORE_EMULATOR_HOST."
            ) from e

        options = {}
        resolved_project_id = _resolve_project_id(project_id)
        if resolved_project_id:
            options["projectId"] = resolved_project_id
        firebase_admin.initialize_app(cred, options)


def get_firestore_client(*, project_id: Optional[str] = None):
    from firebase_admin import firestore

    init_firebase_admin(project_id=project_id)
    return firestore.client()


def with_firestore_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 6,
    base_delay_s: float = 0.2,
    max_delay_s: float = 5.0,
) -> T:
    """
    Call `fn`, retrying transient Firestore errors with capped exponential
    backoff and full jitter. Permanent errors propagate on the first attempt.

    Blocking; callers on the event loop wrap it in `asyncio.to_thread`.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except _TRANSIENT_EXCEPTIONS as e:
            if attempt >= max_attempts:
                raise
            backoff_s = min(max_delay_s, base_delay_s * 2 ** (attempt - 1))
            log_event(
                logger,
                "firestore.retry",
                attempt=attempt,
                backoff_s=round(backoff_s, 3),
                error_type=type(e).__name__,
            )
            time.sleep(random.uniform(0.0, backoff_s))
    raise RuntimeError("max_attempts must be at least 1")
