# genflow/app/routers/v1/webhooks.py
"""
Provider completion callbacks.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from genflow.app.config import Settings
from genflow.app.deps import get_reconciler, get_settings
from genflow.app.domain.errors import OrchestrationError
from genflow.app.routers.v1.errors import to_http_exception
from genflow.app.services.reconciliation import JobReconciler, verify_webhook_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


@router.post("/replicate")
async def replicate_webhook(
    request: Request,
    secret: Optional[str] = Query(default=None),
    reconciler: JobReconciler = Depends(get_reconciler),
    settings: Settings = Depends(get_settings),
):
    """
    Apply a Replicate prediction callback.
    The shared secret travels in the query string set at submission time.
    """
    try:
        verify_webhook_secret(secret, settings.REPLICATE_WEBHOOK_SECRET)
    except OrchestrationError as exc:
        logger.warning("webhook.unauthorized client=%s", request.client.host if request.client else None)
        raise to_http_exception(exc) from exc

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = {}

    if not isinstance(payload, dict):
        payload = {}

    try:
        record = await run_in_threadpool(reconciler.apply_webhook, payload)
    except OrchestrationError as exc:
        raise to_http_exception(exc) from exc

    return {"ok": True, "job_id": record.id if record else None, "status": record.status.value if record else None}
