# genflow/app/routers/v1/generations.py
"""
Generation submission and job status routes.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from genflow.app.config import Settings
from genflow.app.deps import (
    get_caller_identity,
    get_rate_limit_service,
    get_reconciler,
    get_reconciliation_queue,
    get_settings,
)
from genflow.app.domain.errors import OrchestrationError
from genflow.app.domain.models import CallerIdentity, GenerationRequest, JobRecord, ResourceKind
from genflow.app.routers.v1.errors import to_http_exception
from genflow.app.services.rate_limit_service import RateLimitService, rate_limit_headers
from genflow.app.services.reconciliation import JobReconciler
from genflow.app.services.reconciliation_queue import ReconciliationQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Generations"])


# =============================================================================
# Request/Response Models
# =============================================================================

class GenerationBody(BaseModel):
    """
    Generation request. Provider-specific params may be sent in `params`
    or as top-level fields; top-level fields win.
    """
    model_config = ConfigDict(extra="allow")

    prompt: Optional[str] = Field(None, description="Text prompt (not used by loop ads)")
    provider: Optional[str] = Field(None, description="Provider name, e.g. veo, sora, merse, flux")
    reference_asset: Optional[str] = Field(None, description="Reference image URL")
    params: dict[str, Any] = Field(default_factory=dict, description="Provider params")

    def merged_params(self) -> dict[str, Any]:
        merged = dict(self.params)
        merged.update(self.model_extra or {})
        if self.prompt is not None:
            merged["prompt"] = self.prompt
        return merged


class JobResponse(BaseModel):
    """Current merged view of a generation job."""
    job_id: str
    status: str = Field(..., description="queued, starting, processing, succeeded, failed, canceled")
    resource: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    webhook: Optional[str] = Field(None, description="enabled or disabled")

    media_urls: list[str] = Field(default_factory=list)
    cover_urls: list[str] = Field(default_factory=list)
    primary_url: Optional[str] = None
    cover_url: Optional[str] = None
    duration: Optional[float] = None

    error: Optional[str] = None
    error_kind: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# Helper Functions
# =============================================================================

def job_to_response(record: JobRecord) -> JobResponse:
    return JobResponse(
        job_id=record.id,
        status=record.status.value,
        resource=record.resource,
        provider=record.provider,
        model=record.model,
        webhook=record.webhook_mode,
        media_urls=record.media_urls,
        cover_urls=record.cover_urls,
        primary_url=record.primary_url,
        cover_url=record.cover_url,
        duration=record.duration,
        error=record.error_message,
        error_kind=record.error_kind,
        config=record.config,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# =============================================================================
# Routes
# =============================================================================

@router.post("/generations/{resource}", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_generation(
    resource: ResourceKind,
    body: GenerationBody,
    response: Response,
    identity: CallerIdentity = Depends(get_caller_identity),
    rate_limiter: RateLimitService = Depends(get_rate_limit_service),
    reconciler: JobReconciler = Depends(get_reconciler),
    queue: ReconciliationQueue = Depends(get_reconciliation_queue),
    settings: Settings = Depends(get_settings),
):
    """
    Submit a generation job.

    Returns as soon as the provider accepted the job. Poll
    GET /v1/jobs/{job_id} (or wait for the webhook) for the result.
    """
    try:
        decision = rate_limiter.enforce(identity, resource.value)
    except OrchestrationError as exc:
        raise to_http_exception(exc) from exc
    response.headers.update(rate_limit_headers(decision, rate_limiter.window_ms))

    request = GenerationRequest(
        caller_id=identity.caller_id,
        resource=resource,
        params=body.merged_params(),
        provider=body.provider,
        reference_asset=body.reference_asset,
    )

    try:
        record = await run_in_threadpool(reconciler.submit, request)
    except OrchestrationError as exc:
        logger.warning("generation.submit_failed resource=%s caller=%s error=%s", resource.value, identity.caller_id, exc)
        raise to_http_exception(exc) from exc

    if settings.RECONCILIATION_BACKGROUND and not record.is_terminal:
        _, interval = reconciler.budget_for(record)
        await queue.enqueue(record.id, delay_seconds=interval)

    return job_to_response(record)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    wait: bool = Query(default=False, description="Block until terminal (bounded by the provider poll budget)"),
    reconciler: JobReconciler = Depends(get_reconciler),
):
    """
    Reconcile a job once and return its current state.

    With wait=true the call polls until the job is terminal and answers 504
    when the poll budget runs out; the job keeps running and can be polled again.
    """
    try:
        if wait:
            record = await run_in_threadpool(reconciler.poll_until_terminal, job_id)
        else:
            record = await run_in_threadpool(reconciler.reconcile, job_id)
    except OrchestrationError as exc:
        raise to_http_exception(exc) from exc

    return job_to_response(record)
