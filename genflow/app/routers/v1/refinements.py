# genflow/app/routers/v1/refinements.py
"""
Iterative site refinement routes.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from genflow.app.deps import get_caller_identity, get_rate_limit_service, get_refinement_controller
from genflow.app.domain.errors import OrchestrationError, ProjectNotFoundError
from genflow.app.domain.models import CallerIdentity, ProjectEvent, RefinementProject
from genflow.app.routers.v1.errors import to_http_exception
from genflow.app.services.rate_limit_service import RateLimitService, rate_limit_headers
from genflow.app.services.refinement_controller import RefinementController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/refinements", tags=["Refinements"])


# =============================================================================
# Request/Response Models
# =============================================================================

class CreateRefinementRequest(BaseModel):
    """Start a refinement project from a brief."""
    brief: str = Field(..., min_length=1, description="What the site is about")
    name: Optional[str] = Field(None, description="Project / site name")
    max_iterations: Optional[int] = Field(None, ge=1, description="Iteration budget (capped by configuration)")
    tone: Optional[str] = Field(None, description="Visual/copy tone, default futurista")
    brand_colors: List[str] = Field(default_factory=list, description="Hex colors, first is background")


class RefinementStatusResponse(BaseModel):
    project_id: str
    status: str
    progress: int = Field(..., description="0-100, derived from status")
    current_iteration: int
    max_iterations: int
    score: Optional[float] = None
    fallback_used: bool = False


class ProjectEventResponse(BaseModel):
    message: str
    level: str
    step: Optional[str] = None
    created_at: Optional[datetime] = None


class RefinementProjectResponse(RefinementStatusResponse):
    name: str
    brief: str
    tone: str
    brand_colors: List[str] = Field(default_factory=list)
    improvement_notes: List[str] = Field(default_factory=list)
    fallback_reasons: List[str] = Field(default_factory=list)
    artifact: Optional[dict[str, Any]] = None
    review: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    events: List[ProjectEventResponse] = Field(default_factory=list)


# =============================================================================
# Helper Functions
# =============================================================================

def _status_response(project: RefinementProject) -> RefinementStatusResponse:
    return RefinementStatusResponse(
        project_id=project.id,
        status=project.status.value,
        progress=project.progress,
        current_iteration=project.current_iteration,
        max_iterations=project.max_iterations,
        score=project.last_score,
        fallback_used=project.fallback_used,
    )


def _project_response(project: RefinementProject, events: list[ProjectEvent]) -> RefinementProjectResponse:
    return RefinementProjectResponse(
        **_status_response(project).model_dump(),
        name=project.name,
        brief=project.brief,
        tone=project.tone,
        brand_colors=project.brand_colors,
        improvement_notes=project.improvement_notes,
        fallback_reasons=project.fallback_reasons,
        artifact=project.artifact,
        review=project.review,
        error=project.error_message,
        created_at=project.created_at,
        updated_at=project.updated_at,
        events=[
            ProjectEventResponse(message=e.message, level=e.level, step=e.step, created_at=e.created_at)
            for e in events
        ],
    )


def _owned_project(controller: RefinementController, project_id: str, identity: CallerIdentity) -> RefinementProject:
    project = controller.get(project_id)
    if project.owner_id != identity.caller_id:
        # other callers' projects are indistinguishable from missing ones
        raise ProjectNotFoundError(project_id)
    return project


# =============================================================================
# Routes
# =============================================================================

@router.post("", response_model=RefinementStatusResponse, status_code=status.HTTP_201_CREATED)
async def create_refinement(
    request: CreateRefinementRequest,
    response: Response,
    identity: CallerIdentity = Depends(get_caller_identity),
    rate_limiter: RateLimitService = Depends(get_rate_limit_service),
    controller: RefinementController = Depends(get_refinement_controller),
):
    """
    Create a project in blueprint_pending. Call POST /{id}/advance to run iterations.
    """
    try:
        decision = rate_limiter.enforce(identity, "site")
        project = await run_in_threadpool(
            controller.start,
            request.brief,
            identity.caller_id,
            request.name,
            request.max_iterations,
            request.tone,
            request.brand_colors,
        )
    except OrchestrationError as exc:
        raise to_http_exception(exc) from exc

    response.headers.update(rate_limit_headers(decision, rate_limiter.window_ms))
    return _status_response(project)


@router.post("/{project_id}/advance", response_model=RefinementStatusResponse)
async def advance_refinement(
    project_id: str,
    identity: CallerIdentity = Depends(get_caller_identity),
    controller: RefinementController = Depends(get_refinement_controller),
):
    """
    Run one full iteration (blueprint, assets, review, decision).
    Completed and failed projects are returned unchanged.
    """
    try:
        _owned_project(controller, project_id, identity)
        project = await run_in_threadpool(controller.advance, project_id)
    except OrchestrationError as exc:
        raise to_http_exception(exc) from exc

    logger.info("refinement.advanced project=%s status=%s score=%s", project.id, project.status.value, project.last_score)
    return _status_response(project)


@router.get("/{project_id}", response_model=RefinementProjectResponse)
async def get_refinement(
    project_id: str,
    identity: CallerIdentity = Depends(get_caller_identity),
    controller: RefinementController = Depends(get_refinement_controller),
):
    try:
        project = _owned_project(controller, project_id, identity)
        events = controller.events(project_id)
    except OrchestrationError as exc:
        raise to_http_exception(exc) from exc

    return _project_response(project, events)
