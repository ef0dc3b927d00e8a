# genflow/app/domain/models.py
"""
Domain models for the generation orchestrator.
These are pure data structures with no infrastructure dependencies.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class ResourceKind(str, Enum):
    """Kinds of content a caller can ask a provider to generate."""
    IMAGE = "image"
    VIDEO = "video"
    SITE = "site"
    LOOP_ADS = "loop_ads"


class JobStatus(str, Enum):
    """Lifecycle of one provider job."""
    QUEUED = "queued"
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED})


class ErrorKind(str, Enum):
    """Why a job ended (or stopped being waited on) without usable output."""
    PROVIDER_FAILED = "provider_failed"
    PROVIDER_CANCELED = "provider_canceled"
    EMPTY_RESULT = "empty_result"
    PROVIDER_UNREACHABLE = "provider_unreachable"
    TIMEOUT = "timeout"


class ProjectStatus(str, Enum):
    """Status of a multi-step refinement project."""
    BLUEPRINT_PENDING = "blueprint_pending"
    BLUEPRINT_READY = "blueprint_ready"
    ASSETS_GENERATING = "assets_generating"
    ASSETS_READY = "assets_ready"
    REVIEWING = "reviewing"
    REVIEW_DONE = "review_done"
    COMPLETED = "completed"
    FAILED = "failed"


# Progress is derived from status only; it is never stored on its own.
PROGRESS_BY_STATUS: dict[ProjectStatus, int] = {
    ProjectStatus.BLUEPRINT_PENDING: 5,
    ProjectStatus.BLUEPRINT_READY: 20,
    ProjectStatus.ASSETS_GENERATING: 50,
    ProjectStatus.ASSETS_READY: 80,
    ProjectStatus.REVIEWING: 90,
    ProjectStatus.REVIEW_DONE: 95,
    ProjectStatus.COMPLETED: 100,
    ProjectStatus.FAILED: 0,
}


def progress_for(status: ProjectStatus | str | None) -> int:
    if not status:
        return 0
    try:
        return PROGRESS_BY_STATUS[ProjectStatus(status)]
    except ValueError:
        return 0


@dataclass(frozen=True)
class CallerIdentity:
    """Stable identity resolved from a credential before admission."""
    caller_id: str
    kind: str = "anonymous"  # api_key, session, anonymous
    tier: Optional[str] = None


@dataclass(frozen=True)
class GenerationRequest:
    """A caller's request, immutable once submitted."""
    caller_id: str
    resource: ResourceKind
    params: Mapping[str, Any] = field(default_factory=dict)
    provider: Optional[str] = None
    reference_asset: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))


@dataclass(frozen=True)
class ProviderJobHandle:
    """What a provider hands back when it accepts a job."""
    provider: str
    job_id: str
    version: str
    status: str = "starting"
    raw_output: Any = None


@dataclass(frozen=True)
class ProviderStatus:
    """One status snapshot of a provider job, as reported by poll or webhook."""
    job_id: str
    status: str
    output: Any = None
    error: Any = None
    input: Any = None


@dataclass(frozen=True)
class ExtractedMedia:
    """Normalized result artifacts pulled out of a provider payload."""
    media_urls: tuple[str, ...] = ()
    cover_urls: tuple[str, ...] = ()
    duration: Optional[float] = None

    @property
    def has_media(self) -> bool:
        return bool(self.media_urls)


@dataclass
class JobRecord:
    """
    Persisted view of one provider job.
    Keyed by the provider job id; written only through merges.
    """
    id: str
    status: JobStatus

    caller_id: Optional[str] = None
    resource: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    version: Optional[str] = None
    webhook_mode: Optional[str] = None

    # Normalized output
    media_urls: list[str] = field(default_factory=list)
    cover_urls: list[str] = field(default_factory=list)
    duration: Optional[float] = None

    # Failure detail
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    poll_failures: int = 0

    # Echo of the normalized request, for observability
    config: dict[str, Any] = field(default_factory=dict)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def primary_url(self) -> Optional[str]:
        return self.media_urls[0] if self.media_urls else None

    @property
    def cover_url(self) -> Optional[str]:
        return self.cover_urls[0] if self.cover_urls else None


@dataclass(frozen=True)
class MergeOutcome:
    """Result of merging a partial update into a job record."""
    record: JobRecord
    applied: bool


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of one rate admission check."""
    allowed: bool
    retry_after_ms: int = 0
    remaining: int = 0
    limit: int = 0


@dataclass
class RateWindow:
    """Fixed-window counter for one caller+resource key."""
    count: int
    window_start_ms: int
    expires_at_ms: int


@dataclass
class RefinementProject:
    """
    A multi-step generation project driven by the refinement controller.
    """
    id: str
    owner_id: str
    name: str
    brief: str
    status: ProjectStatus = ProjectStatus.BLUEPRINT_PENDING

    current_iteration: int = 1
    max_iterations: int = 3
    tone: str = "futurista"
    brand_colors: list[str] = field(default_factory=list)

    # Outcome of the latest iteration
    last_score: Optional[float] = None
    improvement_notes: list[str] = field(default_factory=list)
    blueprint: Optional[dict[str, Any]] = None
    artifact: Optional[dict[str, Any]] = None
    review: Optional[dict[str, Any]] = None

    # Degradation trail
    fallback_used: bool = False
    fallback_reasons: list[str] = field(default_factory=list)
    error_message: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    revision: int = 0

    @property
    def progress(self) -> int:
        return progress_for(self.status)

    @property
    def is_finished(self) -> bool:
        return self.status in (ProjectStatus.COMPLETED, ProjectStatus.FAILED)

    @property
    def can_iterate(self) -> bool:
        return self.current_iteration < self.max_iterations


@dataclass(frozen=True)
class ProjectEvent:
    """Append-only observability entry for a refinement project."""
    project_id: str
    message: str
    level: str = "info"  # info, warning, error
    step: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class ReviewResult:
    """Score and targeted suggestions for one built artifact."""
    score: float
    improvements: tuple[dict[str, str], ...] = ()
    notes: Optional[str] = None

    @property
    def improvement_notes(self) -> list[str]:
        notes: list[str] = []
        for item in self.improvements:
            target = item.get("target") or "site"
            fix = item.get("fix") or item.get("reason") or ""
            if fix:
                notes.append(f"{target}: {fix}")
        return notes
