# genflow/app/domain/merge.py
"""
Merge discipline for job records.
Shared by every JobStore implementation so they converge identically.
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Mapping, Optional

from genflow.app.domain.models import JobRecord, JobStatus, MergeOutcome

logger = logging.getLogger(__name__)

_MERGEABLE_FIELDS = frozenset(
    f.name for f in fields(JobRecord) if f.name not in ("id", "created_at", "updated_at", "revision")
)


def _coerce_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - _MERGEABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown job record fields: {', '.join(sorted(unknown))}")

    coerced = dict(patch)
    if "status" in coerced:
        coerced["status"] = JobStatus(coerced["status"])
    for list_field in ("media_urls", "cover_urls"):
        if list_field in coerced:
            coerced[list_field] = list(coerced[list_field] or [])
    if "config" in coerced:
        coerced["config"] = dict(coerced["config"] or {})
    return coerced


def merge_job_record(
    existing: Optional[JobRecord],
    job_id: str,
    patch: Mapping[str, Any],
    now: datetime,
) -> MergeOutcome:
    """
    Merge a partial update into the current record.

    A patch that carries a status is rejected as a whole when the stored
    record is already terminal, whatever status it carries. Every other
    field is last-write-wins. updated_at is always assigned here.
    """
    changes = _coerce_patch(patch)

    if existing is not None and existing.is_terminal and "status" in changes:
        if changes["status"] != existing.status:
            logger.warning(
                "job_store.merge_rejected job=%s stored=%s incoming=%s",
                job_id,
                existing.status.value,
                changes["status"].value,
            )
        else:
            logger.debug("job_store.merge_duplicate job=%s status=%s", job_id, existing.status.value)
        return MergeOutcome(record=existing, applied=False)

    base = existing or JobRecord(id=job_id, status=JobStatus.QUEUED, created_at=now)
    merged = replace(
        base,
        **changes,
        created_at=base.created_at or now,
        updated_at=now,
        revision=base.revision + 1,
    )
    return MergeOutcome(record=merged, applied=True)
