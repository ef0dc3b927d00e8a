from __future__ import annotations

import logging
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from uuid import uuid4

from supabase import Client, create_client

from genflow.app.domain.errors import JobStoreError
from genflow.app.domain.merge import merge_job_record
from genflow.app.domain.models import (
    TERMINAL_JOB_STATUSES,
    AdmissionDecision,
    CallerIdentity,
    JobRecord,
    JobStatus,
    MergeOutcome,
    ProjectEvent,
    ProjectStatus,
    RefinementProject,
)
from genflow.app.infra.db.base import JobStore, ProjectStore, RateWindowStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5
PENDING_STATUSES = [status.value for status in JobStatus if status not in TERMINAL_JOB_STATUSES]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None

    try:
        normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _safe_int(value: object, default: int = 0) -> int:
    return int(value) if value else default


def _safe_float(value: object) -> float | None:
    return float(value) if value is not None else None


def _safe_str(value: object) -> str | None:
    return str(value) if value else None


def _row_to_job(row: dict[str, Any]) -> JobRecord:
    return JobRecord(
        id=str(row["id"]),
        status=JobStatus(str(row["status"])),
        caller_id=_safe_str(row.get("caller_id")),
        resource=_safe_str(row.get("resource")),
        provider=_safe_str(row.get("provider")),
        model=_safe_str(row.get("model")),
        version=_safe_str(row.get("version")),
        webhook_mode=_safe_str(row.get("webhook_mode")),
        media_urls=list(row.get("media_urls") or []),
        cover_urls=list(row.get("cover_urls") or []),
        duration=_safe_float(row.get("duration")),
        error_message=_safe_str(row.get("error_message")),
        error_kind=_safe_str(row.get("error_kind")),
        poll_failures=_safe_int(row.get("poll_failures")),
        config=dict(row.get("config") or {}),
        created_at=_parse_datetime(row.get("created_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
        revision=_safe_int(row.get("revision")),
    )


def _job_to_row(record: JobRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "status": record.status.value,
        "caller_id": record.caller_id,
        "resource": record.resource,
        "provider": record.provider,
        "model": record.model,
        "version": record.version,
        "webhook_mode": record.webhook_mode,
        "media_urls": record.media_urls,
        "cover_urls": record.cover_urls,
        "duration": record.duration,
        "error_message": record.error_message,
        "error_kind": record.error_kind,
        "poll_failures": record.poll_failures,
        "config": record.config,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
        "revision": record.revision,
    }


def _row_to_project(row: dict[str, Any]) -> RefinementProject:
    return RefinementProject(
        id=str(row["id"]),
        owner_id=str(row.get("owner_id") or ""),
        name=str(row.get("name") or ""),
        brief=str(row.get("brief") or ""),
        status=ProjectStatus(str(row["status"])),
        current_iteration=_safe_int(row.get("current_iteration"), 1),
        max_iterations=_safe_int(row.get("max_iterations"), 3),
        tone=str(row.get("tone") or "futurista"),
        brand_colors=list(row.get("brand_colors") or []),
        last_score=_safe_float(row.get("last_score")),
        improvement_notes=list(row.get("improvement_notes") or []),
        blueprint=row.get("blueprint"),
        artifact=row.get("artifact"),
        review=row.get("review"),
        fallback_used=bool(row.get("fallback_used")),
        fallback_reasons=list(row.get("fallback_reasons") or []),
        error_message=_safe_str(row.get("error_message")),
        created_at=_parse_datetime(row.get("created_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
        revision=_safe_int(row.get("revision")),
    )


def _project_to_row(project: RefinementProject) -> dict[str, Any]:
    # progress is written for dashboards only; reads always derive it from status
    return {
        "id": project.id,
        "owner_id": project.owner_id,
        "name": project.name,
        "brief": project.brief,
        "status": project.status.value,
        "progress": project.progress,
        "current_iteration": project.current_iteration,
        "max_iterations": project.max_iterations,
        "tone": project.tone,
        "brand_colors": project.brand_colors,
        "last_score": project.last_score,
        "improvement_notes": project.improvement_notes,
        "blueprint": project.blueprint,
        "artifact": project.artifact,
        "review": project.review,
        "fallback_used": project.fallback_used,
        "fallback_reasons": project.fallback_reasons,
        "error_message": project.error_message,
        "created_at": _iso(project.created_at),
        "updated_at": _iso(project.updated_at),
        "revision": project.revision,
    }


def _row_to_event(row: dict[str, Any]) -> ProjectEvent:
    return ProjectEvent(
        id=_safe_str(row.get("id")),
        project_id=str(row["project_id"]),
        message=str(row.get("message") or ""),
        level=str(row.get("level") or "info"),
        step=_safe_str(row.get("step")),
        created_at=_parse_datetime(row.get("created_at")),
    )


def _create_supabase_client() -> Client:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
    return create_client(url, key)


class SupabaseJobStore(JobStore):
    TABLE_NAME = "generation_jobs"

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()
        logger.info("SupabaseJobStore initialized")

    def upsert(self, job_id: str, patch: Mapping[str, Any]) -> MergeOutcome:
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            existing = self.get(job_id)
            outcome = merge_job_record(existing, job_id, patch, _now_utc())
            if not outcome.applied:
                return outcome

            try:
                written = self._write(outcome.record, expected_revision=existing.revision if existing else None)
            except (ConnectionError, TimeoutError) as error:
                logger.error("Network error writing job %s: %s", job_id, error)
                raise JobStoreError("upsert", str(error)) from error

            if written is not None:
                return MergeOutcome(record=written, applied=True)

            logger.debug("job_store.cas_conflict job=%s attempt=%d", job_id, attempt)

        raise JobStoreError("upsert", f"revision conflict persisted for job {job_id}")

    def _write(self, record: JobRecord, expected_revision: int | None) -> JobRecord | None:
        row = _job_to_row(record)
        table = self._client.table(self.TABLE_NAME)

        if expected_revision is None:
            result = table.upsert(row, on_conflict="id", ignore_duplicates=True).execute()
        else:
            result = table.update(row).eq("id", record.id).eq("revision", expected_revision).execute()

        return _row_to_job(result.data[0]) if result.data else None

    def get(self, job_id: str) -> Optional[JobRecord]:
        try:
            result = self._client.table(self.TABLE_NAME).select("*").eq("id", job_id).limit(1).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting job: %s", error)
            raise JobStoreError("get", str(error)) from error

        return _row_to_job(result.data[0]) if result.data else None

    def list_pending(self, limit: int = 50) -> list[JobRecord]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .in_("status", PENDING_STATUSES)
                .order("updated_at")
                .limit(limit)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error listing pending jobs: %s", error)
            return []

        return [_row_to_job(row) for row in (result.data or [])]


class SupabaseProjectStore(ProjectStore):
    TABLE_NAME = "refinement_projects"
    EVENTS_TABLE_NAME = "refinement_project_events"

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()

    def create(self, project: RefinementProject) -> RefinementProject:
        now = _now_utc()
        stored = replace(project, created_at=project.created_at or now, updated_at=now, revision=1)

        try:
            result = self._client.table(self.TABLE_NAME).insert(_project_to_row(stored)).execute()
        except (ConnectionError, TimeoutError) as error:
            raise JobStoreError("create", str(error)) from error

        if not result.data:
            raise JobStoreError("create", f"insert returned no row for {project.id}")

        logger.info("Created refinement project: id=%s, owner=%s", stored.id, stored.owner_id)
        return _row_to_project(result.data[0])

    def get(self, project_id: str) -> Optional[RefinementProject]:
        try:
            result = self._client.table(self.TABLE_NAME).select("*").eq("id", project_id).limit(1).execute()
        except (ConnectionError, TimeoutError) as error:
            raise JobStoreError("get", str(error)) from error

        return _row_to_project(result.data[0]) if result.data else None

    def save(self, project: RefinementProject) -> RefinementProject:
        stored = replace(project, updated_at=_now_utc(), revision=project.revision + 1)

        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .update(_project_to_row(stored))
                .eq("id", project.id)
                .eq("revision", project.revision)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            raise JobStoreError("save", str(error)) from error

        if not result.data:
            raise JobStoreError("save", f"revision conflict for {project.id} at revision {project.revision}")

        return _row_to_project(result.data[0])

    def append_event(self, event: ProjectEvent) -> ProjectEvent:
        stored = replace(event, id=event.id or uuid4().hex, created_at=event.created_at or _now_utc())
        row = {
            "id": stored.id,
            "project_id": stored.project_id,
            "message": stored.message,
            "level": stored.level,
            "step": stored.step,
            "created_at": _iso(stored.created_at),
        }

        try:
            self._client.table(self.EVENTS_TABLE_NAME).insert(row).execute()
        except (ConnectionError, TimeoutError) as error:
            raise JobStoreError("append_event", str(error)) from error

        return stored

    def list_events(self, project_id: str) -> list[ProjectEvent]:
        try:
            result = (
                self._client.table(self.EVENTS_TABLE_NAME)
                .select("*")
                .eq("project_id", project_id)
                .order("created_at")
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error listing events: %s", error)
            return []

        return [_row_to_event(row) for row in (result.data or [])]


class SupabaseRateWindowStore(RateWindowStore):
    """
    Shared counters for multi-process deployments.
    The hit_rate_window RPC does the increment-and-compare in one statement.
    """

    TABLE_NAME = "rate_windows"

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()

    def hit(self, key: str, limit: int, window_ms: int) -> AdmissionDecision:
        if limit <= 0:
            return AdmissionDecision(allowed=False, retry_after_ms=max(1, window_ms), remaining=0, limit=limit)
        try:
            result = self._client.rpc(
                "hit_rate_window",
                {"p_key": key or "anonymous", "p_limit": limit, "p_window_ms": window_ms},
            ).execute()
            return self._parse_hit_result(result.data, limit)
        except Exception as error:
            # admission must never raise; an unreachable counter admits the call
            logger.warning("rate_limit.store_unavailable key=%s error=%s", key, error)
            return AdmissionDecision(allowed=True, remaining=limit, limit=limit)

    def _parse_hit_result(self, data: list | dict | None, limit: int) -> AdmissionDecision:
        if not data:
            logger.warning("rate_limit.rpc_empty, allowing by default")
            return AdmissionDecision(allowed=True, remaining=limit, limit=limit)

        parsed = data[0] if isinstance(data, list) else data
        allowed = bool(parsed.get("allowed", True))
        return AdmissionDecision(
            allowed=allowed,
            retry_after_ms=0 if allowed else max(1, int(parsed.get("retry_after_ms", 1))),
            remaining=int(parsed.get("remaining", 0)),
            limit=limit,
        )

    def reset(self, key: Optional[str] = None) -> None:
        query = self._client.table(self.TABLE_NAME).delete()
        query = query.eq("key", key) if key is not None else query.neq("key", "")
        query.execute()


class SupabaseApiKeyStore:
    """
    Read side of the api_keys table. Keys are stored as sha256 hex digests.
    """

    TABLE_NAME = "api_keys"

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()

    def find_active(self, key_hash: str) -> Optional[CallerIdentity]:
        if not key_hash:
            return None
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("id, user_id, rate_limit_tier, revoked_at")
                .eq("key_hash", key_hash)
                .is_("revoked_at", "null")
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            raise JobStoreError("api_key_lookup", str(error)) from error

        if not result.data:
            return None

        row = result.data[0]
        self._touch_last_used(str(row["id"]))
        return CallerIdentity(
            caller_id=f"key:{row['id']}",
            kind="api_key",
            tier=_safe_str(row.get("rate_limit_tier")),
        )

    def _touch_last_used(self, key_id: str) -> None:
        try:
            self._client.table(self.TABLE_NAME).update({"last_used_at": _iso(_now_utc())}).eq("id", key_id).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.warning("api_keys.touch_failed key=%s error=%s", key_id, error)
