from __future__ import annotations

import copy
import logging
import threading
import time
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from genflow.app.domain.errors import JobStoreError
from genflow.app.domain.merge import merge_job_record
from genflow.app.domain.models import (
    AdmissionDecision,
    JobRecord,
    MergeOutcome,
    ProjectEvent,
    RateWindow,
    RefinementProject,
)
from genflow.app.infra.db.base import JobStore, ProjectStore, RateWindowStore

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class InMemoryJobStore(JobStore):
    def __init__(self, clock: Callable[[], datetime] = _now_utc):
        self._records: dict[str, JobRecord] = {}
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        self._clock = clock

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[job_id]

    def upsert(self, job_id: str, patch: Mapping[str, Any]) -> MergeOutcome:
        with self._lock_for(job_id):
            outcome = merge_job_record(self._records.get(job_id), job_id, patch, self._clock())
            if outcome.applied:
                self._records[job_id] = outcome.record
            return MergeOutcome(record=copy.deepcopy(outcome.record), applied=outcome.applied)

    def get(self, job_id: str) -> Optional[JobRecord]:
        record = self._records.get(job_id)
        return copy.deepcopy(record) if record else None

    def list_pending(self, limit: int = 50) -> list[JobRecord]:
        pending = [record for record in list(self._records.values()) if not record.is_terminal]
        pending.sort(key=lambda record: record.updated_at or record.created_at or _now_utc())
        return [copy.deepcopy(record) for record in pending[:limit]]


class InMemoryProjectStore(ProjectStore):
    def __init__(self, clock: Callable[[], datetime] = _now_utc):
        self._projects: dict[str, RefinementProject] = {}
        self._events: defaultdict[str, list[ProjectEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._clock = clock

    def create(self, project: RefinementProject) -> RefinementProject:
        now = self._clock()
        stored = replace(project, created_at=project.created_at or now, updated_at=now, revision=1)
        with self._lock:
            if stored.id in self._projects:
                raise JobStoreError("create", f"project {stored.id} already exists")
            self._projects[stored.id] = stored
        return copy.deepcopy(stored)

    def get(self, project_id: str) -> Optional[RefinementProject]:
        project = self._projects.get(project_id)
        return copy.deepcopy(project) if project else None

    def save(self, project: RefinementProject) -> RefinementProject:
        with self._lock:
            current = self._projects.get(project.id)
            if current is None:
                raise JobStoreError("save", f"project {project.id} not found")
            if current.revision != project.revision:
                raise JobStoreError(
                    "save",
                    f"revision conflict for {project.id} (stored={current.revision}, given={project.revision})",
                )
            stored = replace(project, updated_at=self._clock(), revision=project.revision + 1)
            self._projects[project.id] = stored
        return copy.deepcopy(stored)

    def append_event(self, event: ProjectEvent) -> ProjectEvent:
        stored = replace(event, id=event.id or uuid4().hex, created_at=event.created_at or self._clock())
        with self._lock:
            self._events[event.project_id].append(stored)
        return stored

    def list_events(self, project_id: str) -> list[ProjectEvent]:
        with self._lock:
            return list(self._events.get(project_id, []))


class InMemoryRateWindowStore(RateWindowStore):
    """
    Fixed-window counters in a lock-guarded map.
    The clock returns milliseconds and is injectable for tests.
    """

    def __init__(self, clock: Callable[[], int] = _monotonic_ms):
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def hit(self, key: str, limit: int, window_ms: int) -> AdmissionDecision:
        key = key or "anonymous"

        with self._lock:
            now = self._clock()
            window = self._windows.get(key)

            if window is None or now >= window.expires_at_ms:
                window = RateWindow(count=0, window_start_ms=now, expires_at_ms=now + window_ms)
                self._windows[key] = window

            if window.count >= limit:
                return AdmissionDecision(
                    allowed=False,
                    retry_after_ms=max(1, window.expires_at_ms - now),
                    remaining=0,
                    limit=limit,
                )

            window.count += 1
            return AdmissionDecision(allowed=True, remaining=max(0, limit - window.count), limit=limit)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
