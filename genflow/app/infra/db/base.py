# genflow/app/infra/db/base.py
"""
Abstract base classes for orchestrator persistence.
These interfaces allow easy swapping between storage backends.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from genflow.app.domain.models import (
    AdmissionDecision,
    JobRecord,
    MergeOutcome,
    ProjectEvent,
    RefinementProject,
)


class JobStore(ABC):
    """
    Idempotent key-value store of job records keyed by provider job id.

    Implementations:
    - InMemoryJobStore: per-id locks, single process
    - SupabaseJobStore: compare-and-set on a revision column
    """

    @abstractmethod
    def upsert(
        self,
        job_id: str,
        patch: Mapping[str, Any],
    ) -> MergeOutcome:
        """
        Merge a partial record into the stored one, creating it if absent.

        Args:
            job_id: Provider job id used as the store key
            patch: Fields to merge (see JobRecord)

        Returns:
            MergeOutcome with the current record and whether the patch applied
        """
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[JobRecord]:
        """
        Get the current merged view of a job.

        Args:
            job_id: Provider job id

        Returns:
            The record, or None if unknown
        """
        pass

    @abstractmethod
    def list_pending(self, limit: int = 50) -> list[JobRecord]:
        """
        List non-terminal jobs, oldest update first.

        Args:
            limit: Max records to return

        Returns:
            Records still waiting for a terminal status
        """
        pass


class ProjectStore(ABC):
    """
    Persistence for refinement projects and their append-only event log.
    """

    @abstractmethod
    def create(self, project: RefinementProject) -> RefinementProject:
        """
        Insert a new project.

        Args:
            project: Project with id and initial status set

        Returns:
            The stored project (timestamps assigned)
        """
        pass

    @abstractmethod
    def get(self, project_id: str) -> Optional[RefinementProject]:
        """
        Get a project by id.

        Args:
            project_id: The project id

        Returns:
            The project, or None if not found
        """
        pass

    @abstractmethod
    def save(self, project: RefinementProject) -> RefinementProject:
        """
        Persist the project state, guarded by its revision.

        Args:
            project: Project as read plus local changes

        Returns:
            The stored project with the new revision

        Raises:
            JobStoreError: If the project changed underneath the caller
        """
        pass

    @abstractmethod
    def append_event(self, event: ProjectEvent) -> ProjectEvent:
        """
        Append an immutable event to the project's log.

        Args:
            event: The event to append

        Returns:
            The stored event (id and created_at assigned)
        """
        pass

    @abstractmethod
    def list_events(self, project_id: str) -> list[ProjectEvent]:
        """
        List a project's events in creation order.

        Args:
            project_id: The project id

        Returns:
            Events, oldest first
        """
        pass


class RateWindowStore(ABC):
    """
    Counter storage for fixed-window rate admission.
    """

    @abstractmethod
    def hit(
        self,
        key: str,
        limit: int,
        window_ms: int,
    ) -> AdmissionDecision:
        """
        Atomically count one call against the key's current window.

        Args:
            key: caller+resource key
            limit: Max admitted calls per window
            window_ms: Window length in milliseconds

        Returns:
            AdmissionDecision for this call
        """
        pass

    @abstractmethod
    def reset(self, key: Optional[str] = None) -> None:
        """
        Drop counters for a key, or for every key when None.
        """
        pass
