# genflow/app/infra/providers/base.py
"""
Abstract base class for inference providers.
The reconciler only talks to providers through this interface.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from genflow.app.domain.models import ProviderJobHandle, ProviderStatus


class ProviderAdapter(ABC):
    """
    Submits jobs to a remote inference provider and reads their status.

    Implementations:
    - ReplicateProvider: Replicate predictions API over httpx
    """

    name: str = "provider"

    @abstractmethod
    def resolve_version(self, model: str, configured_version: Optional[str] = None) -> str:
        """
        Resolve the version to run for a model.

        Args:
            model: Model slug, "owner/name"
            configured_version: Explicit version from configuration, wins when set

        Returns:
            The version id

        Raises:
            ProviderRejectedError: If the provider cannot resolve it
        """
        pass

    @abstractmethod
    def submit(
        self,
        model: str,
        version: str,
        input: Mapping[str, Any],
        webhook_url: Optional[str] = None,
    ) -> ProviderJobHandle:
        """
        Create a job on the provider.

        Args:
            model: Model slug, kept for bookkeeping
            version: Resolved version id
            input: Normalized provider input
            webhook_url: Completion callback, or None to rely on polling

        Returns:
            ProviderJobHandle for the accepted job

        Raises:
            ProviderRejectedError: If the provider refuses or cannot be reached
        """
        pass

    @abstractmethod
    def fetch_status(self, job_id: str) -> ProviderStatus:
        """
        Read one status snapshot of a job.

        Args:
            job_id: Provider job id

        Returns:
            ProviderStatus with the raw provider status string

        Raises:
            ProviderRejectedError: If the status call itself fails
        """
        pass
