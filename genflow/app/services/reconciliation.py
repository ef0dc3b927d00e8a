# genflow/app/services/reconciliation.py
"""
Job reconciliation engine.

Drives a provider job from submission to a terminal stored record. Polls and
webhooks both funnel into _apply_provider_status, so whichever arrives first
wins and the other becomes a no-op through the store's merge rules.
"""
from __future__ import annotations

import hmac
import logging
import time
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote

from genflow.app.domain.errors import (
    ConfigurationMissingError,
    EmptyResultError,
    JobNotFoundError,
    ProviderCanceledError,
    ProviderFailedError,
    ReconciliationTimeoutError,
    WebhookAuthError,
)
from genflow.app.domain.models import (
    ErrorKind,
    GenerationRequest,
    JobRecord,
    JobStatus,
    ProviderStatus,
)
from genflow.app.infra.db.base import JobStore
from genflow.app.infra.providers.base import ProviderAdapter
from genflow.app.infra.providers.replicate_provider import extract_error_message
from genflow.app.services.provider_catalog import ADAPTER_DEFAULT, ProviderCatalog, ProviderSettings
from genflow.app.services.result_extraction import ExtractorRegistry, build_default_registry

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2.5
DEFAULT_MAX_ATTEMPTS = 40
DEFAULT_MAX_POLL_FAILURES = 10
WEBHOOK_PATH = "/v1/webhooks/replicate"

FAILED_MESSAGE = "Generation failed at the provider."
CANCELED_MESSAGE = "Generation was canceled by the provider."
EMPTY_RESULT_MESSAGE = "Provider reported success but returned no usable media."

_STATUS_MAP: dict[str, JobStatus] = {
    "starting": JobStatus.STARTING,
    "processing": JobStatus.PROCESSING,
    "pending": JobStatus.PROCESSING,
    "running": JobStatus.PROCESSING,
    "queued": JobStatus.QUEUED,
    "succeeded": JobStatus.SUCCEEDED,
    "successful": JobStatus.SUCCEEDED,
    "completed": JobStatus.SUCCEEDED,
    "failed": JobStatus.FAILED,
    "error": JobStatus.FAILED,
    "canceled": JobStatus.CANCELED,
    "cancelled": JobStatus.CANCELED,
}


def map_provider_status(raw: Optional[str]) -> JobStatus:
    """Map a provider status string; anything unrecognized counts as still processing."""
    normalized = (raw or "").strip().lower()
    status = _STATUS_MAP.get(normalized)
    if status is None:
        logger.debug("reconcile.unknown_status raw=%s", raw)
        return JobStatus.PROCESSING
    return status


def verify_webhook_secret(provided: Optional[str], expected: Optional[str]) -> None:
    """
    Constant-time comparison of the webhook secret.

    Raises:
        WebhookAuthError: If no secret is configured or it does not match
    """
    expected = (expected or "").strip()
    if not expected or not provided:
        raise WebhookAuthError()
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookAuthError()


def raise_for_outcome(record: JobRecord) -> JobRecord:
    """
    Convert a negative terminal record into the matching error for blocking callers.
    Non-terminal and succeeded records are returned unchanged.
    """
    if record.status == JobStatus.FAILED:
        if record.error_kind == ErrorKind.EMPTY_RESULT.value:
            raise EmptyResultError(record.id, record.error_message or EMPTY_RESULT_MESSAGE)
        raise ProviderFailedError(record.id, record.error_message or FAILED_MESSAGE)
    if record.status == JobStatus.CANCELED:
        raise ProviderCanceledError(record.id, record.error_message or CANCELED_MESSAGE)
    return record


def _error_text(error: Any, fallback: str) -> str:
    if isinstance(error, str) and error.strip():
        return error.strip()
    return extract_error_message({"error": error}, fallback)


class JobReconciler:
    """
    Submits generation requests and keeps their job records current.

    Responsibilities:
    - Fail fast on missing configuration and invalid params
    - Submit to the provider and write the initial record
    - Reconcile by poll (one pass or bounded loop) and by webhook
    - Normalize terminal output and classify failures
    """

    def __init__(
        self,
        store: JobStore,
        catalog: ProviderCatalog,
        adapters: Mapping[str, ProviderAdapter],
        extractors: Optional[ExtractorRegistry] = None,
        app_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._catalog = catalog
        self._adapters = dict(adapters)
        self._extractors = extractors or build_default_registry()
        self._app_url = (app_url or "").strip().rstrip("/")
        self._webhook_secret = (webhook_secret or "").strip()
        self._sleep = sleep

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def webhook_enabled(self) -> bool:
        return bool(self._app_url and self._webhook_secret)

    def _webhook_url(self) -> Optional[str]:
        if not self.webhook_enabled:
            return None
        return f"{self._app_url}{WEBHOOK_PATH}?secret={quote(self._webhook_secret, safe='')}"

    def _entry_for(self, record: JobRecord) -> Optional[ProviderSettings]:
        return self._catalog.lookup(record.resource, record.provider)

    def _adapter_for(self, record: JobRecord) -> ProviderAdapter:
        entry = self._entry_for(record)
        key = entry.adapter if entry else ADAPTER_DEFAULT
        adapter = self._adapters.get(key) or self._adapters.get(ADAPTER_DEFAULT)
        if adapter is None:
            raise ConfigurationMissingError([key])
        return adapter

    def budget_for(self, record: JobRecord) -> tuple[int, float]:
        """Poll attempts and interval for a job, from its provider settings."""
        entry = self._entry_for(record)
        if entry is None:
            return DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL_SECONDS
        return entry.max_attempts, entry.poll_interval_seconds

    def submit(self, request: GenerationRequest) -> JobRecord:
        """
        Validate, submit and record a generation request.

        Args:
            request: The caller's request

        Returns:
            The initial JobRecord (usually starting)

        Raises:
            ConfigurationMissingError: If the provider credentials or model are not set
            InvalidGenerationRequestError: If params cannot be normalized
            ProviderRejectedError: If the provider refuses the submission
        """
        entry = self._catalog.resolve(request.resource, request.provider)

        missing = entry.missing_configuration()
        adapter = self._adapters.get(entry.adapter)
        if adapter is None:
            missing.append(entry.adapter)
        if missing:
            raise ConfigurationMissingError(missing)

        provider_input = entry.build_input(entry, request.params, request.reference_asset)
        version = adapter.resolve_version(entry.model, entry.version)
        webhook_url = self._webhook_url()

        handle = adapter.submit(entry.model, version, provider_input, webhook_url)

        self._store.upsert(
            handle.job_id,
            {
                "caller_id": request.caller_id,
                "resource": request.resource.value,
                "provider": entry.name,
                "model": entry.model,
                "version": handle.version,
                "webhook_mode": "enabled" if webhook_url else "disabled",
                "config": entry.echo(provider_input),
            },
        )
        logger.info(
            "reconcile.submitted job=%s resource=%s provider=%s caller=%s",
            handle.job_id,
            request.resource.value,
            entry.name,
            request.caller_id,
        )

        return self._apply_provider_status(
            ProviderStatus(job_id=handle.job_id, status=handle.status, output=handle.raw_output)
        )

    def reconcile(self, job_id: str) -> JobRecord:
        """
        One poll pass. A terminal stored record is returned without calling the provider.

        Raises:
            JobNotFoundError: If the job was never recorded
            ProviderRejectedError: If the status call fails
        """
        record = self._store.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        if record.is_terminal:
            return record

        status = self._adapter_for(record).fetch_status(job_id)
        return self._apply_provider_status(status)

    def poll_until_terminal(
        self,
        job_id: str,
        max_attempts: Optional[int] = None,
        interval_seconds: Optional[float] = None,
    ) -> JobRecord:
        """
        Blocking poll loop for callers that want the final result inline.

        Raises:
            ReconciliationTimeoutError: If the job is still running after max_attempts;
                the stored record stays non-terminal
        """
        record = self._store.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)

        default_attempts, default_interval = self.budget_for(record)
        attempts = max_attempts if max_attempts is not None else default_attempts
        interval = interval_seconds if interval_seconds is not None else default_interval

        for attempt in range(1, attempts + 1):
            record = self.reconcile(job_id)
            if record.is_terminal:
                return record
            if attempt < attempts:
                self._sleep(interval)

        logger.warning("reconcile.timeout job=%s attempts=%d interval=%.1f", job_id, attempts, interval)
        raise ReconciliationTimeoutError(job_id, attempts, interval)

    def generate_and_wait(self, request: GenerationRequest) -> JobRecord:
        """Submit, wait for a terminal status and raise on a negative outcome."""
        record = self.submit(request)
        if not record.is_terminal:
            record = self.poll_until_terminal(record.id)
        return raise_for_outcome(record)

    def record_poll_failure(
        self,
        job_id: str,
        reason: str,
        max_failures: int = DEFAULT_MAX_POLL_FAILURES,
    ) -> Optional[JobRecord]:
        """
        Count a failed status call against a pending job.

        The write refreshes updated_at, which moves the job to the back of the
        pending order. At max_failures (0 disables the limit) the job is failed
        with kind provider_unreachable.
        """
        record = self._store.get(job_id)
        if record is None or record.is_terminal:
            return record

        failures = record.poll_failures + 1
        patch: dict[str, Any] = {"poll_failures": failures}
        if 0 < max_failures <= failures:
            patch.update(
                status=JobStatus.FAILED,
                error_kind=ErrorKind.PROVIDER_UNREACHABLE.value,
                error_message=f"Provider status unavailable after {failures} attempts: {reason}",
            )

        outcome = self._store.upsert(job_id, patch)
        if outcome.record.is_terminal:
            logger.warning("reconcile.gave_up job=%s failures=%d reason=%s", job_id, failures, reason)
        else:
            logger.info("reconcile.poll_failed job=%s failures=%d reason=%s", job_id, failures, reason)
        return outcome.record

    def apply_webhook(self, payload: Mapping[str, Any]) -> Optional[JobRecord]:
        """
        Apply a provider callback. Payloads without a job id are ignored.
        """
        job_id = payload.get("id") if isinstance(payload, Mapping) else None
        if not isinstance(job_id, str) or not job_id:
            logger.info("reconcile.webhook_ignored reason=missing_id")
            return None

        status = ProviderStatus(
            job_id=job_id,
            status=str(payload.get("status") or "unknown"),
            output=payload.get("output"),
            error=payload.get("error"),
            input=payload.get("input"),
        )
        return self._apply_provider_status(status)

    def _apply_provider_status(self, status: ProviderStatus) -> JobRecord:
        mapped = map_provider_status(status.status)
        existing = self._store.get(status.job_id)
        patch: dict[str, Any] = {"status": mapped}

        if mapped == JobStatus.SUCCEEDED:
            media = self._extractors.extract(
                status.output,
                existing.provider if existing else None,
                existing.resource if existing else None,
            )
            if media.has_media:
                requested = (existing.config if existing else {}).get("duration")
                patch.update(
                    media_urls=list(media.media_urls),
                    cover_urls=list(media.cover_urls),
                    duration=media.duration if media.duration is not None else requested,
                )
            else:
                patch.update(
                    status=JobStatus.FAILED,
                    error_kind=ErrorKind.EMPTY_RESULT.value,
                    error_message=EMPTY_RESULT_MESSAGE,
                )
        elif mapped == JobStatus.FAILED:
            patch.update(
                error_kind=ErrorKind.PROVIDER_FAILED.value,
                error_message=_error_text(status.error, FAILED_MESSAGE),
            )
        elif mapped == JobStatus.CANCELED:
            patch.update(
                error_kind=ErrorKind.PROVIDER_CANCELED.value,
                error_message=_error_text(status.error, CANCELED_MESSAGE),
            )

        outcome = self._store.upsert(status.job_id, patch)
        if outcome.applied and outcome.record.is_terminal:
            logger.info(
                "reconcile.terminal job=%s status=%s kind=%s",
                status.job_id,
                outcome.record.status.value,
                outcome.record.error_kind,
            )
        return outcome.record
