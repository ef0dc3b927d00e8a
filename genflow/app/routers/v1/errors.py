# genflow/app/routers/v1/errors.py
"""
Translation of domain errors into HTTP responses.
"""
from __future__ import annotations

import math

from fastapi import HTTPException, status

from genflow.app.domain.errors import (
    AdmissionDeniedError,
    ConfigurationMissingError,
    InvalidGenerationRequestError,
    JobNotFoundError,
    JobStoreError,
    OrchestrationError,
    ProjectNotFoundError,
    ProviderRejectedError,
    ReconciliationTimeoutError,
    WebhookAuthError,
)
from genflow.app.domain.models import ErrorKind

_STATUS_BY_ERROR: list[tuple[type[OrchestrationError], int]] = [
    (AdmissionDeniedError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ConfigurationMissingError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (InvalidGenerationRequestError, status.HTTP_400_BAD_REQUEST),
    (ProviderRejectedError, status.HTTP_502_BAD_GATEWAY),
    (ReconciliationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (ProjectNotFoundError, status.HTTP_404_NOT_FOUND),
    (WebhookAuthError, status.HTTP_401_UNAUTHORIZED),
    (JobStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_exception(exc: OrchestrationError) -> HTTPException:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            code = mapped
            break

    detail: dict = {"error": str(exc)}
    headers = None

    if isinstance(exc, AdmissionDeniedError):
        detail.update(retry_after_ms=exc.retry_after_ms, limit=exc.limit)
        headers = {
            "Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000))),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
        }
    elif isinstance(exc, ConfigurationMissingError):
        detail["missing"] = exc.missing
    elif isinstance(exc, ReconciliationTimeoutError):
        detail.update(kind=ErrorKind.TIMEOUT.value, job_id=exc.job_id, attempts=exc.attempts)
    elif isinstance(exc, ProviderRejectedError):
        detail.update(provider=exc.provider, provider_status=exc.status_code)

    return HTTPException(status_code=code, detail=detail, headers=headers)
