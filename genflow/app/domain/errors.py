from __future__ import annotations


class OrchestrationError(Exception):
    pass


class AdmissionDeniedError(OrchestrationError):
    def __init__(self, message: str = "Rate limit exceeded", retry_after_ms: int = 0, limit: int = 0):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms
        self.limit = limit


class ConfigurationMissingError(OrchestrationError):
    def __init__(self, missing: list[str]):
        super().__init__(f"Missing configuration: {', '.join(missing)}")
        self.missing = missing


class InvalidGenerationRequestError(OrchestrationError):
    pass


class ProviderRejectedError(OrchestrationError):
    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider} rejected the request: {message}")
        self.provider = provider
        self.provider_message = message
        self.status_code = status_code


class ReconciliationTimeoutError(OrchestrationError):
    def __init__(self, job_id: str, attempts: int, interval_seconds: float):
        super().__init__(
            f"Gave up waiting for job {job_id} after {attempts} polls "
            f"({attempts * interval_seconds:.1f}s)"
        )
        self.job_id = job_id
        self.attempts = attempts
        self.interval_seconds = interval_seconds


class ProviderFailedError(OrchestrationError):
    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id


class ProviderCanceledError(OrchestrationError):
    def __init__(self, job_id: str, message: str = "Generation was canceled by the provider"):
        super().__init__(message)
        self.job_id = job_id


class EmptyResultError(OrchestrationError):
    def __init__(self, job_id: str, message: str = "Provider reported success but returned no usable media"):
        super().__init__(message)
        self.job_id = job_id


class JobNotFoundError(OrchestrationError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ProjectNotFoundError(OrchestrationError):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class WebhookAuthError(OrchestrationError):
    def __init__(self, message: str = "Unauthorized webhook"):
        super().__init__(message)


class JobStoreError(OrchestrationError):
    def __init__(self, operation: str, reason: str):
        super().__init__(f"Store error during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


class RefinementStepError(OrchestrationError):
    def __init__(self, step: str, reason: str):
        super().__init__(f"Refinement step '{step}' failed: {reason}")
        self.step = step
        self.reason = reason


class StorageError(OrchestrationError):
    pass


class WorkerConfigurationError(OrchestrationError):
    def __init__(self, errors: list[str]):
        super().__init__(f"Worker configuration errors: {', '.join(errors)}")
        self.errors = errors
