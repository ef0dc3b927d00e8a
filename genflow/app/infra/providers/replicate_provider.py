# genflow/app/infra/providers/replicate_provider.py
"""
Replicate predictions adapter.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from genflow.app.domain.errors import ConfigurationMissingError, ProviderRejectedError
from genflow.app.domain.models import ProviderJobHandle, ProviderStatus
from genflow.app.infra.providers.base import ProviderAdapter
from genflow.app.infra.providers.version_cache import VersionCache, get_version_cache

logger = logging.getLogger(__name__)

REPLICATE_API_URL = "https://api.replicate.com/v1"
WEBHOOK_EVENTS = ["completed"]
DEFAULT_ERROR_MESSAGE = "Replicate returned an error."


def extract_error_message(payload: Any, fallback: str = DEFAULT_ERROR_MESSAGE) -> str:
    """Pick the most specific message out of an error body."""
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                details = error.get("details")
                if isinstance(details, str) and details.strip():
                    return f"{message.strip()} {details.strip()}"
                return message.strip()
        detail = payload.get("detail")
        if isinstance(detail, str) and detail.strip():
            return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
    return fallback


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


class ReplicateProvider(ProviderAdapter):
    name = "replicate"

    def __init__(
        self,
        api_token: Optional[str],
        version_cache: Optional[VersionCache] = None,
        timeout_seconds: float = 30.0,
        base_url: str = REPLICATE_API_URL,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._token = (api_token or "").strip()
        self._versions = version_cache or get_version_cache()
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def configured(self) -> bool:
        return bool(self._token)

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise ConfigurationMissingError(["REPLICATE_API_TOKEN"])
        return {"Authorization": f"Bearer {self._token}"}

    def _request(self, method: str, path: str, fallback: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as error:
            logger.error("replicate.network_error method=%s path=%s error=%s", method, path, error)
            raise ProviderRejectedError(self.name, f"{fallback} ({error})") from error

        data = _json_or_empty(response)
        if response.is_error:
            message = extract_error_message(data, fallback)
            logger.warning("replicate.http_error path=%s status=%d message=%s", path, response.status_code, message)
            raise ProviderRejectedError(self.name, message, status_code=response.status_code)
        return data

    def _fetch_latest_version(self, model: str) -> str:
        data = self._request("GET", f"/models/{model}", f"Could not resolve the latest version of {model}.")
        latest = data.get("latest_version") if isinstance(data, Mapping) else None
        version = latest.get("id") if isinstance(latest, Mapping) else None
        if not isinstance(version, str) or not version.strip():
            raise ProviderRejectedError(self.name, f"Model {model} has no latest_version.")
        logger.info("replicate.version_resolved model=%s version=%s", model, version.strip())
        return version.strip()

    def resolve_version(self, model: str, configured_version: Optional[str] = None) -> str:
        return self._versions.get_or_resolve(model, self._fetch_latest_version, configured_version)

    def submit(
        self,
        model: str,
        version: str,
        input: Mapping[str, Any],
        webhook_url: Optional[str] = None,
    ) -> ProviderJobHandle:
        payload: dict[str, Any] = {
            "version": version,
            "input": {key: value for key, value in input.items() if value is not None},
        }
        if webhook_url:
            payload["webhook"] = webhook_url
            payload["webhook_events_filter"] = WEBHOOK_EVENTS

        data = self._request("POST", "/predictions", "Replicate refused to start the prediction.", json=payload)

        job_id = data.get("id") if isinstance(data, Mapping) else None
        if not isinstance(job_id, str) or not job_id:
            raise ProviderRejectedError(self.name, "Replicate did not return a prediction id.")

        logger.info("replicate.submitted job=%s model=%s webhook=%s", job_id, model, bool(webhook_url))
        return ProviderJobHandle(
            provider=self.name,
            job_id=job_id,
            version=version,
            status=str(data.get("status") or "starting"),
            raw_output=data.get("output"),
        )

    def fetch_status(self, job_id: str) -> ProviderStatus:
        data = self._request("GET", f"/predictions/{job_id}", "Could not read the prediction status.")
        return ProviderStatus(
            job_id=str(data.get("id") or job_id),
            status=str(data.get("status") or ""),
            output=data.get("output"),
            error=data.get("error"),
            input=data.get("input"),
        )

    def close(self) -> None:
        self._client.close()
