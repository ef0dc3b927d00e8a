from __future__ import annotations

from typing import Any, Mapping, Optional

import pytest
from fastapi.testclient import TestClient

from genflow.app.config import Settings
from genflow.app.deps import (
    get_caller_identity,
    get_rate_limit_service,
    get_reconciler,
    get_reconciliation_queue,
    get_refinement_controller,
    get_settings,
)
from genflow.app.domain.models import CallerIdentity, ProviderJobHandle, ProviderStatus, ReviewResult
from genflow.app.infra.db.memory_store import InMemoryJobStore, InMemoryProjectStore, InMemoryRateWindowStore
from genflow.app.infra.providers.base import ProviderAdapter
from genflow.app.main import app
from genflow.app.services.blueprint import TemplateBlueprintGenerator
from genflow.app.services.provider_catalog import ADAPTER_DEFAULT, ADAPTER_LOOP_ADS, build_default_catalog
from genflow.app.services.rate_limit_service import RateLimitService
from genflow.app.services.reconciliation import JobReconciler
from genflow.app.services.refinement_controller import RefinementController
from genflow.app.services.site_builder import SiteBuilder
from genflow.app.services.site_reviewer import SiteReviewer

VIDEO_URL = "https://replicate.delivery/pbxt/abc/output.mp4"
WEBHOOK_SECRET = "s3cret"


class ProviderAdapterStub(ProviderAdapter):
    name = "stub"

    def __init__(self) -> None:
        self.submitted: list[dict[str, Any]] = []

    def resolve_version(self, model: str, configured_version: Optional[str] = None) -> str:
        return configured_version or f"{model}@latest"

    def submit(
        self,
        model: str,
        version: str,
        input: Mapping[str, Any],
        webhook_url: Optional[str] = None,
    ) -> ProviderJobHandle:
        self.submitted.append({"model": model, "input": dict(input), "webhook_url": webhook_url})
        return ProviderJobHandle(provider=self.name, job_id=f"pred-{len(self.submitted)}", version=version, status="starting")

    def fetch_status(self, job_id: str) -> ProviderStatus:
        return ProviderStatus(job_id=job_id, status="processing")


class SiteReviewerStub(SiteReviewer):
    def review(self, project, blueprint, html) -> ReviewResult:
        return ReviewResult(score=9.0, improvements=())


class QueueStub:
    def __init__(self) -> None:
        self.enqueued: list[tuple[str, float]] = []

    async def enqueue(self, job_id: str, delay_seconds: float = 0.0) -> None:
        self.enqueued.append((job_id, delay_seconds))


class IdentityHolder:
    def __init__(self) -> None:
        self.identity = CallerIdentity(caller_id="user:1", kind="session")

    def __call__(self) -> CallerIdentity:
        return self.identity


@pytest.fixture
def api():
    settings = Settings(
        _env_file=None,
        REPLICATE_API_TOKEN="r8_test",
        REPLICATE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        APP_URL="https://app.example.com",
        RECONCILIATION_BACKGROUND=True,
        STORE_BACKEND="memory",
    )
    adapter = ProviderAdapterStub()
    reconciler = JobReconciler(
        store=InMemoryJobStore(),
        catalog=build_default_catalog(settings),
        adapters={ADAPTER_DEFAULT: adapter, ADAPTER_LOOP_ADS: adapter},
        app_url=settings.APP_URL,
        webhook_secret=WEBHOOK_SECRET,
        sleep=lambda _: None,
    )
    rate_limiter = RateLimitService(InMemoryRateWindowStore(clock=lambda: 1_000))
    controller = RefinementController(
        store=InMemoryProjectStore(),
        blueprints=TemplateBlueprintGenerator(),
        builder=SiteBuilder(),
        reviewer=SiteReviewerStub(),
    )
    queue = QueueStub()
    identity = IdentityHolder()

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_rate_limit_service] = lambda: rate_limiter
    app.dependency_overrides[get_reconciliation_queue] = lambda: queue
    app.dependency_overrides[get_refinement_controller] = lambda: controller
    app.dependency_overrides[get_caller_identity] = identity

    yield {
        "client": TestClient(app),
        "adapter": adapter,
        "rate_limiter": rate_limiter,
        "queue": queue,
        "identity": identity,
    }

    app.dependency_overrides.clear()


class TestHealth:
    def test_health_reports_ok(self, api):
        response = api["client"].get("/health")

        assert response.status_code == 200
        assert response.json()["ok"] is True


class TestGenerations:
    def test_submit_returns_accepted_job(self, api):
        response = api["client"].post("/v1/generations/video", json={"prompt": "a fox in the snow"})

        assert response.status_code == 202
        body = response.json()
        assert body["job_id"] == "pred-1"
        assert body["status"] == "starting"
        assert body["resource"] == "video"
        assert response.headers["X-RateLimit-Limit"] == "6"
        assert response.headers["X-RateLimit-Remaining"] == "5"

    def test_submit_schedules_background_reconciliation(self, api):
        api["client"].post("/v1/generations/video", json={"prompt": "a fox in the snow"})

        assert [job_id for job_id, _ in api["queue"].enqueued] == ["pred-1"]

    def test_top_level_params_reach_the_provider(self, api):
        api["client"].post("/v1/generations/video", json={"prompt": "a fox", "params": {"duration": 4}, "duration": 8})

        assert api["adapter"].submitted[0]["input"]["prompt"].startswith("a fox")
        assert api["adapter"].submitted[0]["input"]["duration"] == 8

    def test_exhausted_window_returns_429_with_retry_after(self, api):
        identity = api["identity"].identity
        for _ in range(6):
            api["rate_limiter"].check(identity, "video")

        response = api["client"].post("/v1/generations/video", json={"prompt": "a fox"})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert api["adapter"].submitted == []

    def test_unknown_resource_is_rejected(self, api):
        response = api["client"].post("/v1/generations/podcast", json={"prompt": "hi"})

        assert response.status_code == 422

    def test_unknown_job_returns_404(self, api):
        response = api["client"].get("/v1/jobs/missing")

        assert response.status_code == 404

    def test_wait_past_poll_budget_returns_504(self, api):
        api["client"].post("/v1/generations/video", json={"prompt": "a fox in the snow"})

        response = api["client"].get("/v1/jobs/pred-1", params={"wait": "true"})

        assert response.status_code == 504
        detail = response.json()["detail"]
        assert detail["kind"] == "timeout"
        assert detail["job_id"] == "pred-1"


class TestWebhooks:
    def test_wrong_secret_is_unauthorized(self, api):
        response = api["client"].post(
            "/v1/webhooks/replicate",
            params={"secret": "nope"},
            json={"id": "pred-1", "status": "succeeded", "output": VIDEO_URL},
        )

        assert response.status_code == 401

    def test_completed_callback_finalizes_job(self, api):
        client = api["client"]
        client.post("/v1/generations/video", json={"prompt": "a fox"})

        response = client.post(
            "/v1/webhooks/replicate",
            params={"secret": WEBHOOK_SECRET},
            json={"id": "pred-1", "status": "succeeded", "output": VIDEO_URL},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "succeeded"

        job = client.get("/v1/jobs/pred-1").json()
        assert job["status"] == "succeeded"
        assert job["primary_url"] == VIDEO_URL

    def test_payload_without_id_is_ignored(self, api):
        response = api["client"].post(
            "/v1/webhooks/replicate",
            params={"secret": WEBHOOK_SECRET},
            json={"status": "succeeded"},
        )

        assert response.status_code == 200
        assert response.json()["job_id"] is None


class TestRefinements:
    def test_create_advance_and_read_project(self, api):
        client = api["client"]

        created = client.post("/v1/refinements", json={"brief": "A neighborhood bakery.", "name": "Crumb"})
        assert created.status_code == 201
        project_id = created.json()["project_id"]
        assert created.json()["status"] == "blueprint_pending"

        advanced = client.post(f"/v1/refinements/{project_id}/advance")
        assert advanced.status_code == 200
        assert advanced.json()["status"] == "completed"
        assert advanced.json()["score"] == 9.0

        project = client.get(f"/v1/refinements/{project_id}").json()
        assert project["name"] == "Crumb"
        assert project["progress"] == 100
        assert project["events"]

    def test_other_callers_project_is_not_found(self, api):
        client = api["client"]
        project_id = client.post("/v1/refinements", json={"brief": "A bakery."}).json()["project_id"]

        api["identity"].identity = CallerIdentity(caller_id="user:2", kind="session")

        assert client.get(f"/v1/refinements/{project_id}").status_code == 404
        assert client.post(f"/v1/refinements/{project_id}/advance").status_code == 404

    def test_empty_brief_is_rejected(self, api):
        response = api["client"].post("/v1/refinements", json={"brief": ""})

        assert response.status_code == 422
