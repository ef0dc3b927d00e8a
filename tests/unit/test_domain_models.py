from __future__ import annotations

import pytest
from dataclasses import FrozenInstanceError

from genflow.app.domain.models import (
    CallerIdentity,
    ErrorKind,
    ExtractedMedia,
    GenerationRequest,
    JobRecord,
    JobStatus,
    ProjectStatus,
    RefinementProject,
    ResourceKind,
    ReviewResult,
    progress_for,
)


class TestJobStatus:
    def test_job_status_values(self) -> None:
        assert JobStatus.QUEUED.value == "queued"
        assert JobStatus.STARTING.value == "starting"
        assert JobStatus.PROCESSING.value == "processing"
        assert JobStatus.SUCCEEDED.value == "succeeded"
        assert JobStatus.FAILED.value == "failed"
        assert JobStatus.CANCELED.value == "canceled"

    def test_job_status_is_string_enum(self) -> None:
        assert isinstance(JobStatus.QUEUED, str)
        assert JobStatus.SUCCEEDED == "succeeded"

    def test_error_kind_values(self) -> None:
        assert ErrorKind.EMPTY_RESULT.value == "empty_result"
        assert ErrorKind.TIMEOUT.value == "timeout"


class TestGenerationRequest:
    def test_params_are_read_only(self) -> None:
        request = GenerationRequest(caller_id="user:1", resource=ResourceKind.VIDEO, params={"prompt": "sky"})

        with pytest.raises(TypeError):
            request.params["prompt"] = "sea"  # type: ignore[index]

    def test_request_is_frozen(self) -> None:
        request = GenerationRequest(caller_id="user:1", resource=ResourceKind.IMAGE)

        with pytest.raises(FrozenInstanceError):
            request.caller_id = "user:2"  # type: ignore[misc]

    def test_params_are_copied(self) -> None:
        params = {"prompt": "sky"}
        request = GenerationRequest(caller_id="user:1", resource=ResourceKind.IMAGE, params=params)
        params["prompt"] = "changed"

        assert request.params["prompt"] == "sky"


class TestJobRecord:
    def test_create_record_minimal(self) -> None:
        record = JobRecord(id="pred-1", status=JobStatus.STARTING)

        assert record.media_urls == []
        assert record.cover_urls == []
        assert record.primary_url is None
        assert record.cover_url is None
        assert record.revision == 0
        assert record.is_terminal is False

    @pytest.mark.parametrize("status", [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED])
    def test_terminal_statuses(self, status: JobStatus) -> None:
        assert JobRecord(id="pred-1", status=status).is_terminal is True

    def test_primary_and_cover_urls(self) -> None:
        record = JobRecord(
            id="pred-1",
            status=JobStatus.SUCCEEDED,
            media_urls=["https://cdn.example.com/a.mp4", "https://cdn.example.com/b.mp4"],
            cover_urls=["https://cdn.example.com/a.jpg"],
        )

        assert record.primary_url == "https://cdn.example.com/a.mp4"
        assert record.cover_url == "https://cdn.example.com/a.jpg"


class TestExtractedMedia:
    def test_has_media(self) -> None:
        assert ExtractedMedia().has_media is False
        assert ExtractedMedia(media_urls=("https://x/y.png",)).has_media is True


class TestProgress:
    def test_progress_lookup(self) -> None:
        assert progress_for(ProjectStatus.BLUEPRINT_PENDING) == 5
        assert progress_for(ProjectStatus.BLUEPRINT_READY) == 20
        assert progress_for(ProjectStatus.ASSETS_GENERATING) == 50
        assert progress_for(ProjectStatus.ASSETS_READY) == 80
        assert progress_for(ProjectStatus.REVIEWING) == 90
        assert progress_for(ProjectStatus.REVIEW_DONE) == 95
        assert progress_for(ProjectStatus.COMPLETED) == 100
        assert progress_for(ProjectStatus.FAILED) == 0

    def test_progress_accepts_raw_strings(self) -> None:
        assert progress_for("assets_ready") == 80
        assert progress_for("unknown") == 0
        assert progress_for(None) == 0


class TestRefinementProject:
    def test_defaults(self) -> None:
        project = RefinementProject(id="p1", owner_id="user:1", name="Site", brief="A bakery")

        assert project.status == ProjectStatus.BLUEPRINT_PENDING
        assert project.current_iteration == 1
        assert project.progress == 5
        assert project.fallback_used is False
        assert project.is_finished is False
        assert project.can_iterate is True

    def test_cannot_iterate_on_last_iteration(self) -> None:
        project = RefinementProject(
            id="p1", owner_id="user:1", name="Site", brief="A bakery", current_iteration=3, max_iterations=3
        )
        assert project.can_iterate is False

    def test_finished_statuses(self) -> None:
        project = RefinementProject(
            id="p1", owner_id="user:1", name="Site", brief="A bakery", status=ProjectStatus.FAILED
        )
        assert project.is_finished is True


class TestReviewResult:
    def test_improvement_notes_prefers_fix(self) -> None:
        review = ReviewResult(
            score=6,
            improvements=(
                {"target": "hero", "reason": "Weak headline", "fix": "Use a concrete promise"},
                {"target": "", "reason": "Low contrast", "fix": ""},
                {"target": "footer", "reason": "", "fix": ""},
            ),
        )

        assert review.improvement_notes == ["hero: Use a concrete promise", "site: Low contrast"]


class TestCallerIdentity:
    def test_default_kind(self) -> None:
        identity = CallerIdentity(caller_id="ip:127.0.0.1")
        assert identity.kind == "anonymous"
        assert identity.tier is None
