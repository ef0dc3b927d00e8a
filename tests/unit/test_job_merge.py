from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from genflow.app.domain.errors import JobStoreError
from genflow.app.domain.merge import merge_job_record
from genflow.app.domain.models import JobRecord, JobStatus, ProjectEvent, RefinementProject
from genflow.app.infra.db.memory_store import InMemoryJobStore, InMemoryProjectStore

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class TestMergeJobRecord:
    def test_creates_record_when_absent(self) -> None:
        outcome = merge_job_record(None, "pred-1", {"status": "starting", "provider": "veo"}, T0)

        assert outcome.applied is True
        assert outcome.record.id == "pred-1"
        assert outcome.record.status == JobStatus.STARTING
        assert outcome.record.provider == "veo"
        assert outcome.record.created_at == T0
        assert outcome.record.updated_at == T0
        assert outcome.record.revision == 1

    def test_metadata_patch_without_status_defaults_to_queued(self) -> None:
        outcome = merge_job_record(None, "pred-1", {"model": "google/veo-3"}, T0)
        assert outcome.record.status == JobStatus.QUEUED

    def test_last_write_wins_for_plain_fields(self) -> None:
        first = merge_job_record(None, "pred-1", {"status": "processing", "model": "a"}, T0).record
        later = T0 + timedelta(seconds=5)

        outcome = merge_job_record(first, "pred-1", {"model": "b"}, later)

        assert outcome.record.model == "b"
        assert outcome.record.status == JobStatus.PROCESSING
        assert outcome.record.created_at == T0
        assert outcome.record.updated_at == later
        assert outcome.record.revision == 2

    @pytest.mark.parametrize("terminal", [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED])
    @pytest.mark.parametrize("incoming", list(JobStatus))
    def test_terminal_status_never_changes(self, terminal: JobStatus, incoming: JobStatus) -> None:
        existing = JobRecord(id="pred-1", status=terminal, created_at=T0, updated_at=T0, revision=3)

        outcome = merge_job_record(existing, "pred-1", {"status": incoming, "error_message": "late"}, T0)

        assert outcome.applied is False
        assert outcome.record.status == terminal
        assert outcome.record.error_message is None

    def test_status_patch_on_terminal_record_is_rejected_as_a_whole(self) -> None:
        existing = JobRecord(
            id="pred-1",
            status=JobStatus.SUCCEEDED,
            media_urls=["https://cdn.example.com/a.mp4"],
            created_at=T0,
        )

        outcome = merge_job_record(existing, "pred-1", {"status": "processing", "media_urls": []}, T0)

        assert outcome.applied is False
        assert outcome.record.media_urls == ["https://cdn.example.com/a.mp4"]

    def test_non_status_patch_on_terminal_record_applies(self) -> None:
        existing = JobRecord(id="pred-1", status=JobStatus.SUCCEEDED, created_at=T0)

        outcome = merge_job_record(existing, "pred-1", {"webhook_mode": "enabled"}, T0)

        assert outcome.applied is True
        assert outcome.record.status == JobStatus.SUCCEEDED
        assert outcome.record.webhook_mode == "enabled"

    def test_unknown_fields_rejected(self) -> None:
        with pytest.raises(ValueError):
            merge_job_record(None, "pred-1", {"bogus": 1}, T0)

    def test_identity_fields_cannot_be_patched(self) -> None:
        with pytest.raises(ValueError):
            merge_job_record(None, "pred-1", {"created_at": T0}, T0)


class TestInMemoryJobStore:
    def test_upsert_and_get(self) -> None:
        store = InMemoryJobStore(clock=FakeClock())

        store.upsert("pred-1", {"status": "starting", "resource": "video"})

        record = store.get("pred-1")
        assert record is not None
        assert record.status == JobStatus.STARTING
        assert record.resource == "video"

    def test_get_unknown_returns_none(self) -> None:
        assert InMemoryJobStore().get("missing") is None

    def test_returned_records_are_copies(self) -> None:
        store = InMemoryJobStore()
        store.upsert("pred-1", {"status": "starting"})

        record = store.get("pred-1")
        assert record is not None
        record.media_urls.append("https://evil.example.com/x.mp4")

        stored = store.get("pred-1")
        assert stored is not None
        assert stored.media_urls == []

    def test_webhook_success_then_late_poll_processing_keeps_succeeded(self) -> None:
        store = InMemoryJobStore()
        store.upsert("pred-1", {"status": "processing"})
        store.upsert("pred-1", {"status": "succeeded", "media_urls": ["https://cdn.example.com/a.mp4"]})

        outcome = store.upsert("pred-1", {"status": "processing"})

        assert outcome.applied is False
        record = store.get("pred-1")
        assert record is not None
        assert record.status == JobStatus.SUCCEEDED
        assert record.media_urls == ["https://cdn.example.com/a.mp4"]

    def test_concurrent_terminal_writes_keep_first(self) -> None:
        store = InMemoryJobStore()
        store.upsert("pred-1", {"status": "processing"})
        barrier = threading.Barrier(8)

        def write(status: str) -> None:
            barrier.wait()
            store.upsert("pred-1", {"status": status})

        threads = [
            threading.Thread(target=write, args=("succeeded" if i % 2 else "failed",)) for i in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        record = store.get("pred-1")
        assert record is not None
        assert record.is_terminal
        # exactly one terminal write applied on top of the initial processing write
        assert record.revision == 2

    def test_list_pending_orders_oldest_update_first(self) -> None:
        clock = FakeClock()
        store = InMemoryJobStore(clock=clock)
        store.upsert("pred-old", {"status": "processing"})
        clock.advance(10)
        store.upsert("pred-new", {"status": "starting"})
        clock.advance(10)
        store.upsert("pred-done", {"status": "succeeded"})

        pending = store.list_pending()

        assert [record.id for record in pending] == ["pred-old", "pred-new"]

    def test_list_pending_respects_limit(self) -> None:
        store = InMemoryJobStore()
        for i in range(5):
            store.upsert(f"pred-{i}", {"status": "processing"})

        assert len(store.list_pending(limit=2)) == 2


class TestInMemoryProjectStore:
    def _project(self) -> RefinementProject:
        return RefinementProject(id="proj-1", owner_id="user:1", name="Site", brief="A bakery")

    def test_create_assigns_revision_and_timestamps(self) -> None:
        store = InMemoryProjectStore(clock=FakeClock())

        created = store.create(self._project())

        assert created.revision == 1
        assert created.created_at == T0
        assert created.updated_at == T0

    def test_create_duplicate_raises(self) -> None:
        store = InMemoryProjectStore()
        store.create(self._project())

        with pytest.raises(JobStoreError):
            store.create(self._project())

    def test_save_bumps_revision(self) -> None:
        store = InMemoryProjectStore()
        created = store.create(self._project())
        created.last_score = 7.5

        saved = store.save(created)

        assert saved.revision == 2
        stored = store.get("proj-1")
        assert stored is not None
        assert stored.last_score == 7.5

    def test_save_with_stale_revision_raises(self) -> None:
        store = InMemoryProjectStore()
        created = store.create(self._project())
        store.save(created)

        with pytest.raises(JobStoreError) as exc_info:
            store.save(created)

        assert "revision conflict" in str(exc_info.value)

    def test_events_are_append_only_and_ordered(self) -> None:
        store = InMemoryProjectStore()
        store.create(self._project())

        store.append_event(ProjectEvent(project_id="proj-1", message="first"))
        store.append_event(ProjectEvent(project_id="proj-1", message="second", level="warning"))

        events = store.list_events("proj-1")
        assert [e.message for e in events] == ["first", "second"]
        assert all(e.id for e in events)
        assert all(e.created_at for e in events)
        assert store.list_events("other") == []
