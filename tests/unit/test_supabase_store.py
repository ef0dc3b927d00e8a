from __future__ import annotations

from typing import Any, Optional

import pytest

from genflow.app.domain.errors import JobStoreError
from genflow.app.domain.models import JobStatus
from genflow.app.infra.db.supabase_store import MAX_CAS_ATTEMPTS, SupabaseJobStore, SupabaseRateWindowStore


class FakeResult:
    def __init__(self, data: Any) -> None:
        self.data = data


class FakeQuery:
    """Just enough of the postgrest builder chain for the job store."""

    def __init__(self, client: "FakeSupabaseClient") -> None:
        self.client = client
        self.operation = "select"
        self.payload: Optional[dict[str, Any]] = None
        self.filters: dict[str, Any] = {}

    def select(self, *_columns: str) -> "FakeQuery":
        self.operation = "select"
        return self

    def update(self, row: dict[str, Any]) -> "FakeQuery":
        self.operation = "update"
        self.payload = row
        return self

    def upsert(self, row: dict[str, Any], **_options: Any) -> "FakeQuery":
        self.operation = "upsert"
        self.payload = row
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters[column] = value
        return self

    def limit(self, _count: int) -> "FakeQuery":
        return self

    def execute(self) -> FakeResult:
        return self.client.execute(self)


class FakeSupabaseClient:
    def __init__(self, lost_updates: int = 0) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.lost_updates = lost_updates
        self.update_calls = 0

    def table(self, _name: str) -> FakeQuery:
        return FakeQuery(self)

    def execute(self, query: FakeQuery) -> FakeResult:
        if query.operation == "select":
            row = self.rows.get(query.filters.get("id"))
            return FakeResult([dict(row)] if row else [])

        row = dict(query.payload or {})
        if query.operation == "upsert":
            if row["id"] in self.rows:
                return FakeResult([])
            self.rows[row["id"]] = row
            return FakeResult([dict(row)])

        self.update_calls += 1
        stored = self.rows.get(query.filters["id"])
        if self.lost_updates > 0:
            # another writer got there first
            self.lost_updates -= 1
            stored["revision"] += 1
            return FakeResult([])
        if stored is None or stored["revision"] != query.filters["revision"]:
            return FakeResult([])
        self.rows[row["id"]] = row
        return FakeResult([dict(row)])


class TestSupabaseJobStore:
    def test_first_upsert_inserts_row(self) -> None:
        client = FakeSupabaseClient()
        store = SupabaseJobStore(client=client)

        outcome = store.upsert("pred-1", {"status": "starting", "provider": "veo"})

        assert outcome.applied is True
        assert outcome.record.revision == 1
        assert client.rows["pred-1"]["provider"] == "veo"

    def test_update_retries_after_revision_conflict(self) -> None:
        client = FakeSupabaseClient()
        store = SupabaseJobStore(client=client)
        store.upsert("pred-1", {"status": "processing"})
        client.lost_updates = 1

        outcome = store.upsert("pred-1", {"status": "succeeded", "media_urls": ["https://cdn/v.mp4"]})

        assert outcome.applied is True
        assert client.update_calls == 2
        assert outcome.record.status == JobStatus.SUCCEEDED
        assert outcome.record.revision == 3
        assert store.get("pred-1").media_urls == ["https://cdn/v.mp4"]

    def test_persistent_conflict_raises(self) -> None:
        client = FakeSupabaseClient()
        store = SupabaseJobStore(client=client)
        store.upsert("pred-1", {"status": "processing"})
        client.lost_updates = MAX_CAS_ATTEMPTS

        with pytest.raises(JobStoreError):
            store.upsert("pred-1", {"status": "succeeded"})

        assert client.update_calls == MAX_CAS_ATTEMPTS

    def test_terminal_record_is_not_written_again(self) -> None:
        client = FakeSupabaseClient()
        store = SupabaseJobStore(client=client)
        store.upsert("pred-1", {"status": "succeeded"})

        outcome = store.upsert("pred-1", {"status": "processing"})

        assert outcome.applied is False
        assert client.update_calls == 0
        assert store.get("pred-1").status == JobStatus.SUCCEEDED

    def test_poll_failures_round_trip(self) -> None:
        client = FakeSupabaseClient()
        store = SupabaseJobStore(client=client)
        store.upsert("pred-1", {"status": "processing"})

        store.upsert("pred-1", {"poll_failures": 2})

        assert store.get("pred-1").poll_failures == 2


class TestSupabaseRateWindowStore:
    def test_zero_limit_is_denied_without_rpc(self) -> None:
        class NoRpcClient:
            def rpc(self, *_args: Any) -> Any:
                raise AssertionError("rpc should not be called")

        decision = SupabaseRateWindowStore(client=NoRpcClient()).hit("caller", 0, 2000)

        assert decision.allowed is False
        assert decision.retry_after_ms == 2000
