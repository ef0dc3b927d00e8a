from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from starlette.concurrency import run_in_threadpool

from genflow.app.domain.errors import JobNotFoundError, JobStoreError, ProviderRejectedError
from genflow.app.services.reconciliation import JobReconciler

log = logging.getLogger("reconciliation_queue")


@dataclass(slots=True)
class ReconcileTask:
    job_id: str
    attempts: int = 0

    def next_attempt(self) -> "ReconcileTask":
        return ReconcileTask(job_id=self.job_id, attempts=self.attempts + 1)


class ReconciliationQueue:
    """
    In-process background poller.

    Each job is polled once per pass and re-enqueued after its provider's poll
    interval until it is terminal or its attempt budget runs out. A job that
    runs out stays non-terminal in the store; the sweep worker or a later
    status request can still pick it up.
    """

    def __init__(self, reconciler: JobReconciler) -> None:
        self._reconciler = reconciler
        self._queue: "asyncio.Queue[Optional[ReconcileTask]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        async with self._lock:
            if self.running:
                return
            self._worker = asyncio.create_task(self._run(), name="reconciliation-worker")

    async def stop(self) -> None:
        async with self._lock:
            if not self._worker:
                return
            for delayed in list(self._pending):
                delayed.cancel()
            await self._queue.put(None)
            try:
                await self._worker
            finally:
                self._worker = None

    async def enqueue(self, job_id: str, delay_seconds: float = 0.0) -> None:
        task = ReconcileTask(job_id=job_id)
        if delay_seconds > 0:
            self._schedule(task, delay_seconds)
            return
        await self._queue.put(task)

    async def _run(self) -> None:
        while True:
            task = await self._queue.get()
            if task is None:
                self._queue.task_done()
                break
            try:
                await self._process(task)
            except Exception:
                log.exception("reconcile.worker_unexpected_error job=%s", task.job_id)
            finally:
                self._queue.task_done()

    async def _process(self, task: ReconcileTask) -> None:
        try:
            record = await run_in_threadpool(self._reconciler.reconcile, task.job_id)
        except JobNotFoundError:
            log.warning("reconcile.worker_unknown_job job=%s", task.job_id)
            return
        except (ProviderRejectedError, JobStoreError) as exc:
            log.warning("reconcile.worker_poll_failed job=%s attempt=%s error=%s", task.job_id, task.attempts, exc)
            record = None

        if record is not None and record.is_terminal:
            log.info("reconcile.worker_done job=%s status=%s", task.job_id, record.status.value)
            return

        stored = record or await run_in_threadpool(self._reconciler.store.get, task.job_id)
        if stored is None:
            return
        max_attempts, interval = self._reconciler.budget_for(stored)
        if task.attempts + 1 >= max_attempts:
            log.warning("reconcile.worker_budget_exhausted job=%s attempts=%d", task.job_id, task.attempts + 1)
            return

        self._schedule(task.next_attempt(), interval)

    def _schedule(self, task: ReconcileTask, delay: float) -> None:
        delayed = asyncio.create_task(self._schedule_retry(task, delay))
        self._pending.add(delayed)
        delayed.add_done_callback(self._pending.discard)

    async def _schedule_retry(self, task: ReconcileTask, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(task)
