from __future__ import annotations

import logging
import signal
import sys
import time
from datetime import datetime, timedelta, timezone

from genflow.app.domain.errors import (
    ConfigurationMissingError,
    JobNotFoundError,
    JobStoreError,
    ProviderRejectedError,
    WorkerConfigurationError,
)
from genflow.app.domain.models import JobRecord
from genflow.app.infra.db.base import JobStore
from genflow.app.services.reconciliation import JobReconciler
from workers.reconciler.config import WorkerConfig, get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("reconciler-worker")


class ReconcilerWorker:
    """
    Sweeps non-terminal jobs out of the store and reconciles each one.

    Picks up jobs the in-process queue gave up on (budget exhausted, app
    restarted, missed webhook). Idle sweeps back off up to the max interval.
    """

    def __init__(
        self,
        config: WorkerConfig,
        job_store: JobStore,
        reconciler: JobReconciler,
    ):
        self.config = config
        self.job_store = job_store
        self.reconciler = reconciler
        self.running = False
        self.jobs_finalized = 0
        self.polls_done = 0
        self.last_activity_time: datetime | None = None

    def start(self) -> None:
        self._validate_configuration()
        self._setup_signal_handlers()
        self._log_startup_info()
        self.running = True
        self.last_activity_time = datetime.now(timezone.utc)
        self._run_main_loop()
        self._shutdown()

    def _validate_configuration(self) -> None:
        errors = self.config.validate()
        if errors:
            raise WorkerConfigurationError(errors)

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

    def _log_startup_info(self) -> None:
        logger.info(
            "Starting reconciler worker: id=%s, poll_interval=%.1fs, batch=%d",
            self.config.worker_id,
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )

    def _run_main_loop(self) -> None:
        empty_sweeps = 0
        poll_interval = float(self.config.poll_interval_seconds)

        while self.running:
            pending = self._fetch_pending()

            if pending:
                empty_sweeps = 0
                poll_interval = float(self.config.poll_interval_seconds)
                self.sweep(pending)

                if self._reached_max_jobs():
                    break
            else:
                empty_sweeps += 1
                poll_interval = self._calculate_backoff_interval(poll_interval)

                if self._should_shutdown_on_empty_queue():
                    break

                logger.debug(
                    "No pending jobs, sleeping %.1fs (empty_sweeps=%d)",
                    poll_interval,
                    empty_sweeps,
                )

            time.sleep(poll_interval)

    def _fetch_pending(self) -> list[JobRecord]:
        try:
            return self.job_store.list_pending(limit=self.config.batch_size)
        except JobStoreError as error:
            logger.warning("Failed to list pending jobs: %s", error)
            return []

    def sweep(self, pending: list[JobRecord]) -> int:
        """
        Reconcile each pending job once.

        Returns:
            Number of jobs that reached a terminal status in this sweep
        """
        finalized = 0
        for record in pending:
            if not self.running:
                break
            if self._reconcile_one(record):
                finalized += 1

        self.jobs_finalized += finalized
        self.last_activity_time = datetime.now(timezone.utc)
        logger.info("Sweep done: pending=%d, finalized=%d", len(pending), finalized)
        return finalized

    def _reconcile_one(self, record: JobRecord) -> bool:
        self.polls_done += 1
        try:
            result = self.reconciler.reconcile(record.id)
        except JobNotFoundError:
            logger.warning("Pending job vanished from store: id=%s", record.id)
            return False
        except ConfigurationMissingError as error:
            logger.error("Cannot reconcile job: id=%s, error=%s", record.id, error)
            return False
        except ProviderRejectedError as error:
            return self._note_poll_failure(record, error)
        except JobStoreError as error:
            logger.warning("Reconcile failed, will retry next sweep: id=%s, error=%s", record.id, error)
            return False

        if result.is_terminal:
            logger.info(
                "Job finalized: id=%s, status=%s, kind=%s",
                result.id,
                result.status.value,
                result.error_kind,
            )
            return True
        return False

    def _note_poll_failure(self, record: JobRecord, error: ProviderRejectedError) -> bool:
        try:
            updated = self.reconciler.record_poll_failure(record.id, str(error), self.config.max_poll_failures)
        except JobStoreError as store_error:
            logger.warning("Could not record poll failure: id=%s, error=%s", record.id, store_error)
            return False

        if updated is not None and updated.is_terminal:
            logger.warning("Job given up after failed polls: id=%s, error=%s", record.id, error)
            return True
        logger.warning("Reconcile failed, moved to back of queue: id=%s, error=%s", record.id, error)
        return False

    def _reached_max_jobs(self) -> bool:
        if self.config.max_jobs_per_run <= 0:
            return False

        if self.jobs_finalized >= self.config.max_jobs_per_run:
            logger.info(
                "Reached max jobs per run (%d), shutting down",
                self.config.max_jobs_per_run,
            )
            return True
        return False

    def _calculate_backoff_interval(self, current_interval: float) -> float:
        return min(
            current_interval * self.config.backoff_multiplier,
            float(self.config.max_poll_interval_seconds),
        )

    def _should_shutdown_on_empty_queue(self) -> bool:
        if not self.config.shutdown_on_empty:
            return False

        if self.last_activity_time is None:
            return False

        idle_time = datetime.now(timezone.utc) - self.last_activity_time
        shutdown_threshold = timedelta(minutes=self.config.empty_queue_shutdown_minutes)

        if idle_time > shutdown_threshold:
            logger.info(
                "No pending jobs for %d minutes, shutting down",
                self.config.empty_queue_shutdown_minutes,
            )
            return True
        return False

    def _handle_shutdown_signal(self, signum: int, frame: object) -> None:
        logger.info("Received shutdown signal %d", signum)
        self.running = False

    def _shutdown(self) -> None:
        logger.info(
            "Worker shutdown complete: jobs_finalized=%d, polls=%d",
            self.jobs_finalized,
            self.polls_done,
        )


def create_default_dependencies() -> tuple[JobStore, JobReconciler]:
    from genflow.app.deps import get_job_store, get_reconciler

    return get_job_store(), get_reconciler()


def main() -> None:
    config = get_config()
    job_store, reconciler = create_default_dependencies()

    worker = ReconcilerWorker(
        config=config,
        job_store=job_store,
        reconciler=reconciler,
    )

    worker.start()


if __name__ == "__main__":
    main()
