# workers/reconciler/config.py
"""
Configuration for the reconciliation sweep worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class WorkerConfig:
    """Configuration for the reconciliation sweep worker."""

    # Worker identification
    worker_id: str = os.getenv("WORKER_ID", f"reconciler-{os.getpid()}")

    # Polling configuration
    poll_interval_seconds: float = float(os.getenv("WORKER_POLL_INTERVAL", "3"))
    max_poll_interval_seconds: float = float(os.getenv("WORKER_MAX_POLL_INTERVAL", "30"))
    backoff_multiplier: float = float(os.getenv("WORKER_BACKOFF_MULTIPLIER", "1.5"))

    # Sweep configuration
    batch_size: int = int(os.getenv("WORKER_BATCH_SIZE", "25"))
    max_jobs_per_run: int = int(os.getenv("WORKER_MAX_JOBS_PER_RUN", "0"))  # 0 = infinite
    shutdown_on_empty: bool = os.getenv("WORKER_SHUTDOWN_ON_EMPTY", "false").lower() == "true"
    empty_queue_shutdown_minutes: int = int(os.getenv("WORKER_EMPTY_SHUTDOWN_MINUTES", "10"))
    max_poll_failures: int = int(os.getenv("WORKER_MAX_POLL_FAILURES", "10"))  # 0 = never give up

    # Store backend (a sweep over an in-process memory store only makes sense in tests)
    store_backend: str = os.getenv("STORE_BACKEND", "supabase")

    # Supabase (inherited from env)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # Replicate
    replicate_token: str = os.getenv("REPLICATE_API_TOKEN", "")

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.poll_interval_seconds <= 0:
            errors.append("WORKER_POLL_INTERVAL must be positive")
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            errors.append("WORKER_MAX_POLL_INTERVAL must be >= WORKER_POLL_INTERVAL")
        if self.backoff_multiplier < 1:
            errors.append("WORKER_BACKOFF_MULTIPLIER must be >= 1")
        if self.batch_size <= 0:
            errors.append("WORKER_BATCH_SIZE must be positive")
        if self.max_poll_failures < 0:
            errors.append("WORKER_MAX_POLL_FAILURES must be >= 0")
        if self.store_backend.strip().lower() == "supabase":
            if not self.supabase_url:
                errors.append("SUPABASE_URL is required")
            if not self.supabase_key:
                errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if not self.replicate_token:
            errors.append("REPLICATE_API_TOKEN is required")

        return errors


def get_config() -> WorkerConfig:
    """Get worker configuration from environment."""
    return WorkerConfig()
