# genflow/app/deps.py (process-wide singletons, exposed as FastAPI dependencies)
from __future__ import annotations

import hashlib
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool
from supabase import Client, create_client

from genflow.app.config import Settings, settings
from genflow.app.domain.models import CallerIdentity
from genflow.app.infra.db.base import JobStore, ProjectStore, RateWindowStore
from genflow.app.infra.db.memory_store import InMemoryJobStore, InMemoryProjectStore, InMemoryRateWindowStore
from genflow.app.infra.db.supabase_store import (
    SupabaseApiKeyStore,
    SupabaseJobStore,
    SupabaseProjectStore,
    SupabaseRateWindowStore,
)
from genflow.app.infra.providers.replicate_provider import ReplicateProvider
from genflow.app.infra.storage.r2_provider import R2StorageProvider
from genflow.app.services.blueprint import GeminiBlueprintGenerator
from genflow.app.services.gemini_client import GeminiClient
from genflow.app.services.provider_catalog import ADAPTER_DEFAULT, ADAPTER_LOOP_ADS, build_default_catalog
from genflow.app.services.rate_limit_service import RateLimitService
from genflow.app.services.reconciliation import JobReconciler
from genflow.app.services.reconciliation_queue import ReconciliationQueue
from genflow.app.services.refinement_controller import RefinementController
from genflow.app.services.site_builder import ReconcilerImageSource, SiteBuilder
from genflow.app.services.site_reviewer import GeminiSiteReviewer

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "gf_"

_client: Client | None = None
_job_store: JobStore | None = None
_project_store: ProjectStore | None = None
_rate_limit_service: RateLimitService | None = None
_reconciler: JobReconciler | None = None
_queue: ReconciliationQueue | None = None
_refinement_controller: RefinementController | None = None


def get_settings() -> Settings:
    return settings


def get_supabase() -> Client:
    global _client
    if _client is None:
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
        _client = create_client(str(settings.SUPABASE_URL), settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


def _uses_supabase(backend: str) -> bool:
    return backend.strip().lower() == "supabase"


def get_job_store() -> JobStore:
    global _job_store
    if _job_store is None:
        _job_store = SupabaseJobStore(get_supabase()) if _uses_supabase(settings.STORE_BACKEND) else InMemoryJobStore()
    return _job_store


def get_project_store() -> ProjectStore:
    global _project_store
    if _project_store is None:
        _project_store = (
            SupabaseProjectStore(get_supabase()) if _uses_supabase(settings.STORE_BACKEND) else InMemoryProjectStore()
        )
    return _project_store


def get_rate_limit_service() -> RateLimitService:
    global _rate_limit_service
    if _rate_limit_service is None:
        store: RateWindowStore = (
            SupabaseRateWindowStore(get_supabase())
            if _uses_supabase(settings.RATE_LIMIT_BACKEND)
            else InMemoryRateWindowStore()
        )
        _rate_limit_service = RateLimitService(store)
    return _rate_limit_service


def get_reconciler() -> JobReconciler:
    global _reconciler
    if _reconciler is None:
        timeout = settings.REPLICATE_TIMEOUT_SECONDS
        _reconciler = JobReconciler(
            store=get_job_store(),
            catalog=build_default_catalog(settings),
            adapters={
                ADAPTER_DEFAULT: ReplicateProvider(settings.replicate_token, timeout_seconds=timeout),
                ADAPTER_LOOP_ADS: ReplicateProvider(settings.loop_ads_token, timeout_seconds=timeout),
            },
            app_url=settings.APP_URL,
            webhook_secret=settings.REPLICATE_WEBHOOK_SECRET,
        )
    return _reconciler


def get_reconciliation_queue() -> ReconciliationQueue:
    global _queue
    if _queue is None:
        _queue = ReconciliationQueue(get_reconciler())
    return _queue


def get_refinement_controller() -> RefinementController:
    global _refinement_controller
    if _refinement_controller is None:
        gemini = GeminiClient(settings.GEMINI_API_KEY, settings.GEMINI_MODEL) if settings.GEMINI_API_KEY else None
        storage = R2StorageProvider() if settings.r2_configured else None
        image_source = ReconcilerImageSource(get_reconciler()) if settings.replicate_token else None

        _refinement_controller = RefinementController(
            store=get_project_store(),
            blueprints=GeminiBlueprintGenerator(gemini) if gemini else None,
            builder=SiteBuilder(image_source=image_source, storage=storage),
            reviewer=GeminiSiteReviewer(gemini) if gemini else None,
            score_threshold=settings.REFINEMENT_SCORE_THRESHOLD,
            default_iterations=settings.REFINEMENT_DEFAULT_ITERATIONS,
            max_iterations_cap=settings.REFINEMENT_MAX_ITERATIONS,
            allow_fallback=settings.REFINEMENT_ALLOW_FALLBACK,
        )
    return _refinement_controller


auth_scheme = HTTPBearer(auto_error=False)


def hash_api_key(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else None


def _resolve_api_key(token: str) -> CallerIdentity:
    if not settings.SUPABASE_URL:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API keys are not enabled")
    identity = SupabaseApiKeyStore(get_supabase()).find_active(hash_api_key(token))
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or revoked API key")
    return identity


def _resolve_session(token: str) -> CallerIdentity:
    if not settings.SUPABASE_URL:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sessions are not enabled")
    try:
        res = get_supabase().auth.get_user(token)
    except Exception as exc:
        logger.info("auth.session_rejected error=%s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid/expired token") from exc

    user = res.user if res else None
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    meta = getattr(user, "app_metadata", None) or {}
    tier = meta.get("tier") if isinstance(meta, dict) else None
    return CallerIdentity(caller_id=f"user:{user.id}", kind="session", tier=tier)


async def get_caller_identity(
    request: Request,
    cred: HTTPAuthorizationCredentials | None = Depends(auth_scheme),
    x_api_key: str | None = Header(default=None),
) -> CallerIdentity:
    """
    API key (x-api-key or Bearer gf_...), else Supabase session token,
    else an anonymous identity keyed by client IP.
    """
    bearer = cred.credentials.strip() if cred and cred.scheme.lower() == "bearer" else ""
    token = (x_api_key or "").strip() or bearer

    if token.startswith(API_KEY_PREFIX):
        return await run_in_threadpool(_resolve_api_key, token)
    if token:
        return await run_in_threadpool(_resolve_session, token)

    ip = client_ip(request)
    return CallerIdentity(caller_id=f"ip:{ip}" if ip else "anonymous", kind="anonymous")
