# genflow/app/main.py
from __future__ import annotations

import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from genflow import __version__
from genflow.app.config import settings
from genflow.app.deps import get_reconciliation_queue
from genflow.app.routers.v1.generations import router as generations_router
from genflow.app.routers.v1.refinements import router as refinements_router
from genflow.app.routers.v1.webhooks import router as webhooks_router

# Plain stdout logging (fine for dev and containers)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

app = FastAPI(title="Genflow API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(generations_router)
app.include_router(webhooks_router)
app.include_router(refinements_router)


@app.on_event("startup")
async def startup() -> None:
    if settings.RECONCILIATION_BACKGROUND:
        await get_reconciliation_queue().start()


@app.on_event("shutdown")
async def shutdown() -> None:
    if settings.RECONCILIATION_BACKGROUND:
        await get_reconciliation_queue().stop()


@app.get("/health")
def health():
    return {"ok": True, "store": settings.STORE_BACKEND, "webhooks": settings.webhook_enabled}
