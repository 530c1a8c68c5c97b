"""
Brand Studio Generation API - FastAPI Backend
Credit-metered image generation: posts, generation jobs, credits and webhooks.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import Base, engine
import models  # noqa: F401
from routers import billing, generation, health, posts
from services.generation_queue import reconcile_generations


async def _run_reconciliation() -> None:
    counts = await reconcile_generations(generation.get_generation_orchestrator())
    if any(counts.values()):
        print(
            f"♻️ Generation reconciliation: pending_failed={counts['pending_failed']} "
            f"generating_resolved={counts['generating_resolved']} "
            f"orphans_refunded={counts['orphans_refunded']}"
        )


async def _periodic_reconciliation() -> None:
    interval_minutes = max(int(settings.RECONCILE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            await _run_reconciliation()
        except Exception as exc:
            print(f"⚠️ Generation reconciliation tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logging.basicConfig(level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO))
    print("🚀 Starting Brand Studio Generation API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        await _run_reconciliation()
    except Exception as exc:
        print(f"⚠️ Startup generation reconciliation skipped: {exc}")

    reconcile_task = None
    if int(settings.RECONCILE_INTERVAL_MINUTES) > 0:
        reconcile_task = asyncio.create_task(_periodic_reconciliation())
        print(f"📅 Generation reconciliation loop enabled (every {int(settings.RECONCILE_INTERVAL_MINUTES)} min).")
    yield
    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Brand Studio Generation API",
    description="Credit-metered asynchronous image generation for feed posts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(generation.router, tags=["Generation"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])

Path(settings.ASSET_STORAGE_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/assets", StaticFiles(directory=settings.ASSET_STORAGE_DIR, check_dir=False), name="assets")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Brand Studio Generation API",
        "version": "0.1.0",
        "status": "running",
    }
