# Imports

# General
import os
import socket
import logging

from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from dotenv import load_dotenv

import redis

# FastApi Server
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Crons + Scheduling
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from image_overlay import router as overlay_router
from overlay_config import CFG, OverlayConfig
from overlay_pipeline import OverlayPipeline
from result_cache import BaseResultCache, build_result_cache

# =====================================================
# ENV & LOGGING SETUP
# =====================================================

load_dotenv(".env")

# Create logs dir
os.makedirs(CFG.log_dir, exist_ok=True)

# Logging config goes on the root logger so module loggers inherit it (only once!)
root_logger = logging.getLogger()
logger = logging.getLogger("python_server")

if not getattr(root_logger, "_overlay_configured", False):
    root_logger.setLevel(logging.INFO)

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")

    # File handler (rotating)
    file_handler = RotatingFileHandler(
        os.path.join(CFG.log_dir, "app.log"), maxBytes=10_485_760, backupCount=5
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    root_logger._overlay_configured = True

# Silence noisy libraries
for noisy in ("urllib3", "apscheduler", "b2sdk", "httpx", "PIL"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

if CFG.cache_backend == "b2":
    if not os.getenv("BACKBLAZE_KEY_ID") or not os.getenv("BACKBLAZE_APPLICATION_KEY"):
        logger.warning("BACKBLAZE_KEY_ID or BACKBLAZE_APPLICATION_KEY not set - B2 result cache will fail")
    if not os.getenv("BACKBLAZE_BUCKET_NAME"):
        logger.warning("BACKBLAZE_BUCKET_NAME not set - B2 result cache will fail")

logger.info("Application starting up...")

# =====================================================
# SWEEP: expired overlays are removed out-of-band
# =====================================================

SWEEP_LOCK_NAME = "overlay_sweep_lock"


def acquire_sweep_lock(cfg: OverlayConfig) -> bool:
    """
    Shared caches (disk/b2) are swept by one worker per interval. Without
    REDIS_URL, or for per-process memory caches, every worker sweeps its own.
    """
    if not cfg.redis_url or cfg.cache_backend == "memory":
        return True

    worker_id = f"{socket.gethostname()}-{os.getpid()}"
    client = redis.from_url(cfg.redis_url, decode_responses=True)
    acquired = client.set(SWEEP_LOCK_NAME, worker_id, nx=True, ex=max(1, cfg.sweep_interval_minutes * 60 - 5))
    if acquired:
        logger.info("This worker runs the sweep: %s", worker_id)
        return True
    holder = client.get(SWEEP_LOCK_NAME) or "unknown"
    logger.info("Sweep already taken by %s (this worker skipped)", holder)
    return False


def run_sweep(cache: BaseResultCache, cfg: OverlayConfig) -> Optional[dict]:
    try:
        if not acquire_sweep_lock(cfg):
            return None
        result = cache.sweep()
        logger.info("Sweep finished: %s", result)
        return result
    except Exception as e:
        # a failed sweep must not kill the scheduler thread; next interval retries
        logger.exception("Sweep job crashed: %s", e)
        return None


def start_sweep_scheduler(cache: BaseResultCache, cfg: OverlayConfig) -> Optional[BackgroundScheduler]:
    if not cfg.sweep_enabled or cfg.sweep_interval_minutes <= 0:
        logger.info("Sweep scheduler disabled")
        return None

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        func=run_sweep,
        args=(cache, cfg),
        trigger=IntervalTrigger(minutes=cfg.sweep_interval_minutes),
        id="overlay_sweep",
        name="Expired overlay cleanup",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("APScheduler started - sweeping every %d min", cfg.sweep_interval_minutes)
    return scheduler


# =====================================================
# APP
# =====================================================

def create_app(
    cfg: OverlayConfig = CFG,
    cache: Optional[BaseResultCache] = None,
    pipeline: Optional[OverlayPipeline] = None,
) -> FastAPI:
    cache = cache if cache is not None else build_result_cache(cfg)
    pipeline = pipeline if pipeline is not None else OverlayPipeline.from_config(cfg, cache=cache)
    if pipeline.cache is None:
        pipeline.cache = cache

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = start_sweep_scheduler(cache, cfg)
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)

    app = FastAPI(title="Python Server - Caption Overlay", version="1.0", lifespan=lifespan)
    app.state.config = cfg
    app.state.result_cache = cache
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.include_router(overlay_router)

    @app.get("/")
    async def home():
        return {
            "status": "ok",
            "cache": type(cache).__name__,
            "backend": pipeline.compositor.backend.name,
            "font_available": pipeline.fonts.available,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")), reload=True)
