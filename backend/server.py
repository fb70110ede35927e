from routes.skew import skew_router, get_feed, get_history, get_pipeline
from services.skew_cache import get_skew_cache
from utils.environment import CACHE_SWEEP_INTERVAL_SECONDS, ENVIRONMENT, is_sandbox
from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

app = FastAPI(title="Options OI Skew Engine")

scheduler = AsyncIOScheduler()

app.include_router(skew_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def sweep_skew_cache():
    """Scheduled job: drop expired cache entries."""
    removed = get_skew_cache().cleanup()
    if removed:
        logger.info(f"CACHE_SWEEP | removed={removed} | remaining={get_skew_cache().size()}")


def register_jobs(target: AsyncIOScheduler):
    target.add_job(
        sweep_skew_cache,
        "interval",
        seconds=CACHE_SWEEP_INTERVAL_SECONDS,
        id="skew_cache_sweep",
        replace_existing=True
    )


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    from database import check_db_connection
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    await get_history().ensure_indexes()

    # Build the pipeline (and the feed it owns) before the first request
    get_pipeline()

    register_jobs(scheduler)
    scheduler.start()
    logger.info(
        f"Skew engine started - env={ENVIRONMENT}, sandbox={is_sandbox()}, "
        f"cache sweep every {CACHE_SWEEP_INTERVAL_SECONDS}s")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Cache sweep scheduler shut down")

    await get_feed().disconnect()

    # Close MongoDB client
    from database import client
    client.close()
