# neftit/main.py
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import SWEEP_INTERVAL
from .routes import router as nfts_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    from .db import get_engine
    from .migrate import init_schema
    from .service import get_service
    from .sweeper import run_sweeper

    init_schema(get_engine())
    svc = get_service()
    sweeper_task = asyncio.create_task(run_sweeper(svc.reconciler, SWEEP_INTERVAL))
    logger.info("Orphan sweeper started")
    yield
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    logger.info("Orphan sweeper stopped")


app = FastAPI(title="NEFTIT NFT Lifecycle API", version="0.1.0", lifespan=lifespan)
app.include_router(nfts_router)


@app.get("/healthz")
def healthz():
    return {"ok": "true"}
