from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from watchroute.core.database import init_db
from watchroute.core.redis_client import close_redis
from watchroute.api import status, maintenance
from watchroute.services.workflow import WatchlistWorkflow
from watchroute.utils.logger import logger as root_logger  # noqa: F401  configures the watchroute logger

logger = logging.getLogger(__name__)

app = FastAPI(title="watchroute API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(status.router, prefix="/api/status", tags=["Status"])
app.include_router(maintenance.router, prefix="/api/maintenance", tags=["Maintenance"])


@app.on_event("startup")
async def startup_event():
    await init_db()
    workflow = WatchlistWorkflow()
    try:
        await workflow.start()
    except Exception as e:
        # API stays up for status checks; feeds start on the next restart
        logger.error(f"Failed to start watchlist workflow: {e}", exc_info=True)
    app.state.workflow = workflow


@app.on_event("shutdown")
async def shutdown_event():
    workflow = getattr(app.state, "workflow", None)
    if workflow is not None:
        await workflow.stop()
    await close_redis()


@app.get("/health")
async def health():
    workflow = getattr(app.state, "workflow", None)
    return {"status": "ok", "workflow_running": bool(workflow and workflow.running)}
