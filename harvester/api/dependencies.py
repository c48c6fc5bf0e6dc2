# harvester/api/dependencies.py
import logging
from fastapi import HTTPException, Request

from harvester.core.pipeline import PipelineOrchestrator, RunStore

logger = logging.getLogger(__name__)

def get_orchestrator(request: Request) -> PipelineOrchestrator:
    """Orchestrator created by the application lifespan"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        logger.error("Pipeline orchestrator requested before startup completed")
        raise HTTPException(status_code=503, detail="Service is starting up")
    return orchestrator

def get_run_store(request: Request) -> RunStore:
    run_store = getattr(request.app.state, "run_store", None)
    if run_store is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return run_store

async def check_content_length(request: Request):
    """Check request content length"""
    content_length = request.headers.get("content-length")
    if not content_length:
        return
    try:
        length = int(content_length)
    except ValueError:
        return  # Ignore invalid content-length headers
    max_length = 10 * 1024  # 10KB max
    if length > max_length:
        raise HTTPException(
            status_code=413,
            detail=f"Request too large. Maximum size: {max_length} bytes"
        )
