# harvester/api/endpoints/health.py
from fastapi import APIRouter, Depends
import time
import logging

from harvester.core.pipeline import PipelineOrchestrator
from harvester.models.responses import HealthResponse
from harvester.api.dependencies import get_orchestrator

router = APIRouter()
logger = logging.getLogger(__name__)

@router.get("", response_model=HealthResponse)
async def health_check(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Health of the API and every pipeline component"""
    start_time = time.time()

    try:
        health_status = await orchestrator.health_check()
        response_time = (time.time() - start_time) * 1000

        return HealthResponse(
            status=health_status.get("overall", "unknown"),
            services={k: v for k, v in health_status.items() if k != "overall"},
            response_time_ms=round(response_time, 2)
        )

    except Exception as e:
        logger.error(f"Health check error: {e}")
        response_time = (time.time() - start_time) * 1000

        return HealthResponse(
            status="unhealthy",
            services={"error": str(e)},
            response_time_ms=round(response_time, 2)
        )

@router.get("/live")
async def liveness_check():
    """Liveness probe; does not touch external services"""
    return {"status": "alive", "timestamp": time.time()}
