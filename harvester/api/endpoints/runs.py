# harvester/api/endpoints/runs.py
from fastapi import APIRouter, Depends
import logging
from typing import Any, Dict

from harvester.core.pipeline import PipelineOrchestrator, RunStore
from harvester.models.requests import PipelineRunRequest
from harvester.models.responses import RunAcceptedResponse, ErrorResponse
from harvester.api.dependencies import get_orchestrator, get_run_store, check_content_length
from harvester.core.exceptions import RunNotFoundException

router = APIRouter()
logger = logging.getLogger(__name__)

@router.post(
    "/runs",
    status_code=202,
    response_model=RunAcceptedResponse,
    responses={
        400: {"model": ErrorResponse},
        413: {"model": ErrorResponse}
    },
    summary="Start a content extraction run",
    description="Validate the request and extract the creator's content in the background."
)
async def create_run(
    request: PipelineRunRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    run_store: RunStore = Depends(get_run_store),
    _: None = Depends(check_content_length)
):
    """
    Start harvesting a creator's writing.

    - **creator_name**: Name of the creator (1-200 characters)
    - **sources**: Known handles (blog URL, newsletter URL, Twitter handle, LinkedIn URL)
    - **source_types**: Sources to run; defaults to every source with a handle
    - **resolve_sources**: Look up missing handles before running
    """
    run = orchestrator.create_run(request)
    run_store.start(run, orchestrator)
    logger.info(
        f"Accepted run {run.run_id} for '{run.creator_name}' "
        f"({', '.join(s.value for s in run.requested_sources)})"
    )
    return RunAcceptedResponse(run_id=run.run_id, status=run.status, created_at=run.created_at)

@router.get(
    "/runs/{run_id}",
    responses={404: {"model": ErrorResponse}},
    summary="Get run status and results"
)
async def get_run(run_id: str, run_store: RunStore = Depends(get_run_store)) -> Dict[str, Any]:
    run = run_store.get(run_id)
    if run is None:
        raise RunNotFoundException(run_id)
    return run.to_payload()

@router.delete(
    "/runs/{run_id}",
    responses={404: {"model": ErrorResponse}},
    summary="Cancel a run"
)
async def cancel_run(run_id: str, run_store: RunStore = Depends(get_run_store)):
    """Stop a run. Long-running social jobs are abandoned locally and left to finish remotely."""
    if not run_store.cancel(run_id):
        raise RunNotFoundException(run_id)
    run = run_store.get(run_id)
    return {"run_id": run_id, "status": run.status.value}
