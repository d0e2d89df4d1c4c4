import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from agentflow.interfaces.api.schemas import (
    CancelExecutionRequest,
    StartExecutionRequest,
    get_workflow_service,
    service_response,
)
from agentflow.service.base import WorkflowService

router = APIRouter(prefix="/workflow_executions", tags=["workflow_executions"])

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# ------------ Endpoints ------------

@router.post("/")
async def start_execution(req: StartExecutionRequest, service: WorkflowService = Depends(get_workflow_service)):
    result = await service.start_execution(req.template_id, req.input)
    if result.success:
        logger.info(f"[ExecutionAPI] started {result.data.execution_id} from template {req.template_id}")
    return service_response(result, success_status=202)


@router.get("/history")
async def get_execution_history(
    template_id: Optional[str] = Query(None, alias="templateId"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: WorkflowService = Depends(get_workflow_service),
):
    return service_response(await service.get_execution_history(template_id, limit, offset))


@router.get("/active")
async def get_active_executions(service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.get_active_executions())


@router.get("/metrics")
async def get_workflow_metrics(
    template_id: Optional[str] = Query(None, alias="templateId"),
    service: WorkflowService = Depends(get_workflow_service),
):
    return service_response(await service.get_workflow_metrics(template_id))


@router.get("/{run_id}")
async def get_execution_status(run_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.get_execution_status(run_id))


@router.post("/{run_id}/pause")
async def pause_execution(run_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.pause_execution(run_id))


@router.post("/{run_id}/resume")
async def resume_execution(run_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.resume_execution(run_id))


@router.post("/{run_id}/cancel")
async def cancel_execution(
    run_id: str,
    req: Optional[CancelExecutionRequest] = None,
    service: WorkflowService = Depends(get_workflow_service),
):
    reason = req.reason if req else None
    return service_response(await service.cancel_execution(run_id, reason))


@router.get("/{run_id}/logs")
async def get_execution_logs(run_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.get_execution_logs(run_id))
