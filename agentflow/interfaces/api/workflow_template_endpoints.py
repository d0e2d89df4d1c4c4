import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from agentflow.interfaces.api.schemas import (
    CloneTemplateRequest,
    ImportTemplateRequest,
    get_workflow_service,
    service_response,
)
from agentflow.service.base import WorkflowService

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

router = APIRouter(prefix="/workflow_templates", tags=["workflow_templates"])

# ----------- 接口定义 -----------

@router.get("/")
async def list_templates(
    active: Optional[bool] = None,
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    service: WorkflowService = Depends(get_workflow_service),
):
    return service_response(await service.list_templates(active=active, limit=limit, offset=offset))


@router.post("/")
async def create_template(
    payload: Dict[str, Any] = Body(...),
    service: WorkflowService = Depends(get_workflow_service),
):
    result = await service.create_template(payload)
    if result.success:
        logger.info(f"[TemplateAPI] created template {result.data.id}")
    return service_response(result, success_status=201)


# 固定路径必须注册在 /{template_id} 之前
@router.get("/search")
async def search_templates(
    q: str = Query(..., min_length=1),
    service: WorkflowService = Depends(get_workflow_service),
):
    return service_response(await service.search_templates(q))


@router.post("/validate")
async def validate_template(
    payload: Any = Body(...),
    service: WorkflowService = Depends(get_workflow_service),
):
    return service_response(await service.validate_template(payload))


@router.post("/import")
async def import_template(
    req: ImportTemplateRequest,
    service: WorkflowService = Depends(get_workflow_service),
):
    return service_response(await service.import_template(req.get_payload()), success_status=201)


@router.get("/{template_id}")
async def get_template(template_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.get_template(template_id))


@router.put("/{template_id}")
async def update_template(
    template_id: str,
    payload: Dict[str, Any] = Body(...),
    service: WorkflowService = Depends(get_workflow_service),
):
    return service_response(await service.update_template(template_id, payload))


@router.delete("/{template_id}")
async def delete_template(template_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.delete_template(template_id))


@router.post("/{template_id}/clone")
async def clone_template(
    template_id: str,
    req: Optional[CloneTemplateRequest] = None,
    service: WorkflowService = Depends(get_workflow_service),
):
    new_name = req.new_name if req else None
    return service_response(await service.clone_template(template_id, new_name), success_status=201)


@router.get("/{template_id}/export")
async def export_template(template_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return service_response(await service.export_template(template_id))
