"""FastAPI entrypoint: workflow template / execution API over the real or mock engine."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentflow.config import ENABLE_OTEL, ENABLE_PROMETHEUS, ENGINE_MODE
from agentflow.observability.otel_tracing import init_tracer
from agentflow.observability.prometheus_metrics import router as metrics_router
from agentflow.persistence.sql_store import SqlWorkflowStore
from agentflow.service.base import WorkflowService
from agentflow.service.factory import create_workflow_service

# ──────────────────────── routers ─────────────────────────
from agentflow.interfaces.api.workflow_execution_endpoints import router as exec_router
from agentflow.interfaces.api.workflow_template_endpoints import router as template_router
from agentflow.interfaces.websocket.routes import router as websocket_router

# ──────────────────────── logging ──────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(service: Optional[WorkflowService] = None) -> FastAPI:
    workflow_service = service or create_workflow_service(ENGINE_MODE)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # type: ignore[valid-type]
        """SQL 存储首次启动时建表；退出时等待后台运行结束"""
        store = getattr(workflow_service, "store", None)
        if isinstance(store, SqlWorkflowStore):
            from agentflow.persistence.database import async_engine, create_schema

            await create_schema(async_engine)
            logger.info("Database schema ready")
        try:
            yield
        finally:
            await workflow_service.shutdown()
            logger.info("Workflow service shut down.")

    app = FastAPI(title="AgentFlow API", description="Workflow engine API", lifespan=lifespan)
    app.state.workflow_service = workflow_service

    # Prometheus / OTEL 初始化
    if ENABLE_OTEL:
        init_tracer("agentflow")

    if ENABLE_PROMETHEUS:
        app.include_router(metrics_router)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(template_router)
    app.include_router(exec_router)
    app.include_router(websocket_router)

    @app.get("/health")
    async def health():
        check = getattr(workflow_service, "get_health_check", None)
        if check is not None:
            result = await check()
            return result.to_dict()
        return {"success": True, "data": {"status": "healthy"}}

    return app


# ─────────────────────────── run uvicorn ────────────────────
if __name__ == "__main__":
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, reload=False)
