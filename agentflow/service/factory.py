# agentflow/service/factory.py

import logging
from typing import Optional

from agentflow.config import ENGINE_MODE
from agentflow.persistence.store import WorkflowStore
from agentflow.service.base import WorkflowService
from agentflow.service.engine_service import WorkflowEngineService
from agentflow.service.mock.mock_engine import MockWorkflowEngineService
from agentflow.service.mock.mock_simulator import MockExecutionConfig

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ENGINE_MODES = ("real", "mock")


def create_workflow_service(
    mode: str = ENGINE_MODE,
    store: Optional[WorkflowStore] = None,
    mock_config: Optional[MockExecutionConfig] = None,
    **engine_options,
) -> WorkflowService:
    """按 mode 选择真实引擎或 Mock 引擎；未指定 store 时使用 SQL 存储"""
    mode = (mode or "real").lower()
    if mode not in ENGINE_MODES:
        raise ValueError(f"Unknown engine mode: {mode!r}, expected one of {ENGINE_MODES}")

    if mode == "mock":
        logger.info("[ServiceFactory] using mock workflow engine")
        return MockWorkflowEngineService(config=mock_config)

    if store is None:
        from agentflow.persistence.database import AsyncSessionLocal
        from agentflow.persistence.sql_store import SqlWorkflowStore

        store = SqlWorkflowStore(AsyncSessionLocal)
    logger.info(f"[ServiceFactory] using workflow engine with {type(store).__name__}")
    return WorkflowEngineService(store, **engine_options)
