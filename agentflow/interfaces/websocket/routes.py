import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from agentflow.domain.models import TERMINAL_WORKFLOW_STATUSES
from agentflow.events.eventbus_model import EventType, WorkflowExecutionEvent
from agentflow.events.realtime import EventSubscriber

router = APIRouter(prefix="/ws", tags=["WebSocket"])
logger = logging.getLogger(__name__)

# 收到这些事件后推送完毕即关闭连接
FINAL_EVENTS = (EventType.COMPLETED, EventType.FAILED, EventType.CANCELLED, EventType.TIMEOUT)


@router.websocket("/executions/{run_id}")
async def execution_events(websocket: WebSocket, run_id: str):
    """WebSocket 端点，推送单个运行的监控事件"""
    await websocket.accept()
    service = websocket.app.state.workflow_service
    realtime = getattr(service, "realtime", None)
    if realtime is None:
        await websocket.send_json({"type": "error", "message": "Real-time events are not available for this engine"})
        await websocket.close(code=1008)
        return

    queue: "asyncio.Queue[WorkflowExecutionEvent]" = asyncio.Queue()
    subscription_id = realtime.subscribe(run_id, EventSubscriber(on_event=queue.put_nowait))
    logger.info(f"WebSocket 订阅运行 {run_id}: {subscription_id}")

    try:
        # 先订阅再查状态：订阅前已结束的运行不会再有终态事件
        status = await service.get_execution_status(run_id)
        if not status.success:
            await websocket.send_json({"type": "error", "message": status.error.message})
            await websocket.close(code=1008)
            return

        await websocket.send_json({"type": "connection_established", "runId": run_id})
        if status.data.status in TERMINAL_WORKFLOW_STATUSES:
            while not queue.empty():
                event = queue.get_nowait()
                await websocket.send_json({"type": "event", "event": event.model_dump(mode="json")})
            await websocket.send_json({"type": "status", "status": status.to_dict()["data"]})
            await websocket.close()
            return

        while True:
            event = await queue.get()
            await websocket.send_json({"type": "event", "event": event.model_dump(mode="json")})
            if event.type in FINAL_EVENTS:
                break
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"WebSocket 连接已断开，运行: {run_id}")
    finally:
        realtime.unsubscribe(subscription_id)
