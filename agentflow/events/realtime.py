import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from agentflow.events.eventbus_model import EventLevel, EventType, WorkflowExecutionEvent
from agentflow.events.monitor import WorkflowMonitor

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclass
class EventSubscriber:
    on_event: Callable[[WorkflowExecutionEvent], None]
    event_types: Optional[List[EventType]] = None
    event_levels: Optional[List[EventLevel]] = None
    id: str = field(default_factory=lambda: f"sub_{uuid.uuid4().hex[:12]}")

    def wants(self, event: WorkflowExecutionEvent) -> bool:
        if self.event_types and event.type not in self.event_types:
            return False
        if self.event_levels and event.level not in self.event_levels:
            return False
        return True


class RealTimeMonitor:
    """按 run 或全局订阅监控事件；同步通知，订阅者异常不会外抛"""

    def __init__(self, monitor: WorkflowMonitor):
        self.monitor = monitor
        self._subscribers: Dict[str, List[EventSubscriber]] = {}
        self._global: List[EventSubscriber] = []
        monitor.add_listener(self.notify_event)

    def subscribe(self, run_id: str, subscriber: EventSubscriber) -> str:
        self._subscribers.setdefault(run_id, []).append(subscriber)
        return subscriber.id

    def subscribe_global(self, subscriber: EventSubscriber) -> str:
        self._global.append(subscriber)
        return subscriber.id

    def unsubscribe(self, subscription_id: str) -> bool:
        for sub in self._global:
            if sub.id == subscription_id:
                self._global.remove(sub)
                return True

        for run_id, subs in list(self._subscribers.items()):
            for sub in subs:
                if sub.id == subscription_id:
                    subs.remove(sub)
                    if not subs:
                        del self._subscribers[run_id]
                    return True
        return False

    def subscriber_count(self, run_id: Optional[str] = None) -> int:
        if run_id is None:
            return len(self._global) + sum(len(s) for s in self._subscribers.values())
        return len(self._subscribers.get(run_id, []))

    def notify_event(self, event: WorkflowExecutionEvent) -> None:
        for sub in list(self._global):
            self._deliver(sub, event, "global")
        for sub in list(self._subscribers.get(event.run_id, [])):
            self._deliver(sub, event, event.run_id)

    @staticmethod
    def _deliver(sub: EventSubscriber, event: WorkflowExecutionEvent, scope: str) -> None:
        try:
            if sub.wants(event):
                sub.on_event(event)
        except Exception as e:
            logger.error(f"[RealTimeMonitor] subscriber {sub.id} ({scope}) failed on {event.type.value}: {e}")
