import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from agentflow.utils.timefmt import naive_utcnow



class EventType(str, Enum):
    STARTED = "started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_RETRY = "step_retry"
    STATUS_CHANGED = "status_changed"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class EventLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


EVENT_LEVELS: Dict[EventType, EventLevel] = {
    EventType.STARTED: EventLevel.INFO,
    EventType.COMPLETED: EventLevel.INFO,
    EventType.STEP_STARTED: EventLevel.INFO,
    EventType.STEP_COMPLETED: EventLevel.INFO,
    EventType.STATUS_CHANGED: EventLevel.INFO,
    EventType.PAUSED: EventLevel.WARN,
    EventType.RESUMED: EventLevel.WARN,
    EventType.STEP_SKIPPED: EventLevel.WARN,
    EventType.STEP_RETRY: EventLevel.WARN,
    EventType.FAILED: EventLevel.ERROR,
    EventType.STEP_FAILED: EventLevel.ERROR,
    EventType.CANCELLED: EventLevel.ERROR,
    EventType.TIMEOUT: EventLevel.ERROR,
}


def level_for(event_type: EventType) -> EventLevel:
    return EVENT_LEVELS.get(event_type, EventLevel.INFO)


class WorkflowExecutionEvent(BaseModel):
    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    run_id: str
    type: EventType
    message: str
    level: EventLevel = EventLevel.INFO
    timestamp: datetime = Field(default_factory=naive_utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class EventFilter(BaseModel):
    run_id: Optional[str] = None
    type: Optional[EventType] = None
    level: Optional[EventLevel] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, event: WorkflowExecutionEvent) -> bool:
        if self.run_id and event.run_id != self.run_id:
            return False
        if self.type and event.type != self.type:
            return False
        if self.level and event.level != self.level:
            return False
        if self.since and event.timestamp < self.since:
            return False
        if self.until and event.timestamp > self.until:
            return False
        return True
