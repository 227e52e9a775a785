"""
Workflow Event System

Progress notifications for research workflows. The scheduler yields these
events to its caller and, when an EventEmitter is attached, broadcasts
them to queue subscribers (e.g. an SSE endpoint).

Event order for one workflow:

    workflow_start
    phase_start -> task_complete* -> phase_complete      (x4)
    workflow_complete | workflow_error
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class WorkflowEventType(str, Enum):
    """Types of events emitted while a workflow runs"""

    WORKFLOW_START = "workflow_start"
    PHASE_START = "phase_start"
    TASK_COMPLETE = "task_complete"
    PHASE_COMPLETE = "phase_complete"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_ERROR = "workflow_error"


TERMINAL_EVENTS = (WorkflowEventType.WORKFLOW_COMPLETE, WorkflowEventType.WORKFLOW_ERROR)


@dataclass
class WorkflowEvent:
    """An event emitted during a workflow"""

    event_type: WorkflowEventType
    workflow_id: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    message: Optional[str] = None
    phase: Optional[str] = None

    # task_complete
    worker_name: Optional[str] = None
    success: Optional[bool] = None
    duration_ms: Optional[float] = None

    # phase_complete: {worker: result}; workflow_complete: {phase: {worker: result}}
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        result = {"event": self.event_type.value, "workflow_id": self.workflow_id, "timestamp": self.timestamp}

        for key, value in asdict(self).items():
            if value is not None and key not in ["event_type", "workflow_id", "timestamp"]:
                result[key] = value

        return result

    def to_sse(self) -> str:
        """Convert to Server-Sent Event format"""
        return f"event: {self.event_type.value}\ndata: {json.dumps(self.to_dict(), default=str)}\n\n"


class EventEmitter:
    """
    Broadcasts workflow events to subscribers.

    Each subscriber gets its own bounded queue. A None item marks the end
    of the stream once the emitter is closed.
    """

    def __init__(self, emitter_id: str = "workflows", max_history: int = 100, queue_size: int = 50):
        self.emitter_id = emitter_id
        self._subscribers: Set[asyncio.Queue] = set()
        self._event_history: List[WorkflowEvent] = []
        self._max_history = max_history
        self._queue_size = queue_size
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: WorkflowEvent):
        """Emit an event to all subscribers"""
        if self._closed:
            return

        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

        logger.debug(f"[{event.workflow_id}] Emitting: {event.event_type.value}")

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"[{self.emitter_id}] Subscriber queue full, dropping {event.event_type.value}")

    def subscribe(self) -> asyncio.Queue:
        """Subscribe to events, returns a queue to read from"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        logger.debug(f"[{self.emitter_id}] New subscriber, total: {len(self._subscribers)}")
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        """Unsubscribe from events"""
        self._subscribers.discard(queue)
        logger.debug(f"[{self.emitter_id}] Subscriber removed, remaining: {len(self._subscribers)}")

    def close(self):
        """Close the emitter and notify all subscribers"""
        self._closed = True
        for queue in self._subscribers:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning(f"[{self.emitter_id}] Could not deliver end-of-stream to a full queue")
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def get_history(self, workflow_id: Optional[str] = None) -> List[WorkflowEvent]:
        """Get event history, optionally for one workflow"""
        if workflow_id is None:
            return self._event_history.copy()
        return [e for e in self._event_history if e.workflow_id == workflow_id]
