"""
Unit Tests for workflow events.
"""

import json

import pytest

from research_agents.events import EventEmitter, WorkflowEvent, WorkflowEventType


def task_event(workflow_id: str = "wf-1", **fields) -> WorkflowEvent:
    return WorkflowEvent(event_type=WorkflowEventType.TASK_COMPLETE, workflow_id=workflow_id, **fields)


class TestWorkflowEvent:
    """Serialization."""

    def test_to_dict_drops_empty_fields(self):
        event = task_event(phase="discovery", worker_name="news", success=False, error="timed out")
        data = event.to_dict()
        assert data["event"] == "task_complete"
        assert data["worker_name"] == "news"
        assert data["success"] is False
        assert "results" not in data
        assert "message" not in data

    def test_to_sse(self):
        event = WorkflowEvent(
            event_type=WorkflowEventType.PHASE_COMPLETE,
            workflow_id="wf-1",
            phase="analysis",
            results={"risk": {"risk_score": 0.4}},
        )
        sse = event.to_sse()
        assert sse.startswith("event: phase_complete\ndata: ")
        assert sse.endswith("\n\n")
        payload = json.loads(sse.split("data: ", 1)[1])
        assert payload["results"] == {"risk": {"risk_score": 0.4}}

    def test_terminal_events(self):
        assert WorkflowEvent(WorkflowEventType.WORKFLOW_ERROR, "wf").is_terminal
        assert WorkflowEvent(WorkflowEventType.WORKFLOW_COMPLETE, "wf").is_terminal
        assert not task_event().is_terminal


class TestEventEmitter:
    """Fan-out to subscriber queues."""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_events(self):
        emitter = EventEmitter()
        first, second = emitter.subscribe(), emitter.subscribe()

        event = task_event()
        await emitter.emit(event)

        assert first.get_nowait() is event
        assert second.get_nowait() is event
        assert emitter.subscriber_count == 2

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self):
        emitter = EventEmitter(queue_size=1)
        queue = emitter.subscribe()

        await emitter.emit(task_event(worker_name="a"))
        await emitter.emit(task_event(worker_name="b"))

        assert queue.qsize() == 1
        assert queue.get_nowait().worker_name == "a"
        assert len(emitter.get_history()) == 2

    @pytest.mark.asyncio
    async def test_close_sends_end_of_stream(self):
        emitter = EventEmitter()
        queue = emitter.subscribe()

        emitter.close()
        await emitter.emit(task_event())

        assert queue.get_nowait() is None
        assert queue.empty()
        assert emitter.closed
        assert emitter.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        emitter = EventEmitter()
        queue = emitter.subscribe()
        emitter.unsubscribe(queue)

        await emitter.emit(task_event())
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_history_is_bounded_and_filterable(self):
        emitter = EventEmitter(max_history=3)
        for i in range(4):
            await emitter.emit(task_event(workflow_id=f"wf-{i % 2}", worker_name=str(i)))

        history = emitter.get_history()
        assert [e.worker_name for e in history] == ["1", "2", "3"]
        assert [e.worker_name for e in emitter.get_history("wf-1")] == ["1", "3"]
