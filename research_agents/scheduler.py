"""
Task Graph Scheduler

Drives a research workflow through a fixed sequence of phases. Each phase
has one execution policy:

- PARALLEL: every task launches at once and the phase settles all of
  them; one task's failure never aborts its siblings.
- SEQUENTIAL: tasks run one at a time in ascending priority (stable on
  ties). Before running, a task waits for each declared dependency to
  reach a terminal state (completed or failed).

Dependency waits are event-driven: every worker in the workflow has an
asyncio.Event that is set the moment its task settles, so dependents wake
immediately. Parallel phases honour dependencies the same way. Waits are
bounded by dependency_timeout. A dependency that is not part of the
workflow, or that is scheduled to run after its dependent (later in the
same sequential phase, or in a later phase), can never be satisfied and
fails the dependent at once.

Task failures are data: a failed task's result is
{"error": <message>, "worker_name": <name>}, and dependents and siblings
carry on. Only setup failures (unknown workers, malformed phases) end the
workflow, with a workflow_error event.

Each task's payload holds the target, the research goals, optional prior
session context and, under "data", every result from earlier phases plus
the results of its own dependencies.

Usage:
    scheduler = WorkflowScheduler(build_default_workers(router, retrieval, tools))
    async for event in scheduler.run("Acme Corp", goals=["entry points for a sales team"]):
        print(event.event_type, event.phase)
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from config.logging_config import ExecutionAuditLogger
from core.exceptions import DependencyError, SchedulerSetupError
from .base_worker import BaseWorker, TaskPayload, WorkerStats
from .events import EventEmitter, WorkflowEvent, WorkflowEventType

logger = logging.getLogger(__name__)

DEFAULT_DEPENDENCY_TIMEOUT = 300.0


# ============================================
# DATA MODEL
# ============================================

class TaskStatus(str, Enum):
    """Lifecycle of a scheduled task"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


class PhasePolicy(str, Enum):
    """How the tasks of a phase are run"""
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass
class TaskSpec:
    """Declaration of one task in a phase."""
    worker_name: str
    kind: str = "research"
    priority: int = 1
    dependencies: Tuple[str, ...] = ()
    # Extra payload fields for this task, e.g. {"focus": "recent-news"}
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PhaseSpec:
    """A named stage of a workflow sharing one execution policy."""
    name: str
    policy: PhasePolicy
    tasks: List[TaskSpec]
    message: str = ""


@dataclass
class WorkUnit:
    """One task instance, owned by the scheduler until folded into a phase result."""
    worker_name: str
    kind: str
    phase: str
    workflow_id: str
    priority: int = 1
    dependencies: Tuple[str, ...] = ()
    input: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TaskStatus = TaskStatus.PENDING
    payload: Optional[TaskPayload] = None
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "phase": self.phase,
            "worker_name": self.worker_name,
            "kind": self.kind,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": round(self.duration_ms, 1),
        }


def failure_result(worker_name: str, error: str) -> Dict[str, Any]:
    """The value that stands in for a failed task's result."""
    return {"error": error, "worker_name": worker_name}


def is_failure_result(value: Any) -> bool:
    return isinstance(value, Mapping) and "error" in value and "worker_name" in value


class CompletionTracker:
    """
    Terminal-state notifications for every worker in one workflow.

    Shared across phases, so a task may depend on a worker from an
    earlier phase as well as one from its own.
    """

    def __init__(self, worker_names: Iterable[str]):
        self._events: Dict[str, asyncio.Event] = {name: asyncio.Event() for name in worker_names}
        self._results: Dict[str, Any] = {}

    def knows(self, worker_name: str) -> bool:
        return worker_name in self._events

    def is_terminal(self, worker_name: str) -> bool:
        event = self._events.get(worker_name)
        return event is not None and event.is_set()

    def mark_terminal(self, worker_name: str, result: Any = None):
        self._results[worker_name] = result
        self._events[worker_name].set()

    def result_of(self, worker_name: str) -> Any:
        return self._results.get(worker_name)

    async def wait(self, worker_name: str, timeout: Optional[float]) -> bool:
        """Wait until the worker's task is terminal. False on timeout."""
        event = self._events[worker_name]
        if event.is_set():
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class WorkflowRun:
    """State of one running workflow."""
    workflow_id: str
    target: str
    goals: List[str]
    tracker: CompletionTracker
    context: Optional[Dict[str, Any]] = None
    # Results of fully completed phases, keyed by worker name
    prior: Dict[str, Any] = field(default_factory=dict)

    def payload_for(self, unit: WorkUnit) -> TaskPayload:
        """Target, goals, prior context and earlier results for one task."""
        data = dict(self.prior)
        for dep in unit.dependencies:
            if dep not in data and self.tracker.is_terminal(dep):
                data[dep] = self.tracker.result_of(dep)
        payload = {"company_name": self.target, "goals": list(self.goals), "data": data, **unit.input}
        if self.context:
            payload["context"] = dict(self.context)
        return TaskPayload(payload)


# ============================================
# DEFAULT WORKFLOW
# ============================================

def default_research_phases() -> List[PhaseSpec]:
    """The four-phase account research workflow."""
    return [
        PhaseSpec(
            name="discovery",
            policy=PhasePolicy.PARALLEL,
            message="Phase 1: Gathering initial company information",
            tasks=[
                TaskSpec("research", input={"focus": "overview"}),
                TaskSpec("news", input={"focus": "recent-news"}),
                TaskSpec("product", input={"focus": "products-services"}),
                TaskSpec("market", input={"focus": "market-position"}),
                TaskSpec("contact", input={"focus": "decision-makers"}),
            ],
        ),
        PhaseSpec(
            name="analysis",
            policy=PhasePolicy.SEQUENTIAL,
            message="Phase 2: Performing deep analysis",
            tasks=[
                TaskSpec("financial", kind="analysis", priority=2, dependencies=("research",)),
                TaskSpec("competitive", kind="analysis", priority=2, dependencies=("market",)),
                TaskSpec("risk", kind="analysis", priority=2, dependencies=("financial", "competitive")),
                TaskSpec("opportunity", kind="analysis", priority=2, dependencies=("risk", "competitive")),
            ],
        ),
        PhaseSpec(
            name="synthesis",
            policy=PhasePolicy.SEQUENTIAL,
            message="Phase 3: Synthesizing findings and developing strategy",
            tasks=[
                TaskSpec("synthesis", kind="synthesis", priority=3),
                TaskSpec("strategy", kind="strategy", priority=3, dependencies=("synthesis",)),
                TaskSpec("writing", kind="writing", priority=3, dependencies=("strategy",)),
            ],
        ),
        PhaseSpec(
            name="quality-assurance",
            policy=PhasePolicy.SEQUENTIAL,
            message="Phase 4: Quality assurance and validation",
            tasks=[
                TaskSpec("validation", kind="validation", priority=4),
                TaskSpec("quality", kind="quality", priority=4, dependencies=("validation",)),
            ],
        ),
    ]


# ============================================
# SCHEDULER
# ============================================

class WorkflowScheduler:
    """Runs phased workflows over a registry of workers."""

    def __init__(
        self,
        workers: Optional[Mapping[str, BaseWorker]] = None,
        phases: Optional[Sequence[PhaseSpec]] = None,
        emitter: Optional[EventEmitter] = None,
        audit: Optional[ExecutionAuditLogger] = None,
        dependency_timeout: Optional[float] = DEFAULT_DEPENDENCY_TIMEOUT
    ):
        self._workers: Dict[str, BaseWorker] = dict(workers or {})
        self._phases = list(phases) if phases is not None else default_research_phases()
        self.emitter = emitter
        self.audit = audit or ExecutionAuditLogger()
        self.dependency_timeout = dependency_timeout
        self._active: "OrderedDict[str, WorkUnit]" = OrderedDict()

    # ----- registry -----

    def register_worker(self, worker: BaseWorker, name: Optional[str] = None):
        self._workers[name or worker.name] = worker

    def get_worker(self, name: str) -> Optional[BaseWorker]:
        return self._workers.get(name)

    def list_workers(self) -> List[str]:
        return list(self._workers)

    # ----- observability -----

    def get_active_tasks(self) -> List[WorkUnit]:
        """Tasks not yet folded into a phase result, across all running workflows."""
        return list(self._active.values())

    def get_worker_stats(self) -> Dict[str, WorkerStats]:
        return {name: worker.get_stats() for name, worker in self._workers.items()}

    # ----- setup -----

    def _validate_phases(self, target: str, phases: Sequence[PhaseSpec]):
        if not target or not target.strip():
            raise SchedulerSetupError("Workflow target is required")
        if not phases:
            raise SchedulerSetupError("Workflow has no phases")

        seen = set()
        for phase in phases:
            if not isinstance(phase.policy, PhasePolicy):
                raise SchedulerSetupError(f"Unknown phase policy: {phase.policy!r}", phase=phase.name)
            for task in phase.tasks:
                if task.worker_name not in self._workers:
                    raise SchedulerSetupError(f"Worker not found: {task.worker_name}", phase=phase.name)
                if task.worker_name in seen:
                    raise SchedulerSetupError(
                        f"Worker {task.worker_name} is scheduled more than once",
                        phase=phase.name,
                    )
                seen.add(task.worker_name)

    # ----- task execution -----

    def _settle(self, unit: WorkUnit, run: WorkflowRun, start: float):
        unit.completed_at = datetime.now(timezone.utc)
        unit.duration_ms = (time.perf_counter() - start) * 1000
        run.tracker.mark_terminal(unit.worker_name, unit.result)
        self.audit.log_task_outcome(
            unit.workflow_id,
            unit.phase,
            unit.worker_name,
            unit.status == TaskStatus.COMPLETED,
            unit.duration_ms,
            error=unit.error,
        )

    def _fail(self, unit: WorkUnit, error: BaseException, run: WorkflowRun, start: float) -> WorkUnit:
        unit.status = TaskStatus.FAILED
        unit.error = getattr(error, "message", None) or str(error) or type(error).__name__
        unit.result = failure_result(unit.worker_name, unit.error)
        self._settle(unit, run, start)
        return unit

    async def _execute_unit(self, unit: WorkUnit, run: WorkflowRun) -> WorkUnit:
        """Run one task to a terminal state. Never raises."""
        worker = self._workers[unit.worker_name]
        start = time.perf_counter()
        unit.status = TaskStatus.RUNNING
        unit.started_at = datetime.now(timezone.utc)
        logger.debug(f"[{unit.workflow_id}] Running {unit.worker_name} ({unit.phase})")

        try:
            result = await worker.execute_with_retry(unit.payload)
        except Exception as e:
            logger.error(f"[{unit.workflow_id}] Task {unit.id} ({unit.worker_name}) failed: {e}")
            return self._fail(unit, e, run, start)

        unit.status = TaskStatus.COMPLETED
        unit.result = result
        self._settle(unit, run, start)
        return unit

    async def _await_dependencies(
        self,
        unit: WorkUnit,
        tracker: CompletionTracker,
        scheduled_after: Sequence[str] = ()
    ):
        """Block until every dependency is terminal. Raises DependencyError."""
        for dep in unit.dependencies:
            if dep == unit.worker_name:
                raise DependencyError(unit.worker_name, dep, "a task cannot depend on itself")
            if not tracker.knows(dep):
                raise DependencyError(unit.worker_name, dep, "not part of this workflow")
            if dep in scheduled_after and not tracker.is_terminal(dep):
                raise DependencyError(unit.worker_name, dep, "scheduled to run after its dependent")
            if not await tracker.wait(dep, self.dependency_timeout):
                raise DependencyError(
                    unit.worker_name,
                    dep,
                    f"not finished after {self.dependency_timeout}s",
                )

    async def _run_gated(
        self,
        unit: WorkUnit,
        run: WorkflowRun,
        scheduled_after: Sequence[str] = ()
    ) -> WorkUnit:
        start = time.perf_counter()
        try:
            await self._await_dependencies(unit, run.tracker, scheduled_after)
        except DependencyError as e:
            logger.warning(f"[{unit.workflow_id}] {e.message}")
            return self._fail(unit, e, run, start)
        unit.payload = run.payload_for(unit)
        return await self._execute_unit(unit, run)

    # ----- phases -----

    async def _run_parallel(
        self,
        units: List[WorkUnit],
        run: WorkflowRun,
        later_phases: Sequence[str] = ()
    ) -> AsyncIterator[WorkUnit]:
        """Launch every task and yield each as it settles."""
        tasks = [asyncio.ensure_future(self._run_gated(u, run, later_phases)) for u in units]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            # Reached early only when the consumer stopped reading
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _run_sequential(
        self,
        units: List[WorkUnit],
        run: WorkflowRun,
        later_phases: Sequence[str] = ()
    ) -> AsyncIterator[WorkUnit]:
        """Run tasks one at a time in ascending priority, stable on ties."""
        ordered = sorted(units, key=lambda u: u.priority)
        for index, unit in enumerate(ordered):
            later = [u.worker_name for u in ordered[index + 1:]] + list(later_phases)
            yield await self._run_gated(unit, run, scheduled_after=later)

    # ----- events -----

    async def _event(
        self,
        event_type: WorkflowEventType,
        workflow_id: str,
        **fields
    ) -> WorkflowEvent:
        event = WorkflowEvent(event_type=event_type, workflow_id=workflow_id, **fields)
        if self.emitter is not None:
            await self.emitter.emit(event)
        if event_type != WorkflowEventType.TASK_COMPLETE:
            details = {k: v for k, v in (("message", event.message), ("error", event.error)) if v}
            self.audit.log_workflow_event(workflow_id, event_type.value, phase=event.phase, details=details)
        return event

    # ----- workflow -----

    async def run(
        self,
        target: str,
        goals: Optional[Sequence[str]] = None,
        phases: Optional[Sequence[PhaseSpec]] = None,
        context: Optional[Mapping[str, Any]] = None,
        workflow_id: Optional[str] = None
    ) -> AsyncIterator[WorkflowEvent]:
        """
        Run one workflow, yielding progress events in order.

        The stream is single-pass and ends with exactly one
        workflow_complete or workflow_error event.
        """
        workflow_id = workflow_id or uuid.uuid4().hex
        phases = list(phases) if phases is not None else self._phases
        results: Dict[str, Dict[str, Any]] = {}
        units: List[WorkUnit] = []
        settled: Optional[AsyncGenerator[WorkUnit, None]] = None

        logger.info(f"[{workflow_id}] Starting workflow for {target!r} ({len(phases)} phases)")
        yield await self._event(
            WorkflowEventType.WORKFLOW_START,
            workflow_id,
            message=f"Starting comprehensive research workflow for {target}",
        )

        try:
            self._validate_phases(target, phases)
            run = WorkflowRun(
                workflow_id=workflow_id,
                target=target,
                goals=list(goals or []),
                tracker=CompletionTracker(t.worker_name for p in phases for t in p.tasks),
                context=dict(context) if context else None,
            )

            for index, phase in enumerate(phases):
                yield await self._event(
                    WorkflowEventType.PHASE_START,
                    workflow_id,
                    phase=phase.name,
                    message=phase.message or f"Starting phase {phase.name}",
                )

                units = [
                    WorkUnit(
                        worker_name=t.worker_name,
                        kind=t.kind,
                        phase=phase.name,
                        workflow_id=workflow_id,
                        priority=t.priority,
                        dependencies=tuple(t.dependencies),
                        input=dict(t.input),
                    )
                    for t in phase.tasks
                ]
                for unit in units:
                    self._active[unit.id] = unit

                later_phases = [t.worker_name for p in phases[index + 1:] for t in p.tasks]
                if phase.policy == PhasePolicy.PARALLEL:
                    settled = self._run_parallel(units, run, later_phases)
                else:
                    settled = self._run_sequential(units, run, later_phases)

                async for unit in settled:
                    yield await self._event(
                        WorkflowEventType.TASK_COMPLETE,
                        workflow_id,
                        phase=phase.name,
                        worker_name=unit.worker_name,
                        success=unit.status == TaskStatus.COMPLETED,
                        duration_ms=round(unit.duration_ms, 1),
                        error=unit.error,
                    )

                # Fold into the phase result in declaration order
                phase_results = {u.worker_name: u.result for u in units}
                results[phase.name] = phase_results
                run.prior.update(phase_results)
                for unit in units:
                    self._active.pop(unit.id, None)
                units = []
                settled = None

                failed = sum(1 for value in phase_results.values() if is_failure_result(value))
                logger.info(
                    f"[{workflow_id}] Phase {phase.name} complete: "
                    f"{len(phase_results) - failed} succeeded, {failed} failed"
                )
                yield await self._event(
                    WorkflowEventType.PHASE_COMPLETE,
                    workflow_id,
                    phase=phase.name,
                    results=phase_results,
                )

        except Exception as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            logger.error(f"[{workflow_id}] Workflow failed: {message}")
            yield await self._event(WorkflowEventType.WORKFLOW_ERROR, workflow_id, error=message)
            return
        finally:
            for unit in units:
                self._active.pop(unit.id, None)
            if settled is not None:
                await settled.aclose()

        logger.info(f"[{workflow_id}] Workflow complete")
        yield await self._event(
            WorkflowEventType.WORKFLOW_COMPLETE,
            workflow_id,
            message=f"Research workflow for {target} complete",
            results=results,
        )

    async def run_to_completion(
        self,
        target: str,
        goals: Optional[Sequence[str]] = None,
        phases: Optional[Sequence[PhaseSpec]] = None,
        context: Optional[Mapping[str, Any]] = None
    ) -> WorkflowEvent:
        """Drain run() and return its terminal event."""
        last = None
        async for event in self.run(target, goals=goals, phases=phases, context=context):
            last = event
        return last
