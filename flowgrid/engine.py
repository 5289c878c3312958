"""Execution engine: drives runs of a process through its graph.

``FlowRunner`` owns the registry of resident runs and the public operations
(start, resume, resolve, cancel, recover). Each run is executed by a
``RunExecution`` that walks the graph as one asyncio task, forking child
tasks for parallel branches.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from .agent.executor import AgentExecutor, build_worker_prompt
from .channels import BaseChannel
from .config import FlowgridConfig
from .constants import FORCED_DECISION_VARIABLES, RUN_LIST_LIMIT
from .context import (
    FlowState,
    build_scoped_input,
    extract_decision_variables,
    extract_structured_output,
)
from .contracts import (
    RUN_TRANSITIONS,
    ApprovalStatus,
    RunEvent,
    RunStatus,
    ScopedContext,
    StepStatus,
    TaskKind,
    WorkerRef,
    utcnow,
)
from .exceptions import (
    ApprovalNotFound,
    DefinitionError,
    EngineNotFound,
    FlowgridError,
    InvalidTransition,
    NotPaused,
    PersistenceError,
    RunNotFound,
)
from .persistence import ApprovalRequest, FlowRun, FlowStep, RunDetail, RunRepository
from .process import ProcessDefinition, Task, evaluate, normalize, route_variable
from .registry import ProcessCatalog
from .routing import TaskRouter, build_routing_context, map_tasks_to_workers

logger = logging.getLogger(__name__)


class _RunCancelled(Exception):
    """Raised inside a run's walker once the run has been cancelled."""


class _Checkpoint:
    """A human checkpoint suspended until a decision arrives."""

    def __init__(self, approval_id: str, step: FlowStep, structured: Dict[str, Any]):
        self.approval_id = approval_id
        self.step = step
        self.structured = structured
        self.event = asyncio.Event()
        self.decision: Optional[str] = None


class RunExecution:
    """In-memory engine of a single run."""

    def __init__(
        self,
        runner: "FlowRunner",
        run: FlowRun,
        definition: ProcessDefinition,
        workers: Dict[str, WorkerRef],
        state: FlowState,
        variables: Optional[Dict[str, Any]] = None,
        iterations: Optional[Dict[str, int]] = None,
        worker_override: Optional[str] = None,
    ) -> None:
        self.runner = runner
        self.run = run
        self.definition = definition
        self.graph = definition.graph
        self.workers = workers
        self.state = state
        self.variables: Dict[str, Any] = dict(variables or {})
        self.iterations: Dict[str, int] = dict(iterations or {})
        self.worker_override = worker_override
        self.cancelled = False
        self.task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._checkpoint_lock = asyncio.Lock()
        self._checkpoint: Optional[_Checkpoint] = None
        # Steps not yet in a terminal status, closed when a sibling branch fails
        self._open_steps: Dict[str, FlowStep] = {}
        self._aborting = False

    @property
    def config(self) -> FlowgridConfig:
        return self.runner.config

    @property
    def repository(self) -> RunRepository:
        return self.runner.repository

    @property
    def waiting_approval_id(self) -> Optional[str]:
        return self._checkpoint.approval_id if self._checkpoint else None

    # ------------------------------------------------------------------
    # state and events

    def snapshot(self) -> Dict[str, Any]:
        return {
            "flow": self.state.model_dump(mode="json"),
            "variables": self.variables,
            "iterations": self.iterations,
            "worker_override": self.worker_override,
        }

    async def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        event = RunEvent(type=event_type, run_id=self.run.id, data=data)
        try:
            await self.runner.channel.publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type} for run {self.run.id}: {e}")

    async def _set_run_status(
        self,
        status: RunStatus,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if status not in RUN_TRANSITIONS[self.run.status]:
            raise InvalidTransition(
                f"Run {self.run.id} cannot go from {self.run.status.value} to {status.value}"
            )
        self.run.status = status
        if output is not None:
            self.run.output = output
        if error is not None:
            self.run.error = error
        if status.is_terminal:
            self.run.completed_at = utcnow()
        self.run.state = self.snapshot()
        await self.repository.update_run(self.run)
        logger.info(f"Run {self.run.id} is {status.value}")

    async def _record_step(self, step: FlowStep, create: bool = False) -> None:
        """Persist a step, then publish it, so stored order equals emitted order."""
        if step.status.is_terminal:
            self._open_steps.pop(step.id, None)
        else:
            self._open_steps[step.id] = step
        async with self._lock:
            if create:
                await self.repository.create_step(step)
            else:
                await self.repository.update_step(step)
            await self._publish(
                "step.update",
                {
                    "step": step.model_dump(mode="json"),
                    "run_status": self.run.status.value,
                },
            )

    async def _begin_step(
        self,
        task: Task,
        worker: Optional[WorkerRef] = None,
        iteration: int = 1,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> FlowStep:
        step = FlowStep(
            run_id=self.run.id,
            task_id=task.id,
            name=task.label,
            kind=task.kind,
            status=StepStatus.RUNNING,
            iteration=iteration,
            worker_id=worker.id if worker else None,
            worker_name=worker.name if worker else None,
            input=input_data,
            started_at=utcnow(),
        )
        await self._record_step(step, create=True)
        return step

    async def _finish_step(
        self,
        step: FlowStep,
        status: StepStatus = StepStatus.COMPLETED,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        step.status = status
        step.completed_at = utcnow()
        if output is not None:
            step.output = output
        if error is not None:
            step.error = error
        await self._record_step(step)

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise _RunCancelled()

    def _count(self, task_id: str) -> int:
        self.iterations[task_id] = self.iterations.get(task_id, 0) + 1
        return self.iterations[task_id]

    def _targets(self, task: Task) -> List[str]:
        return [flow.target for flow in self.graph.outgoing(task.id)]

    # ------------------------------------------------------------------
    # run lifecycle

    async def execute(self) -> None:
        """Walk the graph from the start event until every branch ends."""
        start = self.graph.start_events()[0]
        await self._drive(self._walk(start.id))

    async def continue_from(self, step: FlowStep, approval: ApprovalRequest) -> None:
        """Resume a recovered run at its waiting human checkpoint."""
        task = self.graph.task(step.task_id)

        structured = dict((step.output or {}).get("structured") or {})
        self._checkpoint = _Checkpoint(approval.id, step, structured)

        async def resume_branch() -> Optional[str]:
            await self._wait_checkpoint(task, self._checkpoint, approval)
            return await self._walk_targets(self._targets(task))

        await self._drive(resume_branch())

    async def _drive(self, walk) -> None:
        try:
            join = await walk
            # A join reached by a single surviving branch is passed through
            while join is not None:
                join = await self._walk(join, enter_join=True)
            self._check_cancelled()
            output = self.state.merged_output()
            await self._set_run_status(RunStatus.COMPLETED, output=output)
            await self._publish("run.complete", {"status": "completed", "output": output})
        except _RunCancelled:
            logger.info(f"Run {self.run.id} stopped after cancellation")
        except PersistenceError as e:
            # Leave the stored status alone so the run can be reconciled
            logger.error(f"Run {self.run.id} lost its state store: {e}")
            await self._publish("run.error", {"status": "failed", "error": str(e)})
        except Exception as e:
            logger.error(f"Run {self.run.id} failed: {e}")
            await self._fail(str(e))
        finally:
            self.runner._release(self)

    async def _fail(self, message: str) -> None:
        if self.cancelled or self.run.status.is_terminal:
            return
        try:
            await self._set_run_status(RunStatus.FAILED, error=message)
            await self.runner._cancel_pending_approvals(self.run.id, self.run.tenant_id)
        except PersistenceError as e:
            logger.error(f"Could not record failure of run {self.run.id}: {e}")
        await self._publish("run.error", {"status": "failed", "error": message})

    async def cancel(self) -> None:
        if RunStatus.CANCELLED not in RUN_TRANSITIONS[self.run.status]:
            raise InvalidTransition(f"Run {self.run.id} is already {self.run.status.value}")
        self.cancelled = True
        await self._set_run_status(RunStatus.CANCELLED, error="Run cancelled")
        await self.runner._cancel_pending_approvals(self.run.id, self.run.tenant_id)
        checkpoint = self._checkpoint
        if checkpoint is not None:
            await self._finish_step(
                checkpoint.step, StepStatus.SKIPPED, error="Run cancelled"
            )
            checkpoint.event.set()
        await self._publish("run.error", {"status": "cancelled", "error": "Run cancelled"})

    # ------------------------------------------------------------------
    # graph walking

    async def _walk(self, node_id: str, enter_join: bool = False) -> Optional[str]:
        """Execute nodes from ``node_id``.

        Returns ``None`` when the branch ends, or the id of the parallel join
        it reached. Joins are entered by whoever forked the branches.
        """
        current = node_id
        while True:
            if self.graph.is_join(current) and not enter_join:
                return current
            self._check_cancelled()
            try:
                next_ids = await self._enter(self.graph.task(current))
            except asyncio.CancelledError:
                if self._aborting:
                    await self._close_open_steps(current)
                raise
            if not next_ids:
                return None
            if len(next_ids) == 1:
                current, enter_join = next_ids[0], False
                continue
            join = await self._fork(next_ids)
            if join is None:
                return None
            current, enter_join = join, True

    async def _close_open_steps(self, task_id: str) -> None:
        for step in list(self._open_steps.values()):
            if step.task_id == task_id:
                await self._finish_step(
                    step, StepStatus.SKIPPED, error="Parallel branch aborted"
                )

    async def _walk_targets(self, next_ids: List[str]) -> Optional[str]:
        if not next_ids:
            return None
        if len(next_ids) == 1:
            return await self._walk(next_ids[0])
        join = await self._fork(next_ids)
        return await self._walk(join, enter_join=True) if join else None

    async def _fork(self, next_ids: List[str]) -> Optional[str]:
        logger.info(f"Run {self.run.id} forking {len(next_ids)} branches")
        branches = [asyncio.create_task(self._walk(node_id)) for node_id in next_ids]
        try:
            joins = await asyncio.gather(*branches)
        except BaseException as e:
            if not isinstance(e, asyncio.CancelledError):
                # A failed branch takes its siblings down with it
                self._aborting = True
            for branch in branches:
                branch.cancel()
            await asyncio.gather(*branches, return_exceptions=True)
            raise
        reached = {join for join in joins if join is not None}
        if len(reached) > 1:
            raise DefinitionError(
                f"Parallel branches meet at different joins: {', '.join(sorted(reached))}"
            )
        return reached.pop() if reached else None

    async def _enter(self, task: Task) -> List[str]:
        if task.kind == TaskKind.GATEWAY:
            return await self._enter_gateway(task)
        if task.kind == TaskKind.HUMAN:
            return await self._enter_checkpoint(task)
        if task.kind == TaskKind.SERVICE:
            return await self._enter_service(task)

        step = await self._begin_step(task, iteration=self._count(task.id))
        if task.kind == TaskKind.END:
            await self._finish_step(step)
            return []
        note = (
            {"note": "Auto-signaled catch event"}
            if task.element_type == "intermediateCatchEvent"
            else None
        )
        await self._finish_step(step, output=note)
        return self._targets(task)

    async def _enter_gateway(self, task: Task) -> List[str]:
        step = await self._begin_step(task, iteration=self._count(task.id))
        outgoing = self.definition.gateway_flows.get(task.id)
        if task.gateway_type == "parallel" or outgoing is None:
            await self._finish_step(step)
            return self._targets(task)
        if not outgoing:
            await self._finish_step(step)
            return []

        variable = route_variable(task.id)
        if task.routing == "reasoning" and variable not in self.variables:
            context = build_routing_context(
                self.state, limit=self.config.engine.routing_context_limit
            )
            self.variables[variable] = await self.runner.router.choose_gateway_flow(
                task.label, outgoing, context
            )
            self._check_cancelled()

        chosen = next(
            (f for f in outgoing if f.condition and evaluate(f.condition, self.variables)),
            None,
        )
        if chosen is None and task.default_flow:
            chosen = next((f for f in outgoing if f.id == task.default_flow), None)
        if chosen is None:
            chosen = outgoing[-1]
        # Routing decisions are consumed so loops re-route on the next pass
        self.variables.pop(variable, None)

        logger.info(f"Gateway {task.label!r} took {chosen.label!r}")
        await self._finish_step(
            step,
            output={"flow": chosen.id, "target": chosen.target, "routing": task.routing},
        )
        return [chosen.target]

    async def _enter_service(self, task: Task) -> List[str]:
        iteration = self._count(task.id)
        worker = self.workers.get(task.id)
        contract = self.definition.contracts.get(task.id)
        scoped_input = build_scoped_input(task.label, contract, self.state)
        step = await self._begin_step(task, worker, iteration, scoped_input)

        limit = self.config.engine.max_task_iterations
        if iteration >= limit:
            logger.warning(
                f"Task {task.label!r} hit {iteration} iterations, forcing the happy path"
            )
            self.variables.update(FORCED_DECISION_VARIABLES)
            # Every reasoning gateway of the process is forced, not only those
            # ahead of this task, so no later gateway can loop back either
            for gateway in self.definition.reasoning_gateways():
                flows = self.definition.gateway_flows.get(gateway.id)
                if flows:
                    self.variables[route_variable(gateway.id)] = flows[-1].id
            await self._finish_step(
                step, output={"note": f"Forced after {iteration} iterations"}
            )
            return self._targets(task)

        if worker is None:
            logger.info(f"No worker for {task.label!r}, passing through")
            await self._finish_step(step, output={"note": "Pass-through"})
            await self._preroute(task, None)
            return self._targets(task)

        scoped = None
        if contract is not None and contract.input_keys:
            scoped = ScopedContext(
                task_name=task.label,
                skill_name=contract.skill_name,
                worker_name=contract.worker_name or worker.name,
                scoped_input=scoped_input,
                flow_summary=self.state.flow_summary,
                original_request=self.state.original_request,
                output_keys=contract.output_keys,
            )
        prompt = build_worker_prompt(scoped_input, scoped)
        logger.info(f"Executing {task.label!r} via {worker.name!r}")
        result = await self.runner.executor.invoke(
            worker, prompt, scoped, task_name=task.label
        )
        if self.cancelled:
            # The result of a call that outlived its run is discarded
            await self._finish_step(step, StepStatus.SKIPPED, error="Run cancelled")
            raise _RunCancelled()

        if not result.success:
            await self._finish_step(step, StepStatus.FAILED, error=result.error)
            raise FlowgridError(f"Task {task.label!r} failed: {result.error}")

        structured = extract_structured_output(result.output, contract)
        output: Dict[str, Any] = {"response": result.output, "structured": structured}
        if result.images:
            output["images"] = [image.model_dump() for image in result.images]
        self.state.record(
            task.id, task.label, structured, self.config.engine.summary_limit
        )
        self.variables.update(extract_decision_variables(result.output))
        await self._finish_step(step, output=output)

        await self._preroute(task, structured)
        return self._targets(task)

    def _gateways_ahead(self, task: Task) -> List[Task]:
        """Reasoning gateways reachable from ``task`` without crossing another task."""
        found: List[Task] = []
        seen = set()
        queue = self._targets(task)
        while queue:
            node_id = queue.pop(0)
            if node_id in seen:
                continue
            seen.add(node_id)
            node = self.graph.tasks[node_id]
            if node.kind in (TaskKind.SERVICE, TaskKind.HUMAN, TaskKind.END):
                continue
            if node.kind == TaskKind.GATEWAY and node.routing == "reasoning":
                found.append(node)
            queue.extend(self._targets(node))
        return found

    async def _preroute(self, task: Task, latest: Optional[Dict[str, Any]]) -> None:
        gateways = self._gateways_ahead(task)
        if not gateways:
            return
        context = build_routing_context(
            self.state, latest, self.config.engine.routing_context_limit
        )
        for gateway in gateways:
            flows = self.definition.gateway_flows.get(gateway.id) or []
            if not flows:
                continue
            self.variables[route_variable(gateway.id)] = (
                await self.runner.router.choose_gateway_flow(gateway.label, flows, context)
            )
            self._check_cancelled()

    # ------------------------------------------------------------------
    # human checkpoints

    async def _enter_checkpoint(self, task: Task) -> List[str]:
        # One checkpoint at a time so a paused run has exactly one waiting step
        async with self._checkpoint_lock:
            self._check_cancelled()
            worker = self.workers.get(task.id)
            context = self.state.running_context(task.label)
            step = await self._begin_step(task, worker, self._count(task.id), context)

            analysis = ""
            structured: Dict[str, Any] = {}
            if worker is not None:
                result = await self.runner.executor.invoke(
                    worker, build_worker_prompt(context), task_name=task.label
                )
                self._check_cancelled()
                if result.success:
                    analysis = result.output
                    structured = extract_structured_output(
                        analysis, self.definition.contracts.get(task.id)
                    )
                else:
                    logger.error(
                        f"Worker error before checkpoint {task.label!r}: {result.error}"
                    )

            approval = ApprovalRequest(
                tenant_id=self.run.tenant_id,
                run_id=self.run.id,
                step_id=step.id,
                title=f"Review needed: {task.label}",
                description=analysis
                or f'Flow run is waiting for human review at step "{task.label}"',
                context={
                    "runId": self.run.id,
                    "stepId": task.id,
                    "agentAnalysis": analysis,
                    "input": context,
                },
            )
            timeout = self.config.approval.timeout_seconds
            if timeout:
                approval.expires_at = approval.requested_at + timedelta(seconds=timeout)
            await self.repository.create_approval(approval)

            step.status = StepStatus.WAITING_APPROVAL
            step.approval_id = approval.id
            step.output = {"response": analysis, "structured": structured}
            checkpoint = _Checkpoint(approval.id, step, structured)
            self._checkpoint = checkpoint
            await self._set_run_status(RunStatus.PAUSED)
            await self._record_step(step)
            logger.info(f"Run {self.run.id} paused at {task.label!r}")

            await self._wait_checkpoint(task, checkpoint, approval)
        return self._targets(task)

    async def _wait_checkpoint(
        self, task: Task, checkpoint: _Checkpoint, approval: ApprovalRequest
    ) -> None:
        try:
            await self._await_decision(checkpoint, approval)
        finally:
            self._checkpoint = None
        self._check_cancelled()

        decision = checkpoint.decision
        self.variables["approvalStatus"] = decision
        self.state.record(
            task.id,
            task.label,
            {**checkpoint.structured, "approvalStatus": decision},
            self.config.engine.summary_limit,
        )

    async def _await_decision(
        self, checkpoint: _Checkpoint, approval: ApprovalRequest
    ) -> None:
        policy = self.config.approval
        timeout = policy.timeout_seconds
        if approval.expires_at is not None:
            timeout = max(0.0, (approval.expires_at - utcnow()).total_seconds())
        if timeout is None:
            await checkpoint.event.wait()
            return
        try:
            await asyncio.wait_for(checkpoint.event.wait(), timeout)
            return
        except asyncio.TimeoutError:
            pass
        if checkpoint.event.is_set() or self.cancelled:
            return

        logger.warning(f"Approval {approval.id} expired, applying {policy.on_timeout!r}")
        if policy.on_timeout == "fail":
            approval.status = ApprovalStatus.EXPIRED
            approval.decided_at = utcnow()
            await self.repository.update_approval(approval)
            await self._finish_step(
                checkpoint.step, StepStatus.FAILED, error="Approval expired"
            )
            raise FlowgridError(f"Approval {approval.id} expired")
        decision = "approved" if policy.on_timeout == "approve" else "rejected"
        await self.apply_decision(
            approval, ApprovalStatus.EXPIRED, decision, comment="Expired"
        )

    async def apply_decision(
        self,
        approval: ApprovalRequest,
        status: ApprovalStatus,
        decision: str,
        decided_by: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> None:
        """Record a decision on the waiting checkpoint and wake it."""
        checkpoint = self._checkpoint
        if checkpoint is None or checkpoint.approval_id != approval.id:
            raise NotPaused(f"Run {self.run.id} is not waiting on approval {approval.id}")

        approval.status = status
        approval.decided_by = decided_by
        approval.decision_comment = comment
        approval.decided_at = utcnow()
        await self.repository.update_approval(approval)

        step = checkpoint.step
        step.status = StepStatus.COMPLETED
        step.completed_at = utcnow()
        step.output = {
            **(step.output or {}),
            "structured": {**checkpoint.structured, "approvalStatus": decision},
            "decision": decision,
            "decided_by": decided_by,
            "comment": comment,
        }
        checkpoint.decision = decision
        if self.run.status == RunStatus.PAUSED:
            await self._set_run_status(RunStatus.RUNNING)
        await self._record_step(step)
        checkpoint.event.set()


class FlowRunner:
    """Starts runs and routes external operations to their resident engines."""

    def __init__(
        self,
        repository: RunRepository,
        channel: BaseChannel,
        catalog: ProcessCatalog,
        executor: AgentExecutor,
        router: TaskRouter,
        config: Optional[FlowgridConfig] = None,
    ) -> None:
        self.repository = repository
        self.channel = channel
        self.catalog = catalog
        self.executor = executor
        self.router = router
        self.config = config or FlowgridConfig()
        self._engines: Dict[str, RunExecution] = {}
        self._registry_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        catalog: ProcessCatalog,
        config: Optional[FlowgridConfig] = None,
        reasoner=None,
        image_generator=None,
    ) -> "FlowRunner":
        """Build a runner with the backends named in ``config``."""
        from .agent.images import OpenAIImageGenerator
        from .agent.reasoning import PydanticAIReasoner
        from .channels import get_channel
        from .persistence import get_repository

        config = config or FlowgridConfig()
        reasoner = reasoner or PydanticAIReasoner(config.default_model)
        if image_generator is None and config.image_model:
            image_generator = OpenAIImageGenerator(model=config.image_model)
        return cls(
            repository=get_repository(config.database_url, config),
            channel=get_channel(config=config),
            catalog=catalog,
            executor=AgentExecutor(reasoner, image_generator, config.retry),
            router=TaskRouter(reasoner),
            config=config,
        )

    # ------------------------------------------------------------------
    def is_resident(self, run_id: str) -> bool:
        return run_id in self._engines

    def _release(self, execution: RunExecution) -> None:
        if self._engines.get(execution.run.id) is execution:
            del self._engines[execution.run.id]

    async def _load(
        self, tenant_id: str, process_id: str, worker_override: Optional[str] = None
    ) -> tuple[ProcessDefinition, Dict[str, WorkerRef]]:
        entry = await self.catalog.get_process(tenant_id, process_id)
        if entry is None:
            raise DefinitionError(f"Unknown process {process_id!r}")
        workers = await self.catalog.list_workers(process_id) or entry.workers
        definition = normalize(
            entry.bpmn,
            workers,
            coordinator=entry.coordinator,
            reasoning_gateways=entry.reasoning_gateways,
        )
        return definition, map_tasks_to_workers(definition, workers, worker_override)

    async def start(
        self,
        tenant_id: str,
        process_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        worker_override: Optional[str] = None,
    ) -> FlowRun:
        """Start a run and return it once it is stored; execution continues in the background.

        Raises:
            DefinitionError: The process is unknown or its definition is invalid.
        """
        input_data = input_data or {}
        definition, workers = await self._load(tenant_id, process_id, worker_override)
        run = FlowRun(tenant_id=tenant_id, process_id=process_id, input=input_data)
        execution = RunExecution(
            self,
            run,
            definition,
            workers,
            FlowState.from_input(input_data),
            variables={
                k: v
                for k, v in input_data.items()
                if isinstance(v, (str, bool, int, float))
            },
            worker_override=worker_override,
        )
        run.state = execution.snapshot()
        await self.repository.create_run(run)
        async with self._registry_lock:
            self._engines[run.id] = execution
            execution.task = asyncio.create_task(execution.execute())
        logger.info(f"Started run {run.id} of {process_id} for tenant {tenant_id}")
        return run.model_copy(deep=True)

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> None:
        """Wait for the resident engine of ``run_id`` to finish, if any."""
        execution = self._engines.get(run_id)
        if execution is not None and execution.task is not None:
            await asyncio.wait_for(asyncio.shield(execution.task), timeout)

    async def wait_for_status(
        self,
        run_id: str,
        statuses: Iterable[RunStatus],
        timeout: float = 30.0,
        interval: float = 0.01,
    ) -> FlowRun:
        """Poll the store until the run reaches one of ``statuses``."""
        wanted = set(statuses)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            run = await self.repository.get_run(run_id)
            if run is None:
                raise RunNotFound(run_id)
            if run.status in wanted:
                return run
            if loop.time() >= deadline:
                raise asyncio.TimeoutError(
                    f"Run {run_id} still {run.status.value} after {timeout}s"
                )
            await asyncio.sleep(interval)

    async def _get_run(self, run_id: str, tenant_id: str) -> FlowRun:
        run = await self.repository.get_run(run_id, tenant_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        return run

    async def _resident(self, run_id: str, tenant_id: str) -> RunExecution:
        execution = self._engines.get(run_id)
        if execution is not None:
            return execution
        if self.config.engine.recover_on_resume:
            return await self.recover(run_id, tenant_id)
        raise EngineNotFound(
            f"Run engine for {run_id} not found (may have been restarted). Cannot resume."
        )

    async def resume(self, run_id: str, tenant_id: str) -> FlowRun:
        """Approve the pending checkpoint of a paused run and continue it."""
        await self._get_run(run_id, tenant_id)
        execution = await self._resident(run_id, tenant_id)
        if execution.run.status != RunStatus.PAUSED or execution.waiting_approval_id is None:
            raise NotPaused(f"Run {run_id} is not in paused state")
        approval = await self.repository.get_approval(
            execution.waiting_approval_id, tenant_id
        )
        if approval is None:
            raise ApprovalNotFound(execution.waiting_approval_id)
        await execution.apply_decision(
            approval, ApprovalStatus.APPROVED, "approved", comment="Resumed"
        )
        return execution.run.model_copy(deep=True)

    async def resolve_approval(
        self,
        approval_id: str,
        tenant_id: str,
        approved: bool,
        decided_by: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record a human decision and resume the linked run."""
        approval = await self.repository.get_approval(approval_id, tenant_id)
        if approval is None:
            raise ApprovalNotFound(f"Approval {approval_id} not found")
        if approval.status != ApprovalStatus.PENDING:
            raise NotPaused(f"Approval {approval_id} is already {approval.status.value}")
        execution = await self._resident(approval.run_id, tenant_id)
        status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        await execution.apply_decision(
            approval, status, status.value, decided_by=decided_by, comment=comment
        )
        return approval

    async def cancel(self, run_id: str, tenant_id: str) -> FlowRun:
        run = await self._get_run(run_id, tenant_id)
        async with self._registry_lock:
            execution = self._engines.get(run_id)
        if execution is not None:
            await execution.cancel()
            return execution.run.model_copy(deep=True)

        if run.status.is_terminal:
            raise InvalidTransition(f"Run {run_id} is already {run.status.value}")
        run.status = RunStatus.CANCELLED
        run.error = "Run cancelled"
        run.completed_at = utcnow()
        await self.repository.update_run(run)
        await self._cancel_pending_approvals(run_id, tenant_id)
        await self.channel.publish(
            RunEvent(
                type="run.error",
                run_id=run_id,
                data={"status": "cancelled", "error": "Run cancelled"},
            )
        )
        return run

    async def _cancel_pending_approvals(self, run_id: str, tenant_id: str) -> None:
        for approval in await self.repository.list_approvals(
            tenant_id, ApprovalStatus.PENDING
        ):
            if approval.run_id != run_id:
                continue
            approval.status = ApprovalStatus.CANCELLED
            approval.decided_at = utcnow()
            await self.repository.update_approval(approval)

    async def recover(self, run_id: str, tenant_id: str) -> RunExecution:
        """Rebuild the engine of a paused run from storage.

        Only the branch waiting at the checkpoint is resumed; parallel
        siblings that were in flight when the engine was lost are not.
        """
        async with self._registry_lock:
            existing = self._engines.get(run_id)
            if existing is not None:
                return existing

            run = await self._get_run(run_id, tenant_id)
            if run.status != RunStatus.PAUSED:
                raise NotPaused(f"Run {run_id} is not in paused state")
            steps = await self.repository.get_steps(run_id)
            waiting = next(
                (s for s in reversed(steps) if s.status == StepStatus.WAITING_APPROVAL),
                None,
            )
            if waiting is None or waiting.approval_id is None:
                raise NotPaused(f"Run {run_id} has no step waiting for approval")
            approval = await self.repository.get_approval(waiting.approval_id)
            if approval is None:
                raise ApprovalNotFound(waiting.approval_id)

            snapshot = run.state or {}
            definition, workers = await self._load(
                tenant_id, run.process_id, snapshot.get("worker_override")
            )
            if "flow" in snapshot:
                state = FlowState.model_validate(snapshot["flow"])
            else:
                state = FlowState.from_steps(
                    run.input, steps, self.config.engine.summary_limit
                )
            execution = RunExecution(
                self,
                run,
                definition,
                workers,
                state,
                variables=snapshot.get("variables"),
                iterations=snapshot.get("iterations"),
                worker_override=snapshot.get("worker_override"),
            )
            self._engines[run_id] = execution
            execution.task = asyncio.create_task(
                execution.continue_from(waiting, approval)
            )
            # Let the walker register its checkpoint before callers use it
            while execution.waiting_approval_id is None and not execution.task.done():
                await asyncio.sleep(0)
        logger.info(f"Recovered run {run_id} at step {waiting.name!r}")
        return execution

    async def reconcile_orphans(self) -> List[str]:
        """Fail stored ``running`` runs that no resident engine drives."""
        orphans: List[str] = []
        for run in await self.repository.list_runs(
            status=RunStatus.RUNNING, limit=10_000
        ):
            if run.id in self._engines:
                continue
            run.status = RunStatus.FAILED
            run.error = "engine lost"
            run.completed_at = utcnow()
            await self.repository.update_run(run)
            await self.channel.publish(
                RunEvent(
                    type="run.error",
                    run_id=run.id,
                    data={"status": "failed", "error": "engine lost"},
                )
            )
            orphans.append(run.id)
        if orphans:
            logger.warning(f"Marked {len(orphans)} orphaned runs as failed")
        return orphans

    # ------------------------------------------------------------------
    async def get_run(self, run_id: str, tenant_id: str) -> RunDetail:
        run = await self._get_run(run_id, tenant_id)
        return RunDetail(run=run, steps=await self.repository.get_steps(run_id))

    async def list_runs(
        self,
        tenant_id: str,
        status: Optional[RunStatus] = None,
        limit: int = RUN_LIST_LIMIT,
    ) -> List[FlowRun]:
        return await self.repository.list_runs(tenant_id, status, limit)

    async def delete_run(self, run_id: str, tenant_id: str) -> None:
        run = await self._get_run(run_id, tenant_id)
        if self.is_resident(run_id) and not run.status.is_terminal:
            await self.cancel(run_id, tenant_id)
        if not await self.repository.delete_run(run_id, tenant_id):
            raise RunNotFound(f"Run {run_id} not found")

    async def list_approvals(
        self, tenant_id: str, status: Optional[ApprovalStatus] = None
    ) -> List[ApprovalRequest]:
        return await self.repository.list_approvals(tenant_id, status)
