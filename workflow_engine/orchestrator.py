"""
Graph orchestrator: walks a workflow graph from its trigger, runs each block
through the handler registry and threads the execution context along the way.

Routing rules:

* condition blocks pick edges whose handle (or connector type) matches the
  ``route`` they return;
* other blocks follow ``next``/``fork``/``join``/``loopBack`` edges on success
  and ``onError`` edges on failure;
* several successors, or any ``fork`` edge, run concurrently on copies of the
  context and are merged in edge order once every branch has finished.

A step counter bounds ``loopBack`` cycles and each run has a deadline, with a
single grace window for error paths that start after it has passed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from shared.logger import get_logger
from workflow_engine.blocks import BlockScope, failure_toast_for, get_handler
from workflow_engine.context import NAMESPACES, ExecutionContext
from workflow_engine.errors import (
    ErrorCode,
    RunTimeoutError,
    StepLimitExceededError,
    WorkflowEngineError,
)
from workflow_engine.schema import (
    BlockResult,
    BranchError,
    ConnectorType,
    Edge,
    Node,
    RunStatus,
    StepRecord,
    WorkflowRunResult,
)
from workflow_engine.security import validate_app_access
from workflow_engine.services import EngineServices
from workflow_engine.validation import WorkflowGraph, build_graph

logger = get_logger(__name__)

SUCCESS_CONNECTORS = (
    ConnectorType.NEXT,
    ConnectorType.FORK,
    ConnectorType.JOIN,
    ConnectorType.LOOP_BACK,
)


@dataclass
class _RunState:
    graph: WorkflowGraph
    services: EngineServices
    app_id: int
    user_id: int
    deadline: float
    max_steps: int
    steps: List[StepRecord] = field(default_factory=list)
    errors: List[BranchError] = field(default_factory=list)
    step_count: int = 0
    grace_deadline: Optional[float] = None
    deadline_hit: bool = False
    last_context: Optional[ExecutionContext] = None

    def now(self) -> float:
        return self.services.clock()

    def time_left(self) -> float:
        """Seconds the next handler may run for; raises once the run is out of time."""
        now = self.now()
        if self.grace_deadline is not None:
            if now < self.grace_deadline:
                return self.grace_deadline - now
        elif now < self.deadline:
            return self.deadline - now
        raise RunTimeoutError("Workflow run exceeded its deadline")

    def start_grace(self) -> None:
        """Open the single grace window for error paths taken after the deadline."""
        if self.grace_deadline is None:
            self.grace_deadline = max(self.now(), self.deadline) + self.services.settings.workflow_error_path_grace_seconds
            logger.warning("Run deadline passed; granting grace window to error path")

    def count_step(self) -> None:
        self.step_count += 1
        if self.step_count > self.max_steps:
            raise StepLimitExceededError(f"Workflow exceeded {self.max_steps} steps")


@dataclass
class _Branch:
    context: ExecutionContext
    directives: List[Any] = field(default_factory=list)
    joins: List[str] = field(default_factory=list)
    visited: Set[str] = field(default_factory=set)
    halted: bool = False

    def add_joins(self, targets: Iterable[str]) -> None:
        for target in targets:
            if target not in self.joins:
                self.joins.append(target)


def _context_delta(base: Mapping[str, Any], branch: Mapping[str, Any]) -> Dict[str, Any]:
    """Keys a fork branch added or changed relative to the context it started from."""
    delta: Dict[str, Any] = {}
    for key, value in branch.items():
        previous = base.get(key)
        if key in NAMESPACES and isinstance(value, dict) and isinstance(previous, dict):
            changed = {name: item for name, item in value.items() if previous.get(name) != item}
            if changed:
                delta[key] = changed
        elif key not in base or previous != value:
            delta[key] = value
    return delta


def select_start_nodes(graph: WorkflowGraph, trigger: Optional[str], context: ExecutionContext) -> List[Node]:
    triggers = graph.triggers()
    if trigger:
        return [node for node in triggers if node.label == trigger]
    if triggers:
        if context.get("webhookPayload") is not None:
            webhooks = [node for node in triggers if node.label == "onWebhook"]
            if webhooks:
                return webhooks[:1]
        return triggers[:1]
    for node in graph.nodes.values():
        if not graph.has_incoming(node.id):
            return [node]
    return []


class WorkflowOrchestrator:
    """
    Executes workflow graphs against injected :class:`EngineServices`.

    Example:
        orchestrator = WorkflowOrchestrator(services)
        result = await orchestrator.run(nodes, edges, {"formData": {...}}, app_id=7, user_id=3)
    """

    def __init__(self, services: Optional[EngineServices] = None):
        self.services = services or EngineServices()

    async def run(
        self,
        nodes: Iterable[Any],
        edges: Optional[Iterable[Any]] = None,
        initial_context: Optional[Mapping[str, Any]] = None,
        app_id: Optional[int] = None,
        user_id: Optional[int] = None,
        trigger: Optional[str] = None,
    ) -> WorkflowRunResult:
        graph = build_graph(nodes, edges)
        context = ExecutionContext(initial_context)
        settings = self.services.settings

        if not graph.nodes:
            return self._failed(context, graph, ErrorCode.VALIDATION_ERROR, "Workflow has no nodes")

        start_nodes = select_start_nodes(graph, trigger, context)
        if not start_nodes:
            message = f"No '{trigger}' trigger in workflow" if trigger else "Workflow has no start node"
            return self._failed(context, graph, ErrorCode.TRIGGER_MISMATCH, message)

        state = _RunState(
            graph=graph,
            services=self.services,
            app_id=app_id,
            user_id=user_id,
            deadline=self.services.clock() + settings.workflow_run_timeout_seconds,
            max_steps=settings.workflow_max_steps,
        )
        logger.info(
            "Workflow run started",
            extra={"app_id": app_id, "user_id": user_id, "trigger": start_nodes[0].label, "nodes": len(graph.nodes)},
        )

        directives: List[Any] = []
        fatal: Optional[WorkflowEngineError] = None
        try:
            for start in start_nodes:
                branch = await self._continue(state, start.id, context)
                context = branch.context
                directives.extend(branch.directives)
        except (StepLimitExceededError, RunTimeoutError) as exc:
            fatal = exc
            if state.last_context is not None:
                context = state.last_context
            state.errors.append(BranchError(code=exc.code, message=exc.message))
            logger.error(f"Workflow run aborted: {exc.message}", extra={"app_id": app_id})

        start_failed = any(
            error.code == ErrorCode.TRIGGER_MISMATCH and error.node_id in {node.id for node in start_nodes}
            for error in state.errors
        )
        unrecovered_timeout = state.deadline_hit and any(error.code == ErrorCode.TIMEOUT for error in state.errors)
        if fatal is not None or unrecovered_timeout or start_failed:
            status = RunStatus.FAILED
        elif state.errors:
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.COMPLETED

        logger.info(
            f"Workflow run {status.value}",
            extra={"app_id": app_id, "steps": state.step_count, "errors": len(state.errors)},
        )
        return WorkflowRunResult(
            success=status == RunStatus.COMPLETED,
            status=status,
            context=context.to_dict(),
            directives=directives,
            steps=state.steps,
            errors=state.errors,
            warnings=graph.warnings,
        )

    @staticmethod
    def _failed(context: ExecutionContext, graph: WorkflowGraph, code: ErrorCode, message: str) -> WorkflowRunResult:
        logger.warning(f"Workflow run could not start: {message}")
        return WorkflowRunResult(
            success=False,
            status=RunStatus.FAILED,
            context=context.to_dict(),
            errors=[BranchError(code=code, message=message)],
            warnings=graph.warnings,
        )

    # ------------------------------------------------------------------
    # Walking
    # ------------------------------------------------------------------

    async def _continue(self, state: _RunState, node_id: str, context: ExecutionContext) -> _Branch:
        """Walk from ``node_id`` and carry on at any join targets the walk reaches."""
        branch = await self._walk(state, node_id, context)
        while branch.joins and not branch.halted:
            targets, branch.joins = branch.joins, []
            for target in targets:
                resumed = await self._walk(state, target, branch.context)
                branch.context = resumed.context
                branch.directives.extend(resumed.directives)
                branch.add_joins(resumed.joins)
                branch.halted = branch.halted or resumed.halted
        return branch

    async def _walk(self, state: _RunState, node_id: str, context: ExecutionContext) -> _Branch:
        """
        Run nodes sequentially until the branch ends, halts or reaches a join.

        Join edges end the branch; their targets are returned to whoever forked
        it so the join only runs once every sibling branch is done.
        """
        branch = _Branch(context=context)
        current: Optional[str] = node_id
        while current is not None:
            node = state.graph.nodes[current]
            branch.visited.add(node.id)
            result = await self._execute(state, node, branch.context)
            output = result.output if result.output is not None else result.updates
            branch.context = branch.context.merged(result.updates).merged({"outputs": {node.id: output}})
            state.last_context = branch.context
            branch.directives.extend(result.directives)

            edges = self._next_edges(state, node, result)
            if not result.success:
                if not edges:
                    error = result.error
                    state.errors.append(
                        BranchError(
                            node_id=node.id,
                            code=error.code if error else ErrorCode.EXTERNAL_SERVICE_ERROR,
                            message=error.message if error else f"{node.label} failed",
                        )
                    )
                    branch.halted = True
                    return branch
                if state.deadline_hit or state.now() >= state.deadline:
                    state.start_grace()

            branch.add_joins(edge.target for edge in edges if edge.connector == ConnectorType.JOIN)
            onward = [edge for edge in edges if edge.connector != ConnectorType.JOIN]
            if not onward:
                return branch
            if len(onward) == 1 and onward[0].connector != ConnectorType.FORK:
                current = onward[0].target
                continue

            forked = await self._fork(state, onward, branch.context)
            branch.context = forked.context
            branch.directives.extend(forked.directives)
            branch.visited |= forked.visited
            # A join fed from outside this fork belongs to an enclosing fork and is handed up.
            local = [target for target in forked.joins if state.graph.join_sources(target) <= forked.visited]
            branch.add_joins(target for target in forked.joins if target not in local)
            if not local:
                return branch
            # Every local join target but the last resumes in a nested walk; the last continues here.
            for target in local[:-1]:
                resumed = await self._walk(state, target, branch.context)
                branch.context = resumed.context
                branch.directives.extend(resumed.directives)
                branch.visited |= resumed.visited
                branch.add_joins(resumed.joins)
            current = local[-1]
        return branch

    async def _fork(self, state: _RunState, edges: List[Edge], context: ExecutionContext) -> _Branch:
        logger.debug("Forking", extra={"branches": len(edges)})
        outcomes = await asyncio.gather(
            *(self._walk(state, edge.target, context.copy()) for edge in edges),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        base = context.to_dict()
        merged = _Branch(context=context)
        for outcome in outcomes:
            merged.context = merged.context.merged(_context_delta(base, outcome.context.as_mapping()))
            merged.directives.extend(outcome.directives)
            merged.add_joins(outcome.joins)
            merged.visited |= outcome.visited
        return merged

    def _next_edges(self, state: _RunState, node: Node, result: BlockResult) -> List[Edge]:
        outgoing = state.graph.outgoing(node.id)
        if not result.success:
            return [edge for edge in outgoing if edge.connector == ConnectorType.ON_ERROR]
        if result.route is not None:
            route = result.route.lower()
            return [
                edge
                for edge in outgoing
                if edge.connector != ConnectorType.ON_ERROR
                and (edge.route_label.lower() == route or edge.connector.value.lower() == route)
            ]
        return [edge for edge in outgoing if edge.connector in SUCCESS_CONNECTORS]

    # ------------------------------------------------------------------
    # Executing one node
    # ------------------------------------------------------------------

    async def _execute(self, state: _RunState, node: Node, context: ExecutionContext) -> BlockResult:
        state.count_step()
        timeout = state.time_left()
        started = time.perf_counter()
        result = await self._invoke(state, node, context, timeout)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        state.steps.append(
            StepRecord(
                node_id=node.id,
                label=node.label,
                success=result.success,
                route=result.route,
                error=result.error,
                duration_ms=duration_ms,
            )
        )
        return result

    async def _invoke(self, state: _RunState, node: Node, context: ExecutionContext, timeout: float) -> BlockResult:
        handler = get_handler(node.label)
        if handler is None:
            return BlockResult.fail(ErrorCode.INVALID_CONFIG, f"Unknown block '{node.label}'")

        scope = BlockScope(app_id=state.app_id, user_id=state.user_id, node=node, services=state.services)
        try:
            await validate_app_access(state.services.access, state.app_id, state.user_id)
            return await asyncio.wait_for(handler.run(node, context, scope), timeout=timeout)
        except asyncio.TimeoutError:
            state.deadline_hit = True
            logger.warning(f"{node.label} timed out", extra={"node_id": node.id})
            return BlockResult.fail(ErrorCode.TIMEOUT, f"{node.label} did not finish before the run deadline")
        except WorkflowEngineError as exc:
            logger.warning(f"{node.label} failed: {exc.message}", extra={"node_id": node.id, "code": exc.code.value})
            return BlockResult.fail(exc.code, exc.message, directives=failure_toast_for(handler, exc.message))
        except Exception as exc:
            logger.exception(f"{node.label} raised unexpectedly", extra={"node_id": node.id})
            return BlockResult.fail(
                ErrorCode.EXTERNAL_SERVICE_ERROR,
                f"{node.label} failed: {exc}",
                directives=failure_toast_for(handler, str(exc)),
            )
