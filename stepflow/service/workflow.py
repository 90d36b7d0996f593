from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from stepflow.config import Settings, get_settings
from stepflow.graph.models import (
    ActionNode,
    ConditionalNode,
    Node,
    NodeLocation,
    RedirectKind,
    RedirectTarget,
    Trigger,
    WorkflowGraph,
)
from stepflow.graph.validation import check_graph_integrity, load_workflow
from stepflow.logging import get_logger, log_run_history, run_id_var, sanitize_error_message
from stepflow.service.conditions import evaluate_conditional
from stepflow.service.context import CancellationToken, ExecutionContext, HistoryEntry
from stepflow.service.errors import (
    GraphIntegrityError,
    RedirectCycleError,
    WorkflowError,
)
from stepflow.service.executor import ToolExecutor
from stepflow.service.tools import ToolRegistry
from stepflow.service.variables import VariableResolver, canonical_path

NODE_COMPLETED = "completed"
NODE_SKIPPED = "skipped"
NODE_FAILED = "failed"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    variables: Dict[str, Any] = field(default_factory=dict)
    history: Tuple[HistoryEntry, ...] = ()
    error: Optional[WorkflowError] = None
    failed_at: Optional[NodeLocation] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.TERMINATED)

    @property
    def tools(self) -> List[str]:
        """Names of the tools dispatched, in call order."""
        return [entry.tool for entry in self.history]

    def output(self, location: Union[NodeLocation, str]) -> Any:
        path = location.output_path if isinstance(location, NodeLocation) else location
        return self.variables.get(canonical_path(path))

    def raise_for_error(self) -> "RunResult":
        if self.error is not None:
            raise self.error
        return self

    def to_dict(self) -> Dict[str, Any]:
        error = None
        if self.error is not None:
            error = self.error.to_dict()
            error["message"] = sanitize_error_message(self.error.message)
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "variables": self.variables,
            "history": [entry.to_dict() for entry in self.history],
            "error": error,
            "failed_at": self.failed_at.to_dict() if self.failed_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
        }


class ExecutionEngine:
    """Walks a workflow graph for one trigger firing.

    Nodes run strictly one after another. Conditional nodes pick exactly one
    branch; a branch's redirect either falls through, ends the run, or jumps
    to another top-level position. Revisiting a top-level position is a
    cycle and fails the run.
    """

    def __init__(
        self,
        registry: Optional[ToolRegistry] = None,
        *,
        executor: Optional[ToolExecutor] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        if executor is None:
            self.registry = registry or ToolRegistry()
            self.executor = ToolExecutor(self.registry, settings=self.settings)
            self._owns_executor = True
        else:
            self.registry = executor.registry
            self.executor = executor
            self._owns_executor = False
        self.logger = get_logger(__name__)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    async def run(
        self,
        graph: Union[WorkflowGraph, Mapping[str, Any]],
        trigger: Union[Trigger, str],
        *,
        payload: Any = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        cancellation: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """Execute ``graph`` for ``trigger``.

        Never raises for workflow errors: failures are reported through the
        returned ``RunResult`` (use ``raise_for_error`` to re-raise).
        """
        ctx = ExecutionContext(
            session_id=session_id,
            user_id=user_id,
            cancellation=cancellation or CancellationToken(),
        )
        if run_id:
            ctx.run_id = run_id
        if self.settings.run_timeout_seconds:
            ctx.deadline = time.monotonic() + self.settings.run_timeout_seconds

        token = run_id_var.set(ctx.run_id)
        started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        status = RunStatus.RUNNING
        error: Optional[WorkflowError] = None
        try:
            graph = load_workflow(graph)
            trigger_model = self._resolve_trigger(graph, trigger)
            issues = check_graph_integrity(graph)
            if issues:
                raise GraphIntegrityError(issues)
            for key, value in (variables or {}).items():
                ctx.set_variable(key, value)
            ctx.variables["trigger"] = {
                "id": trigger_model.id,
                "type": trigger_model.type,
                "config": dict(trigger_model.config),
                "data": payload,
            }
            self.logger.info(
                "run_started",
                workflow_id=graph.id,
                trigger=trigger_model.id,
                session_id=session_id,
                user_id=user_id,
            )
            status = await self._walk(graph, ctx, VariableResolver(graph))
        except WorkflowError as exc:
            status = RunStatus.FAILED
            error = exc
            self.logger.warning(
                "run_failed",
                error_code=exc.error_code,
                error=exc.message,
                location=exc.location.path if exc.location else None,
            )
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            if self.settings.log_history_on_finish:
                log_run_history(ctx.history, self.logger)
            self.logger.info(
                "run_finished",
                status=status.value,
                tools=len(ctx.history),
                duration_ms=round(duration_ms, 2),
            )
            run_id_var.reset(token)

        return RunResult(
            run_id=ctx.run_id,
            status=status,
            variables=dict(ctx.variables),
            history=ctx.history.snapshot(),
            error=error,
            failed_at=error.location if error else None,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration_ms=duration_ms,
        )

    def _resolve_trigger(self, graph: WorkflowGraph, trigger: Union[Trigger, str]) -> Trigger:
        trigger_id = trigger.id if isinstance(trigger, Trigger) else trigger
        found = graph.find_trigger(trigger_id)
        if found is None:
            raise GraphIntegrityError([f"unknown trigger {trigger_id!r}"])
        return found[1]

    async def _walk(
        self, graph: WorkflowGraph, ctx: ExecutionContext, resolver: VariableResolver
    ) -> RunStatus:
        positions = graph.positions()
        order = {position: index for index, position in enumerate(positions)}
        visited: set[Tuple[int, int]] = set()
        trail: List[Tuple[int, int]] = []

        cursor = 0
        while cursor < len(positions):
            position = positions[cursor]
            if position in visited:
                cycle = RedirectCycleError(position, trail)
                cycle.location = NodeLocation(*trail[-1])
                raise cycle
            visited.add(position)
            trail.append(position)

            location = NodeLocation(*position)
            outcome = await self._execute_node(graph.node_at(*position), location, ctx, resolver)
            if outcome is None or outcome.kind is RedirectKind.CONTINUE:
                cursor += 1
            elif outcome.kind is RedirectKind.END:
                self.logger.info("run_ended_by_redirect", location=location.path)
                return RunStatus.TERMINATED
            else:
                self.logger.info(
                    "redirect_followed", source=location.path, target=outcome.encode()
                )
                cursor = order[outcome.position]
        return RunStatus.SUCCEEDED

    async def _execute_node(
        self,
        node: Node,
        location: NodeLocation,
        ctx: ExecutionContext,
        resolver: VariableResolver,
    ) -> Optional[RedirectTarget]:
        """Run one node; returns a redirect that must propagate outward, if any."""
        if not node.enabled:
            ctx.variables[location.status_path] = NODE_SKIPPED
            self.logger.debug("node_skipped", location=location.path, node_type=node.type)
            return None

        try:
            ctx.check_active()
            if isinstance(node, ConditionalNode):
                return await self._execute_conditional(node, location, ctx, resolver)
            await self._execute_action(node, location, ctx, resolver)
            return None
        except WorkflowError as exc:
            if exc.location is None:
                exc.location = location
                ctx.variables[location.status_path] = NODE_FAILED
            raise

    async def _execute_action(
        self,
        node: ActionNode,
        location: NodeLocation,
        ctx: ExecutionContext,
        resolver: VariableResolver,
    ) -> None:
        args = resolver.resolve_config(node.config, ctx.variables)
        self.logger.info("node_dispatched", location=location.path, tool=node.type, node_id=node.id)
        result = await self.executor.execute(ctx, node.type, args, location=location)
        ctx.variables[location.output_path] = result
        ctx.variables[location.status_path] = NODE_COMPLETED

    async def _execute_conditional(
        self,
        node: ConditionalNode,
        location: NodeLocation,
        ctx: ExecutionContext,
        resolver: VariableResolver,
    ) -> Optional[RedirectTarget]:
        taken = evaluate_conditional(node, resolver, ctx.variables)
        branch = "true" if taken else "false"
        ctx.variables[location.output_path] = {"result": taken, "branch": branch}
        ctx.variables[location.status_path] = NODE_COMPLETED
        self.logger.info("condition_evaluated", location=location.path, branch=branch)

        children: Sequence[Node] = node.branch(taken)
        for index, child in enumerate(children):
            outcome = await self._execute_node(child, location.child(branch, index), ctx, resolver)
            if outcome is not None and outcome.kind is not RedirectKind.CONTINUE:
                return outcome

        redirect = node.redirect(taken)
        if redirect.kind is RedirectKind.CONTINUE:
            return None
        return redirect
