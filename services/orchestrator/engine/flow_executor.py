"""Flow executor: runs a flow's nodes in dependency order, sequentially or in parallel."""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Set, Tuple
from services.orchestrator.engine.collection_lookup import find_flow_by_id
from services.orchestrator.engine.context import (
    ExecutionContext,
    FlowExecutionConfig,
    FlowExecutionInput,
)
from services.orchestrator.engine.graph import (
    create_initial_flow_run_result,
    incoming_connectors,
    is_condition_satisfied,
    topological_order,
    validate_flow,
)
from services.orchestrator.engine.node_executor import HttpRequestExecutor
from services.orchestrator.engine.variables import FlowContext
from shared.exceptions import extract_error_message
from shared.logging_config import correlation_scope
from shared.types import (
    TERMINAL_NODE_STATUSES,
    ExecutionStatus,
    Flow,
    FlowExecutionResult,
    FlowNode,
    FlowNodeResult,
    FlowNodeStatus,
    FlowProgress,
    FlowRunResult,
    FlowRunStatus,
    HttpExecutionResult,
    ValidationStatus,
)
from shared.utils import utc_now_iso

UNFINISHED_NODE_STATUSES = {FlowNodeStatus.IDLE, FlowNodeStatus.PENDING, FlowNodeStatus.RUNNING}


@dataclass
class FlowRun:
    """Mutable bookkeeping for one run; discarded when the run ends"""
    flow: Flow
    node_results: Dict[str, FlowNodeResult]
    flow_context: FlowContext = field(default_factory=FlowContext)
    active_connector_ids: List[str] = field(default_factory=list)
    skipped_connector_ids: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    on_node_update: Optional[Callable[[FlowNodeResult], None]] = None

    def __post_init__(self):
        self.nodes = {node.id: node for node in self.flow.nodes}

    def status_of(self, node_id: str) -> FlowNodeStatus:
        return self.node_results[node_id].status

    def mark(self, node_id: str, status: FlowNodeStatus, **fields) -> FlowNodeResult:
        node = self.nodes[node_id]
        result = FlowNodeResult(
            node_id=node.id,
            request_id=node.request_id,
            alias=node.alias,
            status=status,
            **fields,
        )
        self._store(result)
        return result

    def complete(self, node: FlowNode, result: HttpExecutionResult) -> FlowNodeResult:
        if result.status == ExecutionStatus.SUCCESS:
            status = FlowNodeStatus.SUCCESS
        elif result.status == ExecutionStatus.CANCELLED:
            status = FlowNodeStatus.SKIPPED
        else:
            status = FlowNodeStatus.FAILED

        node_result = self.mark(
            node.id,
            status,
            response=result.response,
            error=result.error,
            unresolved=list(result.unresolved),
            resolved_flow_params=result.resolved_flow_params,
            warnings=list(result.warnings),
            started_at=result.started_at,
            completed_at=result.completed_at,
        )
        if result.response is not None:
            self.flow_context.add(node.alias, result.response)
        logging.info("Node finished", extra={
            "node_id": node.id,
            "alias": node.alias,
            "status": status.value,
            "error": result.error,
        })
        return node_result

    def record_connectors(self, active: List[str], skipped: List[str]) -> None:
        self.active_connector_ids.extend(c for c in active if c not in self.active_connector_ids)
        self.skipped_connector_ids.extend(c for c in skipped if c not in self.skipped_connector_ids)

    def skip_unfinished(self) -> List[str]:
        """Settles every node that never reached a terminal state as skipped"""
        settled = []
        for node_id, result in list(self.node_results.items()):
            if result.status not in UNFINISHED_NODE_STATUSES:
                continue
            self.mark(node_id, FlowNodeStatus.SKIPPED)
            bypassed = [
                c.id for c in incoming_connectors(self.flow, node_id)
                if c.id not in self.active_connector_ids
            ]
            self.record_connectors([], bypassed)
            settled.append(node_id)
        return settled

    def _store(self, result: FlowNodeResult) -> None:
        self.node_results[result.node_id] = result
        if self.on_node_update is None:
            return
        try:
            self.on_node_update(result.model_copy())
        except Exception:
            logging.exception("Node update callback failed", extra={"node_id": result.node_id})


class FlowExecutor:
    """Runs a flow against an ExecutionContext.

    Structural problems (missing flow, invalid graph) end the run before any
    request is sent and are reported as the result's `error`. Node failures
    are recorded per node; the first failure stops the run.
    """

    def __init__(self, http_executor: HttpRequestExecutor = None):
        self.http_executor = http_executor or HttpRequestExecutor()
        # Tasks abandoned after a failure or cancellation keep running here
        self._background_tasks: Set[asyncio.Task] = set()

    async def execute(
        self,
        execution_input: FlowExecutionInput,
        context: ExecutionContext,
        config: FlowExecutionConfig = None,
    ) -> FlowExecutionResult:
        config = config or FlowExecutionConfig()
        flow_id = execution_input.flow_id
        execution_id = execution_input.execution_id or f"flow-{flow_id}-{int(time.time() * 1000)}"
        with correlation_scope(execution_id):
            return await self._execute(flow_id, execution_id, context, config)

    async def _execute(
        self,
        flow_id: str,
        execution_id: str,
        context: ExecutionContext,
        config: FlowExecutionConfig,
    ) -> FlowExecutionResult:
        started_at = utc_now_iso()

        flow = find_flow_by_id(flow_id, context.flows)
        if flow is None:
            return self._error_result(execution_id, flow_id, f"Flow not found: {flow_id}", started_at)

        errors = validate_flow(flow)
        if errors:
            logging.warning("Flow failed validation", extra={"flow_id": flow_id, "errors": errors})
            return self._error_result(execution_id, flow_id, f"Invalid flow: {'; '.join(errors)}", started_at)

        order = topological_order(flow)
        if order is None:
            return self._error_result(execution_id, flow_id, "Flow contains a cycle", started_at)

        node_context = replace(
            context,
            flow_context=FlowContext(),
            default_auth_id=config.default_auth_id or context.default_auth_id or flow.default_auth_id,
            initial_variables=config.initial_variables or context.initial_variables,
        )
        run = FlowRun(
            flow=flow,
            node_results=create_initial_flow_run_result(flow).node_results,
            flow_context=node_context.flow_context,
            on_node_update=config.on_node_update,
        )

        logging.info("Starting flow run", extra={
            "flow_id": flow_id,
            "execution_id": execution_id,
            "mode": "parallel" if config.parallel else "sequential",
            "total_nodes": len(flow.nodes),
        })
        if config.parallel:
            await self._execute_parallel(run, order, node_context)
        else:
            await self._execute_sequential(run, order, node_context)

        flow_run_result = self._build_flow_run_result(run, context.is_cancelled())
        logging.info("Flow run finished", extra={
            "flow_id": flow_id,
            "execution_id": execution_id,
            "status": flow_run_result.status.value,
            "progress": flow_run_result.progress.model_dump(),
        })

        if flow_run_result.status == FlowRunStatus.SUCCESS:
            status = ExecutionStatus.SUCCESS
        elif flow_run_result.status == FlowRunStatus.CANCELLED:
            status = ExecutionStatus.CANCELLED
        else:
            status = ExecutionStatus.FAILED

        return FlowExecutionResult(
            id=execution_id,
            flow_id=flow_id,
            status=status,
            validation_status=self._derive_validation_status(flow_run_result.node_results),
            flow_run_result=flow_run_result,
            error=flow_run_result.error,
            started_at=started_at,
            completed_at=flow_run_result.completed_at or utc_now_iso(),
        )

    async def _execute_sequential(self, run: FlowRun, order: List[FlowNode], context: ExecutionContext) -> None:
        for node in order:
            if context.is_cancelled():
                logging.info("Flow run cancelled", extra={"flow_id": run.flow.id})
                break

            can_execute, active, skipped = self._check_dependencies(run, node.id)
            run.record_connectors(active, skipped)
            if not can_execute:
                logging.info("Skipping node, no incoming condition met", extra={"node_id": node.id})
                run.mark(node.id, FlowNodeStatus.SKIPPED)
                continue

            run.mark(node.id, FlowNodeStatus.RUNNING, started_at=utc_now_iso())
            result = await self._run_node(node, run.flow, context)
            if run.complete(node, result).status == FlowNodeStatus.FAILED:
                break

        run.skip_unfinished()

    async def _execute_parallel(self, run: FlowRun, order: List[FlowNode], context: ExecutionContext) -> None:
        pending: List[str] = [node.id for node in order]
        in_flight: Dict[asyncio.Task, str] = {}

        while pending or in_flight:
            if context.is_cancelled():
                logging.info("Flow run cancelled", extra={"flow_id": run.flow.id})
                break

            ready: List[str] = []
            for node_id in list(pending):
                can_execute, active, skipped = self._check_dependencies(run, node_id)
                if can_execute:
                    run.record_connectors(active, skipped)
                    ready.append(node_id)
                elif self._all_sources_terminal(run, node_id):
                    # Every source settled and no condition held: it can never become ready
                    pending.remove(node_id)
                    run.record_connectors([], [c.id for c in incoming_connectors(run.flow, node_id)])
                    run.mark(node_id, FlowNodeStatus.SKIPPED)
                    logging.info("Skipping node, no incoming condition met", extra={"node_id": node_id})
                elif run.status_of(node_id) == FlowNodeStatus.IDLE:
                    run.mark(node_id, FlowNodeStatus.PENDING)

            for node_id in ready:
                pending.remove(node_id)
                node = run.nodes[node_id]
                run.mark(node_id, FlowNodeStatus.RUNNING, started_at=utc_now_iso())
                task = asyncio.create_task(self._run_node(node, run.flow, context), name=f"flow-node-{node_id}")
                in_flight[task] = node_id

            if in_flight:
                done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
                failed = False
                for task in [t for t in in_flight if t in done]:
                    node = run.nodes[in_flight.pop(task)]
                    if run.complete(node, self._task_result(task, node)).status == FlowNodeStatus.FAILED:
                        failed = True
                        break
                if failed:
                    # In-flight requests are left to finish on their own; their nodes end skipped
                    break
            elif pending:
                logging.warning("Flow run stalled, skipping remaining nodes", extra={
                    "flow_id": run.flow.id,
                    "node_ids": list(pending),
                })
                break

        self._abandon(in_flight)
        run.skip_unfinished()

    async def _run_node(self, node: FlowNode, flow: Flow, context: ExecutionContext) -> HttpExecutionResult:
        logging.info("Dispatching node", extra={"node_id": node.id, "alias": node.alias, "request_id": node.request_id})
        return await self.http_executor.execute_flow_node(node, flow, context)

    def _task_result(self, task: asyncio.Task, node: FlowNode) -> HttpExecutionResult:
        try:
            return task.result()
        except Exception as e:
            logging.exception("Node execution raised", extra={"node_id": node.id})
            now = utc_now_iso()
            return HttpExecutionResult(
                id=node.id,
                reference_id=node.request_id,
                status=ExecutionStatus.FAILED,
                error=extract_error_message(e),
                started_at=now,
                completed_at=now,
            )

    def _abandon(self, in_flight: Dict[asyncio.Task, str]) -> None:
        for task in in_flight:
            self._background_tasks.add(task)
            task.add_done_callback(self._settle_abandoned)

    def _settle_abandoned(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logging.warning("Abandoned node task raised", extra={
                "task": task.get_name(),
                "error": extract_error_message(error),
            })

    def _check_dependencies(self, run: FlowRun, node_id: str) -> Tuple[bool, List[str], List[str]]:
        """(can_execute, active connector ids, skipped connector ids)"""
        incoming = incoming_connectors(run.flow, node_id)
        if not incoming:
            return True, [], []

        active: List[str] = []
        skipped: List[str] = []
        for connector in incoming:
            source = run.node_results.get(connector.source_node_id)
            if source is None or source.status not in TERMINAL_NODE_STATUSES:
                return False, [], []
            if is_condition_satisfied(connector.condition, source):
                active.append(connector.id)
            else:
                skipped.append(connector.id)
        return bool(active), active, skipped

    def _all_sources_terminal(self, run: FlowRun, node_id: str) -> bool:
        incoming = incoming_connectors(run.flow, node_id)
        return bool(incoming) and all(
            run.node_results.get(c.source_node_id) is not None
            and run.node_results[c.source_node_id].status in TERMINAL_NODE_STATUSES
            for c in incoming
        )

    def _build_flow_run_result(self, run: FlowRun, was_cancelled: bool) -> FlowRunResult:
        statuses = [result.status for result in run.node_results.values()]
        succeeded = statuses.count(FlowNodeStatus.SUCCESS)
        failed = statuses.count(FlowNodeStatus.FAILED)
        skipped = statuses.count(FlowNodeStatus.SKIPPED)

        if failed:
            status, error = FlowRunStatus.FAILED, f"{failed} node(s) failed"
        elif was_cancelled:
            status, error = FlowRunStatus.CANCELLED, "Flow was cancelled"
        else:
            status, error = FlowRunStatus.SUCCESS, None

        return FlowRunResult(
            flow_id=run.flow.id,
            status=status,
            node_results=dict(run.node_results),
            active_connector_ids=list(run.active_connector_ids),
            skipped_connector_ids=list(run.skipped_connector_ids),
            started_at=run.started_at,
            completed_at=utc_now_iso(),
            error=error,
            progress=FlowProgress(
                total=len(run.flow.nodes),
                completed=succeeded + failed + skipped,
                succeeded=succeeded,
                failed=failed,
                skipped=skipped,
            ),
        )

    def _derive_validation_status(self, node_results: Dict[str, FlowNodeResult]) -> ValidationStatus:
        validations = [
            r.response.validation_result for r in node_results.values()
            if r.response is not None and r.response.validation_result is not None
        ]
        if not validations:
            return ValidationStatus.IDLE
        return ValidationStatus.PASS if all(v.all_passed for v in validations) else ValidationStatus.FAIL

    def _error_result(self, execution_id: str, flow_id: str, error: str, started_at: str) -> FlowExecutionResult:
        return FlowExecutionResult(
            id=execution_id,
            flow_id=flow_id,
            status=ExecutionStatus.FAILED,
            validation_status=ValidationStatus.IDLE,
            error=error,
            started_at=started_at,
            completed_at=utc_now_iso(),
        )
