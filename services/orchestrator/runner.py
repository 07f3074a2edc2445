"""Entry point for running flows and request batches: binds collaborators and owns the cancel flag."""

import logging
from typing import Callable, Dict, List, Optional, Sequence
from services.orchestrator.batch_executor import BatchConfig, BatchExecutor, BatchItem
from services.orchestrator.domain.collaborators import FileResolver, HttpTransport
from services.orchestrator.domain.models import AuthProfile, Collection, Environment, RequestOverrides
from services.orchestrator.engine.collection_lookup import collection_reference_ids, find_collection
from services.orchestrator.engine.context import (
    ExecutionContext,
    FlowExecutionConfig,
    FlowExecutionInput,
    HttpExecutionInput,
)
from services.orchestrator.engine.flow_executor import FlowExecutor
from services.orchestrator.engine.graph import create_initial_flow_run_result
from services.orchestrator.infra.file_resolver import LocalFileResolver
from services.orchestrator.infra.redis_store import RedisFlowStore
from services.transport.requests_transport import RequestsTransport
from shared.exceptions import FlowError
from shared.logging_config import setup_logging
from shared.types import (
    BatchProgress,
    BatchRunResult,
    Flow,
    FlowNodeResult,
    FlowRunResult,
    FlowRunStatus,
    HttpExecutionResult,
)
from shared.utils import utc_now_iso


class FlowRunner:

    def __init__(
        self,
        transport: HttpTransport,
        collections: List[Collection] = None,
        environments: List[Environment] = None,
        auths: List[AuthProfile] = None,
        flows: List[Flow] = None,
        file_resolver: Optional[FileResolver] = None,
        store: Optional[RedisFlowStore] = None,
        executor: Optional[FlowExecutor] = None,
        batch_executor: Optional[BatchExecutor] = None,
    ):
        self.transport = transport
        self.collections = list(collections or [])
        self.environments = list(environments or [])
        self.auths = list(auths or [])
        self.flows = list(flows or [])
        self.file_resolver = file_resolver
        self.store = store
        self.executor = executor or FlowExecutor()
        self.batch_executor = batch_executor or BatchExecutor(self.executor.http_executor)
        self._cancelled = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Stops the current run at its next checkpoint and asks a cancellable transport to drop in-flight requests"""
        if self._running:
            logging.info("Flow run cancellation requested")
        self._cancelled = True
        self.executor.http_executor.cancel_in_flight(self.transport)
        if self.batch_executor.http_executor is not self.executor.http_executor:
            self.batch_executor.http_executor.cancel_in_flight(self.transport)

    def is_cancelled(self) -> bool:
        return self._cancelled

    def _context(self, environment_id: Optional[str], default_auth_id: Optional[str], flows: List[Flow]) -> ExecutionContext:
        return ExecutionContext(
            transport=self.transport,
            environments=self.environments,
            auths=self.auths,
            collections=self.collections,
            environment_id=environment_id,
            default_auth_id=default_auth_id,
            is_cancelled=self.is_cancelled,
            flows=flows,
            file_resolver=self.file_resolver,
        )

    async def run_flow(
        self,
        flow: Flow,
        environment_id: Optional[str] = None,
        default_auth_id: Optional[str] = None,
        parallel: bool = True,
        initial_variables: Optional[Dict[str, str]] = None,
        on_node_update: Optional[Callable[[FlowNodeResult], None]] = None,
    ) -> FlowRunResult:
        if self._running:
            raise FlowError("A flow run is already in progress", flow.id)

        self._cancelled = False
        self._running = True
        try:
            context = self._context(
                environment_id or flow.default_env_id,
                default_auth_id or flow.default_auth_id,
                [flow] + [f for f in self.flows if f.id != flow.id],
            )
            config = FlowExecutionConfig(
                parallel=parallel,
                default_auth_id=default_auth_id or flow.default_auth_id,
                initial_variables=initial_variables,
                on_node_update=on_node_update,
            )
            execution = await self.executor.execute(FlowExecutionInput(flow_id=flow.id), context, config)
        finally:
            self._running = False

        run_result = execution.flow_run_result
        if run_result is None:
            run_result = create_initial_flow_run_result(flow)
            run_result.status = FlowRunStatus.FAILED
            run_result.error = execution.error
            run_result.completed_at = execution.completed_at or utc_now_iso()

        if self.store is not None:
            try:
                self.store.save_run_result(execution.id, run_result)
            except Exception:
                logging.exception("Failed to persist run result", extra={"execution_id": execution.id})
        return run_result

    async def run_request(
        self,
        reference_id: str,
        environment_id: Optional[str] = None,
        default_auth_id: Optional[str] = None,
        overrides: Optional[RequestOverrides] = None,
    ) -> HttpExecutionResult:
        self._cancelled = False
        context = self._context(environment_id, default_auth_id, self.flows)
        return await self.executor.http_executor.execute(HttpExecutionInput(reference_id=reference_id), context, overrides)

    async def run_requests(
        self,
        reference_ids: Sequence[str],
        environment_id: Optional[str] = None,
        default_auth_id: Optional[str] = None,
        config: Optional[BatchConfig] = None,
        on_item_complete: Optional[Callable[[HttpExecutionResult], None]] = None,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
    ) -> BatchRunResult:
        """Runs stored requests `config.concurrent_calls` at a time; `cancel()` stops it between batches"""
        if self._running:
            raise FlowError("A run is already in progress")

        self._cancelled = False
        self._running = True
        try:
            context = self._context(environment_id, default_auth_id, self.flows)
            return await self.batch_executor.run(
                [BatchItem(reference_id=reference_id) for reference_id in reference_ids],
                context,
                config,
                on_item_complete=on_item_complete,
                on_progress=on_progress,
            )
        finally:
            self._running = False

    async def run_collection(self, collection_key: str, folder: Optional[str] = None, **kwargs) -> BatchRunResult:
        """Runs every request of a collection (by filename or id), or only those under `folder`"""
        collection = find_collection(collection_key, self.collections)
        if collection is None:
            raise FlowError(f"Collection not found: {collection_key}")
        return await self.run_requests(collection_reference_ids(collection, folder), **kwargs)


def build_runner(redis_url: Optional[str] = None, file_base_dir: Optional[str] = None) -> FlowRunner:
    """Wires a runner from Redis-stored data, the requests transport and local files"""
    setup_logging("flow-runner")
    store = RedisFlowStore(redis_url)
    return FlowRunner(
        transport=RequestsTransport(),
        collections=store.list_collections(),
        environments=store.list_environments(),
        auths=store.list_auths(),
        flows=store.list_flows(),
        file_resolver=LocalFileResolver(file_base_dir),
        store=store,
    )
