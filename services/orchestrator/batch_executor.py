"""Runs a list of stored requests in batches of concurrent calls.

Each batch is dispatched at once and awaited as a whole; the next batch
starts after an optional pause. Items that never ran (the run was
cancelled or stopped on a failure) are reported as skipped so that every
item ends with a terminal result.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence
from services.orchestrator.domain.models import RequestOverrides, RequestValidation
from services.orchestrator.engine.context import ExecutionContext, HttpExecutionInput
from services.orchestrator.engine.node_executor import HttpRequestExecutor
from shared.logging_config import correlation_scope
from shared.types import (
    BatchProgress,
    BatchRunResult,
    ExecutionStatus,
    HttpExecutionResult,
    ValidationStatus,
)
from shared.utils import generate_execution_id, utc_now_iso

CANCEL_POLL_SECONDS = 0.05


@dataclass
class BatchItem:
    reference_id: str
    validation: Optional[RequestValidation] = None


@dataclass
class BatchConfig:
    concurrent_calls: int = 1
    delay_seconds: float = 0
    stop_on_failure: bool = False


def update_progress(progress: BatchProgress, result: HttpExecutionResult) -> None:
    """Counts one finished item; a cancelled item counts as skipped"""
    failed_validation = result.validation_status == ValidationStatus.FAIL
    skipped = result.status in (ExecutionStatus.SKIPPED, ExecutionStatus.CANCELLED)

    progress.completed += 1
    if result.status == ExecutionStatus.SUCCESS and not failed_validation:
        progress.passed += 1
    if result.status == ExecutionStatus.FAILED or failed_validation:
        progress.failed += 1
    if skipped:
        progress.skipped += 1


class BatchExecutor:

    def __init__(self, http_executor: HttpRequestExecutor = None):
        self.http_executor = http_executor or HttpRequestExecutor()

    async def run(
        self,
        items: Sequence[BatchItem],
        context: ExecutionContext,
        config: BatchConfig = None,
        overrides: Optional[RequestOverrides] = None,
        on_item_complete: Optional[Callable[[HttpExecutionResult], None]] = None,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
    ) -> BatchRunResult:
        config = config or BatchConfig()
        with correlation_scope(generate_execution_id("batch")):
            return await self._run(list(items), context, config, overrides, on_item_complete, on_progress)

    async def _run(
        self,
        pending: List[BatchItem],
        context: ExecutionContext,
        config: BatchConfig,
        overrides: Optional[RequestOverrides],
        on_item_complete: Optional[Callable[[HttpExecutionResult], None]],
        on_progress: Optional[Callable[[BatchProgress], None]],
    ) -> BatchRunResult:
        batch_size = max(1, config.concurrent_calls)
        run = BatchRunResult(progress=BatchProgress(total=len(pending)))
        logging.info("Starting batch run", extra={
            "total": len(pending),
            "concurrent_calls": batch_size,
            "delay_seconds": config.delay_seconds,
            "stop_on_failure": config.stop_on_failure,
        })

        while pending and not context.is_cancelled():
            batch, pending = pending[:batch_size], pending[batch_size:]
            outcomes = await asyncio.gather(*[self._run_item(item, context, overrides) for item in batch])
            for outcome in outcomes:
                self._record(run, outcome, on_item_complete)
            self._notify(on_progress, run.progress.model_copy())

            if config.stop_on_failure and any(o.status == ExecutionStatus.FAILED for o in outcomes):
                run.stopped_on_failure = True
                logging.info("Batch run stopped on failure", extra={"remaining": len(pending)})
                break
            if pending and config.delay_seconds > 0:
                await self._pause(config.delay_seconds, context.is_cancelled)

        if pending:
            for item in pending:
                self._record(run, self._skipped_result(item), on_item_complete)
            self._notify(on_progress, run.progress.model_copy())

        run.cancelled = context.is_cancelled()
        run.completed_at = utc_now_iso()
        logging.info("Batch run finished", extra={
            "cancelled": run.cancelled,
            "stopped_on_failure": run.stopped_on_failure,
            "progress": run.progress.model_dump(),
        })
        return run

    async def _run_item(
        self, item: BatchItem, context: ExecutionContext, overrides: Optional[RequestOverrides]
    ) -> HttpExecutionResult:
        execution_input = HttpExecutionInput(reference_id=item.reference_id, validation=item.validation)
        return await self.http_executor.execute(execution_input, context, overrides)

    async def _pause(self, seconds: float, is_cancelled: Callable[[], bool]) -> None:
        """Sleeps up to `seconds`, returning early once the run is cancelled"""
        deadline = time.monotonic() + seconds
        while not is_cancelled():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(min(CANCEL_POLL_SECONDS, remaining))

    def _record(
        self,
        run: BatchRunResult,
        result: HttpExecutionResult,
        on_item_complete: Optional[Callable[[HttpExecutionResult], None]],
    ) -> None:
        run.results.append(result)
        update_progress(run.progress, result)
        self._notify(on_item_complete, result.model_copy())

    def _notify(self, callback: Optional[Callable], value) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logging.exception("Batch callback failed")

    def _skipped_result(self, item: BatchItem) -> HttpExecutionResult:
        now = utc_now_iso()
        return HttpExecutionResult(
            id=generate_execution_id(item.reference_id),
            reference_id=item.reference_id,
            status=ExecutionStatus.SKIPPED,
            started_at=now,
            completed_at=now,
        )
