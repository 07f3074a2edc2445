"""Executes one stored request, standalone or as a node of a flow."""

import logging
from typing import Dict, List, Optional, Sequence, Set
from services.orchestrator.domain.collaborators import HttpTransport, supports_cancel
from services.orchestrator.domain.models import (
    CollectionItem,
    CollectionRequest,
    KeyValueRow,
    RequestOverrides,
    RequestValidation,
    ValidationRule,
)
from services.orchestrator.engine.collection_lookup import find_request_by_id
from services.orchestrator.engine.context import ExecutionContext, HttpExecutionInput
from services.orchestrator.engine.graph import upstream_node_ids
from services.orchestrator.engine.request_builder import RequestBuildResult, build_http_request
from services.orchestrator.engine.variables import flow_context_to_dynamic_env_vars
from shared.constants import (
    DEFAULT_VALIDATION_RULE_ID,
    SUCCESS_STATUS_MIN,
    SUCCESS_STATUS_MAX,
)
from shared.exceptions import RequestBuildError, extract_error_message
from shared.types import (
    ExecutionStatus,
    Flow,
    FlowNode,
    HttpExecutionResult,
    HttpResponseResult,
    ValidationResult,
    ValidationStatus,
)
from shared.utils import generate_execution_id, utc_now_iso

DEFAULT_VALIDATION = RequestValidation(
    enabled=True,
    rules=[
        ValidationRule(
            id=DEFAULT_VALIDATION_RULE_ID,
            name="Status is Success",
            category="status",
            operator="is_success",
            value=200,
        )
    ],
)


def determine_execution_status(response: Optional[HttpResponseResult], error: Optional[str] = None) -> ExecutionStatus:
    if error or response is None:
        return ExecutionStatus.FAILED
    if SUCCESS_STATUS_MIN <= response.status < SUCCESS_STATUS_MAX:
        return ExecutionStatus.SUCCESS
    return ExecutionStatus.FAILED


def determine_validation_status(validation_result: Optional[ValidationResult]) -> ValidationStatus:
    if validation_result is None:
        return ValidationStatus.IDLE
    return ValidationStatus.PASS if validation_result.all_passed else ValidationStatus.FAIL


def merge_headers_with_overrides(base: Sequence[KeyValueRow], overrides: Optional[Sequence[KeyValueRow]]) -> List[KeyValueRow]:
    """Case-insensitive merge by key; an overridden header keeps its original spelling"""
    if not overrides:
        return list(base)
    merged: Dict[str, KeyValueRow] = {row.key.lower(): row for row in base}
    for override in overrides:
        key = override.key.lower()
        existing = merged.get(key)
        if existing is not None:
            merged[key] = existing.model_copy(update={
                "value": override.value,
                "disabled": override.disabled,
            })
        else:
            merged[key] = override
    return list(merged.values())


def merge_params_with_overrides(base: Sequence[KeyValueRow], overrides: Optional[Sequence[KeyValueRow]]) -> List[KeyValueRow]:
    if not overrides:
        return list(base)
    merged: Dict[str, KeyValueRow] = {row.key: row for row in base}
    for override in overrides:
        existing = merged.get(override.key)
        if existing is not None:
            merged[override.key] = existing.model_copy(update={
                "value": override.value,
                "disabled": override.disabled,
            })
        else:
            merged[override.key] = override
    return list(merged.values())


class HttpRequestExecutor:
    """Runs a single request through the injected transport.

    Never raises: every failure (missing request, unresolved placeholders,
    transport error or exception) comes back as a `failed` result, and a
    cancelled run comes back as `cancelled`.
    """

    def __init__(self):
        # Execution ids currently awaiting the transport
        self.in_flight: Set[str] = set()

    def cancel_in_flight(self, transport: HttpTransport) -> None:
        if not supports_cancel(transport):
            return
        for execution_id in list(self.in_flight):
            transport.cancel_request(execution_id)

    async def execute(
        self,
        execution_input: HttpExecutionInput,
        context: ExecutionContext,
        overrides: Optional[RequestOverrides] = None,
    ) -> HttpExecutionResult:
        started_at = utc_now_iso()
        execution_id = execution_input.execution_id or generate_execution_id(execution_input.reference_id)

        if context.is_cancelled():
            return self._cancelled_result(execution_id, execution_input.reference_id, started_at)

        found = find_request_by_id(execution_input.reference_id, context.collections)
        if found is None or found.item.request is None:
            return self._error_result(
                execution_id, execution_input.reference_id, f"Request not found: {execution_input.reference_id}", started_at
            )

        build_result = await self._build(
            execution_id,
            found.item,
            context,
            overrides or RequestOverrides(),
            item_validation=execution_input.validation,
        )
        return await self._dispatch(execution_id, execution_input.reference_id, build_result, context, started_at)

    async def execute_flow_node(self, node: FlowNode, flow: Flow, context: ExecutionContext) -> HttpExecutionResult:
        started_at = utc_now_iso()
        execution_id = generate_execution_id(node.id)

        if context.is_cancelled():
            return self._cancelled_result(execution_id, node.request_id, started_at)

        found = find_request_by_id(node.request_id, context.collections)
        if found is None or found.item.request is None:
            return self._error_result(
                execution_id, node.request_id, f"Request not found: {node.request_id}", started_at
            )

        dynamic_vars: Dict[str, str] = dict(context.initial_variables or {})
        flow_vars: Dict[str, str] = {}
        if context.flow_context is not None:
            flow_vars = flow_context_to_dynamic_env_vars(
                context.flow_context,
                upstream_node_ids(flow, node.id),
                {n.id: n.alias for n in flow.nodes},
                found.item.request,
            )
            dynamic_vars.update(flow_vars)

        build_result = await self._build(
            execution_id,
            found.item,
            context,
            RequestOverrides(variables=dynamic_vars),
            flow_default_auth_id=flow.default_auth_id,
        )
        result = await self._dispatch(execution_id, node.request_id, build_result, context, started_at)
        if flow_vars:
            result.resolved_flow_params = flow_vars
        return result

    async def _build(
        self,
        execution_id: str,
        item: CollectionItem,
        context: ExecutionContext,
        overrides: RequestOverrides,
        item_validation: Optional[RequestValidation] = None,
        flow_default_auth_id: Optional[str] = None,
    ) -> RequestBuildResult:
        request: CollectionRequest = item.request
        url, query = request.url_parts()

        update = {
            "url": url,
            "query": merge_params_with_overrides(query, overrides.params),
            "header": merge_headers_with_overrides(request.header, overrides.headers),
            "auth_id": overrides.auth_id or request.auth_id,
        }
        if overrides.body is not None:
            update["body"] = overrides.body
        effective = request.model_copy(update=update)

        try:
            build_result = await build_http_request(
                effective,
                execution_id,
                context.environment_id,
                context.environments,
                context.auths,
                default_auth_id=context.default_auth_id or flow_default_auth_id,
                dynamic_vars=overrides.variables,
                file_resolver=context.file_resolver,
            )
        except Exception as e:
            logging.exception("Request build raised", extra={"execution_id": execution_id})
            return RequestBuildResult(error=RequestBuildError(error_message=extract_error_message(e)))
        if build_result.request is not None:
            build_result.request.validation = (
                overrides.validation
                or item_validation
                or item.validation
                or request.validation
                or DEFAULT_VALIDATION
            )
        return build_result

    async def _dispatch(
        self,
        execution_id: str,
        reference_id: str,
        build_result: RequestBuildResult,
        context: ExecutionContext,
        started_at: str,
    ) -> HttpExecutionResult:
        result = await self._send(execution_id, reference_id, build_result, context, started_at)
        if build_result.warnings:
            result.warnings = list(build_result.warnings)
        return result

    async def _send(
        self,
        execution_id: str,
        reference_id: str,
        build_result: RequestBuildResult,
        context: ExecutionContext,
        started_at: str,
    ) -> HttpExecutionResult:
        if build_result.error is not None or build_result.request is None:
            message = build_result.error.error_message if build_result.error else "Failed to build request"
            return self._error_result(
                execution_id, reference_id, message, started_at, unresolved=build_result.unresolved
            )

        if context.is_cancelled():
            return self._cancelled_result(execution_id, reference_id, started_at)

        try:
            logging.info("Dispatching request", extra={"execution_id": execution_id, "reference_id": reference_id})
            self.in_flight.add(execution_id)
            result = await context.transport.execute_request(build_result.request)
        except Exception as e:
            logging.exception("Transport raised", extra={"execution_id": execution_id, "reference_id": reference_id})
            return self._error_result(execution_id, reference_id, extract_error_message(e), started_at)
        finally:
            self.in_flight.discard(execution_id)

        if context.is_cancelled():
            return self._cancelled_result(execution_id, reference_id, started_at)

        if result.ok and result.value is not None:
            return self._success_result(execution_id, reference_id, result.value, started_at)
        return self._error_result(execution_id, reference_id, result.error or "Request failed", started_at)

    def _success_result(
        self, execution_id: str, reference_id: str, response: HttpResponseResult, started_at: str
    ) -> HttpExecutionResult:
        return HttpExecutionResult(
            id=execution_id,
            reference_id=reference_id,
            status=determine_execution_status(response),
            validation_status=determine_validation_status(response.validation_result),
            validation_result=response.validation_result,
            response=response,
            started_at=started_at,
            completed_at=utc_now_iso(),
        )

    def _error_result(
        self,
        execution_id: str,
        reference_id: str,
        error: str,
        started_at: str,
        unresolved: Optional[List[str]] = None,
    ) -> HttpExecutionResult:
        return HttpExecutionResult(
            id=execution_id,
            reference_id=reference_id,
            status=ExecutionStatus.FAILED,
            validation_status=ValidationStatus.IDLE,
            error=error,
            unresolved=unresolved or [],
            started_at=started_at,
            completed_at=utc_now_iso(),
        )

    def _cancelled_result(self, execution_id: str, reference_id: str, started_at: str) -> HttpExecutionResult:
        return HttpExecutionResult(
            id=execution_id,
            reference_id=reference_id,
            status=ExecutionStatus.CANCELLED,
            validation_status=ValidationStatus.IDLE,
            error="Cancelled",
            started_at=started_at,
            completed_at=utc_now_iso(),
        )
