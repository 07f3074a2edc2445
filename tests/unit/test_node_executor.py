"""
Unit tests for the single-request executor.
"""

import pytest
from services.orchestrator.domain.models import (
    BodyMode,
    CollectionBody,
    FileReference,
    KeyValueRow,
    RequestOverrides,
    RequestValidation,
    ValidationRule,
)
from services.orchestrator.engine.context import ExecutionContext, HttpExecutionInput
from services.orchestrator.engine.node_executor import (
    DEFAULT_VALIDATION,
    HttpRequestExecutor,
    determine_execution_status,
    determine_validation_status,
    merge_headers_with_overrides,
    merge_params_with_overrides,
)
from services.orchestrator.engine.variables import FlowContext
from shared.types import ExecutionStatus, TransportResult, ValidationStatus
from tests.factories import collection, environment, json_response, make_flow, request_item


def _context(transport, *items, **fields):
    return ExecutionContext(transport=transport, collections=[collection(*items)], **fields)


@pytest.mark.asyncio
async def test_execute_success(transport):
    """A 2xx transport response becomes a success result"""
    transport.replies["https://api.test/users"] = json_response({"ok": True}, all_passed=True)
    context = _context(transport, request_item("req-users", "https://api.test/users"))

    result = await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="req-users", execution_id="exec-1"), context)

    assert result.status == ExecutionStatus.SUCCESS
    assert result.validation_status == ValidationStatus.PASS
    assert result.id == "exec-1"
    assert result.response.id == "exec-1"
    assert transport.requests[0].validation == DEFAULT_VALIDATION


@pytest.mark.asyncio
async def test_execute_request_not_found(transport):
    context = _context(transport)

    result = await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="missing"), context)

    assert result.status == ExecutionStatus.FAILED
    assert result.error == "Request not found: missing"
    assert transport.requests == []


@pytest.mark.asyncio
async def test_execute_unresolved_is_failed_without_dispatch(transport):
    """Unresolved placeholders stop the request before the transport"""
    context = _context(transport, request_item("req-1", "{{baseUrl}}/x"))

    result = await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="req-1"), context)

    assert result.status == ExecutionStatus.FAILED
    assert result.unresolved == ["baseUrl"]
    assert "baseUrl" in result.error
    assert transport.requests == []


@pytest.mark.asyncio
async def test_execute_uses_environment(transport):
    context = _context(
        transport,
        request_item("req-1", "{{baseUrl}}/x"),
        environments=[environment("env-1", "dev", baseUrl="https://dev.test")],
        environment_id="env-1",
    )

    result = await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="req-1"), context)

    assert result.status == ExecutionStatus.SUCCESS
    assert transport.urls() == ["https://dev.test/x"]


@pytest.mark.asyncio
async def test_transport_failure_and_exception(transport):
    """Failure results and raised exceptions both come back as failed"""
    transport.replies["https://api.test/down"] = TransportResult.failure("Connection refused")
    transport.replies["https://api.test/boom"] = RuntimeError("boom")
    context = _context(
        transport,
        request_item("req-down", "https://api.test/down"),
        request_item("req-boom", "https://api.test/boom"),
    )
    executor = HttpRequestExecutor()

    down = await executor.execute(HttpExecutionInput(reference_id="req-down"), context)
    boom = await executor.execute(HttpExecutionInput(reference_id="req-boom"), context)

    assert (down.status, down.error) == (ExecutionStatus.FAILED, "Connection refused")
    assert (boom.status, boom.error) == (ExecutionStatus.FAILED, "boom")


@pytest.mark.asyncio
async def test_non_success_status_is_failed(transport):
    transport.replies["https://api.test/x"] = json_response({}, status=500)
    context = _context(transport, request_item("req-1", "https://api.test/x"))

    result = await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="req-1"), context)

    assert result.status == ExecutionStatus.FAILED
    assert result.response.status == 500


@pytest.mark.asyncio
async def test_cancelled_before_dispatch(transport):
    context = _context(transport, request_item("req-1", "https://api.test/x"), is_cancelled=lambda: True)

    result = await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="req-1"), context)

    assert result.status == ExecutionStatus.CANCELLED
    assert transport.requests == []


@pytest.mark.asyncio
async def test_overrides_merge_into_request(transport):
    """Override headers replace by case-insensitive key, params by exact key"""
    item = request_item(
        "req-1",
        "https://api.test/x",
        header=[KeyValueRow(key="X-Mode", value="base")],
        query=[KeyValueRow(key="page", value="1")],
    )
    context = _context(transport, item)
    overrides = RequestOverrides(
        headers=[KeyValueRow(key="x-mode", value="override"), KeyValueRow(key="X-New", value="{{v}}")],
        params=[KeyValueRow(key="page", value="2")],
        variables={"v": "from-override"},
        validation=RequestValidation(rules=[]),
    )

    await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="req-1"), context, overrides)

    sent = transport.requests[0]
    assert sent.headers == {"X-Mode": "override", "X-New": "from-override"}
    assert sent.params == "page=2"
    assert sent.validation.rules == []


@pytest.mark.asyncio
async def test_flow_node_sees_only_upstream_responses(transport):
    """A node resolves flow paths only from its ancestors"""
    flow = make_flow(["login", "other", "me"], [("login", "me", "success")])
    context = _context(
        transport,
        request_item("req-me", "https://api.test/me/{{login.$body.id}}"),
        request_item("req-leak", "https://api.test/{{other.$body.id}}"),
        flow_context=FlowContext(),
        flows=[flow],
    )
    context.flow_context.add("login", json_response({"id": 5}))
    context.flow_context.add("other", json_response({"id": 9}))
    executor = HttpRequestExecutor()

    me = await executor.execute_flow_node(flow.nodes[2], flow, context)
    leak_node = flow.nodes[2].model_copy(update={"request_id": "req-leak"})
    leak = await executor.execute_flow_node(leak_node, flow, context)

    assert me.status == ExecutionStatus.SUCCESS
    assert me.resolved_flow_params == {"login.$body.id": "5"}
    assert transport.urls() == ["https://api.test/me/5"]
    assert leak.status == ExecutionStatus.FAILED
    assert leak.unresolved == ["other.$body.id"]


def test_status_helpers():
    assert determine_execution_status(json_response({}, status=302)) == ExecutionStatus.SUCCESS
    assert determine_execution_status(json_response({}, status=404)) == ExecutionStatus.FAILED
    assert determine_execution_status(json_response({}), error="x") == ExecutionStatus.FAILED
    assert determine_execution_status(None) == ExecutionStatus.FAILED
    assert determine_validation_status(None) == ValidationStatus.IDLE


def test_merge_helpers_keep_base_without_overrides():
    base = [KeyValueRow(key="A", value="1")]

    assert merge_headers_with_overrides(base, None) == base
    assert merge_params_with_overrides(base, []) == base
    merged = merge_params_with_overrides(base, [KeyValueRow(key="a", value="2")])
    assert [(r.key, r.value) for r in merged] == [("A", "1"), ("a", "2")]


def test_default_validation_rule():
    rule = DEFAULT_VALIDATION.rules[0]
    assert isinstance(rule, ValidationRule)
    assert (rule.category, rule.operator) == ("status", "is_success")


@pytest.mark.asyncio
async def test_build_warnings_reach_the_result(transport):
    """An unreadable body file is reported on the result, not just logged"""
    body = CollectionBody(mode=BodyMode.FILE, file=FileReference(path="/f/a.bin", file_name="a.bin"))
    context = _context(transport, request_item("req-upload", "https://api.test/upload", "PUT", body=body))

    result = await HttpRequestExecutor().execute(HttpExecutionInput(reference_id="req-upload"), context)

    assert result.status == ExecutionStatus.SUCCESS
    assert len(result.warnings) == 1
    assert "a.bin" in result.warnings[0]
