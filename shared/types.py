"""Shared flow, result and transport types."""

from enum import Enum
from typing import Dict, List, Any, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from shared.utils import utc_now_iso


class CamelModel(BaseModel):
    """Base for persisted shapes: snake_case in Python, camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ConnectorCondition(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    VALIDATION_PASS = "validation_pass"
    VALIDATION_FAIL = "validation_fail"
    ANY = "any"


class FlowNodeStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class FlowRunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ValidationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    PASS = "pass"
    FAIL = "fail"


TERMINAL_NODE_STATUSES = {FlowNodeStatus.SUCCESS, FlowNodeStatus.FAILED, FlowNodeStatus.SKIPPED}


class Position(CamelModel):
    x: float = 0
    y: float = 0


class FlowNode(CamelModel):
    id: str
    alias: str
    request_id: str
    name: str = ""
    method: str = "GET"
    position: Position = Field(default_factory=Position)


class FlowConnector(CamelModel):
    id: str
    source_node_id: str
    target_node_id: str
    condition: ConnectorCondition = ConnectorCondition.SUCCESS


class Flow(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    nodes: List[FlowNode] = Field(default_factory=list)
    connectors: List[FlowConnector] = Field(default_factory=list)
    default_auth_id: Optional[str] = None
    default_env_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class ValidationRuleResult(CamelModel):
    rule_id: str
    rule_name: str
    category: str
    passed: bool
    message: str = ""
    error: Optional[str] = None
    actual_value: Optional[Any] = None
    expected_value: Optional[Any] = None


class ValidationResult(CamelModel):
    enabled: bool = True
    total_rules: int = 0
    passed_rules: int = 0
    failed_rules: int = 0
    all_passed: bool = True
    results: List[ValidationRuleResult] = Field(default_factory=list)
    executed_at: str = Field(default_factory=utc_now_iso)


class HttpResponseResult(CamelModel):
    id: str = ""
    status: int
    status_text: str = ""
    elapsed_time: float = 0
    size: int = 0
    body: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    is_encoded: bool = Field(default=False, alias="is_encoded")
    validation_result: Optional[ValidationResult] = None


class FlowNodeResult(CamelModel):
    node_id: str
    request_id: str
    alias: str
    status: FlowNodeStatus = FlowNodeStatus.IDLE
    response: Optional[HttpResponseResult] = None
    error: Optional[str] = None
    unresolved: List[str] = Field(default_factory=list)
    resolved_flow_params: Optional[Dict[str, str]] = None
    warnings: List[str] = Field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class FlowProgress(CamelModel):
    total: int = 0
    completed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class FlowRunResult(CamelModel):
    flow_id: str
    status: FlowRunStatus = FlowRunStatus.IDLE
    node_results: Dict[str, FlowNodeResult] = Field(default_factory=dict)
    active_connector_ids: List[str] = Field(default_factory=list)
    skipped_connector_ids: List[str] = Field(default_factory=list)
    started_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    error: Optional[str] = None
    progress: FlowProgress = Field(default_factory=FlowProgress)


class HttpExecutionResult(CamelModel):
    id: str
    reference_id: str
    status: ExecutionStatus
    validation_status: ValidationStatus = ValidationStatus.IDLE
    validation_result: Optional[ValidationResult] = None
    response: Optional[HttpResponseResult] = None
    error: Optional[str] = None
    unresolved: List[str] = Field(default_factory=list)
    resolved_flow_params: Optional[Dict[str, str]] = None
    warnings: List[str] = Field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class FlowExecutionResult(CamelModel):
    id: str
    flow_id: str
    status: ExecutionStatus
    validation_status: ValidationStatus = ValidationStatus.IDLE
    flow_run_result: Optional[FlowRunResult] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class BatchProgress(CamelModel):
    """Counters of a batch run; an item whose validation failed counts as failed"""
    total: int = 0
    completed: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


class BatchRunResult(CamelModel):
    results: List[HttpExecutionResult] = Field(default_factory=list)
    progress: BatchProgress = Field(default_factory=BatchProgress)
    cancelled: bool = False
    stopped_on_failure: bool = False
    started_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None


class TransportResult(BaseModel):
    """Outcome of a transport call: either a response or an error message"""
    ok: bool
    value: Optional[HttpResponseResult] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: HttpResponseResult) -> "TransportResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "TransportResult":
        return cls(ok=False, error=error)
