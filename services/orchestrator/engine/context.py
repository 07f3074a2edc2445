"""Per-call execution context and inputs for the node and flow executors."""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from services.orchestrator.domain.collaborators import FileResolver, HttpTransport
from services.orchestrator.domain.models import (
    AuthProfile,
    Collection,
    Environment,
    RequestValidation,
)
from services.orchestrator.engine.variables import FlowContext
from shared.types import Flow, FlowNodeResult


def _never_cancelled() -> bool:
    return False


@dataclass
class ExecutionContext:
    transport: HttpTransport
    environments: List[Environment] = field(default_factory=list)
    auths: List[AuthProfile] = field(default_factory=list)
    collections: List[Collection] = field(default_factory=list)
    environment_id: Optional[str] = None
    default_auth_id: Optional[str] = None
    is_cancelled: Callable[[], bool] = _never_cancelled
    flow_context: Optional[FlowContext] = None
    flows: List[Flow] = field(default_factory=list)
    initial_variables: Optional[Dict[str, str]] = None
    file_resolver: Optional[FileResolver] = None


@dataclass
class HttpExecutionInput:
    reference_id: str
    execution_id: Optional[str] = None
    validation: Optional[RequestValidation] = None


@dataclass
class FlowExecutionInput:
    flow_id: str
    execution_id: Optional[str] = None


@dataclass
class FlowExecutionConfig:
    parallel: bool = True
    default_auth_id: Optional[str] = None
    initial_variables: Optional[Dict[str, str]] = None
    # Called with a snapshot every time a node's result changes
    on_node_update: Optional[Callable[[FlowNodeResult], None]] = None
