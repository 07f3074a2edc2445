"""Structured exception hierarchy for the flow engine."""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


class RequestBuildError(BaseModel):
    """Structured error returned (not raised) when a request cannot be prepared"""
    error_type: str = "BUILD_ERROR"
    error_message: str
    context: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UnresolvedVariablesError(RequestBuildError):
    error_type: str = "UNRESOLVED_VARIABLES"
    unresolved: List[str] = Field(default_factory=list)

    @classmethod
    def from_names(cls, names: List[str]) -> "UnresolvedVariablesError":
        return cls(
            error_message=f"Unresolved placeholders: {', '.join(names)}",
            unresolved=list(names),
        )


class FlowError(Exception):
    """Base exception for flow errors"""

    def __init__(self, message: str, flow_id: str = "", **context):
        self.message = message
        self.flow_id = flow_id
        self.context = context
        super().__init__(message)


class FlowValidationError(FlowError):
    pass


class CycleDetectedError(FlowValidationError):
    pass


class FlowStoreError(FlowError):
    pass


class FileResolutionError(FlowError):
    pass


def extract_error_message(error: Optional[BaseException]) -> str:
    if error is None:
        return "Unknown error"
    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__
