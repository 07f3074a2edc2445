"""Contracts for the collaborators the engine calls into."""

from typing import Optional, Protocol, runtime_checkable
from services.orchestrator.domain.models import PreparedRequest
from shared.types import TransportResult


@runtime_checkable
class HttpTransport(Protocol):
    """Executes prepared requests. Must return a failure result instead of raising."""

    async def execute_request(self, request: PreparedRequest) -> TransportResult:
        ...


@runtime_checkable
class CancellableTransport(HttpTransport, Protocol):

    def cancel_request(self, request_id: str) -> None:
        ...


@runtime_checkable
class FileResolver(Protocol):
    """Reads the bytes behind a stored file reference; raises FileResolutionError when unreadable"""

    async def read_file(self, path: str) -> bytes:
        ...


def supports_cancel(transport: Optional[HttpTransport]) -> bool:
    return isinstance(transport, CancellableTransport)
