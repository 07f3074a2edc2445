"""Builders and fakes shared by the unit tests."""

import asyncio
import json
from typing import Dict, List, Optional, Tuple, Union
from services.orchestrator.domain.models import (
    Collection,
    CollectionInfo,
    CollectionItem,
    CollectionRequest,
    Environment,
    EnvironmentVariable,
    PreparedRequest,
)
from shared.types import (
    ConnectorCondition,
    Flow,
    FlowConnector,
    FlowNode,
    HttpResponseResult,
    TransportResult,
    ValidationResult,
)


def json_response(body, status: int = 200, headers: Dict[str, str] = None, all_passed: Optional[bool] = None) -> HttpResponseResult:
    validation = None
    if all_passed is not None:
        validation = ValidationResult(
            total_rules=1,
            passed_rules=1 if all_passed else 0,
            failed_rules=0 if all_passed else 1,
            all_passed=all_passed,
        )
    return HttpResponseResult(
        status=status,
        status_text="OK" if status < 400 else "Error",
        body=body if isinstance(body, str) else json.dumps(body),
        headers=headers if headers is not None else {"Content-Type": "application/json"},
        validation_result=validation,
    )


def request_item(item_id: str, url: str, method: str = "GET", **fields) -> CollectionItem:
    return CollectionItem(
        id=item_id,
        name=item_id,
        request=CollectionRequest(method=method, url=url, **fields),
    )


def collection(*items: CollectionItem, filename: str = "api.json") -> Collection:
    return Collection(info=CollectionInfo(name="api"), item=list(items), filename=filename)


def environment(env_id: str, name: str, **values: str) -> Environment:
    return Environment(
        id=env_id,
        name=name,
        values=[EnvironmentVariable(key=k, value=v) for k, v in values.items()],
    )


def make_flow(
    aliases: List[str],
    edges: List[Tuple[str, str, str]] = (),
    flow_id: str = "flow-1",
) -> Flow:
    """Nodes get id `n-<alias>` and request id `req-<alias>`; edges are (source alias, target alias, condition)"""
    nodes = [FlowNode(id=f"n-{a}", alias=a, request_id=f"req-{a}") for a in aliases]
    connectors = [
        FlowConnector(
            id=f"c-{source}-{target}",
            source_node_id=f"n-{source}",
            target_node_id=f"n-{target}",
            condition=ConnectorCondition(condition),
        )
        for source, target, condition in edges
    ]
    return Flow(id=flow_id, name="test flow", nodes=nodes, connectors=connectors)


Reply = Union[HttpResponseResult, TransportResult, Exception]


class FakeTransport:
    """Answers by URL; records every request plus start/finish order"""

    def __init__(self, replies: Dict[str, Reply] = None, delays: Dict[str, float] = None):
        self.replies = dict(replies or {})
        self.delays = dict(delays or {})
        self.requests: List[PreparedRequest] = []
        self.events: List[Tuple[str, str]] = []
        self.on_request = None

    async def execute_request(self, request: PreparedRequest) -> TransportResult:
        self.requests.append(request)
        self.events.append(("start", request.url))
        if self.on_request is not None:
            self.on_request(request)
        await asyncio.sleep(self.delays.get(request.url, 0))
        self.events.append(("finish", request.url))

        reply = self.replies.get(request.url, json_response({}))
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, TransportResult):
            return reply
        return TransportResult.success(reply.model_copy(update={"id": request.id}))

    def urls(self) -> List[str]:
        return [r.url for r in self.requests]
