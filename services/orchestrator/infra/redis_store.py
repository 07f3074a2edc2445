"""
Redis store for flows, their collaborators' data and run results.
"""

import json
import os
from typing import List, Optional, Type, TypeVar
import redis
from pydantic import BaseModel
from services.orchestrator.domain.models import AuthProfile, Collection, Environment
from shared.constants import (
    REDIS_AUTHS_KEY,
    REDIS_COLLECTIONS_KEY,
    REDIS_ENVIRONMENTS_KEY,
    REDIS_FLOWS_KEY,
    REDIS_KEY_TTL_SECONDS,
    REDIS_RUN_KEY_PREFIX,
)
from shared.exceptions import FlowStoreError
from shared.types import Flow, FlowRunResult

ModelT = TypeVar("ModelT", bound=BaseModel)


class RedisFlowStore:
    """Keeps each kind of document as JSON in one Redis hash keyed by id"""

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None:
            url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
            client = redis.Redis.from_url(url, decode_responses=False)
        self.client = client

    def _decode(self, model: Type[ModelT], key: str, field: str, data) -> ModelT:
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            return model.model_validate(json.loads(data))
        except ValueError as e:
            raise FlowStoreError(f"Corrupt {model.__name__} document in {key}", field=field) from e

    def _put(self, key: str, field: str, document: BaseModel) -> None:
        self.client.hset(key, field, json.dumps(document.model_dump(by_alias=True, mode="json")))

    def _get(self, model: Type[ModelT], key: str, field: str) -> Optional[ModelT]:
        data = self.client.hget(key, field)
        if data is None:
            return None
        return self._decode(model, key, field, data)

    def _all(self, model: Type[ModelT], key: str) -> List[ModelT]:
        documents = []
        for field, data in self.client.hgetall(key).items():
            if isinstance(field, bytes):
                field = field.decode("utf-8")
            documents.append(self._decode(model, key, field, data))
        return documents

    def save_flow(self, flow: Flow) -> None:
        self._put(REDIS_FLOWS_KEY, flow.id, flow)

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        return self._get(Flow, REDIS_FLOWS_KEY, flow_id)

    def list_flows(self) -> List[Flow]:
        return self._all(Flow, REDIS_FLOWS_KEY)

    def delete_flow(self, flow_id: str) -> bool:
        return bool(self.client.hdel(REDIS_FLOWS_KEY, flow_id))

    def save_collection(self, collection: Collection) -> None:
        key = collection.filename or collection.info.id
        if not key:
            raise FlowStoreError("Collection needs a filename or an id to be stored")
        self._put(REDIS_COLLECTIONS_KEY, key, collection)

    def list_collections(self) -> List[Collection]:
        return self._all(Collection, REDIS_COLLECTIONS_KEY)

    def save_environment(self, environment: Environment) -> None:
        self._put(REDIS_ENVIRONMENTS_KEY, environment.id, environment)

    def list_environments(self) -> List[Environment]:
        return self._all(Environment, REDIS_ENVIRONMENTS_KEY)

    def save_auth(self, auth: AuthProfile) -> None:
        self._put(REDIS_AUTHS_KEY, auth.id, auth)

    def list_auths(self) -> List[AuthProfile]:
        return self._all(AuthProfile, REDIS_AUTHS_KEY)

    def save_run_result(self, execution_id: str, result: FlowRunResult) -> None:
        key = f"{REDIS_RUN_KEY_PREFIX}:{execution_id}"
        self.client.set(key, json.dumps(result.model_dump(by_alias=True, mode="json")))
        self.client.expire(key, REDIS_KEY_TTL_SECONDS)

    def get_run_result(self, execution_id: str) -> Optional[FlowRunResult]:
        key = f"{REDIS_RUN_KEY_PREFIX}:{execution_id}"
        data = self.client.get(key)
        if data is None:
            return None
        return self._decode(FlowRunResult, key, execution_id, data)
