"""Lookup of stored requests and flows by reference id."""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence
from services.orchestrator.domain.models import Collection, CollectionItem
from shared.types import Flow


@dataclass
class RequestLookupResult:
    item: CollectionItem
    collection: Collection


def _walk(items: Sequence[CollectionItem]) -> Iterator[CollectionItem]:
    stack = list(reversed(items))
    while stack:
        item = stack.pop()
        yield item
        if item.item:
            stack.extend(reversed(item.item))


def _collection_matches(collection: Collection, key: str) -> bool:
    return collection.filename == key or (collection.info.id is not None and collection.info.id == key)


def find_request_by_id(reference_id: str, collections: Sequence[Collection]) -> Optional[RequestLookupResult]:
    """Accepts `itemId` or `collection:itemId`, where `collection` is a filename or collection id"""
    collection_key, _, item_id = reference_id.partition(":")
    if not item_id:
        collection_key, item_id = "", reference_id

    candidates = [c for c in collections if _collection_matches(c, collection_key)] if collection_key else collections
    for collection in candidates:
        for item in _walk(collection.item):
            if item.id == item_id:
                return RequestLookupResult(item=item, collection=collection)
    return None


def find_flow_by_id(flow_id: str, flows: Sequence[Flow]) -> Optional[Flow]:
    return next((flow for flow in flows if flow.id == flow_id), None)


def get_all_requests_from_collection(collection: Collection) -> List[CollectionItem]:
    return [item for item in _walk(collection.item) if item.request is not None]


def get_item_folder_path(item_id: str, collection: Collection) -> List[str]:
    """Names of the folders enclosing an item, outermost first"""
    stack = [(item, []) for item in reversed(collection.item)]
    while stack:
        item, path = stack.pop()
        if item.id == item_id:
            return path
        if item.item:
            child_path = path if item.request is not None else path + [item.name]
            stack.extend((child, child_path) for child in reversed(item.item))
    return []


def find_collection(key: str, collections: Sequence[Collection]) -> Optional[Collection]:
    return next((c for c in collections if _collection_matches(c, key)), None)


def collection_reference_ids(collection: Collection, folder: Optional[str] = None) -> List[str]:
    """Qualified ids (`collection:itemId`) of every request, or only of those filed under `folder`"""
    prefix = collection.filename or collection.info.id
    reference_ids = []
    for item in get_all_requests_from_collection(collection):
        if folder is not None and folder not in get_item_folder_path(item.id, collection):
            continue
        reference_ids.append(f"{prefix}:{item.id}" if prefix else item.id)
    return reference_ids
