# qbroker/services/queries.py
import copy
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from qbroker.models.query import QueryDocument, QueryOutput, QueryStatus
from qbroker.services.adapters.base import QueryAdapter
from qbroker.services.adapters.registry import create_adapter, is_supported
from qbroker.services.locks import QueryLocks
from qbroker.services.stores import BlobStore, DocumentStore, PersistenceError

logger = logging.getLogger("queries")

# Fields a client may change after creation; status and output are owned by the broker.
UPDATABLE_FIELDS = ("endpoint", "credentials", "input")


class QueryNotFound(Exception):
    def __init__(self, query_id: str):
        super().__init__(f"Query {query_id} not found")
        self.query_id = query_id


class InvalidQuery(Exception):
    """Malformed query description or unsupported source type."""


def merge_patch(target: Any, patch: Any) -> Any:
    """
    JSON merge-patch (RFC 7386): objects merge recursively, null removes a key,
    anything else replaces the target.
    """
    if not isinstance(patch, dict):
        return patch
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def _encode(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _validate(data: Dict[str, Any]) -> QueryDocument:
    try:
        document = QueryDocument.model_validate(data)
    except ValidationError as e:
        raise InvalidQuery(f"Invalid query description: {e}") from e
    if not is_supported(document.endpoint.sourceType):
        raise InvalidQuery(f"Unsupported source type {document.endpoint.sourceType!r}")
    return document


class QueryService:
    """
    Client-driven query and output operations.

    Writes hold the same per-query lock as ExecutionEngine.run, so an output edit
    never interleaves with an execution of the same query.
    """

    def __init__(self, document_store: DocumentStore, blob_store: BlobStore, locks: Optional[QueryLocks] = None):
        self.document_store = document_store
        self.blob_store = blob_store
        self.locks = locks or QueryLocks()

    def _bind(self, document: QueryDocument) -> QueryAdapter:
        return create_adapter(document, self.document_store, self.blob_store)

    # -------- query documents -------- #

    async def create_query(self, payload: Dict[str, Any]) -> QueryDocument:
        data = {k: v for k, v in payload.items() if k != "_id"}
        document = _validate(data)
        document.status = QueryStatus()
        document.output = QueryOutput()

        adapter = self._bind(document)
        if document.input.local and not document.input.std:
            document.input.std = adapter.input_local_to_standard(copy.deepcopy(document.input.local))
        elif document.input.std and not document.input.local:
            document.input.local = adapter.input_standard_to_local(copy.deepcopy(document.input.std))

        document.id = await self.document_store.create(document.to_mongo())
        logger.info("Created query %s for %s", document.id, document.endpoint.sourceType)
        return document

    async def get_query(self, query_id: str) -> QueryDocument:
        raw = await self.document_store.get(query_id)
        if raw is None:
            raise QueryNotFound(query_id)
        return QueryDocument.model_validate(raw)

    async def list_queries(self) -> List[QueryDocument]:
        return [QueryDocument.model_validate(d) for d in await self.document_store.list()]

    async def update_query(self, query_id: str, patch: Dict[str, Any]) -> QueryDocument:
        async with self.locks.for_query(query_id):
            document = await self.get_query(query_id)
            data = document.model_dump(mode="python", by_alias=True)
            changed = [field for field in UPDATABLE_FIELDS if field in patch]
            for field in changed:
                data[field] = merge_patch(data[field], patch[field])
            updated = _validate(data)
            if changed:
                stored = updated.to_mongo()
                await self.document_store.update_fields(query_id, {field: stored[field] for field in changed})
            return updated

    async def delete_query(self, query_id: str) -> None:
        async with self.locks.for_query(query_id):
            document = await self.get_query(query_id)
            if not await self.document_store.delete(query_id):
                raise QueryNotFound(query_id)
            for slot in (document.output.local, document.output.std):
                if slot.dataId is not None:
                    await self.blob_store.delete(slot.dataId)
        logger.info("Deleted query %s", query_id)

    # -------- outputs -------- #

    async def get_output(self, query_id: str) -> Any:
        return await self._read_output(self._bind(await self.get_query(query_id)))

    async def _read_output(self, adapter: QueryAdapter) -> Any:
        data = await adapter.read_standard_output()
        if data is None:
            return {}
        try:
            return json.loads(data)
        except ValueError as e:
            raise PersistenceError(f"Stored output of query {adapter.document.id} is not JSON") from e

    async def replace_output(self, query_id: str, payload: Any) -> Any:
        async with self.locks.for_query(query_id):
            adapter = self._bind(await self.get_query(query_id))
            await adapter.persist_standard_output(_encode(payload))
        return payload

    async def update_output(self, query_id: str, patch: Any) -> Any:
        async with self.locks.for_query(query_id):
            adapter = self._bind(await self.get_query(query_id))
            merged = merge_patch(await self._read_output(adapter), patch)
            await adapter.persist_standard_output(_encode(merged))
        return merged

    async def delete_output(self, query_id: str) -> None:
        async with self.locks.for_query(query_id):
            adapter = self._bind(await self.get_query(query_id))
            await adapter.release_outputs()
