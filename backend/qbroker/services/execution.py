# qbroker/services/execution.py
import logging
from typing import Optional

import httpx

from qbroker.models.query import ExecutionResult, QueryDocument, StatusValue, utcnow
from qbroker.services.adapters.base import elapsed_ms
from qbroker.services.adapters.registry import UnsupportedSourceError, create_adapter
from qbroker.services.locks import QueryLocks
from qbroker.services.queries import QueryNotFound
from qbroker.services.stores import BlobStore, DocumentStore, PersistenceError

logger = logging.getLogger("execution")
logger.setLevel(logging.INFO)


class ExecutionEngine:
    """
    Drives adapter execution for stored queries.

    Runs for the same query id are serialized, with each other and with the
    output and update operations sharing `locks`, so nothing races on the token
    refresh or on the output slots of one document.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        blob_store: BlobStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        locks: Optional[QueryLocks] = None,
    ):
        self.document_store = document_store
        self.blob_store = blob_store
        self.transport = transport
        self.locks = locks or QueryLocks()

    async def _load(self, query_id: str) -> QueryDocument:
        raw = await self.document_store.get(query_id)
        if raw is None:
            raise QueryNotFound(query_id)
        return QueryDocument.model_validate(raw)

    async def poll(self, query_id: str) -> StatusValue:
        return (await self._load(query_id)).status.status

    async def start(self, query_id: str) -> None:
        """Mark the query running; the actual work happens in run()."""
        document = await self._load(query_id)
        await self._mark_running(document)

    async def _mark_running(self, document: QueryDocument) -> None:
        document.status.status = StatusValue.RUNNING
        document.status.start = utcnow()
        document.status.end = None
        document.status.info = ""
        await self.document_store.update_fields(
            document.id,
            {
                "status.status": StatusValue.RUNNING.value,
                "status.start": document.status.start,
                "status.end": None,
                "status.info": "",
            },
        )
        logger.info(f"Query {document.id}: running")

    async def run(self, query_id: str) -> Optional[ExecutionResult]:
        async with self.locks.for_query(query_id):
            return await self._run_locked(query_id)

    async def _run_locked(self, query_id: str) -> Optional[ExecutionResult]:
        start = utcnow()
        try:
            document = await self._load(query_id)
        except QueryNotFound as e:
            logger.error(f"Query {query_id}: cannot load for execution: {e}")
            return None
        except PersistenceError as e:
            # start() may already have marked it running; try to leave a terminal status
            logger.error(f"Query {query_id}: cannot load for execution: {e}")
            result = ExecutionResult(status="fail", time=elapsed_ms(start), error=str(e))
            await self._finish(query_id, result)
            return result

        # a previous run may have finished between start() and acquiring the lock
        if document.status.status != StatusValue.RUNNING:
            try:
                await self._mark_running(document)
            except PersistenceError as e:
                logger.error(f"Query {query_id}: cannot mark running: {e}")
                return None

        try:
            adapter = create_adapter(document, self.document_store, self.blob_store, transport=self.transport)
        except UnsupportedSourceError as e:
            result = ExecutionResult(status="fail", time=elapsed_ms(start), error=str(e))
            await self._finish(query_id, result)
            return result

        logger.info(f"Query {query_id}: executing with {type(adapter).__name__}")
        try:
            result = await adapter.execute()
        except Exception as e:
            # adapters convert their own failures; anything else must still end the run
            logger.exception(f"Query {query_id}: unexpected error during execution")
            result = ExecutionResult(status="fail", time=elapsed_ms(start), error=str(e) or type(e).__name__)
        await self._finish(query_id, result)
        return result

    async def _finish(self, query_id: str, result: ExecutionResult) -> None:
        if result.status == "success":
            status, info = StatusValue.DONE, f"Completed in {result.time} ms"
        else:
            status, info = StatusValue.FAIL, result.error or ""
        try:
            await self.document_store.update_fields(
                query_id,
                {"status.status": status.value, "status.end": utcnow(), "status.info": info},
            )
        except PersistenceError as e:
            logger.error(f"Query {query_id}: could not record status {status.value}: {e}")
            return
        logger.info(f"Query {query_id}: {status.value} ({result.time} ms)")
