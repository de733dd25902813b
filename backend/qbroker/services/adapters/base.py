# qbroker/services/adapters/base.py
"""
Uniform contract every source adapter satisfies.

An adapter is bound to exactly one QueryDocument plus the two storage
collaborators. Binding has no network or auth side effects; those happen
inside `execute()`, which each source variant implements for its protocol.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from qbroker.core.config import settings
from qbroker.models.query import ExecutionResult, OutputSlot, QueryDocument, utcnow
from qbroker.services.stores import BlobStore, DocumentStore, PersistenceError


class AdapterError(Exception):
    """Base class for failures raised inside an adapter."""


class AuthError(AdapterError):
    """Token request failed or returned nothing usable."""


class TransportError(AdapterError):
    """Remote fetch failed, timed out or answered with an error status."""


class TranslationError(AdapterError):
    """Payload could not be converted between local and standard format."""


def elapsed_ms(start: datetime, end: Optional[datetime] = None) -> int:
    delta = (end or utcnow()) - start
    return int(delta.total_seconds() * 1000)


class QueryAdapter(ABC):
    source_type: str = ""

    def __init__(
        self,
        document: QueryDocument,
        document_store: DocumentStore,
        blob_store: BlobStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.document = document
        self.document_store = document_store
        self.blob_store = blob_store
        self.transport = transport
        self.logger = logging.getLogger(f"adapter.{self.source_type.lower() or 'base'}")

    # -------- persistence helpers -------- #

    # status belongs to the execution engine; adapters never write it
    DOCUMENT_FIELDS = ("endpoint", "credentials", "input", "output")

    async def persist_document(self) -> bool:
        """Flush the in-memory document except its status; PersistenceError propagates to the caller."""
        await self._persist_fields(*self.DOCUMENT_FIELDS)
        return True

    async def _persist_fields(self, *paths: str) -> None:
        data = self.document.to_mongo()
        fields = {}
        for path in paths:
            value = data
            for key in path.split("."):
                value = value[key]
            fields[path] = value
        await self.document_store.update_fields(self.document.id, fields)

    async def persist_local_output(self, raw: bytes) -> bytes:
        """
        Store the raw source payload, then its standardized form.

        Returns the standardized payload.
        """
        await self._store_output("local", raw)
        std = self.output_local_to_standard(raw)
        await self._store_output("std", std)
        return std

    async def persist_standard_output(self, std: bytes) -> bytes:
        """Store a client-provided standardized payload along with its local form."""
        local = self.output_standard_to_local(std)
        await self._store_output("std", std)
        await self._store_output("local", local)
        return std

    async def read_standard_output(self) -> Optional[bytes]:
        blob_id = self.document.output.std.dataId
        if blob_id is None:
            return None
        return await self.blob_store.get(blob_id)

    async def release_outputs(self) -> None:
        """Reset the output slots, then drop the blobs they referenced."""
        released = [slot.dataId for slot in (self.document.output.local, self.document.output.std) if slot.dataId]
        self.document.output.local = OutputSlot.empty()
        self.document.output.std = OutputSlot.empty()
        await self._persist_fields("output")
        for blob_id in released:
            await self.blob_store.delete(blob_id)

    async def _store_output(self, name: str, payload: bytes) -> None:
        previous_slot: OutputSlot = getattr(self.document.output, name)
        previous = previous_slot.dataId
        blob_id = await self.blob_store.put(payload, filename=f"{self.document.id}.{name}")
        setattr(self.document.output, name, OutputSlot.stored(len(payload), blob_id))
        try:
            await self._persist_fields(f"output.{name}")
        except PersistenceError:
            setattr(self.document.output, name, previous_slot)
            try:
                await self.blob_store.delete(blob_id)
            except PersistenceError as e:
                self.logger.warning("Query %s: could not release unrecorded blob %s: %s", self.document.id, blob_id, e)
            raise
        self.logger.info("Query %s: stored %s output (%d bytes) as %s", self.document.id, name, len(payload), blob_id)
        if previous and previous != blob_id:
            try:
                await self.blob_store.delete(previous)
            except PersistenceError as e:
                self.logger.warning("Query %s: could not release superseded blob %s: %s", self.document.id, previous, e)

    # -------- transport helpers -------- #

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.document.endpoint.base_url,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    def _failure(self, start: datetime, error: Exception) -> ExecutionResult:
        return ExecutionResult(status="fail", time=elapsed_ms(start), error=str(error) or type(error).__name__)

    def _success(self, start: datetime, data: Any) -> ExecutionResult:
        return ExecutionResult(status="success", time=elapsed_ms(start), data=data)

    # -------- contract -------- #

    @abstractmethod
    async def execute(self) -> ExecutionResult:
        """Run the query against the remote source. Never raises for adapter failures."""

    # Identity unless a variant documents a real transformation.
    def input_local_to_standard(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return data

    def input_standard_to_local(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return data

    def output_local_to_standard(self, data: bytes) -> bytes:
        return data

    def output_standard_to_local(self, data: bytes) -> bytes:
        return data
