# qbroker/services/stores.py
"""
Persistence collaborators used by the adapters and the REST layer.

DocumentStore keeps one Mongo document per query, BlobStore keeps raw and
standardized output payloads in a GridFS bucket. Both translate driver
errors into PersistenceError so callers deal with a single failure type.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorGridFSBucket
from pymongo.errors import PyMongoError

logger = logging.getLogger("stores")


class PersistenceError(Exception):
    """Raised when the document store or the blob store rejects an operation."""


def _object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["_id"] = str(doc["_id"])
    return doc


class DocumentStore:
    def __init__(self, collection: AsyncIOMotorCollection):
        self.collection = collection

    async def create(self, data: Dict[str, Any]) -> str:
        try:
            res = await self.collection.insert_one(dict(data))
        except PyMongoError as e:
            raise PersistenceError(f"Failed to insert query document: {e}") from e
        return str(res.inserted_id)

    async def get(self, query_id: str) -> Optional[Dict[str, Any]]:
        oid = _object_id(query_id)
        if oid is None:
            return None
        try:
            doc = await self.collection.find_one({"_id": oid})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to read query {query_id}: {e}") from e
        return _serialize(doc) if doc else None

    async def list(self) -> List[Dict[str, Any]]:
        docs = []
        try:
            async for d in self.collection.find({}):
                docs.append(_serialize(d))
        except PyMongoError as e:
            raise PersistenceError(f"Failed to list queries: {e}") from e
        return docs

    async def update_fields(self, query_id: str, fields: Dict[str, Any]) -> None:
        """Targeted $set, leaves every other field of the document untouched."""
        await self._write(query_id, "update", lambda oid: self.collection.update_one({"_id": oid}, {"$set": fields}))

    async def delete(self, query_id: str) -> bool:
        oid = _object_id(query_id)
        if oid is None:
            return False
        try:
            res = await self.collection.delete_one({"_id": oid})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to delete query {query_id}: {e}") from e
        return res.deleted_count == 1

    async def _write(self, query_id: str, op: str, call) -> None:
        oid = _object_id(query_id)
        if oid is None:
            raise PersistenceError(f"Invalid query id {query_id!r}")
        try:
            res = await call(oid)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to {op} query {query_id}: {e}") from e
        if res.matched_count == 0:
            raise PersistenceError(f"Query {query_id} no longer exists")


class BlobStore:
    def __init__(self, bucket: AsyncIOMotorGridFSBucket):
        self.bucket = bucket

    async def put(self, data: bytes, filename: str) -> str:
        try:
            oid = await self.bucket.upload_from_stream(filename, data)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to store blob {filename}: {e}") from e
        logger.info("Stored blob %s (%d bytes) as %s", filename, len(data), oid)
        return str(oid)

    async def get(self, blob_id: str) -> bytes:
        oid = _object_id(blob_id)
        if oid is None:
            raise PersistenceError(f"Invalid blob id {blob_id!r}")
        try:
            grid_out = await self.bucket.open_download_stream(oid)
            return await grid_out.read()
        except NoFile as e:
            raise PersistenceError(f"Blob {blob_id} not found") from e
        except PyMongoError as e:
            raise PersistenceError(f"Failed to read blob {blob_id}: {e}") from e

    async def delete(self, blob_id: str) -> None:
        oid = _object_id(blob_id)
        if oid is None:
            return
        try:
            await self.bucket.delete(oid)
        except NoFile:
            logger.debug("Blob %s already released", blob_id)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to delete blob {blob_id}: {e}") from e
