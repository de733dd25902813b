# tests/conftest.py
import copy
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from bson import ObjectId

from qbroker.models.query import QueryDocument
from qbroker.services.stores import PersistenceError


class InMemoryDocumentStore:
    """Same interface as DocumentStore, backed by a dict."""

    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.fail_writes = False
        self.fail_reads = False
        # update_fields raises when a written path starts with one of these
        self.fail_fields: Tuple[str, ...] = ()
        self.writes = 0

    def _check(self):
        if self.fail_writes:
            raise PersistenceError("document store unavailable")

    async def create(self, data: Dict[str, Any]) -> str:
        self._check()
        query_id = str(ObjectId())
        self.docs[query_id] = copy.deepcopy(data)
        return query_id

    async def get(self, query_id: str) -> Optional[Dict[str, Any]]:
        if self.fail_reads:
            raise PersistenceError(f"Failed to read query {query_id}: document store unavailable")
        doc = self.docs.get(query_id)
        if doc is None:
            return None
        return {**copy.deepcopy(doc), "_id": query_id}

    async def list(self) -> List[Dict[str, Any]]:
        return [{**copy.deepcopy(d), "_id": k} for k, d in self.docs.items()]

    async def update_fields(self, query_id: str, fields: Dict[str, Any]) -> None:
        self._check()
        if any(path.startswith(self.fail_fields) for path in fields):
            raise PersistenceError("document store unavailable")
        if query_id not in self.docs:
            raise PersistenceError(f"Query {query_id} no longer exists")
        for path, value in fields.items():
            target = self.docs[query_id]
            *parents, leaf = path.split(".")
            for key in parents:
                target = target.setdefault(key, {})
            target[leaf] = copy.deepcopy(value)
        self.writes += 1

    async def delete(self, query_id: str) -> bool:
        return self.docs.pop(query_id, None) is not None


class InMemoryBlobStore:
    """Same interface as BlobStore, backed by a dict."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.fail_puts = False

    async def put(self, data: bytes, filename: str) -> str:
        if self.fail_puts:
            raise PersistenceError(f"Failed to store blob {filename}: gridfs unavailable")
        blob_id = str(ObjectId())
        self.blobs[blob_id] = bytes(data)
        return blob_id

    async def get(self, blob_id: str) -> bytes:
        if blob_id not in self.blobs:
            raise PersistenceError(f"Blob {blob_id} not found")
        return self.blobs[blob_id]

    async def delete(self, blob_id: str) -> None:
        self.blobs.pop(blob_id, None)


HYPERCUBE = {
    "dimensionDeclarations": [
        {"name": "concept", "dimensionType": "attribute", "sortIndex": None},
        {"name": "patient", "dimensionType": "subject", "sortIndex": 1},
    ],
    "sort": [{"dimension": "patient", "sortOrder": "asc"}],
    "cells": [
        {"inlineDimensions": [], "dimensionIndexes": [0, 0], "numericValue": None, "stringValue": "Male"},
        {"inlineDimensions": [], "dimensionIndexes": [1, 1], "numericValue": None, "stringValue": "Female"},
    ],
    "dimensionElements": {
        "concept": [{"conceptPath": "\\Public Studies\\CATEGORICAL_VALUES\\Demography\\Gender\\Male\\"}],
        "patient": [{"id": 1, "sex": "male"}, {"id": 2, "sex": "female"}],
    },
}


class FakeTransmart:
    """httpx handler emulating the token and observations endpoints of TranSMART 17.1."""

    def __init__(self):
        self.tokens_issued = 0
        self.requests: List[httpx.Request] = []
        self.fail_auth = False
        self.reject_auth = False
        self.fail_fetch = False
        self.timeout_fetch = False
        self.fetch_status = 200
        self.body: bytes = json.dumps(HYPERCUBE).encode("utf-8")
        self.expires_in = 3600

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            if self.fail_auth:
                raise httpx.ConnectError("connection refused", request=request)
            if self.reject_auth:
                return httpx.Response(401, json={"error": "invalid_grant"})
            self.tokens_issued += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"token-{self.tokens_issued}",
                    "token_type": "bearer",
                    "expires_in": self.expires_in,
                    "scope": "read write",
                },
            )
        if request.url.path == "/v2/observations":
            if self.fail_fetch:
                raise httpx.ConnectError("connection reset", request=request)
            if self.timeout_fetch:
                raise httpx.ReadTimeout("read timed out", request=request)
            if request.headers.get("Authorization") != f"Bearer token-{self.tokens_issued}":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(self.fetch_status, content=self.body)
        return httpx.Response(404)

    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/oauth/token"]

    def fetch_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/v2/observations"]


CONSTRAINT = {
    "type": "combination",
    "operator": "and",
    "args": [
        {"type": "concept", "path": "\\Public Studies\\CATEGORICAL_VALUES\\Demography\\Gender\\Male\\"},
        {"type": "concept", "path": "\\Public Studies\\CATEGORICAL_VALUES\\Demography\\Gender\\Female\\"},
    ],
}


def make_ts171_query() -> Dict[str, Any]:
    return {
        "endpoint": {
            "sourceType": "TS171",
            "sourceName": "Transmart instance",
            "sourceHost": "http://transmart.thehyve.net",
            "sourcePort": 80,
            "public": False,
        },
        "credentials": {"username": "demo-user", "password": "demo-user"},
        "input": {
            "local": {
                "uri": "/v2/observations?constraint=",
                "params": copy.deepcopy(CONSTRAINT),
                "type": "clinical",
            },
            "std": {},
        },
        "status": {"status": "unknown", "start": None, "end": None, "info": ""},
        "output": {
            "local": {"dataSize": 0, "dataId": None},
            "std": {"dataSize": 0, "dataId": None},
        },
    }


@pytest.fixture
def ts171_query() -> Dict[str, Any]:
    return make_ts171_query()


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def transmart() -> FakeTransmart:
    return FakeTransmart()


@pytest.fixture
def transport(transmart) -> httpx.MockTransport:
    return httpx.MockTransport(transmart)


@pytest.fixture
def store_query(document_store):
    """Insert a query description directly into the document store."""

    async def _store(data: Dict[str, Any]) -> QueryDocument:
        document = QueryDocument.model_validate(data)
        document.id = await document_store.create(document.to_mongo())
        return document

    return _store
