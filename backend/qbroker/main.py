# qbroker/main.py
import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorGridFSBucket

from qbroker.api.v1 import execute as execute_router, query as query_router
from qbroker.core.config import settings
from qbroker.services.adapters.registry import ADAPTER_REGISTRY, UnsupportedSourceError
from qbroker.services.execution import ExecutionEngine
from qbroker.services.locks import QueryLocks
from qbroker.services.queries import InvalidQuery, QueryNotFound, QueryService
from qbroker.services.stores import BlobStore, DocumentStore, PersistenceError

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("main")


def _wire_services(app: FastAPI, document_store, blob_store, transport) -> None:
    app.state.document_store = document_store
    app.state.blob_store = blob_store
    locks = QueryLocks()
    app.state.queries = QueryService(document_store, blob_store, locks=locks)
    app.state.engine = ExecutionEngine(document_store, blob_store, transport=transport, locks=locks)


def create_app(
    document_store: Optional[DocumentStore] = None,
    blob_store: Optional[BlobStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the broker application.

    When stores are not supplied they are opened against MongoDB on startup.
    """
    app = FastAPI(title=settings.APP_NAME)

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # register routers
    app.include_router(query_router.router)
    app.include_router(execute_router.router)

    if document_store is not None and blob_store is not None:
        _wire_services(app, document_store, blob_store, transport)

    @app.on_event("startup")
    async def startup():
        if getattr(app.state, "queries", None) is not None:
            return
        client = AsyncIOMotorClient(settings.MONGO_URI)
        db = client[settings.MONGO_DB]
        app.state.mongo_client = client
        _wire_services(
            app,
            DocumentStore(db[settings.QUERY_COLLECTION]),
            BlobStore(AsyncIOMotorGridFSBucket(db, bucket_name=settings.OUTPUT_BUCKET)),
            transport,
        )
        logger.info("Connected to MongoDB %s/%s, adapters: %s", settings.MONGO_URI, settings.MONGO_DB, sorted(ADAPTER_REGISTRY))

    @app.on_event("shutdown")
    async def shutdown():
        client = getattr(app.state, "mongo_client", None)
        if client is not None:
            client.close()

    @app.exception_handler(QueryNotFound)
    async def not_found(request: Request, exc: QueryNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidQuery)
    async def invalid_query(request: Request, exc: InvalidQuery):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(UnsupportedSourceError)
    async def unsupported_source(request: Request, exc: UnsupportedSourceError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_failed(request: Request, exc: PersistenceError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.get("/")
    async def root():
        return {"message": "qbroker running", "sources": sorted(ADAPTER_REGISTRY)}

    return app


app = create_app()
