# qbroker/api/v1/query.py
from fastapi import APIRouter, Body, Depends
from typing import Any, Dict
import logging

from qbroker.api.v1.deps import get_query_service
from qbroker.services.queries import QueryService

logger = logging.getLogger("api.query")

router = APIRouter(tags=["query"])


@router.get("/query")
async def list_queries(queries: QueryService = Depends(get_query_service)):
    return [q.to_api() for q in await queries.list_queries()]


@router.post("/query/new/")
@router.post("/query/new", include_in_schema=False)
async def create_query(
    payload: Dict[str, Any] = Body(...),
    queries: QueryService = Depends(get_query_service),
):
    document = await queries.create_query(payload)
    logger.info("Received /query/new source=%s id=%s", document.endpoint.sourceType, document.id)
    return document.to_api()


@router.get("/query/{query_id}")
async def get_query(query_id: str, queries: QueryService = Depends(get_query_service)):
    return (await queries.get_query(query_id)).to_api()


@router.put("/query/{query_id}")
async def update_query(
    query_id: str,
    patch: Dict[str, Any] = Body(...),
    queries: QueryService = Depends(get_query_service),
):
    return (await queries.update_query(query_id, patch)).to_api()


@router.delete("/query/{query_id}")
async def delete_query(query_id: str, queries: QueryService = Depends(get_query_service)):
    await queries.delete_query(query_id)
    return {"deleted": query_id}


# -------- output -------- #

@router.get("/query/{query_id}/output")
async def get_output(query_id: str, queries: QueryService = Depends(get_query_service)):
    return await queries.get_output(query_id)


@router.post("/query/{query_id}/output")
async def replace_output(
    query_id: str,
    payload: Any = Body(None),
    queries: QueryService = Depends(get_query_service),
):
    return await queries.replace_output(query_id, payload if payload is not None else {})


@router.put("/query/{query_id}/output")
async def update_output(
    query_id: str,
    patch: Any = Body(...),
    queries: QueryService = Depends(get_query_service),
):
    return await queries.update_output(query_id, patch)


@router.delete("/query/{query_id}/output")
async def delete_output(query_id: str, queries: QueryService = Depends(get_query_service)):
    await queries.delete_output(query_id)
    return {"deleted": f"{query_id}/output"}
