# qbroker/api/v1/execute.py
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
import logging

from qbroker.api.v1.deps import get_engine
from qbroker.services.execution import ExecutionEngine

logger = logging.getLogger("api.execute")

router = APIRouter(tags=["execute"])


class ExecuteRequest(BaseModel):
    query: str


@router.post("/execute")
async def execute_query(
    req: ExecuteRequest,
    background_tasks: BackgroundTasks,
    engine: ExecutionEngine = Depends(get_engine),
):
    # failures surface through GET /execute/{id}, never here
    await engine.start(req.query)
    background_tasks.add_task(engine.run, req.query)
    logger.info("Scheduled execution of query %s", req.query)
    return {"status": "running"}


@router.get("/execute/{query_id}")
async def execution_status(query_id: str, engine: ExecutionEngine = Depends(get_engine)):
    status = await engine.poll(query_id)
    return {"status": status.value}
