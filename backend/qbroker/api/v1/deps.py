# qbroker/api/v1/deps.py
from fastapi import Request

from qbroker.services.execution import ExecutionEngine
from qbroker.services.queries import QueryService


def get_query_service(request: Request) -> QueryService:
    return request.app.state.queries


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine
