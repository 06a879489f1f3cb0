"""Engine dependency."""
from fastapi import HTTPException, Request

from backend.services.cfo_engine import FinanceQueryEngine


def get_query_engine(request: Request) -> FinanceQueryEngine:
    engine = getattr(request.app.state, "query_engine", None)
    if engine is None:
        raise HTTPException(503, "Query engine is not initialized")
    return engine
