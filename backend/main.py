"""
FastAPI backend for the AI CFO financial query engine.
Run with: uvicorn backend.main:app --reload --port 8000
"""
import sys
import os
import uuid
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))
load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from backend.config import load_settings
from backend.routes.chat import router as chat_router
from backend.services.cfo_engine import build_engine
from backend.services.runtime import set_request_id, clear_context, shutdown_shared_executor
from ledger.db_utils import dispose_finance_engine

app = FastAPI(title="AI CFO Query API", version="1.0.0")
logger = logging.getLogger("backend")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

DEFAULT_CORS_ORIGINS = (
    "http://localhost:3000", "http://127.0.0.1:3000",
    "http://localhost:5173", "http://127.0.0.1:5173",
)


@app.on_event("startup")
def init_query_engine():
    """Fail fast on missing configuration, then build the shared engine once."""
    settings = load_settings()
    app.state.query_engine = build_engine(settings)
    logger.info("query_engine_ready model=%s", settings.openai_model)


@app.on_event("shutdown")
def shutdown_workers():
    shutdown_shared_executor(wait=False)
    dispose_finance_engine()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


def _cors_origins():
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return list(DEFAULT_CORS_ORIGINS)
    return [o.strip() for o in raw.split(",") if o.strip()]


# CORS for the dashboard dev servers
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
