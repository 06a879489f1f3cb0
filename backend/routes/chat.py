"""AI CFO chat route."""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.routes.deps import get_query_engine
from backend.services.cfo_engine import FinanceQueryEngine
from backend.services.runtime import log_event, set_user_id

router = APIRouter(prefix="/api/ai-cfo", tags=["ai-cfo"])
logger = logging.getLogger("chat_route")

MESSAGE_REQUIRED = {"error": "Message required"}


class ChatRequest(BaseModel):
    message: str
    userId: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class ChatContext(BaseModel):
    queries: Optional[int] = None
    duration_ms: Optional[int] = None
    quick_match: Optional[bool] = None
    error: Optional[str] = None


class ChatResponse(BaseModel):
    response: str
    context: ChatContext


def _parse_chat_request(raw: bytes) -> Optional[ChatRequest]:
    """Lenient body parsing: anything without a non-blank string message is rejected."""
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return None
    user_id = body.get("userId")
    context = body.get("context")
    return ChatRequest(
        message=message.strip(),
        userId=str(user_id) if user_id is not None else None,
        context=context if isinstance(context, dict) else None,
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(request: Request, engine: FinanceQueryEngine = Depends(get_query_engine)):
    req = _parse_chat_request(await request.body())
    if req is None:
        return JSONResponse(MESSAGE_REQUIRED, status_code=400)

    set_user_id(req.userId)
    log_event(logger, logging.INFO, "chat_question", question_chars=len(req.message))

    reply = await engine.handle(req.message)
    payload = ChatResponse(response=reply.response, context=ChatContext(**reply.context))
    return JSONResponse(payload.model_dump(exclude_none=True), status_code=reply.status_code)
