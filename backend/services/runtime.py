"""
Runtime utilities:
- shared foreground thread pool for blocking database reads, with safe shutdown
- request/user context for structured logs
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Dict, Optional

_LOGGER = logging.getLogger("runtime")

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_USER_ID: ContextVar[str] = ContextVar("user_id", default="-")

_FG_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()
_FOREGROUND_WORKERS = max(2, int(os.getenv("APP_FOREGROUND_MAX_WORKERS", "8")))


def get_request_id() -> str:
    return _REQUEST_ID.get() or "-"


def get_user_id() -> str:
    return _USER_ID.get() or "-"


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def set_user_id(user_id: Optional[str]) -> str:
    uid = (user_id or "").strip() or "-"
    _USER_ID.set(uid)
    return uid


def clear_context() -> None:
    _REQUEST_ID.set("-")
    _USER_ID.set("-")


def structured_fields(**extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "request_id": get_request_id(),
        "user_id": get_user_id(),
    }
    payload.update(extra)
    return payload


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    payload = structured_fields(event=event, **fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))


def get_foreground_executor() -> ThreadPoolExecutor:
    global _FG_EXECUTOR
    if _FG_EXECUTOR is not None:
        return _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _FG_EXECUTOR is None:
            _FG_EXECUTOR = ThreadPoolExecutor(max_workers=_FOREGROUND_WORKERS, thread_name_prefix="cfo-fg")
        return _FG_EXECUTOR


async def run_blocking(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run ``fn`` on the shared pool and wait at most ``timeout_s`` for it.

    Raises ``asyncio.TimeoutError`` when the wait expires. The worker thread
    keeps running until ``fn`` returns; callers bound the underlying work with
    driver-level timeouts.
    """
    loop = asyncio.get_running_loop()
    ctx = copy_context()
    future = loop.run_in_executor(get_foreground_executor(), lambda: ctx.run(fn))
    return await asyncio.wait_for(future, timeout=max(0.05, float(timeout_s)))


def shutdown_shared_executor(wait: bool = False) -> None:
    global _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _FG_EXECUTOR is None:
            return
        _FG_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
        _FG_EXECUTOR = None
        _LOGGER.info("shared_executor_shutdown")
