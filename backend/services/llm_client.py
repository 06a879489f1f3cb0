"""
Language-model oracle used for planning and answer generation.

Wraps a LangChain chat model so every call is a single-turn completion with
its own wall-clock budget. Expiry cancels the in-flight HTTP call.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

from langchain_core.output_parsers import StrOutputParser

from backend.config import Settings
from backend.services.runtime import log_event

logger = logging.getLogger("llm_client")


class OracleCallError(RuntimeError):
    """The language model call failed."""


class OracleTimeoutError(RuntimeError):
    """The language model call exceeded its budget.

    Not a ``TimeoutError`` subclass; the orchestrator reads a builtin
    ``TimeoutError`` as the request deadline.
    """


class OracleClient:
    """Adapter exposing ``await complete(prompt)`` over a LangChain chat model."""

    def __init__(self, llm: Any, *, timeout_s: float = 8.0, name: str = "oracle"):
        self._chain = llm | StrOutputParser()
        self._timeout_s = timeout_s
        self.name = name

    async def complete(self, prompt: str, *, timeout_s: Optional[float] = None) -> str:
        budget = float(timeout_s if timeout_s is not None else self._timeout_s)
        started = time.perf_counter()
        try:
            out = await asyncio.wait_for(self._chain.ainvoke(prompt), timeout=max(0.1, budget))
        except asyncio.TimeoutError as exc:
            log_event(
                logger,
                logging.WARNING,
                "oracle_call_timeout",
                oracle=self.name,
                timeout_s=budget,
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
                prompt_chars=len(prompt),
            )
            raise OracleTimeoutError(f"{self.name} timed out after {budget}s") from exc
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "oracle_call_failed",
                oracle=self.name,
                error=type(exc).__name__,
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise OracleCallError(f"{self.name} failed: {type(exc).__name__}") from exc

        log_event(
            logger,
            logging.INFO,
            "oracle_call_ok",
            oracle=self.name,
            timeout_s=budget,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            prompt_chars=len(prompt),
            output_chars=len(out or ""),
        )
        return (out or "").strip()


def build_chat_model(settings: Settings, *, max_tokens: int, temperature: float = 0.0):
    from langchain_openai import ChatOpenAI

    kwargs = dict(
        model=settings.openai_model,
        temperature=temperature,
        max_tokens=max_tokens,
        openai_api_key=settings.openai_api_key,
        timeout=settings.llm_timeout_s,
        max_retries=0,
    )
    if settings.openai_api_base:
        kwargs["openai_api_base"] = settings.openai_api_base
    return ChatOpenAI(**kwargs)


def build_oracles(settings: Settings):
    """(planner, responder) oracle pair sharing one API key."""
    planner = OracleClient(
        build_chat_model(settings, max_tokens=settings.planner_max_tokens, temperature=0.0),
        timeout_s=settings.llm_timeout_s,
        name="planner",
    )
    responder = OracleClient(
        build_chat_model(settings, max_tokens=settings.responder_max_tokens, temperature=0.3),
        timeout_s=settings.llm_timeout_s,
        name="responder",
    )
    return planner, responder
