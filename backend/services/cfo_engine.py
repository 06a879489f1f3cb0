"""
Request orchestrator for the AI CFO chat endpoint.

Flow per question:
1) Fast path: recognized high-frequency shapes -> one direct aggregate
2) Otherwise plan with the oracle, execute every entry concurrently
3) Pre-aggregate authoritative totals
4) Generate the answer with the oracle

The whole flow races a request deadline. Each oracle call and each query
also has its own budget; those stage failures never surface as the builtin
``TimeoutError`` so they cannot be mistaken for the request deadline.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from backend.config import Settings
from backend.services.fast_path import match_fast_path, run_fast_path
from backend.services.llm_client import OracleClient, build_oracles
from backend.services.plan_models import ScalarRow
from backend.services.planner import build_plan
from backend.services.pre_aggregator import build_data_map
from backend.services.query_executor import execute_plan
from backend.services.responder import generate_answer
from backend.services.runtime import log_event
from ledger.db_utils import DatabaseConfig, FinanceDB, get_finance_engine

logger = logging.getLogger("cfo_engine")

GENERIC_ERROR_MESSAGE = "I'm having trouble processing that request. Please try rephrasing or try again."
TIMEOUT_MESSAGE = "The request took too long to process. Please try a simpler question or try again."


class Stage(str, Enum):
    RECEIVED = "received"
    FAST_PATH_CHECK = "fast_path_check"
    FAST_PATH_ANSWER = "fast_path_answer"
    PLANNING = "planning"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    RESPONDING = "responding"
    DONE = "done"
    TIMEOUT = "timeout"
    ERROR = "error"


TERMINAL_STAGES = frozenset({Stage.DONE, Stage.TIMEOUT, Stage.ERROR})


class RequestTrace:
    """Current stage of one request plus the path it took."""

    def __init__(self) -> None:
        self.started = time.perf_counter()
        self.stage = Stage.RECEIVED
        self.history: List[Stage] = [Stage.RECEIVED]

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    def move(self, stage: Stage) -> None:
        if self.stage in TERMINAL_STAGES:
            return
        previous = self.stage
        self.stage = stage
        self.history.append(stage)
        log_event(
            logger,
            logging.INFO,
            "stage_transition",
            from_stage=previous.value,
            to_stage=stage.value,
            elapsed_ms=self.elapsed_ms(),
        )


@dataclass
class Answer:
    text: str
    quick_match: bool = False
    queries: int = 0
    duration_ms: int = 0
    fallback_plan: bool = False
    data_map: Dict[str, Any] = field(default_factory=dict)

    def context(self) -> Dict[str, Any]:
        if self.quick_match:
            return {"quick_match": True, "duration_ms": self.duration_ms}
        return {"queries": self.queries, "duration_ms": self.duration_ms}


@dataclass
class EngineReply:
    status_code: int
    response: str
    context: Dict[str, Any] = field(default_factory=dict)


class FinanceQueryEngine:
    """Answers free-text finance questions from the ledger tables."""

    def __init__(
        self,
        db: FinanceDB,
        planner: OracleClient,
        responder: OracleClient,
        *,
        request_timeout_s: float = 25.0,
        llm_timeout_s: float = 8.0,
        query_timeout_s: float = 10.0,
        fast_path_timeout_s: float = 8.0,
        list_row_cap: int = 50,
        fallback_row_cap: int = 20,
        max_answer_chars: int = 1200,
        clock: Callable[[], date] = date.today,
    ):
        self.db = db
        self.planner = planner
        self.responder = responder
        self.request_timeout_s = request_timeout_s
        self.llm_timeout_s = llm_timeout_s
        self.query_timeout_s = query_timeout_s
        self.fast_path_timeout_s = fast_path_timeout_s
        self.list_row_cap = list_row_cap
        self.fallback_row_cap = fallback_row_cap
        self.max_answer_chars = max_answer_chars
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        db: FinanceDB,
        planner: OracleClient,
        responder: OracleClient,
        clock: Callable[[], date] = date.today,
    ) -> "FinanceQueryEngine":
        return cls(
            db,
            planner,
            responder,
            request_timeout_s=settings.request_timeout_s,
            llm_timeout_s=settings.llm_timeout_s,
            query_timeout_s=settings.query_timeout_s,
            fast_path_timeout_s=settings.fast_path_timeout_s,
            list_row_cap=settings.list_row_cap,
            fallback_row_cap=settings.fallback_row_cap,
            max_answer_chars=settings.max_answer_chars,
            clock=clock,
        )

    async def answer(self, question: str, trace: Optional[RequestTrace] = None) -> Answer:
        """Run the pipeline without the request deadline; stage errors propagate."""
        trace = trace or RequestTrace()
        today = self.clock()

        trace.move(Stage.FAST_PATH_CHECK)
        rule = match_fast_path(question)
        if rule is not None:
            trace.move(Stage.FAST_PATH_ANSWER)
            total = await run_fast_path(rule, self.db, today=today, timeout_s=self.fast_path_timeout_s)
            trace.move(Stage.AGGREGATING)
            data_map = build_data_map({rule.alias: [ScalarRow(total=total, count=1)]})
            trace.move(Stage.RESPONDING)
            text = await generate_answer(
                question, data_map, self.responder, max_chars=self.max_answer_chars, timeout_s=self.llm_timeout_s
            )
            trace.move(Stage.DONE)
            return Answer(text=text, quick_match=True, queries=1, duration_ms=trace.elapsed_ms(), data_map=data_map)

        trace.move(Stage.PLANNING)
        plan = await build_plan(
            question,
            self.planner,
            today=today,
            list_cap=self.list_row_cap,
            fallback_row_cap=self.fallback_row_cap,
            timeout_s=self.llm_timeout_s,
        )

        trace.move(Stage.EXECUTING)
        results = await execute_plan(
            plan, self.db, today=today, list_cap=self.list_row_cap, timeout_s=self.query_timeout_s
        )

        trace.move(Stage.AGGREGATING)
        data_map = build_data_map(results)

        trace.move(Stage.RESPONDING)
        text = await generate_answer(
            question, data_map, self.responder, max_chars=self.max_answer_chars, timeout_s=self.llm_timeout_s
        )
        trace.move(Stage.DONE)
        return Answer(
            text=text,
            queries=len(plan),
            duration_ms=trace.elapsed_ms(),
            fallback_plan=plan.fallback_used,
            data_map=data_map,
        )

    async def handle(self, question: str) -> EngineReply:
        """Answer within the request deadline; always returns a reply."""
        trace = RequestTrace()
        try:
            answer = await asyncio.wait_for(self.answer(question, trace), timeout=self.request_timeout_s)
        except asyncio.TimeoutError:
            trace.move(Stage.TIMEOUT)
            log_event(
                logger,
                logging.WARNING,
                "request_timeout",
                timeout_s=self.request_timeout_s,
                stages=[s.value for s in trace.history],
                elapsed_ms=trace.elapsed_ms(),
            )
            return EngineReply(504, TIMEOUT_MESSAGE, {"error": "timeout"})
        except Exception as exc:
            failed_at = trace.stage.value
            trace.move(Stage.ERROR)
            log_event(
                logger,
                logging.ERROR,
                "request_failed",
                stage=failed_at,
                error=type(exc).__name__,
                detail=str(exc)[:300],
                elapsed_ms=trace.elapsed_ms(),
            )
            return EngineReply(500, GENERIC_ERROR_MESSAGE, {"error": str(exc) or type(exc).__name__})

        log_event(
            logger,
            logging.INFO,
            "request_complete",
            quick_match=answer.quick_match,
            queries=answer.queries,
            fallback_plan=answer.fallback_plan,
            duration_ms=answer.duration_ms,
        )
        return EngineReply(200, answer.text, answer.context())


def build_engine(settings: Settings, clock: Callable[[], date] = date.today) -> FinanceQueryEngine:
    """Engine wired to the process-wide database engine and oracle pair."""
    db_config = DatabaseConfig(
        url=settings.database_url,
        service_key=settings.database_service_key,
        statement_timeout=int(max(1, settings.query_timeout_s)),
    )
    db = FinanceDB(get_finance_engine(db_config))
    planner, responder = build_oracles(settings)
    return FinanceQueryEngine.from_settings(settings, db, planner, responder, clock=clock)
