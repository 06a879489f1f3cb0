"""Answer generation: DataMap + verified totals -> short natural-language answer."""
from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

from backend.services.llm_client import OracleClient
from backend.services.plan_models import MONTH
from backend.services.pre_aggregator import verified_totals
from backend.services.runtime import log_event

logger = logging.getLogger(__name__)

EMPTY_ANSWER = "Unable to generate response."
DEFAULT_MAX_ANSWER_CHARS = 1200

ANSWER_PROMPT = """Question: "{question}"
{totals_block}
Data: {data}

Provide a concise, professional answer (<150 words). Format currency with $ and commas.

IMPORTANT INSTRUCTIONS:
{instructions}
- Be direct and actionable
"""

TOTALS_INSTRUCTION = "- When you see the \"TOTAL AMOUNT\" section above, use that exact dollar value - do not recalculate"

MONTHLY_INSTRUCTION = """- The data contains monthly figures: calculate month-over-month changes and show growth %
- Show trends: "Revenue grew 12% from Jan to Feb" or "Expenses decreased 8% from Mar to Apr"

Example for monthly data:
Jan: $45,000
Feb: $52,000 (+15.6% vs Jan)
Mar: $48,000 (-7.7% vs Feb)

Highlight any significant trends or outliers."""


def format_currency(value: float) -> str:
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def totals_block(data_map: Mapping[str, Any]) -> str:
    totals = verified_totals(data_map)
    if not totals:
        return ""
    lines = ["", "===== IMPORTANT: TOTAL AMOUNT ====="]
    for alias, total in totals.items():
        lines.append(f"The verified total for {alias} is {format_currency(total)}")
    lines.append("You MUST use these exact values in your response.")
    lines.append("Do NOT calculate your own total.")
    lines.append("====================================")
    lines.append("")
    return "\n".join(lines)


def has_monthly_series(data_map: Mapping[str, Any]) -> bool:
    for value in data_map.values():
        if isinstance(value, list) and any(isinstance(r, dict) and MONTH in r for r in value):
            return True
    return False


def build_answer_prompt(question: str, data_map: Mapping[str, Any]) -> str:
    block = totals_block(data_map)
    instructions = []
    if block:
        instructions.append(TOTALS_INSTRUCTION)
    if has_monthly_series(data_map):
        instructions.append(MONTHLY_INSTRUCTION)
    return ANSWER_PROMPT.format(
        question=question.replace('"', "'"),
        totals_block=block,
        data=json.dumps(data_map, indent=2, default=str),
        instructions="\n".join(instructions) if instructions else "- Answer only from the data shown",
    )


def clip_answer(text: Optional[str], max_chars: int = DEFAULT_MAX_ANSWER_CHARS) -> str:
    out = (text or "").strip()
    if not out:
        return EMPTY_ANSWER
    if len(out) > max_chars:
        cut = out[:max_chars].rstrip()
        space = cut.rfind(" ")
        if space > max_chars // 2:
            cut = cut[:space]
        out = cut.rstrip(" ,;:") + "..."
    return out


async def generate_answer(
    question: str,
    data_map: Mapping[str, Any],
    oracle: OracleClient,
    *,
    max_chars: int = DEFAULT_MAX_ANSWER_CHARS,
    timeout_s: Optional[float] = None,
) -> str:
    prompt = build_answer_prompt(question, data_map)
    raw = await oracle.complete(prompt, timeout_s=timeout_s)
    if not raw.strip():
        log_event(logger, logging.WARNING, "responder_empty_output", prompt_chars=len(prompt))
    return clip_answer(raw, max_chars)
