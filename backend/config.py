"""
Process configuration for the AI CFO query engine.

Everything is read from the environment (after ``.env`` is loaded by
``backend.main``). Required values are checked once at startup so a
misconfigured process never serves a request.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

REQUIRED_ENV_VARS = ("FINANCE_DB_URL", "FINANCE_DB_SERVICE_KEY", "OPENAI_API_KEY")


class ConfigError(RuntimeError):
    """Raised when required environment configuration is missing."""


def _env_float(env: Mapping[str, str], name: str, default: float, *, minimum: float) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class Settings:
    database_url: str
    database_service_key: str
    openai_api_key: str
    openai_model: str = "gpt-4o-mini"
    openai_api_base: Optional[str] = None

    # Time budgets (seconds)
    request_timeout_s: float = 25.0
    llm_timeout_s: float = 8.0
    query_timeout_s: float = 10.0
    fast_path_timeout_s: float = 8.0

    # Oracle token caps
    planner_max_tokens: int = 500
    responder_max_tokens: int = 300

    # Result bounds
    list_row_cap: int = 50
    fallback_row_cap: int = 20
    max_answer_chars: int = 1200


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    missing = [name for name in REQUIRED_ENV_VARS if not str(env.get(name, "")).strip()]
    if missing:
        raise ConfigError("Missing required environment variables: " + ", ".join(missing))

    return Settings(
        database_url=env["FINANCE_DB_URL"].strip(),
        database_service_key=env["FINANCE_DB_SERVICE_KEY"].strip(),
        openai_api_key=env["OPENAI_API_KEY"].strip(),
        openai_model=str(env.get("OPENAI_MODEL", "")).strip() or "gpt-4o-mini",
        openai_api_base=str(env.get("OPENAI_API_BASE", "")).strip() or None,
        request_timeout_s=_env_float(env, "CFO_REQUEST_TIMEOUT_S", 25.0, minimum=1.0),
        llm_timeout_s=_env_float(env, "CFO_LLM_TIMEOUT_S", 8.0, minimum=0.5),
        query_timeout_s=_env_float(env, "CFO_QUERY_TIMEOUT_S", 10.0, minimum=0.5),
        fast_path_timeout_s=_env_float(env, "CFO_FAST_PATH_TIMEOUT_S", 8.0, minimum=0.5),
        planner_max_tokens=_env_int(env, "CFO_PLANNER_MAX_TOKENS", 500, minimum=64),
        responder_max_tokens=_env_int(env, "CFO_RESPONDER_MAX_TOKENS", 300, minimum=64),
        list_row_cap=_env_int(env, "CFO_LIST_ROW_CAP", 50),
        fallback_row_cap=_env_int(env, "CFO_FALLBACK_ROW_CAP", 20),
        max_answer_chars=_env_int(env, "CFO_MAX_ANSWER_CHARS", 1200, minimum=200),
    )
