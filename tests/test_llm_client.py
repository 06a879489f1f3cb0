import asyncio

import pytest
from conftest import ScriptedOracle

from backend.config import Settings
from backend.services.llm_client import OracleCallError, OracleTimeoutError, build_oracles


def test_complete_strips_output():
    oracle = ScriptedOracle("  hello  ")
    assert asyncio.run(oracle.client().complete("prompt")) == "hello"
    assert oracle.prompts == ["prompt"]


def test_timeout_is_not_builtin_timeout():
    oracle = ScriptedOracle("late", delay_s=1.0)
    with pytest.raises(OracleTimeoutError) as exc_info:
        asyncio.run(oracle.client(timeout_s=0.1).complete("prompt"))
    assert not isinstance(exc_info.value, TimeoutError)


def test_failure_is_wrapped():
    oracle = ScriptedOracle(error=ConnectionError("boom"))
    with pytest.raises(OracleCallError):
        asyncio.run(oracle.client().complete("prompt"))


def test_build_oracles_uses_settings():
    settings = Settings(
        database_url="postgresql://u@h/db",
        database_service_key="k",
        openai_api_key="sk-test",
        llm_timeout_s=3.0,
        planner_max_tokens=500,
        responder_max_tokens=300,
    )
    planner, responder = build_oracles(settings)
    assert (planner.name, responder.name) == ("planner", "responder")
    assert planner._timeout_s == 3.0
