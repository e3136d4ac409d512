"""Tests for the per-session dispatch pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from tests.fixtures.tools import (
    CONTEXT_HANDLER,
    DOWN_HANDLER,
    EMPTY_SEARCH_HANDLER,
    END_SESSION_HANDLER,
    FLAKY_HANDLER,
    NO_PARAMETERS,
    SEARCH_HANDLER,
    SLOW_HANDLER,
)
from toolrail.core.errors import ErrorKind, RegistryError
from toolrail.core.retry import RetryConfig
from toolrail.guards.policy import PolicyGuard
from toolrail.memory.store import CallHistory
from toolrail.memory.summarizer import CallSummarizer
from toolrail.metrics.collector import MetricsCollector
from toolrail.runtime.engine import ExecutionEngine
from toolrail.runtime.state import StateController
from toolrail.session import ToolSession

FAST_RETRY = RetryConfig(
    base_delay_ms=1,
    max_delay_ms=1,
    jitter=0,
    unavailable_base_delay_ms=1,
    unavailable_max_delay_ms=1,
)
SLOW_RETRY = RetryConfig(
    base_delay_ms=10_000,
    max_delay_ms=10_000,
    jitter=0,
    unavailable_base_delay_ms=10_000,
    unavailable_max_delay_ms=10_000,
)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def make_session(load_registry: Any, metrics: MetricsCollector) -> Any:
    """Build the tools written so far and open a session over them."""

    async def _make(*, mode: str = "text", **kwargs: Any) -> ToolSession:
        registry = await load_registry()
        engine = ExecutionEngine(registry, metrics=metrics)
        kwargs.setdefault("retry_config", FAST_RETRY)
        kwargs.setdefault("metrics", metrics)
        return ToolSession(
            "s1",
            engine,
            state=StateController({"mode": mode}),
            **kwargs,
        )

    return _make


def _executions(metrics: MetricsCollector, tool_id: str) -> int:
    tool = metrics.summary()["tools"].get(tool_id)
    return tool["executionCount"] if tool else 0


# ── Construction ─────────────────────────────────────────────


class TestConstruction:
    async def test_requires_locked_registry(self, write_tool: Any, load_registry: Any) -> None:
        write_tool("search_docs")
        registry = await load_registry(lock=False)
        with pytest.raises(RegistryError, match="lock"):
            ToolSession("s1", ExecutionEngine(registry))

    async def test_pins_snapshot(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs")
        session = await make_session()
        assert session.pinned.tool_ids == ("search_docs",)
        assert session.active is True
        assert session.turn == 1


# ── Dispatch ─────────────────────────────────────────────────


class TestDispatch:
    async def test_success(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session()
        response = await session.call("search_docs", {"query": "refunds"})
        assert response.ok is True
        assert response.data == {"results": [{"title": "refunds"}], "count": 1}
        assert response.meta is not None
        assert response.meta.tool_version == "1.0.0"
        assert response.meta.registry_version == session.pinned.version

    async def test_unknown_tool(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs")
        session = await make_session()
        response = await session.call("nope", {})
        assert response.ok is False
        assert response.error is not None
        assert response.error.type == ErrorKind.NOT_FOUND

    async def test_validation_error(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs")
        session = await make_session()
        response = await session.call("search_docs", {"query": 42})
        assert response.error is not None
        assert response.error.type == ErrorKind.VALIDATION

    async def test_non_mapping_args_rejected_unchanged(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs")
        session = await make_session()
        response = await session.call("search_docs", ["qx"])  # type: ignore[arg-type]
        assert response.error is not None
        assert response.error.type == ErrorKind.VALIDATION
        assert response.error.message == "Invalid parameters: arguments must be an object"
        assert _executions(metrics, "search_docs") == 1

    async def test_handler_sees_session_and_capabilities(
        self, write_tool: Any, make_session: Any
    ) -> None:
        write_tool("whoami", handler=CONTEXT_HANDLER, parameters=NO_PARAMETERS)
        session = await make_session(capabilities={"email": True}, client_id="web-1")
        response = await session.call("whoami")
        assert response.data == {
            "mode": "text",
            "email": True,
            "client": "web-1",
            "tool": "whoami",
        }

    async def test_intents_applied(self, write_tool: Any, make_session: Any) -> None:
        write_tool(
            "end_call",
            handler=END_SESSION_HANDLER,
            parameters=NO_PARAMETERS,
            category="action",
            sideEffects="none",
        )
        session = await make_session()
        await session.call("end_call")
        assert session.state.get("pendingEndSession") == {"after": "current_turn"}
        assert session.state.get("suppressAudio") is True


# ── Policy ───────────────────────────────────────────────────


class TestPolicy:
    async def test_mode_restricted(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", allowedModes=["text"])
        session = await make_session(mode="voice")
        response = await session.call("search_docs", {"query": "a"})
        assert response.error is not None
        assert response.error.type == ErrorKind.MODE_RESTRICTED

    async def test_confirmation_required(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool(
            "create_ticket",
            category="action",
            sideEffects="writes",
            idempotent=False,
            requiresConfirmation=True,
        )
        session = await make_session()
        response = await session.call("create_ticket", {"query": "printer broken"})
        assert response.error is not None
        assert response.error.type == ErrorKind.CONFIRMATION_REQUIRED
        assert response.error.confirmation_request == {
            "toolId": "create_ticket",
            "args": {"query": "printer broken"},
        }
        assert _executions(metrics, "create_ticket") == 0

        confirmed = await session.call(
            "create_ticket", {"query": "printer broken"}, confirmed=True
        )
        assert confirmed.ok is True

    async def test_voice_retrieval_budget(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session(mode="voice")
        assert (await session.call("search_docs", {"query": "alpha"})).ok
        assert (await session.call("search_docs", {"query": "bravo"})).ok
        third = await session.call("search_docs", {"query": "charlie"})
        assert third.error is not None
        assert third.error.type == ErrorKind.BUDGET_EXCEEDED

        session.start_turn()
        assert (await session.call("search_docs", {"query": "charlie"})).ok

    async def test_no_budget_in_text_mode(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session(mode="text")
        for query in ("alpha", "bravo", "charlie", "delta"):
            assert (await session.call("search_docs", {"query": query})).ok

    async def test_custom_policy(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session(
            policy=PolicyGuard(max_calls_per_turn=1, budget_modes=None),
        )
        assert (await session.call("search_docs", {"query": "alpha"})).ok
        second = await session.call("search_docs", {"query": "bravo"})
        assert second.error is not None
        assert second.error.type == ErrorKind.BUDGET_EXCEEDED


# ── Loop and dedup ───────────────────────────────────────────


class TestLoopAndDedup:
    async def test_duplicate_served_from_history(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session()
        first = await session.call("search_docs", {"query": "refund policy"})
        second = await session.call("search_docs", {"query": "refund policy"})
        assert second.ok is True
        assert second.data == first.data
        assert second.meta is not None
        assert second.meta.cached is True
        assert second.meta.guidance is not None
        assert second.meta.guidance.startswith("Reused result from previous search_docs call")
        assert _executions(metrics, "search_docs") == 1

    async def test_third_identical_call_is_loop(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session()
        for _ in range(2):
            await session.call("search_docs", {"query": "refund policy"})
        third = await session.call("search_docs", {"query": "refund policy"})
        assert third.error is not None
        assert third.error.type == ErrorKind.LOOP_DETECTED
        assert third.error.details == {"loopType": "SAME_CALL_REPEATED", "count": 3}
        assert third.meta is not None
        assert third.meta.tool_version == "1.0.0"

    async def test_repeated_empty_results(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=EMPTY_SEARCH_HANDLER)
        session = await make_session()
        await session.call("search_docs", {"query": "alpha"})
        await session.call("search_docs", {"query": "bravo"})
        third = await session.call("search_docs", {"query": "charlie"})
        assert third.error is not None
        assert third.error.type == ErrorKind.LOOP_DETECTED
        assert "returned empty results 2 times" in third.error.message

    async def test_new_turn_resets_loop(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=EMPTY_SEARCH_HANDLER)
        session = await make_session()
        await session.call("search_docs", {"query": "alpha"})
        await session.call("search_docs", {"query": "bravo"})
        session.start_turn()
        response = await session.call("search_docs", {"query": "charlie"})
        assert response.ok is True


# ── Retry ────────────────────────────────────────────────────


class TestRetry:
    async def test_retries_in_text_mode(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs", handler=FLAKY_HANDLER)
        session = await make_session(mode="text")
        response = await session.call("search_docs", {"query": "alpha"})
        assert response.ok is True
        assert _executions(metrics, "search_docs") == 2

    async def test_no_retry_in_voice_mode(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs", handler=FLAKY_HANDLER)
        session = await make_session(mode="voice")
        response = await session.call("search_docs", {"query": "alpha"})
        assert response.error is not None
        assert response.error.type == ErrorKind.TRANSIENT
        assert _executions(metrics, "search_docs") == 1

    async def test_gives_up_after_max_retries(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs", handler=DOWN_HANDLER)
        session = await make_session(retry_config=replace(FAST_RETRY, max_retries=2))
        response = await session.call("search_docs", {"query": "alpha"})
        assert response.error is not None
        assert response.error.unavailable is True
        assert _executions(metrics, "search_docs") == 3


# ── History and metrics ──────────────────────────────────────


class TestHistoryAndMetrics:
    async def test_call_recorded(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session()
        await session.call("search_docs", {"query": "alpha"})
        records = session.history.query("s1")
        assert len(records) == 1
        assert records[0].call_id == "s1-1"
        assert records[0].args == {"query": "alpha"}
        assert records[0].turn == 1

    async def test_rejections_not_recorded(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", allowedModes=["text"])
        session = await make_session(mode="voice")
        await session.call("search_docs", {"query": "alpha"})
        assert session.history.query("s1", include_errors=True) == []

    async def test_summarizer_enqueued(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        history = CallHistory(recent_full=1)
        summarizer = CallSummarizer(history)
        session = await make_session(history=history, summarizer=summarizer)
        await session.call("search_docs", {"query": "alpha"})
        await session.call("search_docs", {"query": "bravo"})
        assert summarizer.queue_length == 1

        await summarizer.drain()
        oldest = history.get_record("s1", "s1-1")
        assert oldest is not None
        assert oldest.summary == "search_docs executed: query='alpha'. Found 1 result(s)."
        assert oldest.full_response is None

    async def test_trace_includes_rejections(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER, allowedModes=["text"])
        session = await make_session()
        await session.call("search_docs", {"query": "alpha"})
        session.state.set("mode", "voice")
        await session.call("search_docs", {"query": "bravo"})
        trace = metrics.get_session_metrics("s1")
        assert trace is not None
        assert [c["ok"] for c in trace["toolCalls"]] == [True, False]

    async def test_start_turn_advances_trace(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs", handler=SEARCH_HANDLER)
        session = await make_session()
        await session.call("search_docs", {"query": "alpha"})
        assert session.start_turn() == 2
        trace = metrics.get_session_metrics("s1")
        assert trace is not None
        assert trace["currentTurn"] == 2
        assert trace["turnToolCalls"] == []


# ── Lifecycle ────────────────────────────────────────────────


class TestLifecycle:
    async def test_call_after_end(
        self, write_tool: Any, make_session: Any, metrics: MetricsCollector
    ) -> None:
        write_tool("search_docs")
        session = await make_session()
        session.end()
        response = await session.call("search_docs", {"query": "alpha"})
        assert response.error is not None
        assert response.error.type == ErrorKind.SESSION_INACTIVE
        assert session.state.get("isActive") is False
        assert metrics.get_session_metrics("s1") is None

    async def test_end_is_idempotent(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs")
        session = await make_session()
        session.end()
        session.end()
        assert session.active is False

    async def test_end_cancels_backoff(self, write_tool: Any, make_session: Any) -> None:
        write_tool("search_docs", handler=DOWN_HANDLER)
        session = await make_session(retry_config=SLOW_RETRY)
        task = asyncio.create_task(session.call("search_docs", {"query": "alpha"}))
        await asyncio.sleep(0.05)
        session.end()
        response = await asyncio.wait_for(task, timeout=1)
        assert response.error is not None
        assert response.error.type == ErrorKind.SESSION_INACTIVE
        assert "backoff" in response.error.message

    async def test_late_result_discarded(self, write_tool: Any, make_session: Any) -> None:
        write_tool(
            "slow_action",
            handler=SLOW_HANDLER,
            parameters=NO_PARAMETERS,
            category="action",
            sideEffects="none",
        )
        session = await make_session()
        task = asyncio.create_task(session.call("slow_action"))
        await asyncio.sleep(0.05)
        session.end()
        response = await task
        assert response.error is not None
        assert response.error.type == ErrorKind.SESSION_INACTIVE
        assert session.state.get("pendingMessage") is None
        assert session.history.query("s1", include_errors=True) == []
