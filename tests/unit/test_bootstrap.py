"""Tests for wiring a runtime from configuration."""

from __future__ import annotations

import subprocess
import sys
from typing import TYPE_CHECKING, Any

import pytest

from tests.fixtures.tools import SEARCH_HANDLER
from toolrail.bootstrap import retry_config_from, start_runtime
from toolrail.build.compiler import build_registry
from toolrail.config.schema import ToolrailConfig
from toolrail.core.errors import ErrorKind, RegistryError
from toolrail.core.retry import RetryConfig

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def artifact(tools_dir: Path, write_tool: Any) -> Path:
    write_tool("search_docs", handler=SEARCH_HANDLER)
    out = tools_dir / "tool_registry.json"
    build_registry(tools_dir, out, embed_revision=False)
    return out


# ── start_runtime ────────────────────────────────────────────


class TestStartRuntime:
    async def test_loads_and_locks(self, artifact: Path) -> None:
        runtime = await start_runtime(ToolrailConfig(), artifact=artifact)
        assert runtime.registry.locked is True
        assert runtime.registry.list_tool_ids() == ["search_docs"]
        assert runtime.engine.registry is runtime.registry
        assert runtime.metrics is not None
        assert runtime.metrics.summary()["registryLoadTimeMs"] is not None

    async def test_artifact_from_config(self, artifact: Path) -> None:
        config = ToolrailConfig.model_validate({"runtime": {"artifact": str(artifact)}})
        runtime = await start_runtime(config)
        assert runtime.registry.get_version() is not None

    async def test_metrics_disabled(self, artifact: Path) -> None:
        config = ToolrailConfig.model_validate({"metrics": {"enabled": False}})
        runtime = await start_runtime(config, artifact=artifact)
        assert runtime.metrics is None

    async def test_metrics_sized_from_config(self, artifact: Path) -> None:
        config = ToolrailConfig.model_validate({"metrics": {"window": 5, "max_tools": 3}})
        runtime = await start_runtime(config, artifact=artifact)
        assert runtime.metrics is not None
        assert runtime.metrics.window == 5
        assert runtime.metrics.max_tools == 3

    async def test_missing_artifact(self, tmp_path: Path) -> None:
        with pytest.raises(RegistryError):
            await start_runtime(ToolrailConfig(), artifact=tmp_path / "missing.json")


# ── Sessions ─────────────────────────────────────────────────


class TestNewSession:
    async def test_default_mode(self, artifact: Path) -> None:
        runtime = await start_runtime(ToolrailConfig(), artifact=artifact)
        session = runtime.new_session("s1")
        assert session.state.get("mode") == "text"
        assert session.pinned == runtime.registry.snapshot()

    async def test_components_sized_from_config(self, artifact: Path) -> None:
        config = ToolrailConfig.model_validate(
            {
                "memory": {"recent_full": 3, "summary_window": 7},
                "loop": {"same_call_limit": 4, "keep_turns": 2},
                "dedup": {"threshold": 0.95},
                "policy": {"max_calls_per_turn": 5, "budget_modes": None},
            }
        )
        runtime = await start_runtime(config, artifact=artifact)
        session = runtime.new_session("s1", mode="voice")
        assert session.state.get("mode") == "voice"
        assert session.history.recent_full == 3
        assert session.history.summary_window == 7
        assert session.loop_detector.same_call_limit == 4
        assert session.loop_detector.keep_turns == 2
        assert session.dedup.threshold == 0.95
        assert session.policy.max_calls_per_turn == 5
        assert session.policy.budget_modes is None

    async def test_sessions_are_independent(self, artifact: Path) -> None:
        runtime = await start_runtime(ToolrailConfig(), artifact=artifact)
        first = runtime.new_session("a")
        second = runtime.new_session("b")
        assert first.history is not second.history
        assert first.loop_detector is not second.loop_detector

        await first.call("search_docs", {"query": "alpha"})
        assert second.history.query("b") == []

    async def test_session_traced(self, artifact: Path) -> None:
        runtime = await start_runtime(ToolrailConfig(), artifact=artifact)
        session = runtime.new_session("s1", initial_state={"pendingMessage": "hi"})
        assert session.state.get("pendingMessage") == "hi"
        response = await session.call("search_docs", {"query": "alpha"})
        assert response.ok is True
        assert runtime.metrics is not None
        trace = runtime.metrics.get_session_metrics("s1")
        assert trace is not None
        assert len(trace["toolCalls"]) == 1

    async def test_unknown_tool(self, artifact: Path) -> None:
        runtime = await start_runtime(ToolrailConfig(), artifact=artifact)
        response = await runtime.new_session("s1").call("nope")
        assert response.error is not None
        assert response.error.type == ErrorKind.NOT_FOUND


def test_retry_config_from() -> None:
    config = ToolrailConfig.model_validate({"retry": {"max_retries": 1, "jitter": 0.0}})
    assert retry_config_from(config) == RetryConfig(max_retries=1, jitter=0.0)


def test_runtime_imports_no_provider_sdk() -> None:
    code = (
        "import sys\n"
        "import toolrail.bootstrap, toolrail.config, toolrail.runtime, toolrail.session\n"
        "prefixes = ('google.genai', 'toolrail.build')\n"
        "print(sorted(m for m in sys.modules if m.startswith(prefixes)))\n"
    )
    result = subprocess.run(
        [sys.executable, "-c", code], capture_output=True, text=True, check=True
    )
    assert result.stdout.strip() == "[]"
