"""Integration tests: tool directories -> artifact -> loaded registry."""

from __future__ import annotations

import json
import shutil
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from tests.fixtures.tools import GUIDE_TEMPLATE, SEARCH_HANDLER
from toolrail.build.compiler import build_registry, compile_tools
from toolrail.core.errors import BuildError
from toolrail.runtime.registry import ToolRegistry

if TYPE_CHECKING:
    from pathlib import Path


# ── Helpers ──────────────────────────────────────────────────────


def _two_tools(write_tool: Any) -> None:
    write_tool("search_docs", handler=SEARCH_HANDLER)
    write_tool(
        "create_ticket",
        category="action",
        sideEffects="writes",
        idempotent=False,
        requiresConfirmation=True,
        allowedModes=["text"],
    )


# ── Versioning ───────────────────────────────────────────────────


class TestDeterministicVersion:
    def test_rebuild_gives_same_version(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        first = compile_tools(tools_dir, now=datetime(2024, 1, 1, tzinfo=UTC))
        second = compile_tools(tools_dir, now=datetime(2025, 6, 1, tzinfo=UTC))
        assert first.version == second.version
        assert first.build_timestamp != second.build_timestamp

    def test_revision_does_not_change_version(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        plain = compile_tools(tools_dir)
        tagged = compile_tools(tools_dir, revision="abc1234")
        assert plain.version == tagged.version
        assert tagged.revision == "abc1234"

    def test_summary_change_changes_version(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        before = compile_tools(tools_dir).version
        (tools_dir / "search_docs" / "guide.md").write_text(
            GUIDE_TEMPLATE.format(title="search_docs", summary="Search the help center.")
        )
        assert compile_tools(tools_dir).version != before

    def test_schema_change_changes_version(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        before = compile_tools(tools_dir).version
        schema_path = tools_dir / "search_docs" / "schema.json"
        schema = json.loads(schema_path.read_text())
        schema["parameters"]["properties"]["limit"] = {"type": "integer"}
        schema_path.write_text(json.dumps(schema))
        assert compile_tools(tools_dir).version != before


# ── Atomic builds ────────────────────────────────────────────────


class TestFailedBuild:
    def test_no_artifact_written(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        write_tool("broken", idempotent=False)
        out = tools_dir / "tool_registry.json"
        with pytest.raises(BuildError) as exc_info:
            build_registry(tools_dir, out, embed_revision=False)
        assert exc_info.value.violations == ["Tool broken: retrieval tools must be idempotent"]
        assert not out.exists()
        assert not list(tools_dir.glob(".tool_registry.*"))

    def test_previous_artifact_kept(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        out = tools_dir / "tool_registry.json"
        build_registry(tools_dir, out, embed_revision=False)
        before = out.read_text()

        write_tool("broken", omit=("handler.py",))
        with pytest.raises(BuildError):
            build_registry(tools_dir, out, embed_revision=False)
        assert out.read_text() == before

    def test_all_violations_reported(self, tools_dir: Path, write_tool: Any) -> None:
        write_tool("first", omit=("guide.md",))
        write_tool("second", category="retrieval", sideEffects="writes")
        with pytest.raises(BuildError) as exc_info:
            compile_tools(tools_dir)
        violations = exc_info.value.violations
        assert any(v.startswith("Tool first:") for v in violations)
        assert any(v.startswith("Tool second:") for v in violations)


# ── Loading built artifacts ──────────────────────────────────────


class TestLoadBuiltArtifact:
    async def test_round_trip(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        out = tools_dir / "tool_registry.json"
        artifact = build_registry(tools_dir, out, embed_revision=False)

        registry = ToolRegistry(out)
        await registry.load()
        snapshot = registry.lock()
        assert snapshot.version == artifact.version
        assert snapshot.tool_ids == ("create_ticket", "search_docs")
        assert [s["name"] for s in registry.get_provider_schemas("anthropic")] == [
            "create_ticket",
            "search_docs",
        ]
        assert "**search_docs** (retrieval)" in registry.get_summaries()

    async def test_artifact_directory_is_relocatable(
        self, tmp_path: Path, tools_dir: Path, write_tool: Any
    ) -> None:
        _two_tools(write_tool)
        build_registry(tools_dir, tools_dir / "tool_registry.json", embed_revision=False)

        moved = tmp_path / "deploy" / "tools"
        shutil.copytree(tools_dir, moved)
        registry = ToolRegistry(moved / "tool_registry.json")
        await registry.load()
        assert len(registry) == 2
        assert registry.get_handler("search_docs") is not None

    async def test_handler_refs_are_relative(self, tools_dir: Path, write_tool: Any) -> None:
        _two_tools(write_tool)
        out = tools_dir / "tool_registry.json"
        build_registry(tools_dir, out, embed_revision=False)
        raw = json.loads(out.read_text())
        refs = [tool["handlerRef"] for tool in raw["tools"]]
        assert refs == ["create_ticket/handler.py:execute", "search_docs/handler.py:execute"]

