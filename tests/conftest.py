"""Shared test fixtures for toolrail."""

from __future__ import annotations

import json
import textwrap
from typing import TYPE_CHECKING, Any

import pytest

from tests.fixtures.tools import ECHO_HANDLER, GUIDE_TEMPLATE, tool_schema
from toolrail.build.compiler import build_registry
from toolrail.runtime.engine import ExecutionEngine
from toolrail.runtime.registry import ToolMetadata, ToolRegistry

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def tools_dir(tmp_path: Path) -> Path:
    path = tmp_path / "tools"
    path.mkdir()
    return path


@pytest.fixture
def write_tool(tools_dir: Path) -> Any:
    """Factory fixture writing one tool directory under ``tools_dir``.

    Keyword overrides are camelCase ``schema.json`` fields; ``omit``
    leaves files out.
    """

    def _write(
        name: str,
        *,
        schema: dict[str, Any] | None = None,
        guide: str | None = None,
        handler: str = ECHO_HANDLER,
        omit: tuple[str, ...] = (),
        **overrides: Any,
    ) -> Path:
        tool_dir = tools_dir / name
        tool_dir.mkdir()
        tool_id = name.replace("-", "_")
        body = schema if schema is not None else tool_schema(tool_id, **overrides)
        if "schema.json" not in omit:
            (tool_dir / "schema.json").write_text(json.dumps(body, indent=2))
        if "guide.md" not in omit:
            text = guide if guide is not None else GUIDE_TEMPLATE.format(
                title=tool_id, summary=f"Use {tool_id} to look things up."
            )
            (tool_dir / "guide.md").write_text(textwrap.dedent(text))
        if "handler.py" not in omit:
            (tool_dir / "handler.py").write_text(textwrap.dedent(handler))
        return tool_dir

    return _write


@pytest.fixture
def load_registry(tools_dir: Path) -> Any:
    """Build ``tools_dir`` and return a loaded, locked :class:`ToolRegistry`."""

    async def _load(*, lock: bool = True, **build_kwargs: Any) -> ToolRegistry:
        artifact = tools_dir / "tool_registry.json"
        build_kwargs.setdefault("embed_revision", False)
        build_registry(tools_dir, artifact, **build_kwargs)
        registry = ToolRegistry(artifact)
        await registry.load()
        if lock:
            registry.lock()
        return registry

    return _load


@pytest.fixture
def make_engine(load_registry: Any) -> Any:
    async def _make(**kwargs: Any) -> ExecutionEngine:
        registry = await load_registry()
        return ExecutionEngine(registry, **kwargs)

    return _make


@pytest.fixture
def make_metadata() -> Any:
    """Factory fixture for ToolMetadata with sensible defaults."""

    def _make(**overrides: Any) -> ToolMetadata:
        defaults: dict[str, Any] = {
            "tool_id": "search_docs",
            "version": "1.0.0",
            "category": "retrieval",
            "side_effects": "read_only",
            "idempotent": True,
            "requires_confirmation": False,
            "allowed_modes": ("voice", "text"),
            "latency_budget_ms": 2000.0,
        }
        defaults.update(overrides)
        return ToolMetadata(**defaults)

    return _make
