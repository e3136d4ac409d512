"""Runtime tool registry - loads the compiled artifact.

Provides:

- one compiled parameter validator per tool (JSON Schema 2020-12);
- one resolved handler per tool;
- provider schema projections exactly as the build stored them;
- summaries and documentation for prompt injection;
- orchestration metadata for policy enforcement.

Loading is all-or-nothing. After :meth:`ToolRegistry.lock` the registry
is immutable and a :class:`RegistrySnapshot` can be pinned to sessions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError

from toolrail.core.artifact import RegistryArtifact, ToolRecord
from toolrail.core.errors import HandlerResolutionError, RegistryError, RegistryLockedError
from toolrail.runtime.loader import check_handler_signature, default_resolver

if TYPE_CHECKING:
    from collections.abc import Callable

    from toolrail.metrics.collector import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolMetadata:
    """Static orchestration metadata for one tool."""

    tool_id: str
    version: str
    category: str
    side_effects: str
    idempotent: bool
    requires_confirmation: bool
    allowed_modes: tuple[str, ...]
    latency_budget_ms: float

    @classmethod
    def from_record(cls, record: ToolRecord) -> ToolMetadata:
        return cls(
            tool_id=record.tool_id,
            version=record.version,
            category=record.category,
            side_effects=record.side_effects,
            idempotent=record.idempotent,
            requires_confirmation=record.requires_confirmation,
            allowed_modes=tuple(record.allowed_modes),
            latency_budget_ms=record.latency_budget_ms,
        )

    @property
    def cacheable(self) -> bool:
        """Idempotent and free of writes: safe to serve from history."""
        return self.idempotent and self.side_effects in ("none", "read_only")


@dataclass(frozen=True, slots=True)
class RegistrySnapshot:
    """Immutable identity of a locked registry, pinned per session."""

    version: str
    revision: str | None
    tool_ids: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class _LoadedTool:
    record: ToolRecord
    metadata: ToolMetadata
    validator: Draft202012Validator
    handler: Callable[..., Any]


class ToolRegistry:
    """Registry over one compiled artifact.

    Args:
        artifact_path: Path to ``tool_registry.json``.
        resolver: Callable ``(handler_ref, base_dir) -> handler``.
            Relative handler paths resolve against the artifact's
            directory.
        metrics: Optional collector for the registry load time.
    """

    def __init__(
        self,
        artifact_path: str | Path,
        *,
        resolver: Callable[[str, Path | None], Callable[..., Any]] = default_resolver,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._path = Path(artifact_path)
        self._resolver = resolver
        self._metrics = metrics
        self._tools: dict[str, _LoadedTool] = {}
        self._version: str | None = None
        self._revision: str | None = None
        self._loaded = False
        self._locked = False
        self._snapshot: RegistrySnapshot | None = None

    # ── Lifecycle ────────────────────────────────────────────────

    async def load(self) -> None:
        """Read the artifact, compile validators and bind handlers.

        Raises:
            RegistryLockedError: If the registry is already locked.
            RegistryError: On any read, validation or resolution failure.
                The registry is left empty.
        """
        if self._locked:
            msg = "Cannot load registry after lock()"
            raise RegistryLockedError(msg)

        logger.info("Loading tool registry from %s", self._path)
        started = time.perf_counter()
        try:
            artifact = await asyncio.to_thread(self._read_artifact)
            tools = await asyncio.to_thread(self._bind_tools, artifact)
        except RegistryError:
            self._clear()
            raise

        self._tools = tools
        self._version = artifact.version
        self._revision = artifact.revision
        self._loaded = True

        elapsed_ms = (time.perf_counter() - started) * 1000
        if self._metrics is not None:
            self._metrics.record_registry_load_time(elapsed_ms)
        logger.info(
            "Tool registry loaded: v%s (%d tools) in %.1fms",
            self._version,
            len(self._tools),
            elapsed_ms,
        )

    async def reload(self) -> None:
        """Development-only re-read of the artifact.

        Raises:
            RegistryLockedError: Once the registry is locked.
        """
        if self._locked:
            msg = "Cannot reload a locked registry"
            raise RegistryLockedError(msg)
        await self.load()

    def lock(self) -> RegistrySnapshot:
        """Freeze the registry and return its snapshot.

        Raises:
            RegistryError: If nothing has been loaded.
        """
        if not self._loaded:
            msg = "Cannot lock registry before load()"
            raise RegistryError(msg)
        if not self._locked:
            self._locked = True
            self._snapshot = RegistrySnapshot(
                version=self._version or "",
                revision=self._revision,
                tool_ids=tuple(self._tools),
            )
            logger.info("Tool registry locked at v%s", self._version)
        assert self._snapshot is not None
        return self._snapshot

    @property
    def locked(self) -> bool:
        return self._locked

    def snapshot(self) -> RegistrySnapshot:
        """Return the frozen snapshot.

        Raises:
            RegistryError: If the registry has not been locked.
        """
        if self._snapshot is None:
            msg = "Registry snapshot is only available after lock()"
            raise RegistryError(msg)
        return self._snapshot

    # ── Loading internals ────────────────────────────────────────

    def _clear(self) -> None:
        self._tools = {}
        self._version = None
        self._revision = None
        self._loaded = False

    def _read_artifact(self) -> RegistryArtifact:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            msg = f"Tool registry artifact not found: {self._path}"
            raise RegistryError(msg) from e
        except (OSError, json.JSONDecodeError) as e:
            msg = f"Cannot read tool registry artifact {self._path}: {e}"
            raise RegistryError(msg) from e
        try:
            return RegistryArtifact.model_validate(raw)
        except ValidationError as e:
            msg = f"Invalid tool registry artifact {self._path}: {e}"
            raise RegistryError(msg) from e

    def _bind_tools(self, artifact: RegistryArtifact) -> dict[str, _LoadedTool]:
        base_dir = self._path.parent
        tools: dict[str, _LoadedTool] = {}
        for record in artifact.tools:
            if record.tool_id in tools:
                msg = f"Duplicate toolId in artifact: {record.tool_id}"
                raise RegistryError(msg)

            try:
                Draft202012Validator.check_schema(record.json_schema)
            except SchemaError as e:
                msg = f"Failed to compile validator for {record.tool_id}: {e.message}"
                raise RegistryError(msg) from e
            validator = Draft202012Validator(record.json_schema)

            try:
                handler = self._resolver(record.handler_ref, base_dir)
            except HandlerResolutionError:
                raise
            except Exception as e:
                msg = f"Failed to load handler for {record.tool_id}: {e}"
                raise RegistryError(msg) from e
            problem = check_handler_signature(handler)
            if problem:
                msg = f"Invalid handler for {record.tool_id}: {problem}"
                raise RegistryError(msg)

            tools[record.tool_id] = _LoadedTool(
                record=record,
                metadata=ToolMetadata.from_record(record),
                validator=validator,
                handler=handler,
            )
        return tools

    # ── Accessors ────────────────────────────────────────────────

    def get_version(self) -> str | None:
        return self._version

    def get_revision(self) -> str | None:
        return self._revision

    def list_tool_ids(self) -> list[str]:
        return list(self._tools)

    def get_provider_schemas(self, provider: str) -> list[dict[str, Any]]:
        """Return the stored projections for *provider*, in registry order.

        Raises:
            KeyError: If no tool carries a projection for *provider*.
        """
        schemas = [
            t.record.provider_schemas[provider]
            for t in self._tools.values()
            if provider in t.record.provider_schemas
        ]
        if self._tools and not schemas:
            msg = f"Unsupported provider: {provider}"
            raise KeyError(msg)
        return schemas

    def get_summaries(self) -> str:
        """All tool summaries, formatted for prompt injection."""
        return "\n\n".join(
            f"**{t.record.tool_id}** ({t.record.category}): {t.record.summary}"
            for t in self._tools.values()
        )

    def get_documentation(self, tool_id: str) -> str | None:
        tool = self._tools.get(tool_id)
        return tool.record.documentation if tool else None

    def get_tool_metadata(self, tool_id: str) -> ToolMetadata | None:
        tool = self._tools.get(tool_id)
        return tool.metadata if tool else None

    def get_validator(self, tool_id: str) -> Draft202012Validator | None:
        tool = self._tools.get(tool_id)
        return tool.validator if tool else None

    def get_handler(self, tool_id: str) -> Callable[..., Any] | None:
        tool = self._tools.get(tool_id)
        return tool.handler if tool else None

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools
