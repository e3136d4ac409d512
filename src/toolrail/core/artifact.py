"""Pydantic models for tool definitions and the compiled registry artifact.

Field names are snake_case in Python and camelCase on disk, so the
artifact JSON matches the file contract consumed by the runtime. Shared by
the compiler and the runtime, so nothing here may import a provider SDK.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Category = Literal["retrieval", "action", "utility"]
SideEffects = Literal["none", "read_only", "writes"]

REGISTRY_MAJOR_VERSION = "1.0"
EMPTY_REGISTRY_VERSION = f"{REGISTRY_MAJOR_VERSION}.00000000"

# Providers with a schema adapter in toolrail.build.adapters.
DEFAULT_PROVIDERS: tuple[str, ...] = ("openai", "anthropic", "gemini")


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class _ToolFields(_CamelModel):
    """Orchestration metadata shared by definitions and compiled records."""

    tool_id: str = Field(pattern=r"^[a-z][a-z0-9_]*$")
    version: str = Field(pattern=r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.-]+)?$")
    category: Category
    description: str = Field(min_length=1)
    side_effects: SideEffects
    idempotent: bool
    requires_confirmation: bool
    allowed_modes: list[str] = Field(min_length=1)
    latency_budget_ms: float = Field(gt=0)


class ToolDefinition(_ToolFields):
    """Author-written ``schema.json`` for one tool."""

    parameters: dict[str, Any]


class ToolRecord(_ToolFields):
    """A compiled tool: definition plus everything the runtime needs."""

    json_schema: dict[str, Any]
    provider_schemas: dict[str, Any]
    summary: str
    documentation: str
    handler_ref: str


class RegistryArtifact(_CamelModel):
    """The single JSON document produced by a build."""

    version: str
    revision: str | None = None
    build_timestamp: str
    tools: list[ToolRecord] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)
