"""Provider schema projections, computed once at build time.

Each adapter turns a tool record's canonical JSON Schema into the tool
declaration a provider expects. The runtime only ever reads the stored
projections; it never imports a provider SDK.

The Gemini adapter walks the schema recursively (objects, arrays,
``anyOf`` branches, local ``$ref`` targets) so nested structures and enums
survive intact.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any

from google.genai import types as genai_types

if TYPE_CHECKING:
    from collections.abc import Callable

_GEMINI_TYPES: dict[str, genai_types.Type] = {
    "string": genai_types.Type.STRING,
    "number": genai_types.Type.NUMBER,
    "integer": genai_types.Type.INTEGER,
    "boolean": genai_types.Type.BOOLEAN,
    "object": genai_types.Type.OBJECT,
    "array": genai_types.Type.ARRAY,
}

# Keywords copied verbatim when present
_GEMINI_PASSTHROUGH = (
    "description",
    "enum",
    "format",
    "minimum",
    "maximum",
    "minItems",
    "maxItems",
    "minLength",
    "maxLength",
    "pattern",
    "default",
)


def to_openai(tool_id: str, description: str, schema: dict[str, Any]) -> dict[str, Any]:
    """OpenAI function-calling format (JSON Schema passes through)."""
    return {
        "type": "function",
        "function": {
            "name": tool_id,
            "description": description,
            "parameters": copy.deepcopy(schema),
        },
    }


def to_anthropic(tool_id: str, description: str, schema: dict[str, Any]) -> dict[str, Any]:
    """Anthropic tool-use format (JSON Schema passes through)."""
    return {
        "name": tool_id,
        "description": description,
        "input_schema": copy.deepcopy(schema),
    }


def _gemini_type(schema: dict[str, Any]) -> tuple[str | None, bool]:
    """Return ``(gemini_type, nullable)`` for a schema's ``type`` keyword."""
    raw = schema.get("type")
    nullable = False
    if isinstance(raw, list):
        non_null = [t for t in raw if t != "null"]
        nullable = len(non_null) != len(raw)
        raw = non_null[0] if len(non_null) == 1 else None
    if raw is None:
        if "properties" in schema:
            raw = "object"
        elif "items" in schema:
            raw = "array"
        elif "enum" in schema:
            raw = "string"
    if raw is None:
        return None, nullable
    mapped = _GEMINI_TYPES.get(raw, genai_types.Type.STRING)
    return mapped.value, nullable


def _resolve_ref(ref: str, root: dict[str, Any]) -> dict[str, Any]:
    if not ref.startswith("#/"):
        msg = f"only local $ref is supported, got {ref!r}"
        raise ValueError(msg)
    node: Any = root
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(node, dict) or part not in node:
            msg = f"unresolvable $ref {ref!r}"
            raise ValueError(msg)
        node = node[part]
    if not isinstance(node, dict):
        msg = f"$ref {ref!r} does not point to a schema object"
        raise ValueError(msg)
    return node


def to_gemini_schema(
    schema: dict[str, Any],
    root: dict[str, Any] | None = None,
    _active: frozenset[str] = frozenset(),
) -> dict[str, Any]:
    """Recursively convert a JSON Schema node to Gemini's schema dialect.

    Gemini has no references, so local ``$ref`` pointers into *root*
    (``$defs`` and friends) are inlined; sibling keywords override the
    target's. A recursive reference cannot be inlined.

    Raises:
        ValueError: On a remote, dangling or recursive ``$ref``.
    """
    root = schema if root is None else root
    ref = schema.get("$ref")
    if isinstance(ref, str):
        if ref in _active:
            msg = f"recursive $ref {ref!r} cannot be inlined"
            raise ValueError(msg)
        target = _resolve_ref(ref, root)
        siblings = {k: v for k, v in schema.items() if k != "$ref"}
        return to_gemini_schema({**target, **siblings}, root, _active | {ref})

    out: dict[str, Any] = {}
    gemini_type, nullable = _gemini_type(schema)
    if gemini_type is not None:
        out["type"] = gemini_type
    if nullable:
        out["nullable"] = True

    for key in _GEMINI_PASSTHROUGH:
        if key in schema:
            out[key] = copy.deepcopy(schema[key])

    properties = schema.get("properties")
    if isinstance(properties, dict):
        out["properties"] = {
            name: to_gemini_schema(prop, root, _active) for name, prop in properties.items()
        }
        if "required" in schema:
            out["required"] = list(schema["required"])

    items = schema.get("items")
    if isinstance(items, dict):
        out["items"] = to_gemini_schema(items, root, _active)

    any_of = schema.get("anyOf") or schema.get("oneOf")
    if isinstance(any_of, list):
        branches = [b for b in any_of if b.get("type") != "null"]
        if len(branches) != len(any_of):
            out["nullable"] = True
        if len(branches) == 1:
            out.update(to_gemini_schema(branches[0], root, _active))
        else:
            out["anyOf"] = [to_gemini_schema(b, root, _active) for b in branches]

    return out


def to_gemini(tool_id: str, description: str, schema: dict[str, Any]) -> dict[str, Any]:
    """Gemini function-declaration format with ``Type`` enum names."""
    return {
        "name": tool_id,
        "description": description,
        "parameters": to_gemini_schema(schema),
    }


ADAPTERS: dict[str, Callable[[str, str, dict[str, Any]], dict[str, Any]]] = {
    "openai": to_openai,
    "anthropic": to_anthropic,
    "gemini": to_gemini,
}


def project(
    provider: str,
    tool_id: str,
    description: str,
    schema: dict[str, Any],
) -> dict[str, Any]:
    """Compute one provider projection.

    Raises:
        KeyError: If *provider* has no adapter.
        ValueError: If the schema cannot be expressed for *provider*.
    """
    if provider not in ADAPTERS:
        msg = f"No schema adapter for provider: {provider}"
        raise KeyError(msg)
    return ADAPTERS[provider](tool_id, description, schema)
