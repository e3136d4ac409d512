"""Tool registry compiler - scans tool directories and emits one artifact.

Build process:

1. Scan ``tools_dir`` for directories (ignoring ``_*`` and ``.*``).
2. For each tool directory, in this order:

   a. ``schema.json`` has every required field;
   b. field values are in their closed sets (category, side effects,
      modes) and well-typed;
   c. category rules hold (retrieval tools are idempotent, never write);
   d. ``parameters`` is valid JSON Schema with
      ``additionalProperties: false``;
   e. ``guide.md`` yields a one-line summary within the length cap;
   f. ``toolId`` matches the directory name (``-`` becomes ``_``);
   g. ``handler.py`` exports an async ``execute(ctx)``.

3. Compute provider projections, derive the content-addressed version
   and write the artifact.

Any violation in any tool fails the whole build with every violation
listed. No partial artifact is ever written.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import subprocess
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from toolrail.build.adapters import ADAPTERS, project
from toolrail.core.artifact import (
    DEFAULT_PROVIDERS,
    EMPTY_REGISTRY_VERSION,
    REGISTRY_MAJOR_VERSION,
    RegistryArtifact,
    ToolDefinition,
    ToolRecord,
)
from toolrail.core.errors import BuildError, HandlerResolutionError
from toolrail.core.hashing import canonical_json, sha256_hex
from toolrail.runtime.loader import HANDLER_ATTR, check_handler_signature, default_resolver

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterable

logger = logging.getLogger(__name__)

SCHEMA_FILE = "schema.json"
GUIDE_FILE = "guide.md"
HANDLER_FILE = "handler.py"

SUMMARY_MAX_CHARS = 250
DEFAULT_MODES: frozenset[str] = frozenset({"voice", "text"})

REQUIRED_FIELDS: tuple[str, ...] = tuple(to_camel(name) for name in ToolDefinition.model_fields)


# ── Helpers ──────────────────────────────────────────────────────


def discover_tool_dirs(tools_dir: Path) -> list[Path]:
    """Return tool directories under *tools_dir*, sorted by name."""
    return sorted(
        p
        for p in tools_dir.iterdir()
        if p.is_dir() and not p.name.startswith(("_", "."))
    )


def expected_tool_id(dir_name: str) -> str:
    return dir_name.replace("-", "_")


def extract_summary(guide: str) -> str:
    """Return the first non-heading line after the ``#`` title, or ``""``."""
    found_title = False
    for line in guide.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("#"):
            found_title = True
            continue
        if found_title:
            return stripped
    return ""


def compute_registry_version(records: Iterable[ToolRecord]) -> str:
    """Content hash over tool ids, versions, schemas and summaries.

    Revision, timestamps, documentation bodies and handler paths do not
    participate, so unchanged inputs always give the same version.
    """
    content = [
        {
            "toolId": r.tool_id,
            "version": r.version,
            "schema": r.json_schema,
            "summary": r.summary,
        }
        for r in sorted(records, key=lambda r: r.tool_id)
    ]
    if not content:
        return EMPTY_REGISTRY_VERSION
    digest = sha256_hex(canonical_json(content))[:8]
    return f"{REGISTRY_MAJOR_VERSION}.{digest}"


def git_revision(cwd: Path) -> str | None:
    """Short commit hash of the checkout containing *cwd*, if any."""
    try:
        out = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return out.stdout.strip() or None


def _format_validation_error(prefix: str, exc: ValidationError) -> list[str]:
    problems: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        problems.append(f"{prefix}: field {loc!r}: {err['msg']}")
    return problems


def _handler_ref(handler_path: Path, handler_base: Path | None) -> str:
    if handler_base is None:
        target = handler_path.resolve().as_posix()
    else:
        target = Path(os.path.relpath(handler_path.resolve(), handler_base.resolve())).as_posix()
    return f"{target}:{HANDLER_ATTR}"


# ── Per-tool compilation ─────────────────────────────────────────


def _read_schema(tool_dir: Path, prefix: str) -> tuple[dict[str, Any] | None, list[str]]:
    schema_path = tool_dir / SCHEMA_FILE
    if not schema_path.is_file():
        return None, [f"{prefix}: missing {SCHEMA_FILE}"]
    try:
        raw = json.loads(schema_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        return None, [f"{prefix}: cannot parse {SCHEMA_FILE}: {e}"]
    if not isinstance(raw, dict):
        return None, [f"{prefix}: {SCHEMA_FILE} must contain a JSON object"]
    return raw, []


def _check_parameters(parameters: Any, prefix: str) -> list[str]:
    problems: list[str] = []
    if not isinstance(parameters, dict):
        return [f"{prefix}: parameters must be an object"]
    if parameters.get("type") != "object":
        problems.append(f'{prefix}: parameters must have "type": "object"')
    if parameters.get("additionalProperties") is not False:
        problems.append(f'{prefix}: parameters must have "additionalProperties": false')
    try:
        Draft202012Validator.check_schema(parameters)
    except SchemaError as e:
        problems.append(f"{prefix}: invalid JSON Schema in parameters: {e.message}")
    return problems


def _check_guide(tool_dir: Path, prefix: str) -> tuple[str, str, list[str]]:
    guide_path = tool_dir / GUIDE_FILE
    if not guide_path.is_file():
        return "", "", [f"{prefix}: missing {GUIDE_FILE}"]
    documentation = guide_path.read_text(encoding="utf-8").strip()
    summary = extract_summary(documentation)
    if not summary:
        return documentation, "", [
            f"{prefix}: {GUIDE_FILE} must have a summary line after the # title"
        ]
    if len(summary) > SUMMARY_MAX_CHARS:
        return documentation, summary, [
            f"{prefix}: summary too long ({len(summary)} chars, max {SUMMARY_MAX_CHARS})"
        ]
    return documentation, summary, []


def _check_handler(
    tool_dir: Path,
    prefix: str,
    resolver: Callable[[str, Path | None], Callable[..., Any]],
) -> list[str]:
    handler_path = tool_dir / HANDLER_FILE
    if not handler_path.is_file():
        return [f"{prefix}: missing {HANDLER_FILE}"]
    try:
        fn = resolver(_handler_ref(handler_path, None), None)
    except HandlerResolutionError as e:
        return [f"{prefix}: {e}"]
    problem = check_handler_signature(fn)
    return [f"{prefix}: {problem}"] if problem else []


def compile_tool(
    tool_dir: Path,
    *,
    providers: Collection[str] = DEFAULT_PROVIDERS,
    allowed_modes: Collection[str] = DEFAULT_MODES,
    handler_base: Path | None = None,
    resolver: Callable[[str, Path | None], Callable[..., Any]] = default_resolver,
) -> tuple[ToolRecord | None, list[str]]:
    """Validate and compile one tool directory.

    Returns:
        ``(record, violations)``; *record* is None whenever there is at
        least one violation.
    """
    prefix = f"Tool {tool_dir.name}"
    raw, problems = _read_schema(tool_dir, prefix)
    if raw is None:
        return None, problems

    # (a) required fields
    missing = [f for f in REQUIRED_FIELDS if f not in raw]
    problems.extend(f'{prefix}: missing required field "{f}"' for f in missing)

    # (b) closed sets and types
    definition: ToolDefinition | None = None
    if not missing:
        try:
            definition = ToolDefinition.model_validate(raw)
        except ValidationError as e:
            problems.extend(_format_validation_error(prefix, e))
    if definition is not None:
        unknown_modes = sorted(set(definition.allowed_modes) - set(allowed_modes))
        if unknown_modes:
            problems.append(
                f"{prefix}: invalid allowedModes {unknown_modes}; "
                f"must be drawn from {sorted(allowed_modes)}"
            )

        # (c) category rules
        if definition.category == "retrieval":
            if not definition.idempotent:
                problems.append(f"{prefix}: retrieval tools must be idempotent")
            if definition.side_effects == "writes":
                problems.append(f'{prefix}: retrieval tools must not declare sideEffects "writes"')

    # (d) parameters, including every provider projection
    provider_schemas: dict[str, Any] = {}
    if "parameters" in raw:
        parameter_problems = _check_parameters(raw["parameters"], prefix)
        if not parameter_problems and definition is not None:
            try:
                provider_schemas = {
                    provider: project(
                        provider, definition.tool_id, definition.description, definition.parameters
                    )
                    for provider in providers
                }
            except ValueError as e:
                parameter_problems.append(f"{prefix}: parameters cannot be projected: {e}")
        problems.extend(parameter_problems)

    # (e) documentation
    documentation, summary, guide_problems = _check_guide(tool_dir, prefix)
    problems.extend(guide_problems)

    # (f) toolId / directory
    expected = expected_tool_id(tool_dir.name)
    if "toolId" in raw and raw["toolId"] != expected:
        problems.append(
            f'{prefix}: toolId "{raw["toolId"]}" does not match directory name '
            f'(expected "{expected}")'
        )

    # (g) handler
    problems.extend(_check_handler(tool_dir, prefix, resolver))

    if problems or definition is None:
        return None, problems

    record = ToolRecord(
        tool_id=definition.tool_id,
        version=definition.version,
        category=definition.category,
        description=definition.description,
        side_effects=definition.side_effects,
        idempotent=definition.idempotent,
        requires_confirmation=definition.requires_confirmation,
        allowed_modes=definition.allowed_modes,
        latency_budget_ms=definition.latency_budget_ms,
        json_schema=definition.parameters,
        provider_schemas=provider_schemas,
        summary=summary,
        documentation=documentation,
        handler_ref=_handler_ref(tool_dir / HANDLER_FILE, handler_base),
    )
    return record, []


# ── Registry compilation ─────────────────────────────────────────


def compile_tools(
    tools_dir: str | Path,
    *,
    providers: Collection[str] = DEFAULT_PROVIDERS,
    allowed_modes: Collection[str] = DEFAULT_MODES,
    revision: str | None = None,
    handler_base: Path | None = None,
    resolver: Callable[[str, Path | None], Callable[..., Any]] = default_resolver,
    now: datetime | None = None,
) -> RegistryArtifact:
    """Compile every tool under *tools_dir* into an artifact (in memory).

    Raises:
        BuildError: With every violation found, if any tool is invalid.
    """
    root = Path(tools_dir)
    if not root.is_dir():
        raise BuildError([f"Tools directory not found: {root}"])

    unknown = sorted(set(providers) - set(ADAPTERS))
    if unknown:
        raise BuildError([f"Unknown target providers: {unknown}"])

    records: list[ToolRecord] = []
    violations: list[str] = []
    seen: dict[str, str] = {}

    tool_dirs = discover_tool_dirs(root)
    if not tool_dirs:
        logger.warning("No tool directories found in %s", root)

    for tool_dir in tool_dirs:
        logger.info("Building %s", tool_dir.name)
        record, problems = compile_tool(
            tool_dir,
            providers=providers,
            allowed_modes=allowed_modes,
            handler_base=handler_base,
            resolver=resolver,
        )
        violations.extend(problems)
        if record is None:
            continue
        if record.tool_id in seen:
            violations.append(
                f"Tool {tool_dir.name}: duplicate toolId {record.tool_id!r} "
                f"(also defined by {seen[record.tool_id]})"
            )
            continue
        seen[record.tool_id] = tool_dir.name
        records.append(record)

    if violations:
        raise BuildError(violations)

    records.sort(key=lambda r: r.tool_id)
    timestamp = (now or datetime.now(UTC)).isoformat()
    return RegistryArtifact(
        version=compute_registry_version(records),
        revision=revision,
        build_timestamp=timestamp,
        tools=records,
    )


async def compile_tools_async(tools_dir: str | Path, **kwargs: Any) -> RegistryArtifact:
    """:func:`compile_tools` run in a worker thread (file and import I/O)."""
    return await asyncio.to_thread(compile_tools, tools_dir, **kwargs)


def write_artifact(artifact: RegistryArtifact, output: str | Path) -> Path:
    """Write *artifact* atomically: temp file in the same dir, then rename."""
    out = Path(output)
    out.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tool_registry.", suffix=".tmp", dir=out.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(artifact.to_json())
            f.write("\n")
        os.replace(tmp_name, out)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return out


def build_registry(
    tools_dir: str | Path,
    output: str | Path,
    *,
    providers: Collection[str] = DEFAULT_PROVIDERS,
    allowed_modes: Collection[str] = DEFAULT_MODES,
    revision: str | None = None,
    embed_revision: bool = True,
    resolver: Callable[[str, Path | None], Callable[..., Any]] = default_resolver,
) -> RegistryArtifact:
    """Compile *tools_dir* and write the artifact to *output*.

    Handler references are stored relative to the artifact's directory.
    Nothing is written if compilation fails.

    Raises:
        BuildError: On any validation failure.
    """
    out = Path(output)
    if revision is None and embed_revision:
        revision = git_revision(Path(tools_dir))
    artifact = compile_tools(
        tools_dir,
        providers=providers,
        allowed_modes=allowed_modes,
        revision=revision,
        handler_base=out.parent,
        resolver=resolver,
    )
    write_artifact(artifact, out)
    logger.info(
        "Tool registry built: v%s (%d tools) -> %s",
        artifact.version,
        len(artifact.tools),
        out,
    )
    return artifact
