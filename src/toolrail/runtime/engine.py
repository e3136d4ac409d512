"""Execution engine - validate, invoke, normalize, stamp.

Every call produces exactly one :class:`ToolResponse`:

1. unknown tool -> ``NOT_FOUND``;
2. arguments violating the schema -> ``VALIDATION`` (handler not run);
3. handler called with a capability-scoped :class:`HandlerContext`;
4. malformed handler output -> ``INTERNAL``;
5. :class:`ToolError` -> failure preserving its flags;
6. any other exception -> ``INTERNAL`` with ``partialSideEffects``;
7. ``meta`` stamped last, overwriting whatever the handler set.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from toolrail.core.envelope import (
    ResponseMeta,
    ToolResponse,
    failure,
    rejection,
    validate_tool_response,
)
from toolrail.core.errors import ErrorKind, MalformedResponseError, ToolError

if TYPE_CHECKING:
    from toolrail.metrics.collector import MetricsCollector
    from toolrail.runtime.registry import ToolMetadata, ToolRegistry

logger = logging.getLogger(__name__)

def _empty_view() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """What the orchestrator supplies for one call."""

    args: Mapping[str, Any] | None = None
    session: Mapping[str, Any] = field(default_factory=_empty_view)
    capabilities: Mapping[str, bool] = field(default_factory=_empty_view)
    client_id: str | None = None


@dataclass(frozen=True, slots=True)
class HandlerContext:
    """What a handler receives: arguments, read-only views, tool metadata."""

    args: dict[str, Any]
    session: Mapping[str, Any]
    capabilities: Mapping[str, bool]
    tool: ToolMetadata
    client_id: str | None = None

    def can(self, capability: str) -> bool:
        return bool(self.capabilities.get(capability, False))


def _validation_errors(validator: Any, args: Mapping[str, Any]) -> list[str]:
    errors = sorted(validator.iter_errors(args), key=lambda e: list(e.absolute_path))
    return [f"{e.json_path}: {e.message}" for e in errors]


class ExecutionEngine:
    """Runs tool calls against a loaded :class:`ToolRegistry`."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._registry = registry
        self._metrics = metrics

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute_tool(self, tool_id: str, context: ExecutionContext) -> ToolResponse:
        """Execute *tool_id* and return its normalized envelope.

        Never raises for tool failures; cancellation still propagates.
        """
        started = time.perf_counter()
        metadata = self._registry.get_tool_metadata(tool_id)

        if metadata is None:
            response = rejection(
                tool_id,
                ErrorKind.NOT_FOUND,
                f"Tool {tool_id} not found",
                registry_version=self._registry.get_version(),
            )
            self._record(tool_id, None, response, started)
            return self._stamp(response, tool_id, None, started)

        raw_args = context.args if context.args is not None else {}
        if not isinstance(raw_args, Mapping):
            response = failure(
                ErrorKind.VALIDATION,
                "Invalid parameters: arguments must be an object",
                details={"errors": ["$: arguments must be an object"]},
            )
            self._record(tool_id, metadata, response, started)
            return self._stamp(response, tool_id, metadata, started)

        args = dict(raw_args)
        validator = self._registry.get_validator(tool_id)
        errors = _validation_errors(validator, args) if validator is not None else []
        if errors:
            response = failure(
                ErrorKind.VALIDATION,
                f"Invalid parameters: {'; '.join(errors)}",
                details={"errors": errors},
            )
            self._record(tool_id, metadata, response, started)
            return self._stamp(response, tool_id, metadata, started)

        handler = self._registry.get_handler(tool_id)
        assert handler is not None
        handler_ctx = HandlerContext(
            args=args,
            session=MappingProxyType(copy.deepcopy(dict(context.session))),
            capabilities=MappingProxyType(dict(context.capabilities)),
            tool=metadata,
            client_id=context.client_id,
        )

        response = await self._invoke(tool_id, handler, handler_ctx)
        self._record(tool_id, metadata, response, started)
        return self._stamp(response, tool_id, metadata, started)

    async def _invoke(self, tool_id: str, handler: Any, ctx: HandlerContext) -> ToolResponse:
        try:
            result = await handler(ctx)
        except ToolError as e:
            logger.info("%s raised %s: %s", tool_id, e.kind, e.message)
            return failure(
                e.kind,
                e.message,
                retryable=e.retryable,
                idempotency_required=e.idempotency_required,
                partial_side_effects=e.partial_side_effects,
                details=e.details,
                unavailable=e.unavailable,
                confirmation_request=e.confirmation_request,
            )
        except Exception as e:
            logger.exception("Unexpected error in tool %s", tool_id)
            return failure(
                ErrorKind.INTERNAL,
                f"Unexpected error: {e}",
                retryable=False,
                partial_side_effects=True,
                details={"exception": type(e).__name__},
            )

        try:
            return validate_tool_response(result)
        except MalformedResponseError as e:
            logger.error("Handler %s returned invalid ToolResponse: %s", tool_id, e)
            return failure(
                ErrorKind.INTERNAL,
                f"Handler returned invalid response: {e}",
                retryable=False,
                partial_side_effects=True,
            )

    def _stamp(
        self,
        response: ToolResponse,
        tool_id: str,
        metadata: ToolMetadata | None,
        started: float,
    ) -> ToolResponse:
        meta = ResponseMeta(
            tool_id=tool_id,
            tool_version=metadata.version if metadata else None,
            registry_version=self._registry.get_version(),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return dataclasses.replace(response, meta=meta)

    def _record(
        self,
        tool_id: str,
        metadata: ToolMetadata | None,
        response: ToolResponse,
        started: float,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        if metadata is not None and duration_ms > metadata.latency_budget_ms:
            logger.warning(
                "%s exceeded latency budget: %.0fms > %.0fms",
                tool_id,
                duration_ms,
                metadata.latency_budget_ms,
            )
        if self._metrics is None:
            return
        self._metrics.record_execution(tool_id, duration_ms, response.ok)
        if response.ok:
            self._metrics.record_response_payload(tool_id, response.data)
        elif response.error is not None:
            self._metrics.record_error(tool_id, response.error.type)
        if metadata is not None and duration_ms > metadata.latency_budget_ms:
            self._metrics.record_budget_violation(
                tool_id, duration_ms, metadata.latency_budget_ms
            )
