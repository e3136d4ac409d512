"""Duplicate-call detection - serve cheap repeats from session history."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from toolrail.core.envelope import ResponseMeta, ToolResponse, success

if TYPE_CHECKING:
    from collections.abc import Mapping

    from toolrail.memory.store import CallHistory, CallRecord
    from toolrail.runtime.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.85


@dataclass(frozen=True, slots=True)
class DedupResult:
    """Outcome of a duplicate check."""

    is_duplicate: bool
    response: ToolResponse | None = None
    guidance: str | None = None
    original_call_id: str | None = None
    original_turn: int | None = None
    similarity: float = 0.0


_NOT_DUPLICATE = DedupResult(is_duplicate=False)


class DuplicateCallDetector:
    """Checks a call against the session's history before execution.

    Only tools that are idempotent and never write are eligible; for
    anything else the check is a no-op.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        history: CallHistory,
        *,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        enabled: bool = True,
    ) -> None:
        if not 0.0 < threshold <= 1.0:
            msg = f"Similarity threshold must be in (0, 1], got {threshold}"
            raise ValueError(msg)
        self._registry = registry
        self._history = history
        self.threshold = threshold
        self.enabled = enabled
        self.hits = 0
        self.misses = 0

    def check(
        self,
        session_id: str,
        tool_id: str,
        args: Mapping[str, Any] | None,
    ) -> DedupResult:
        metadata = self._registry.get_tool_metadata(tool_id)
        if not self.enabled or metadata is None or not metadata.cacheable:
            return _NOT_DUPLICATE

        match = self._history.find_similar(session_id, tool_id, args, self.threshold)
        if match is None:
            self.misses += 1
            return _NOT_DUPLICATE

        record, similarity = match
        self.hits += 1
        guidance = _guidance(tool_id, record)
        logger.info(
            "Duplicate call to %s served from %s (similarity %.2f)",
            tool_id,
            record.call_id,
            similarity,
        )
        cached = record.full_response if record.full_response is not None else _reconstruct(record)
        meta = cached.meta or ResponseMeta(tool_id=tool_id)
        response = dataclasses.replace(
            cached,
            meta=dataclasses.replace(meta, duration_ms=0.0, cached=True, guidance=guidance),
        )
        return DedupResult(
            is_duplicate=True,
            response=response,
            guidance=guidance,
            original_call_id=record.call_id,
            original_turn=record.turn,
            similarity=similarity,
        )

    def stats(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "hits": self.hits,
            "misses": self.misses,
        }


def _guidance(tool_id: str, record: CallRecord) -> str:
    result_info = record.summary or "similar query"
    return f"Reused result from previous {tool_id} call from turn {record.turn}: {result_info}"


def _reconstruct(record: CallRecord) -> ToolResponse:
    """Minimal response for a record whose full payload was pruned."""
    return dataclasses.replace(
        success(
            {
                "cached": True,
                "summary": record.summary
                or "Result from previous call (full response not available)",
                "originalCallId": record.call_id,
            }
        ),
        meta=ResponseMeta(tool_id=record.tool_id),
    )
