"""Policy guards - mode, confirmation and per-turn call budgets.

Guards only decide; they never execute anything. A rejected call yields
a non-retryable failure with no side effects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from toolrail.core.envelope import rejection
from toolrail.core.errors import ErrorKind

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

    from toolrail.core.envelope import ToolResponse
    from toolrail.runtime.registry import ToolMetadata

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnCounts:
    """Calls admitted so far in the current turn."""

    total: int = 0
    retrieval: int = 0

    def admit(self, metadata: ToolMetadata) -> None:
        self.total += 1
        if metadata.category == "retrieval":
            self.retrieval += 1


class PolicyGuard:
    """Pre-execution policy checks.

    Args:
        max_calls_per_turn: Cap on admitted calls per turn; None disables.
        max_retrieval_calls_per_turn: Cap on admitted retrieval calls per
            turn; None disables.
        budget_modes: Modes the call caps apply in; None means every mode.
    """

    def __init__(
        self,
        *,
        max_calls_per_turn: int | None = 3,
        max_retrieval_calls_per_turn: int | None = 2,
        budget_modes: Collection[str] | None = ("voice",),
    ) -> None:
        self.max_calls_per_turn = max_calls_per_turn
        self.max_retrieval_calls_per_turn = max_retrieval_calls_per_turn
        self.budget_modes = frozenset(budget_modes) if budget_modes is not None else None

    def check(
        self,
        metadata: ToolMetadata,
        *,
        mode: str,
        args: Mapping[str, Any] | None = None,
        confirmed: bool = False,
        turn_counts: TurnCounts | None = None,
        registry_version: str | None = None,
    ) -> ToolResponse | None:
        """Return a rejection envelope, or None if the call may proceed."""
        tool_id = metadata.tool_id

        if mode not in metadata.allowed_modes:
            logger.warning("Tool %s not allowed in %s mode", tool_id, mode)
            return rejection(
                tool_id,
                ErrorKind.MODE_RESTRICTED,
                f"Tool {tool_id} not available in {mode} mode",
                details={"mode": mode, "allowedModes": list(metadata.allowed_modes)},
                tool_version=metadata.version,
                registry_version=registry_version,
            )

        if metadata.requires_confirmation and not confirmed:
            request = {"toolId": tool_id, "args": dict(args or {})}
            logger.info("Tool %s requires confirmation", tool_id)
            return rejection(
                tool_id,
                ErrorKind.CONFIRMATION_REQUIRED,
                f"Tool {tool_id} requires user confirmation before it runs",
                details={"confirmationRequest": request},
                confirmation_request=request,
                tool_version=metadata.version,
                registry_version=registry_version,
            )

        if turn_counts is not None and self._budgeted(mode):
            exceeded = self._budget_exceeded(metadata, turn_counts)
            if exceeded is not None:
                logger.warning("Call budget exceeded for %s: %s", tool_id, exceeded)
                return rejection(
                    tool_id,
                    ErrorKind.BUDGET_EXCEEDED,
                    exceeded,
                    details={"total": turn_counts.total, "retrieval": turn_counts.retrieval},
                    tool_version=metadata.version,
                    registry_version=registry_version,
                )
        return None

    def _budgeted(self, mode: str) -> bool:
        return self.budget_modes is None or mode in self.budget_modes

    def _budget_exceeded(self, metadata: ToolMetadata, counts: TurnCounts) -> str | None:
        limit = self.max_retrieval_calls_per_turn
        if metadata.category == "retrieval" and limit is not None and counts.retrieval >= limit:
            return f"Retrieval budget exceeded (max {limit} per turn)"
        limit = self.max_calls_per_turn
        if limit is not None and counts.total >= limit:
            return f"Tool call budget exceeded (max {limit} per turn)"
        return None
