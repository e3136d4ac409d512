"""Loop detection - stop an agent that keeps asking the same thing.

Within one turn of one session a call is rejected before it runs when:

- the same tool with the same arguments has already been attempted
  ``same_call_limit`` times (``SAME_CALL_REPEATED``); or
- the same tool has already returned empty results
  ``empty_result_limit`` times, whatever the arguments
  (``EMPTY_RESULTS_REPEATED``).

Only the last ``keep_turns`` turns per session are retained.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from toolrail.core.envelope import rejection
from toolrail.core.errors import ErrorKind
from toolrail.core.hashing import fingerprint

if TYPE_CHECKING:
    from collections.abc import Mapping

    from toolrail.core.envelope import ToolResponse

logger = logging.getLogger(__name__)

SAME_CALL_REPEATED = "SAME_CALL_REPEATED"
EMPTY_RESULTS_REPEATED = "EMPTY_RESULTS_REPEATED"


@dataclass(frozen=True, slots=True)
class LoopCheck:
    """A detected loop."""

    loop_type: str
    message: str
    count: int

    def to_response(self, tool_id: str) -> ToolResponse:
        return rejection(
            tool_id,
            ErrorKind.LOOP_DETECTED,
            self.message,
            details={"loopType": self.loop_type, "count": self.count},
        )


@dataclass(frozen=True, slots=True)
class _Attempt:
    tool_id: str
    fingerprint: str
    empty: bool


def is_empty_result(response: ToolResponse | None) -> bool:
    """True for a successful response that carries nothing useful."""
    if response is None or not response.ok:
        return False
    data = response.data
    if data is None:
        return True
    if isinstance(data, str):
        return not data.strip()
    if isinstance(data, (list, tuple, dict)) and not data:
        return True
    if isinstance(data, dict):
        results = data.get("results")
        if isinstance(results, list) and not results:
            return True
    return False


class LoopDetector:
    """Per-session, per-turn call tracking."""

    def __init__(
        self,
        *,
        same_call_limit: int = 2,
        empty_result_limit: int = 2,
        keep_turns: int = 5,
        enabled: bool = True,
    ) -> None:
        self.same_call_limit = same_call_limit
        self.empty_result_limit = empty_result_limit
        self.keep_turns = keep_turns
        self.enabled = enabled
        # session_id -> turn -> attempts
        self._turns: dict[str, dict[int, list[_Attempt]]] = defaultdict(dict)

    def check(
        self,
        session_id: str,
        turn: int,
        tool_id: str,
        args: Mapping[str, Any] | None,
    ) -> LoopCheck | None:
        """Return the loop the next call would continue, or None."""
        if not self.enabled:
            return None
        history = self._turns.get(session_id, {}).get(turn, [])
        fp = fingerprint(args)

        same = sum(1 for a in history if a.tool_id == tool_id and a.fingerprint == fp)
        if same >= self.same_call_limit:
            logger.warning(
                "Loop detected: %s repeated %d times in turn %d", tool_id, same + 1, turn
            )
            return LoopCheck(
                loop_type=SAME_CALL_REPEATED,
                message=(
                    f"Loop detected: {tool_id} called {same + 1} times with identical "
                    "arguments. Try a different approach or rephrase your query."
                ),
                count=same + 1,
            )

        empty = sum(1 for a in history if a.tool_id == tool_id and a.empty)
        if empty >= self.empty_result_limit:
            logger.warning(
                "Loop detected: %s returned empty %d times in turn %d", tool_id, empty, turn
            )
            return LoopCheck(
                loop_type=EMPTY_RESULTS_REPEATED,
                message=(
                    f"{tool_id} returned empty results {empty} times. Data may not "
                    "exist. Try different search terms or a different tool."
                ),
                count=empty,
            )
        return None

    def record(
        self,
        session_id: str,
        turn: int,
        tool_id: str,
        args: Mapping[str, Any] | None,
        response: ToolResponse | None,
    ) -> None:
        turns = self._turns[session_id]
        turns.setdefault(turn, []).append(
            _Attempt(
                tool_id=tool_id,
                fingerprint=fingerprint(args),
                empty=is_empty_result(response),
            )
        )
        self._prune(session_id)

    def clear_turn(self, session_id: str, turn: int) -> None:
        turns = self._turns.get(session_id)
        if turns is None:
            return
        turns.pop(turn, None)
        self._prune(session_id)

    def clear_session(self, session_id: str) -> None:
        self._turns.pop(session_id, None)

    def _prune(self, session_id: str) -> None:
        turns = self._turns[session_id]
        for old in sorted(turns)[: -self.keep_turns or None]:
            del turns[old]

    def stats(self) -> dict[str, int]:
        return {
            "active_sessions": sum(1 for t in self._turns.values() if t),
            "turns_tracked": sum(len(t) for t in self._turns.values()),
        }
