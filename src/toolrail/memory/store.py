"""Call history - session-scoped, bounded, in-memory.

Window policy, newest first:

- the newest ``recent_full`` records keep their full response;
- the next ``summary_window`` records keep only a summary (the full
  payload is dropped once a summary exists);
- anything older, or older than ``max_age_s``, is pruned.

A record's fingerprint and ``ok`` flag survive for as long as the record
does; only the payload is ever compressed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from toolrail.core.hashing import args_similarity, fingerprint

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from toolrail.core.envelope import ToolResponse

logger = logging.getLogger(__name__)

TimeRange = Literal["all", "last_turn", "last_3_turns"]


def _newest_first(records: list[CallRecord]) -> list[CallRecord]:
    # Stable on equal timestamps: later insertions count as newer
    return list(reversed(sorted(records, key=lambda r: r.timestamp)))


@dataclass(slots=True)
class CallRecord:
    """One executed tool call."""

    call_id: str
    tool_id: str
    args: dict[str, Any]
    turn: int
    ok: bool
    full_response: ToolResponse | None = None
    summary: str | None = None
    error_type: str | None = None
    timestamp: float = 0.0
    fingerprint: str = ""

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = fingerprint(self.args)


@dataclass(slots=True)
class _SessionHistory:
    started_at: float
    records: list[CallRecord] = field(default_factory=list)


class CallHistory:
    """Per-session record of executed calls."""

    def __init__(
        self,
        *,
        recent_full: int = 10,
        summary_window: int = 40,
        max_age_s: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.recent_full = recent_full
        self.summary_window = summary_window
        self.max_age_s = max_age_s
        self._clock = clock
        self._sessions: dict[str, _SessionHistory] = {}

    # ── Recording ────────────────────────────────────────────────

    def record(self, session_id: str, record: CallRecord) -> None:
        if not record.call_id or not record.tool_id:
            logger.error("Invalid call record: missing call_id or tool_id: %r", record)
            return
        session = self._sessions.get(session_id)
        if session is None:
            session = _SessionHistory(started_at=self._clock())
            self._sessions[session_id] = session
        if not record.timestamp:
            record.timestamp = self._clock()
        session.records.append(record)
        logger.debug("Recorded call %s (%s)", record.tool_id, record.call_id)
        self._apply_window(session)

    def update_summary(self, session_id: str, call_id: str, summary: str) -> bool:
        """Attach *summary* to a record; returns False if the record is gone."""
        record = self.get_record(session_id, call_id)
        if record is None:
            return False
        record.summary = summary
        self._apply_window(self._sessions[session_id])
        return True

    def _apply_window(self, session: _SessionHistory) -> None:
        now = self._clock()
        kept: list[CallRecord] = []
        newest_first = _newest_first(session.records)
        for index, record in enumerate(newest_first):
            if now - record.timestamp > self.max_age_s:
                continue
            if index >= self.recent_full + self.summary_window:
                continue
            if index >= self.recent_full and record.summary:
                record.full_response = None
            kept.append(record)
        kept.reverse()
        session.records = kept

    # ── Queries ──────────────────────────────────────────────────

    def _records(self, session_id: str) -> list[CallRecord]:
        session = self._sessions.get(session_id)
        return session.records if session else []

    def current_turn(self, session_id: str) -> int:
        records = self._records(session_id)
        return max((r.turn for r in records), default=1)

    def query(
        self,
        session_id: str,
        *,
        tool_id: str | None = None,
        time_range: TimeRange = "all",
        include_errors: bool = False,
    ) -> list[CallRecord]:
        """Matching records, most recent first."""
        results = list(self._records(session_id))
        if tool_id is not None:
            results = [r for r in results if r.tool_id == tool_id]
        if not include_errors:
            results = [r for r in results if r.ok]
        if time_range != "all":
            turn = self.current_turn(session_id)
            oldest = turn if time_range == "last_turn" else turn - 2
            results = [r for r in results if r.turn >= oldest]
        return _newest_first(results)

    def get_record(self, session_id: str, call_id: str) -> CallRecord | None:
        for record in self._records(session_id):
            if record.call_id == call_id:
                return record
        return None

    def get_full_response(self, session_id: str, call_id: str) -> ToolResponse | None:
        record = self.get_record(session_id, call_id)
        return record.full_response if record else None

    def find_similar(
        self,
        session_id: str,
        tool_id: str,
        args: Mapping[str, Any] | None,
        threshold: float,
    ) -> tuple[CallRecord, float] | None:
        """Most recent successful call to *tool_id* at or above *threshold*."""
        for record in reversed(self._records(session_id)):
            if record.tool_id != tool_id or not record.ok:
                continue
            similarity = args_similarity(record.args, args or {})
            if similarity >= threshold:
                logger.debug(
                    "Found similar call %s (similarity %.2f)", record.call_id, similarity
                )
                return record, similarity
        return None

    def pending_summaries(self, session_id: str) -> list[CallRecord]:
        """Records past the full-response window that still lack a summary."""
        newest_first = _newest_first(self._records(session_id))
        return [
            r
            for r in newest_first[self.recent_full :]
            if r.summary is None and r.full_response is not None
        ]

    # ── Lifecycle ────────────────────────────────────────────────

    def clear_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug("Cleared call history for %s (%d calls)", session_id, len(session.records))

    def stats(self) -> dict[str, Any]:
        return {
            "total_sessions": len(self._sessions),
            "sessions": [
                {
                    "session_id": sid,
                    "started_at": s.started_at,
                    "total_calls": len(s.records),
                    "with_full_response": sum(1 for r in s.records if r.full_response is not None),
                    "with_summary": sum(1 for r in s.records if r.summary),
                }
                for sid, s in self._sessions.items()
            ],
        }
