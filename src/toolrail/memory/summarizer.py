"""Background summarizer - compresses old call payloads into one-liners.

Records that fall out of the full-response window are queued and
summarized off the dispatch path. The default summary is rule-based and
deterministic; a host can inject an async ``summarize`` callable (for
example a small model) and any failure there falls back to the rules.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from toolrail.core.hashing import canonical_json

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from toolrail.memory.store import CallHistory, CallRecord

logger = logging.getLogger(__name__)

_ARG_PREVIEW_CHARS = 50
_SUMMARY_MAX_CHARS = 300
_RESULT_LIST_KEYS = ("results", "items", "documents")


def summarize_args(args: Mapping[str, Any] | None) -> str:
    """Short readable rendering of the most telling argument."""
    if not args:
        return "no arguments"
    for key in ("query", "id"):
        if key in args:
            return f"{key}={str(args[key])[:_ARG_PREVIEW_CHARS]!r}"
    key, value = next(iter(args.items()))
    if isinstance(value, str):
        return f"{key}={value[:_ARG_PREVIEW_CHARS]!r}"
    return f"{key}={canonical_json(value)[:_ARG_PREVIEW_CHARS]}"


def count_results(data: Any) -> int | None:
    if isinstance(data, list):
        return len(data)
    if isinstance(data, dict):
        for key in _RESULT_LIST_KEYS:
            if isinstance(data.get(key), list):
                return len(data[key])
        count = data.get("count")
        if isinstance(count, int) and not isinstance(count, bool):
            return count
    return None


def default_summary(record: CallRecord) -> str:
    """Deterministic summary built from the record alone."""
    args_text = summarize_args(record.args)
    response = record.full_response

    if not record.ok:
        error = response.error if response is not None else None
        kind = error.type if error else (record.error_type or "unknown")
        message = error.message if error else "unknown error"
        text = f"{record.tool_id} failed: {args_text}. Error: {kind} - {message}"
    elif response is None or response.data in (None, "", [], {}):
        text = f"{record.tool_id} executed: {args_text}. No data returned."
    else:
        count = count_results(response.data)
        if count is not None:
            text = f"{record.tool_id} executed: {args_text}. Found {count} result(s)."
        else:
            text = f"{record.tool_id} executed: {args_text}. Completed successfully."
    return text[:_SUMMARY_MAX_CHARS]


class CallSummarizer:
    """FIFO queue of records to summarize, drained by one background task.

    Args:
        history: The call history whose records get summaries.
        summarize: Optional ``async (record) -> str``. Falls back to
            :func:`default_summary` when absent, on error, or on an
            empty result.
    """

    def __init__(
        self,
        history: CallHistory,
        summarize: Callable[[CallRecord], Awaitable[str]] | None = None,
    ) -> None:
        self._history = history
        self._summarize = summarize
        self._queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        self._queued: set[tuple[str, str]] = set()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def queue_length(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._worker(), name="toolrail-summarizer")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def enqueue(self, session_id: str) -> int:
        """Queue every record of *session_id* that needs a summary."""
        added = 0
        for record in self._history.pending_summaries(session_id):
            key = (session_id, record.call_id)
            if key in self._queued:
                continue
            self._queued.add(key)
            self._queue.put_nowait(key)
            added += 1
        if added:
            logger.debug("Queued %d call(s) of %s for summarization", added, session_id)
        return added

    async def drain(self) -> None:
        """Summarize everything currently queued, in the caller's task."""
        while not self._queue.empty():
            key = self._queue.get_nowait()
            try:
                await self._process(*key)
            finally:
                self._queue.task_done()

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            try:
                await self._process(*key)
            finally:
                self._queue.task_done()

    async def _process(self, session_id: str, call_id: str) -> None:
        self._queued.discard((session_id, call_id))
        record = self._history.get_record(session_id, call_id)
        if record is None or record.summary is not None:
            return
        summary = await self._generate(record)
        self._history.update_summary(session_id, call_id, summary)

    async def _generate(self, record: CallRecord) -> str:
        if self._summarize is None:
            return default_summary(record)
        try:
            summary = (await self._summarize(record)).strip()
        except Exception:
            logger.warning(
                "Summarizer failed for %s; using fallback", record.call_id, exc_info=True
            )
            return default_summary(record)
        return summary or default_summary(record)
