"""Per-session dispatch pipeline.

``ToolSession.call`` runs one tool call through, in order:

    policy guards -> loop detector -> duplicate-call detector
        -> retry/backoff -> execution engine -> handler

then applies the response's intents to session state and records the
call in the loop detector, call history and metrics.

A session pins the registry snapshot at creation. Once :meth:`end` is
called, pending backoff waits are cancelled, new calls are refused and
any handler result that arrives late is discarded rather than applied.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from toolrail.core.envelope import rejection
from toolrail.core.errors import ErrorKind, ToolrailError
from toolrail.core.retry import DEFAULT_LOW_LATENCY_MODES, RetryConfig, retry_tool_call
from toolrail.guards.loop import LoopDetector
from toolrail.guards.policy import PolicyGuard, TurnCounts
from toolrail.memory.dedup import DuplicateCallDetector
from toolrail.memory.store import CallHistory, CallRecord
from toolrail.runtime.engine import ExecutionContext
from toolrail.runtime.state import StateController

if TYPE_CHECKING:
    from collections.abc import Collection

    from toolrail.core.envelope import ToolResponse
    from toolrail.memory.summarizer import CallSummarizer
    from toolrail.metrics.collector import MetricsCollector
    from toolrail.runtime.engine import ExecutionEngine
    from toolrail.runtime.registry import RegistrySnapshot

logger = logging.getLogger(__name__)


class _SessionEnded(ToolrailError):
    """Raised inside a backoff wait when the session ends."""


class ToolSession:
    """One conversation's view of the tool layer.

    Components not supplied are created with their defaults. None of
    them may be shared with another session.

    Raises:
        RegistryError: If the engine's registry is not locked.
    """

    def __init__(
        self,
        session_id: str,
        engine: ExecutionEngine,
        *,
        state: StateController | None = None,
        history: CallHistory | None = None,
        loop_detector: LoopDetector | None = None,
        dedup: DuplicateCallDetector | None = None,
        policy: PolicyGuard | None = None,
        metrics: MetricsCollector | None = None,
        summarizer: CallSummarizer | None = None,
        retry_config: RetryConfig | None = None,
        low_latency_modes: Collection[str] = DEFAULT_LOW_LATENCY_MODES,
        capabilities: Mapping[str, bool] | None = None,
        client_id: str | None = None,
    ) -> None:
        self.session_id = session_id
        self._engine = engine
        self._registry = engine.registry
        self._pinned = self._registry.snapshot()

        self.state = state or StateController()
        self.history = history or CallHistory()
        self.loop_detector = loop_detector or LoopDetector()
        self.dedup = dedup or DuplicateCallDetector(self._registry, self.history)
        self.policy = policy or PolicyGuard()
        self._metrics = metrics
        self._summarizer = summarizer
        self._retry_config = retry_config or RetryConfig()
        self._low_latency_modes = frozenset(low_latency_modes)
        self._capabilities = MappingProxyType(dict(capabilities or {}))
        self._client_id = client_id

        self._turn = 1
        self._turn_counts = TurnCounts()
        self._active = True
        self._sleepers: set[asyncio.Task[None]] = set()
        self._call_ids = itertools.count(1)

        if self._metrics is not None:
            self._metrics.start_session(session_id)

    # ── Properties ───────────────────────────────────────────────

    @property
    def pinned(self) -> RegistrySnapshot:
        return self._pinned

    @property
    def turn(self) -> int:
        return self._turn

    @property
    def active(self) -> bool:
        return self._active

    # ── Lifecycle ────────────────────────────────────────────────

    def start_turn(self) -> int:
        """Advance to the next conversational turn."""
        self._turn += 1
        self._turn_counts = TurnCounts()
        if self._metrics is not None:
            self._metrics.start_new_turn(self.session_id)
        return self._turn

    def end(self) -> None:
        """End the session: cancel backoff waits and drop session memory."""
        if not self._active:
            return
        self._active = False
        self.state.set("isActive", False)
        for sleeper in list(self._sleepers):
            sleeper.cancel()
        self.loop_detector.clear_session(self.session_id)
        self.history.clear_session(self.session_id)
        if self._metrics is not None:
            self._metrics.end_session(self.session_id)
        logger.info("Session %s ended", self.session_id)

    # ── Dispatch ─────────────────────────────────────────────────

    async def call(
        self,
        tool_id: str,
        args: Mapping[str, Any] | None = None,
        *,
        confirmed: bool = False,
    ) -> ToolResponse:
        """Run one tool call through the full pipeline.

        Arguments that are not a mapping go straight to the engine, which
        rejects them as ``VALIDATION`` before any guard sees them.
        """
        started = time.perf_counter()

        if not self._active:
            return self._inactive(tool_id, "Session has ended")

        if args is not None and not isinstance(args, Mapping):
            response = await self._engine.execute_tool(tool_id, ExecutionContext(args=args))
            self._trace(tool_id, {}, response, started)
            return response
        args = dict(args or {})

        metadata = self._registry.get_tool_metadata(tool_id)
        if metadata is None or tool_id not in self._pinned.tool_ids:
            response = await self._engine.execute_tool(tool_id, ExecutionContext(args=args))
            self._trace(tool_id, args, response, started)
            return response

        mode = self.state.get("mode")
        registry_version = self._pinned.version

        rejected = self.policy.check(
            metadata,
            mode=mode,
            args=args,
            confirmed=confirmed,
            turn_counts=self._turn_counts,
            registry_version=registry_version,
        )
        if rejected is not None:
            self._trace(tool_id, args, rejected, started)
            return rejected
        self._turn_counts.admit(metadata)

        loop = self.loop_detector.check(self.session_id, self._turn, tool_id, args)
        if loop is not None:
            response = loop.to_response(tool_id).with_meta(
                tool_version=metadata.version, registry_version=registry_version
            )
            self._trace(tool_id, args, response, started)
            return response

        dedup = self.dedup.check(self.session_id, tool_id, args)
        if dedup.is_duplicate and dedup.response is not None:
            self.loop_detector.record(self.session_id, self._turn, tool_id, args, dedup.response)
            self._trace(tool_id, args, dedup.response, started)
            return dedup.response

        context = ExecutionContext(
            args=args,
            session=self.state.view(),
            capabilities=self._capabilities,
            client_id=self._client_id,
        )
        try:
            response = await retry_tool_call(
                lambda: self._engine.execute_tool(tool_id, context),
                mode=mode,
                metadata=metadata,
                config=self._retry_config,
                low_latency_modes=self._low_latency_modes,
                sleep=self._backoff_sleep,
            )
        except _SessionEnded:
            return self._inactive(tool_id, "Session ended during retry backoff")

        if not self._active:
            logger.info(
                "Discarding late result of %s for ended session %s", tool_id, self.session_id
            )
            return self._inactive(
                tool_id, "Session ended before the call completed; result discarded"
            )

        self.state.apply_intents(response.intents)
        self.loop_detector.record(self.session_id, self._turn, tool_id, args, response)
        self._remember(tool_id, args, response)
        self._trace(tool_id, args, response, started)
        return response

    # ── Internals ────────────────────────────────────────────────

    async def _backoff_sleep(self, delay_ms: float) -> None:
        if not self._active:
            raise _SessionEnded
        sleeper = asyncio.ensure_future(asyncio.sleep(delay_ms / 1000.0))
        self._sleepers.add(sleeper)
        try:
            await sleeper
        except asyncio.CancelledError:
            if sleeper.cancelled() and not self._active:
                raise _SessionEnded from None
            raise
        finally:
            self._sleepers.discard(sleeper)

    def _inactive(self, tool_id: str, message: str) -> ToolResponse:
        return rejection(
            tool_id,
            ErrorKind.SESSION_INACTIVE,
            message,
            registry_version=self._pinned.version,
        )

    def _remember(self, tool_id: str, args: dict[str, Any], response: ToolResponse) -> None:
        record = CallRecord(
            call_id=f"{self.session_id}-{next(self._call_ids)}",
            tool_id=tool_id,
            args=args,
            turn=self._turn,
            ok=response.ok,
            full_response=response,
            error_type=response.error.type if response.error else None,
        )
        self.history.record(self.session_id, record)
        if self._summarizer is not None:
            self._summarizer.enqueue(self.session_id)

    def _trace(
        self,
        tool_id: str,
        args: Mapping[str, Any],
        response: ToolResponse,
        started: float,
    ) -> None:
        if self._metrics is None:
            return
        duration_ms = (time.perf_counter() - started) * 1000
        self._metrics.record_session_call(self.session_id, tool_id, args, duration_ms, response.ok)
