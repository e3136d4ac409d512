"""In-memory tool metrics - latency, payload size, tokens, sessions.

Purely observational. Every recorder is wrapped so a failure inside the
collector is logged and swallowed; nothing here can change a response
or a retry decision.
"""

from __future__ import annotations

import functools
import logging
import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from toolrail.core.hashing import canonical_json, payload_size

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 1000
DEFAULT_MAX_TOOLS = 256
OVERFLOW_TOOL = "(other)"

_F = TypeVar("_F", bound="Callable[..., Any]")


def _swallow(fn: _F) -> _F:
    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.warning("Metrics recording failed in %s", fn.__name__, exc_info=True)
            return None

    return wrapper  # type: ignore[return-value]


def percentile(values: Iterable[float], pct: float) -> float:
    """Nearest-rank percentile; 0 for no values."""
    ordered = sorted(values)
    if not ordered:
        return 0
    index = math.ceil(pct / 100 * len(ordered)) - 1
    return ordered[max(0, index)]


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _avg(values: deque[float]) -> float:
    return sum(values) / len(values) if values else 0.0


@dataclass(slots=True)
class SessionTrace:
    """Per-session call trace."""

    session_id: str
    started_at: float
    current_turn: int = 1
    calls: deque[dict[str, Any]] = field(default_factory=deque)
    turn_calls: deque[dict[str, Any]] = field(default_factory=deque)


class MetricsCollector:
    """Thread-safe metrics store with a bounded window per tool.

    At most *max_tools* tool ids get their own series; calls naming further
    ids, such as unknown tools, share the ``(other)`` series. Session traces
    keep the last *window* calls.
    """

    def __init__(
        self, *, window: int = DEFAULT_WINDOW, max_tools: int = DEFAULT_MAX_TOOLS
    ) -> None:
        self.window = window
        self.max_tools = max_tools
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._started_at = time.time()
        self._durations: dict[str, deque[float]] = defaultdict(self._new_window)
        self._sizes: dict[str, deque[float]] = defaultdict(self._new_window)
        self._tokens: dict[str, deque[float]] = defaultdict(self._new_window)
        self._executions: dict[str, int] = defaultdict(int)
        self._errors: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._budget_violations: dict[str, int] = defaultdict(int)
        self._registry_load_ms: float | None = None
        self._sessions: dict[str, SessionTrace] = {}
        self._overflow_warned = False

    def _new_window(self) -> deque[float]:
        return deque(maxlen=self.window)

    def _series(self, tool_id: str) -> str:
        """Series key for *tool_id*; call with the lock held."""
        if tool_id in self._executions or len(self._executions) < self.max_tools:
            return tool_id
        if not self._overflow_warned:
            logger.warning(
                "Metrics tracks at most %d tools; folding %s into %s",
                self.max_tools,
                tool_id,
                OVERFLOW_TOOL,
            )
            self._overflow_warned = True
        return OVERFLOW_TOOL

    # ── Tool recorders ───────────────────────────────────────────

    @_swallow
    def record_execution(self, tool_id: str, duration_ms: float, success: bool) -> None:
        with self._lock:
            tool_id = self._series(tool_id)
            self._durations[tool_id].append(float(duration_ms))
            self._executions[tool_id] += 1

    @_swallow
    def record_error(self, tool_id: str, error_type: str) -> None:
        with self._lock:
            tool_id = self._series(tool_id)
            self._errors[tool_id][str(error_type)] += 1

    @_swallow
    def record_budget_violation(self, tool_id: str, actual_ms: float, budget_ms: float) -> None:
        with self._lock:
            tool_id = self._series(tool_id)
            self._budget_violations[tool_id] += 1

    @_swallow
    def record_response_payload(self, tool_id: str, payload: Any) -> None:
        chars, tokens = payload_size(payload)
        with self._lock:
            tool_id = self._series(tool_id)
            self._sizes[tool_id].append(chars)
            self._tokens[tool_id].append(tokens)

    @_swallow
    def record_registry_load_time(self, load_ms: float) -> None:
        with self._lock:
            self._registry_load_ms = load_ms

    # ── Session tracing ──────────────────────────────────────────

    @_swallow
    def start_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions[session_id] = SessionTrace(
                session_id=session_id,
                started_at=time.time(),
                calls=deque(maxlen=self.window),
                turn_calls=deque(maxlen=self.window),
            )

    @_swallow
    def record_session_call(
        self,
        session_id: str,
        tool_id: str,
        args: Mapping[str, Any] | None,
        duration_ms: float,
        ok: bool,
    ) -> None:
        with self._lock:
            trace = self._sessions.get(session_id)
            if trace is None:
                return
            call = {
                "toolId": tool_id,
                "args": canonical_json(dict(args or {})),
                "timestamp": time.time(),
                "durationMs": duration_ms,
                "ok": ok,
                "turn": trace.current_turn,
            }
            trace.calls.append(call)
            trace.turn_calls.append(call)

    @_swallow
    def start_new_turn(self, session_id: str) -> None:
        with self._lock:
            trace = self._sessions.get(session_id)
            if trace is not None:
                trace.current_turn += 1
                trace.turn_calls.clear()

    @_swallow
    def end_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def get_session_metrics(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            trace = self._sessions.get(session_id)
            if trace is None:
                return None
            return {
                "sessionId": trace.session_id,
                "startTime": trace.started_at,
                "currentTurn": trace.current_turn,
                "toolCalls": list(trace.calls),
                "turnToolCalls": list(trace.turn_calls),
            }

    # ── Summary ──────────────────────────────────────────────────

    def summary(self) -> dict[str, Any]:
        """Read-only snapshot of everything recorded."""
        with self._lock:
            now = time.time()
            tools: dict[str, Any] = {}
            for tool_id in sorted(self._executions):
                durations = self._durations[tool_id]
                sizes = self._sizes.get(tool_id, deque())
                tokens = self._tokens.get(tool_id, deque())
                executions = self._executions[tool_id]
                errors = dict(self._errors.get(tool_id, {}))
                error_count = sum(errors.values())
                violations = self._budget_violations.get(tool_id, 0)
                tools[tool_id] = {
                    "executionCount": executions,
                    "errorCount": error_count,
                    "errorRate": _rate(error_count, executions),
                    "errorBreakdown": errors,
                    "budgetViolations": violations,
                    "budgetViolationRate": _rate(violations, executions),
                    "latency": {
                        "p50": percentile(durations, 50),
                        "p95": percentile(durations, 95),
                        "p99": percentile(durations, 99),
                        "min": min(durations, default=0),
                        "max": max(durations, default=0),
                        "avg": _avg(durations),
                    },
                    "responseSize": {
                        "p50": percentile(sizes, 50),
                        "p95": percentile(sizes, 95),
                        "p99": percentile(sizes, 99),
                        "avg": round(_avg(sizes)),
                    },
                    "tokens": {
                        "p50": percentile(tokens, 50),
                        "p95": percentile(tokens, 95),
                        "p99": percentile(tokens, 99),
                        "avg": round(_avg(tokens)),
                    },
                }
            return {
                "timestamp": now,
                "uptimeMs": (now - self._started_at) * 1000,
                "registryLoadTimeMs": self._registry_load_ms,
                "tools": tools,
                "sessions": {
                    "activeCount": len(self._sessions),
                    "activeSessions": list(self._sessions),
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_state()
