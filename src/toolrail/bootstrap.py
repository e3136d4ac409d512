"""Wire a runtime from configuration: registry, engine, metrics, sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from toolrail.core.retry import RetryConfig
from toolrail.guards.loop import LoopDetector
from toolrail.guards.policy import PolicyGuard
from toolrail.memory.dedup import DuplicateCallDetector
from toolrail.memory.store import CallHistory
from toolrail.metrics.collector import MetricsCollector
from toolrail.runtime.engine import ExecutionEngine
from toolrail.runtime.loader import default_resolver
from toolrail.runtime.registry import ToolRegistry
from toolrail.runtime.state import StateController
from toolrail.session import ToolSession

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from toolrail.config.schema import ToolrailConfig
    from toolrail.memory.summarizer import CallSummarizer

logger = logging.getLogger(__name__)


def retry_config_from(config: ToolrailConfig) -> RetryConfig:
    return RetryConfig(**config.retry.model_dump())


@dataclass
class ToolRuntime:
    """A loaded, locked registry plus the components sessions share."""

    config: ToolrailConfig
    registry: ToolRegistry
    engine: ExecutionEngine
    metrics: MetricsCollector | None

    def new_session(
        self,
        session_id: str,
        *,
        mode: str | None = None,
        initial_state: Mapping[str, Any] | None = None,
        capabilities: Mapping[str, bool] | None = None,
        client_id: str | None = None,
        summarizer: CallSummarizer | None = None,
    ) -> ToolSession:
        """Create a session with components sized from configuration."""
        cfg = self.config
        state = StateController({"mode": mode or cfg.runtime.default_mode, **(initial_state or {})})
        history = CallHistory(
            recent_full=cfg.memory.recent_full,
            summary_window=cfg.memory.summary_window,
            max_age_s=cfg.memory.max_age_s,
        )
        loop_detector = LoopDetector(
            same_call_limit=cfg.loop.same_call_limit,
            empty_result_limit=cfg.loop.empty_result_limit,
            keep_turns=cfg.loop.keep_turns,
            enabled=cfg.loop.enabled,
        )
        dedup = DuplicateCallDetector(
            self.registry,
            history,
            threshold=cfg.dedup.threshold,
            enabled=cfg.dedup.enabled,
        )
        policy = PolicyGuard(
            max_calls_per_turn=cfg.policy.max_calls_per_turn,
            max_retrieval_calls_per_turn=cfg.policy.max_retrieval_calls_per_turn,
            budget_modes=cfg.policy.budget_modes,
        )
        return ToolSession(
            session_id,
            self.engine,
            state=state,
            history=history,
            loop_detector=loop_detector,
            dedup=dedup,
            policy=policy,
            metrics=self.metrics,
            summarizer=summarizer,
            retry_config=retry_config_from(cfg),
            low_latency_modes=cfg.runtime.low_latency_modes,
            capabilities=capabilities,
            client_id=client_id,
        )


async def start_runtime(
    config: ToolrailConfig,
    *,
    artifact: str | Path | None = None,
    resolver: Callable[[str, Path | None], Callable[..., Any]] = default_resolver,
) -> ToolRuntime:
    """Load and lock the registry named by *config* (or *artifact*).

    Raises:
        RegistryError: If the artifact cannot be fully loaded.
    """
    metrics = (
        MetricsCollector(window=config.metrics.window, max_tools=config.metrics.max_tools)
        if config.metrics.enabled
        else None
    )
    registry = ToolRegistry(
        artifact or config.runtime.artifact,
        resolver=resolver,
        metrics=metrics,
    )
    await registry.load()
    snapshot = registry.lock()
    logger.info("Runtime ready: registry v%s, %d tools", snapshot.version, len(snapshot.tool_ids))
    return ToolRuntime(
        config=config,
        registry=registry,
        engine=ExecutionEngine(registry, metrics=metrics),
        metrics=metrics,
    )
