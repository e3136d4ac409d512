"""Pydantic models for toolrail configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from toolrail.core.artifact import DEFAULT_PROVIDERS


class BuildConfig(BaseModel):
    """Schema compiler settings."""

    tools_dir: str = "tools"
    output: str = "tools/tool_registry.json"
    providers: list[str] = Field(default_factory=lambda: list(DEFAULT_PROVIDERS))
    modes: list[str] = Field(default_factory=lambda: ["voice", "text"])
    embed_revision: bool = True


class RuntimeConfig(BaseModel):
    """Runtime registry and session settings."""

    artifact: str = "tools/tool_registry.json"
    default_mode: str = "text"
    low_latency_modes: list[str] = Field(default_factory=lambda: ["voice"])


class RetrySettings(BaseModel):
    """Retry/backoff settings (milliseconds)."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: float = Field(default=300.0, gt=0)
    max_delay_ms: float = Field(default=3000.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.2, ge=0.0, lt=1.0)
    unavailable_base_delay_ms: float = Field(default=1000.0, gt=0)
    unavailable_max_delay_ms: float = Field(default=8000.0, gt=0)


class DedupConfig(BaseModel):
    """Duplicate-call detection."""

    enabled: bool = True
    threshold: float = Field(default=0.85, gt=0.0, le=1.0)


class LoopConfig(BaseModel):
    """Loop detection."""

    enabled: bool = True
    same_call_limit: int = Field(default=2, ge=1)
    empty_result_limit: int = Field(default=2, ge=1)
    keep_turns: int = Field(default=5, ge=1)


class MemoryConfig(BaseModel):
    """Session call history window."""

    recent_full: int = Field(default=10, ge=0)
    summary_window: int = Field(default=40, ge=0)
    max_age_s: float = Field(default=3600.0, gt=0)


class PolicyConfig(BaseModel):
    """Per-turn call budgets."""

    max_calls_per_turn: int | None = 3
    max_retrieval_calls_per_turn: int | None = 2
    budget_modes: list[str] | None = Field(default_factory=lambda: ["voice"])


class MetricsConfig(BaseModel):
    """Metrics collection."""

    enabled: bool = True
    window: int = Field(default=1000, ge=1)
    max_tools: int = Field(default=256, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str = ""


class ToolrailConfig(BaseModel):
    """Root configuration model."""

    build: BuildConfig = Field(default_factory=BuildConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _check_consistency(self) -> ToolrailConfig:
        if self.retry.max_delay_ms < self.retry.base_delay_ms:
            msg = "retry.max_delay_ms must be >= retry.base_delay_ms"
            raise ValueError(msg)
        if self.runtime.default_mode not in self.build.modes:
            msg = (
                f"runtime.default_mode {self.runtime.default_mode!r} "
                f"is not one of build.modes {self.build.modes}"
            )
            raise ValueError(msg)
        return self
