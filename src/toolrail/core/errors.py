"""Exception hierarchy and error vocabulary for toolrail.

Every module imports from here. The library hierarchy is:

    ToolrailError
    ├── ConfigError
    ├── BuildError(violations)
    ├── RegistryError
    │   ├── RegistryLockedError
    │   └── HandlerResolutionError
    └── MalformedResponseError

``ToolError`` is separate: it is what tool handlers raise to report a
classified domain failure. The execution engine catches it and turns it
into a failure envelope; it never escapes to the orchestrator.
"""

from __future__ import annotations

import enum
from typing import Any


class ToolrailError(Exception):
    """Base exception for all toolrail errors."""


# ─── Error vocabulary ─────────────────────────────────────────


class ErrorKind(enum.StrEnum):
    """Closed set of failure classifications carried in ``error.type``."""

    # Pre-execution (registry / engine)
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"

    # Policy (orchestrator-facing guards)
    MODE_RESTRICTED = "MODE_RESTRICTED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
    LOOP_DETECTED = "LOOP_DETECTED"

    # Domain (tool handlers)
    SESSION_INACTIVE = "SESSION_INACTIVE"
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH"
    CONFLICT = "CONFLICT"


class ErrorLayer(enum.Enum):
    """Which layer is allowed to generate a given error kind."""

    PRE_EXECUTION = "pre_execution"
    POLICY = "policy"
    DOMAIN = "domain"


ERROR_LAYERS: dict[ErrorKind, ErrorLayer] = {
    ErrorKind.VALIDATION: ErrorLayer.PRE_EXECUTION,
    ErrorKind.NOT_FOUND: ErrorLayer.PRE_EXECUTION,
    ErrorKind.INTERNAL: ErrorLayer.PRE_EXECUTION,
    ErrorKind.MODE_RESTRICTED: ErrorLayer.POLICY,
    ErrorKind.BUDGET_EXCEEDED: ErrorLayer.POLICY,
    ErrorKind.CONFIRMATION_REQUIRED: ErrorLayer.POLICY,
    ErrorKind.LOOP_DETECTED: ErrorLayer.POLICY,
    ErrorKind.SESSION_INACTIVE: ErrorLayer.DOMAIN,
    ErrorKind.TRANSIENT: ErrorLayer.DOMAIN,
    ErrorKind.PERMANENT: ErrorLayer.DOMAIN,
    ErrorKind.RATE_LIMIT: ErrorLayer.DOMAIN,
    ErrorKind.AUTH: ErrorLayer.DOMAIN,
    ErrorKind.CONFLICT: ErrorLayer.DOMAIN,
}


def layer_of(kind: ErrorKind | str) -> ErrorLayer | None:
    """Return the generating layer for *kind*, or None if unrecognized."""
    try:
        return ERROR_LAYERS[ErrorKind(kind)]
    except ValueError:
        return None


def is_error_kind(value: object) -> bool:
    """Check whether *value* names a member of :class:`ErrorKind`."""
    return isinstance(value, str) and value in ErrorKind.__members__


# ─── Handler errors ───────────────────────────────────────────


class ToolError(Exception):
    """Classified failure raised by a tool handler.

    The engine preserves ``retryable``, ``idempotency_required`` and
    ``partial_side_effects`` when normalizing this into an envelope.
    ``unavailable`` marks a transient failure where the dependent
    service is wholly down, which selects the slower backoff curve.

    Example::

        raise ToolError(
            ErrorKind.TRANSIENT,
            "vector store timed out",
            retryable=True,
        )
    """

    def __init__(
        self,
        kind: ErrorKind | str,
        message: str,
        *,
        retryable: bool = False,
        idempotency_required: bool = False,
        partial_side_effects: bool = False,
        details: Any = None,
        unavailable: bool = False,
        confirmation_request: dict[str, Any] | None = None,
    ) -> None:
        self.kind = ErrorKind(kind)
        self.message = message
        self.retryable = retryable
        self.idempotency_required = idempotency_required
        self.partial_side_effects = partial_side_effects
        self.details = details
        self.unavailable = unavailable
        self.confirmation_request = confirmation_request
        super().__init__(f"[{self.kind}] {message}")


# ─── Configuration Errors ─────────────────────────────────────


class ConfigError(ToolrailError):
    """Invalid configuration."""


# ─── Build Errors ─────────────────────────────────────────────


class BuildError(ToolrailError):
    """One or more tool definitions failed validation.

    Carries every violation found across all tools so the build can
    report them together.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        count = len(self.violations)
        noun = "violation" if count == 1 else "violations"
        super().__init__(f"Tool registry build failed with {count} {noun}")


# ─── Registry Errors ──────────────────────────────────────────


class RegistryError(ToolrailError):
    """Registry could not be loaded or was used incorrectly."""


class RegistryLockedError(RegistryError):
    """Mutation attempted on a locked registry."""


class HandlerResolutionError(RegistryError):
    """A handler reference could not be resolved to a callable."""

    def __init__(self, handler_ref: str, reason: str) -> None:
        self.handler_ref = handler_ref
        super().__init__(f"Cannot resolve handler {handler_ref!r}: {reason}")


# ─── Envelope Errors ──────────────────────────────────────────


class MalformedResponseError(ToolrailError):
    """A handler returned something that is not a valid ToolResponse."""
