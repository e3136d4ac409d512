"""ToolResponse envelope - the contract between handlers, engine, orchestrator.

Invariants:

1. Every tool call yields exactly one ``ToolResponse``.
2. ``ok`` is a bool; ``ok=False`` requires ``error`` and ``ok=True``
   forbids it.
3. ``error`` carries ``type``, a non-empty ``message`` and a bool
   ``retryable``.
4. ``intents`` may accompany success and failure alike.
5. ``meta`` is always present once the engine has normalized a response.

Handlers may return either a :class:`ToolResponse` or a plain mapping
with camelCase keys (the wire shape). :func:`validate_tool_response`
accepts both and yields a :class:`ToolResponse`.
"""

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from toolrail.core.errors import ErrorKind, MalformedResponseError, is_error_kind

RESPONSE_SCHEMA_VERSION = "1.0.0"


# ─── Intents ──────────────────────────────────────────────────


class IntentType(enum.StrEnum):
    """Declarative session-state changes a handler may request."""

    END_SESSION = "END_SESSION"
    SUPPRESS_AUDIO = "SUPPRESS_AUDIO"
    SUPPRESS_TRANSCRIPT = "SUPPRESS_TRANSCRIPT"
    SET_PENDING_MESSAGE = "SET_PENDING_MESSAGE"


def end_session(after: str = "current_turn") -> dict[str, Any]:
    """Intent: mark the session to end once *after* is satisfied."""
    return {"type": IntentType.END_SESSION.value, "after": after}


def suppress_audio(value: bool = True) -> dict[str, Any]:
    """Intent: toggle audio generation for the response."""
    return {"type": IntentType.SUPPRESS_AUDIO.value, "value": value}


def suppress_transcript(value: bool = True) -> dict[str, Any]:
    """Intent: toggle transcript display for the response."""
    return {"type": IntentType.SUPPRESS_TRANSCRIPT.value, "value": value}


def set_pending_message(message: str) -> dict[str, Any]:
    """Intent: queue *message* for the next turn."""
    return {"type": IntentType.SET_PENDING_MESSAGE.value, "message": message}


# ─── Envelope types ───────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ToolErrorInfo:
    """Structured failure carried by an ``ok=False`` response."""

    type: str
    message: str
    retryable: bool = False
    idempotency_required: bool = False
    partial_side_effects: bool = False
    details: Any = None
    unavailable: bool = False
    confirmation_request: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": self.type,
            "message": self.message,
            "retryable": self.retryable,
            "idempotencyRequired": self.idempotency_required,
            "partialSideEffects": self.partial_side_effects,
        }
        if self.details is not None:
            out["details"] = self.details
        if self.unavailable:
            out["unavailable"] = True
        if self.confirmation_request is not None:
            out["confirmationRequest"] = self.confirmation_request
        return out

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ToolErrorInfo:
        return cls(
            type=raw["type"],
            message=raw["message"],
            retryable=raw["retryable"],
            idempotency_required=bool(raw.get("idempotencyRequired", False)),
            partial_side_effects=bool(raw.get("partialSideEffects", False)),
            details=raw.get("details"),
            unavailable=bool(raw.get("unavailable", False)),
            confirmation_request=raw.get("confirmationRequest"),
        )


@dataclass(frozen=True, slots=True)
class ResponseMeta:
    """Execution metadata stamped onto every normalized response."""

    tool_id: str
    tool_version: str | None = None
    registry_version: str | None = None
    duration_ms: float = 0.0
    response_schema_version: str = RESPONSE_SCHEMA_VERSION
    cached: bool = False
    guidance: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "toolId": self.tool_id,
            "toolVersion": self.tool_version,
            "registryVersion": self.registry_version,
            "durationMs": self.duration_ms,
            "responseSchemaVersion": self.response_schema_version,
        }
        if self.cached:
            out["cached"] = True
        if self.guidance is not None:
            out["guidance"] = self.guidance
        return out


@dataclass(frozen=True, slots=True)
class ToolResponse:
    """Uniform success/failure envelope for a tool call."""

    ok: bool
    data: Any = None
    error: ToolErrorInfo | None = None
    intents: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    meta: ResponseMeta | None = None

    def with_meta(self, **changes: Any) -> ToolResponse:
        """Return a copy whose meta has *changes* applied."""
        if self.meta is None:
            meta = ResponseMeta(**changes)
        else:
            meta = dataclasses.replace(self.meta, **changes)
        return dataclasses.replace(self, meta=meta)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire shape."""
        out: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            out["data"] = self.data
        else:
            out["error"] = self.error.to_dict() if self.error else None
        out["intents"] = [dict(i) for i in self.intents]
        if self.meta is not None:
            out["meta"] = self.meta.to_dict()
        return out


# ─── Constructors ─────────────────────────────────────────────


def success(
    data: Any = None,
    intents: Sequence[Mapping[str, Any]] = (),
) -> ToolResponse:
    """Build a success envelope (meta is stamped later by the engine)."""
    return ToolResponse(ok=True, data=data, intents=tuple(dict(i) for i in intents))


def failure(
    kind: ErrorKind | str,
    message: str,
    *,
    retryable: bool = False,
    idempotency_required: bool = False,
    partial_side_effects: bool = False,
    details: Any = None,
    unavailable: bool = False,
    confirmation_request: dict[str, Any] | None = None,
    intents: Sequence[Mapping[str, Any]] = (),
    meta: ResponseMeta | None = None,
) -> ToolResponse:
    """Build a failure envelope."""
    return ToolResponse(
        ok=False,
        error=ToolErrorInfo(
            type=str(kind),
            message=message,
            retryable=retryable,
            idempotency_required=idempotency_required,
            partial_side_effects=partial_side_effects,
            details=details,
            unavailable=unavailable,
            confirmation_request=confirmation_request,
        ),
        intents=tuple(dict(i) for i in intents),
        meta=meta,
    )


def rejection(
    tool_id: str,
    kind: ErrorKind,
    message: str,
    *,
    details: Any = None,
    tool_version: str | None = None,
    registry_version: str | None = None,
    confirmation_request: dict[str, Any] | None = None,
) -> ToolResponse:
    """Pre-execution or policy failure: nothing ran, nothing to retry."""
    return failure(
        kind,
        message,
        retryable=False,
        partial_side_effects=False,
        details=details,
        confirmation_request=confirmation_request,
        meta=ResponseMeta(
            tool_id=tool_id,
            tool_version=tool_version,
            registry_version=registry_version,
            duration_ms=0.0,
        ),
    )


# ─── Validation ───────────────────────────────────────────────


def _check_intents(intents: object) -> tuple[dict[str, Any], ...]:
    if isinstance(intents, (str, bytes)) or not isinstance(intents, Sequence):
        msg = "ToolResponse.intents must be a list if present"
        raise MalformedResponseError(msg)
    checked: list[dict[str, Any]] = []
    for intent in intents:
        if not isinstance(intent, Mapping):
            msg = "Each intent must be an object"
            raise MalformedResponseError(msg)
        if not isinstance(intent.get("type"), str) or not intent["type"]:
            msg = "Each intent must have type string"
            raise MalformedResponseError(msg)
        checked.append(dict(intent))
    return tuple(checked)


def _check_error(error: object) -> None:
    if isinstance(error, ToolErrorInfo):
        error = error.to_dict()
    if not isinstance(error, Mapping):
        msg = "ToolResponse with ok=false must have error object"
        raise MalformedResponseError(msg)
    if not isinstance(error.get("type"), str) or not error["type"]:
        msg = "ToolResponse.error must have type string"
        raise MalformedResponseError(msg)
    if not is_error_kind(error["type"]):
        msg = f"ToolResponse.error.type {error['type']!r} is not a known error kind"
        raise MalformedResponseError(msg)
    if not isinstance(error.get("message"), str) or not error["message"]:
        msg = "ToolResponse.error must have message string"
        raise MalformedResponseError(msg)
    if not isinstance(error.get("retryable"), bool):
        msg = "ToolResponse.error must have retryable boolean"
        raise MalformedResponseError(msg)


def validate_tool_response(response: object) -> ToolResponse:
    """Check *response* against the envelope contract.

    Returns:
        The response as a :class:`ToolResponse`.

    Raises:
        MalformedResponseError: Describing the first violated rule.
    """
    if isinstance(response, ToolResponse):
        if not isinstance(response.ok, bool):
            msg = "ToolResponse.ok must be boolean"
            raise MalformedResponseError(msg)
        if response.ok and response.error is not None:
            msg = "ToolResponse with ok=true must not carry an error"
            raise MalformedResponseError(msg)
        if not response.ok:
            _check_error(response.error)
        _check_intents(response.intents)
        return response

    if not isinstance(response, Mapping):
        msg = "ToolResponse must be an object"
        raise MalformedResponseError(msg)

    ok = response.get("ok")
    if not isinstance(ok, bool):
        msg = "ToolResponse.ok must be boolean"
        raise MalformedResponseError(msg)

    error: ToolErrorInfo | None = None
    if ok:
        if response.get("error") is not None:
            msg = "ToolResponse with ok=true must not carry an error"
            raise MalformedResponseError(msg)
    else:
        raw_error = response.get("error")
        _check_error(raw_error)
        assert isinstance(raw_error, Mapping)
        error = ToolErrorInfo.from_mapping(raw_error)

    intents: tuple[dict[str, Any], ...] = ()
    if response.get("intents") is not None:
        intents = _check_intents(response["intents"])

    raw_meta = response.get("meta")
    if raw_meta is not None and not isinstance(raw_meta, Mapping):
        msg = "ToolResponse.meta must be an object if present"
        raise MalformedResponseError(msg)

    return ToolResponse(
        ok=ok,
        data=response.get("data") if ok else None,
        error=error,
        intents=intents,
    )
