"""Session state controller - the only writer of session state.

Handlers never touch session state. They return intents, and the
controller applies them here through explicit mutation methods, so an
intent can never be lost by updating a copy.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from toolrail.core.envelope import IntentType

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

DEFAULT_STATE: dict[str, Any] = {
    "mode": "text",
    "isActive": True,
    "pendingEndSession": None,
    "suppressAudio": False,
    "suppressTranscript": False,
    "pendingMessage": None,
}


class StateController:
    """Owns one session's state record.

    Args:
        initial: Initial values, layered over :data:`DEFAULT_STATE`.
            Extra keys are kept as-is.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._state: dict[str, Any] = dict(DEFAULT_STATE)
        if initial:
            self._state.update(initial)

    def get(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._state[key] = value

    def view(self) -> Mapping[str, Any]:
        """Read-only live view, handed to tool handlers."""
        return MappingProxyType(self._state)

    def snapshot(self) -> Mapping[str, Any]:
        """Immutable deep copy of the current state."""
        return MappingProxyType(copy.deepcopy(self._state))

    # ── Intents ──────────────────────────────────────────────────

    def apply_intent(self, intent: object) -> None:
        """Apply one intent. Malformed or unknown intents are logged, never raised."""
        if not isinstance(intent, Mapping):
            logger.warning("Ignoring intent that is not an object: %r", intent)
            return
        kind = intent.get("type")
        if not isinstance(kind, str) or not kind:
            logger.warning("Ignoring intent without a type string: %r", intent)
            return

        if kind == IntentType.END_SESSION:
            after = intent.get("after")
            if not after:
                logger.warning('END_SESSION intent missing "after"; ending immediately')
                after = "immediate"
            self._state["pendingEndSession"] = {"after": after}

        elif kind == IntentType.SUPPRESS_AUDIO:
            self._state["suppressAudio"] = _flag(intent, kind)

        elif kind == IntentType.SUPPRESS_TRANSCRIPT:
            self._state["suppressTranscript"] = _flag(intent, kind)

        elif kind == IntentType.SET_PENDING_MESSAGE:
            message = intent.get("message")
            if not isinstance(message, str) or not message:
                logger.warning('SET_PENDING_MESSAGE intent missing or invalid "message"')
                return
            self._state["pendingMessage"] = message

        else:
            logger.warning("Unknown intent type: %s", kind)

    def apply_intents(self, intents: Iterable[object]) -> None:
        for intent in intents:
            self.apply_intent(intent)


def _flag(intent: Mapping[str, Any], kind: str) -> bool:
    value = intent.get("value")
    if not isinstance(value, bool):
        logger.warning('%s intent missing or invalid "value"; defaulting to true', kind)
        return True
    return value
