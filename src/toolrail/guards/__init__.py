"""Pre-execution guards: mode, confirmation, budget, and loop checks."""

from toolrail.guards.loop import LoopCheck, LoopDetector
from toolrail.guards.policy import PolicyGuard, TurnCounts

__all__ = ["LoopCheck", "LoopDetector", "PolicyGuard", "TurnCounts"]
