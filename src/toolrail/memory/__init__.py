"""Per-session call history, summaries, and duplicate detection."""

from toolrail.memory.dedup import DedupResult, DuplicateCallDetector
from toolrail.memory.store import CallHistory, CallRecord
from toolrail.memory.summarizer import CallSummarizer, default_summary

__all__ = [
    "CallHistory",
    "CallRecord",
    "CallSummarizer",
    "DedupResult",
    "DuplicateCallDetector",
    "default_summary",
]
