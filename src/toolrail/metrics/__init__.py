"""In-process tool execution metrics."""

from toolrail.metrics.collector import MetricsCollector, percentile

__all__ = ["MetricsCollector", "percentile"]
