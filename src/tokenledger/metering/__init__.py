"""Pure usage metering: extraction, aggregation and proportional distribution.

Everything in this package is stateless and safe to run concurrently for
independent executions.
"""

from __future__ import annotations

from tokenledger.metering.aggregator import UNKNOWN_MODEL, UsageAggregate, aggregate_usage, top_model
from tokenledger.metering.distributor import distribute
from tokenledger.metering.extractor import UsageEntry, derive_metrics, extract_usage_entries
from tokenledger.metering.metrics import METRIC_FIELDS, UsageMetrics, to_count

__all__ = [
    "METRIC_FIELDS",
    "UNKNOWN_MODEL",
    "UsageAggregate",
    "UsageEntry",
    "UsageMetrics",
    "aggregate_usage",
    "derive_metrics",
    "distribute",
    "extract_usage_entries",
    "to_count",
    "top_model",
]
