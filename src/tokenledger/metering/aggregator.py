"""Sum extracted usage entries into one execution-level total."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from tokenledger.metering.extractor import UsageEntry, derive_metrics
from tokenledger.metering.metrics import UsageMetrics

UNKNOWN_MODEL = "unknown"


@dataclass
class UsageAggregate:
    """Aggregated counters for one execution plus per-model and per-source tallies."""

    metrics: UsageMetrics = field(default_factory=UsageMetrics)
    model_totals: dict[str, float] = field(default_factory=dict)
    source_counts: dict[str, int] = field(default_factory=dict)
    entry_count: int = 0

    def has_usage(self) -> bool:
        return self.metrics.has_usage()


def aggregate_usage(entries: Iterable[UsageEntry]) -> UsageAggregate:
    """Aggregate usage entries.

    Entries without a resolved model are tallied under ``"unknown"``. The
    caller treats an aggregate whose canonical counters are all zero as "no
    usable usage", even when ``additional_breakdown`` is populated.
    """
    aggregate = UsageAggregate()
    for entry in entries:
        metrics = derive_metrics(entry.usage)
        aggregate.metrics.add(metrics)
        model = entry.model or UNKNOWN_MODEL
        aggregate.model_totals[model] = aggregate.model_totals.get(model, 0) + metrics.total_tokens
        aggregate.source_counts[entry.source] = aggregate.source_counts.get(entry.source, 0) + 1
        aggregate.entry_count += 1
    return aggregate


def top_model(model_totals: dict[str, float]) -> str | None:
    """Return the model with the largest total; the first one seen wins ties."""
    best: str | None = None
    best_total = None
    for model, total in model_totals.items():
        if best_total is None or total > best_total:
            best, best_total = model, total
    return best
