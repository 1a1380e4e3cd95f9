"""Canonical token usage counters shared by extraction, aggregation and billing."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

METRIC_FIELDS: tuple[str, ...] = (
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "reasoning_tokens",
    "accepted_prediction_tokens",
    "rejected_prediction_tokens",
    "audio_input_tokens",
    "audio_output_tokens",
)


def to_count(value: float | int) -> int:
    """Coerce a provider-reported number into a non-negative integer count."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    if value <= 0:
        return 0
    if isinstance(value, int):
        return value
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class UsageMetrics:
    """The ten canonical counters plus vendor-specific extras.

    ``additional_breakdown`` holds numeric fields that have no canonical slot,
    keyed by their normalized dotted path.
    """

    input_tokens: float = 0
    output_tokens: float = 0
    total_tokens: float = 0
    cache_read_tokens: float = 0
    cache_write_tokens: float = 0
    reasoning_tokens: float = 0
    accepted_prediction_tokens: float = 0
    rejected_prediction_tokens: float = 0
    audio_input_tokens: float = 0
    audio_output_tokens: float = 0
    additional_breakdown: dict[str, float] = field(default_factory=dict)

    def add(self, other: UsageMetrics) -> None:
        """Add every counter and breakdown key of ``other`` into this instance."""
        for name in METRIC_FIELDS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        for key, value in other.additional_breakdown.items():
            self.additional_breakdown[key] = self.additional_breakdown.get(key, 0) + value

    def has_usage(self) -> bool:
        """True when at least one canonical counter is positive."""
        return any(getattr(self, name) > 0 for name in METRIC_FIELDS)

    def as_counters(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in METRIC_FIELDS}

    def rounded(self) -> UsageMetrics:
        """Return a copy with every counter coerced to a non-negative integer."""
        return UsageMetrics(
            **{name: to_count(getattr(self, name)) for name in METRIC_FIELDS},
            additional_breakdown={
                key: to_count(value) for key, value in self.additional_breakdown.items()
            },
        )
