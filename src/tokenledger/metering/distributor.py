"""Integer proportional distribution with exact conservation."""

from __future__ import annotations

from collections.abc import Sequence


def distribute(total: int, weights: Sequence[int]) -> list[int]:
    """Split ``total`` across ``weights`` so the shares sum to ``total`` exactly.

    Each share starts at ``floor(total * weight / sum(weights))``; leftover
    units go one at a time to the largest fractional remainders, ties broken
    by position. Remainders are compared as exact integers.

    Edge cases:
        * empty ``weights`` -> ``[]``
        * ``total <= 0`` -> all zeros
        * all-zero weights -> the whole total on index 0

    Raises:
        ValueError: If any weight is negative.
    """
    count = len(weights)
    if not count:
        return []
    if any(weight < 0 for weight in weights):
        raise ValueError(f"Weights must be non-negative: {list(weights)}")
    if total <= 0:
        return [0] * count

    weight_sum = sum(weights)
    if weight_sum == 0:
        return [total] + [0] * (count - 1)

    shares: list[int] = []
    remainders: list[int] = []
    for weight in weights:
        share, remainder = divmod(total * weight, weight_sum)
        shares.append(share)
        remainders.append(remainder)

    leftover = total - sum(shares)
    order = sorted(range(count), key=lambda index: (-remainders[index], index))
    for index in order[:leftover]:
        shares[index] += 1

    return shares
