"""Locate and normalize token usage inside arbitrary LLM response payloads.

Provider SDKs report usage in many shapes (``usage``, ``usage_metadata``,
``estimatedTokenUsage``, Bedrock invocation metrics, bare ``prompt_tokens``
objects) and nest them anywhere inside execution traces. The extractor walks
the payload depth-first, pre-order, and emits at most one usage entry per
subtree: once a node yields usage, its children are not visited.

Nothing in this module raises on unexpected input; payloads without usage
simply produce no entries.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from tokenledger.metering.metrics import UsageMetrics

MODEL_KEYS: tuple[str, ...] = ("model", "modelName", "model_name")
RESPONSE_METADATA_KEYS: tuple[str, ...] = ("response_metadata", "responseMetadata")

ACTUAL_USAGE_CONTAINERS = frozenset(
    {"usage", "usagemetadata", "usage_metadata", "amazon-bedrock-invocationmetrics"}
)
ESTIMATED_USAGE_CONTAINERS = frozenset(
    {"estimatedtokenusage", "estimated_token_usage", "tokenusage", "token_usage"}
)
USAGE_CONTAINERS = ACTUAL_USAGE_CONTAINERS | ESTIMATED_USAGE_CONTAINERS

USAGE_SIGNAL_KEYS = frozenset(
    {
        "input_tokens",
        "inputTokens",
        "output_tokens",
        "outputTokens",
        "total_tokens",
        "totalTokens",
        "prompt_tokens",
        "promptTokens",
        "completion_tokens",
        "completionTokens",
        "inputTokenCount",
        "outputTokenCount",
    }
)

DIRECT_SOURCE = "direct_usage_object"

# Normalized flattened key -> canonical metric attribute.
TOKEN_ALIASES: dict[str, str] = {
    "input_tokens": "input_tokens",
    "prompt_tokens": "input_tokens",
    "input_token_count": "input_tokens",
    "prompt_token_count": "input_tokens",
    "output_tokens": "output_tokens",
    "completion_tokens": "output_tokens",
    "output_token_count": "output_tokens",
    "candidates_token_count": "output_tokens",
    "total_tokens": "total_tokens",
    "total_token_count": "total_tokens",
    "cache_read_tokens": "cache_read_tokens",
    "cache_read_input_tokens": "cache_read_tokens",
    "cached_content_token_count": "cache_read_tokens",
    "prompt_tokens_details.cached_tokens": "cache_read_tokens",
    "input_token_details.cache_read": "cache_read_tokens",
    "input_token_details.cache_read_input_tokens": "cache_read_tokens",
    "cache_write_tokens": "cache_write_tokens",
    "cache_creation_input_tokens": "cache_write_tokens",
    "prompt_tokens_details.cache_creation_tokens": "cache_write_tokens",
    "input_token_details.cache_creation": "cache_write_tokens",
    "reasoning_tokens": "reasoning_tokens",
    "thoughts_token_count": "reasoning_tokens",
    "completion_tokens_details.reasoning_tokens": "reasoning_tokens",
    "output_token_details.reasoning": "reasoning_tokens",
    "accepted_prediction_tokens": "accepted_prediction_tokens",
    "completion_tokens_details.accepted_prediction_tokens": "accepted_prediction_tokens",
    "rejected_prediction_tokens": "rejected_prediction_tokens",
    "completion_tokens_details.rejected_prediction_tokens": "rejected_prediction_tokens",
    "audio_tokens": "audio_input_tokens",
    "prompt_tokens_details.audio_tokens": "audio_input_tokens",
    "input_token_details.audio": "audio_input_tokens",
    "audio_output_tokens": "audio_output_tokens",
    "completion_tokens_details.audio_tokens": "audio_output_tokens",
    "output_token_details.audio": "audio_output_tokens",
}

DIRECT_INPUT_KEYS = ("input_tokens", "prompt_tokens", "promptTokens", "inputTokenCount", "inputTokens")
DIRECT_OUTPUT_KEYS = ("output_tokens", "completion_tokens", "outputTokenCount", "completionTokens", "outputTokens")
DIRECT_TOTAL_KEYS = ("total_tokens", "totalTokens")

_NUMERIC_SEGMENT = re.compile(r"\.\d+(?=\.|$)")
_UPPER = re.compile(r"([A-Z])")
_REPEATED_UNDERSCORE = re.compile(r"__+")


@dataclass(frozen=True)
class UsageEntry:
    """One usage-bearing object found in a payload."""

    usage: dict[str, Any]
    model: str | None = None
    source: str = DIRECT_SOURCE


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _safe_number(value: Any) -> float:
    """Return ``value`` as a number, accepting numeric strings; 0 otherwise."""
    if _is_number(value):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return 0
        if math.isfinite(parsed):
            return int(parsed) if parsed.is_integer() else parsed
    return 0


def _camel_to_snake(key: str) -> str:
    return _UPPER.sub(r"_\1", key).lower()


def normalize_container_key(key: Any) -> str | None:
    """Return the usage container name ``key`` stands for, or None.

    ``usageMetadata`` matches as ``usage_metadata``; keys such as
    ``amazon-bedrock-invocationMetrics`` only match once lowercased.
    """
    snake = _camel_to_snake(str(key))
    if snake in USAGE_CONTAINERS:
        return snake
    lowered = str(key).lower()
    if lowered in USAGE_CONTAINERS:
        return lowered
    return None


def normalize_breakdown_key(key: str) -> str:
    """Normalize a dotted flattened path for alias lookup.

    ``completionTokensDetails.0.reasoningTokens`` becomes
    ``completion_tokens_details.reasoning_tokens``.
    """
    key = _NUMERIC_SEGMENT.sub("", key)
    key = _camel_to_snake(key)
    key = _REPEATED_UNDERSCORE.sub("_", key)
    key = key.replace("._", ".")
    return key.lstrip("_")


def flatten_numeric_fields(value: Any) -> dict[str, float]:
    """Flatten nested dicts/lists into ``dotted.path -> number`` pairs.

    List items contribute their index as a path segment. Non-numeric leaves
    (strings, booleans, None) are dropped.
    """
    output: dict[str, float] = {}
    stack: list[tuple[Any, tuple[str, ...], frozenset[int]]] = [(value, (), frozenset())]
    while stack:
        node, path, ancestors = stack.pop()
        if _is_number(node):
            if path:
                key = ".".join(path)
                output[key] = output.get(key, 0) + node
            continue
        if isinstance(node, (Mapping, list, tuple)):
            # Shared sub-objects are walked each time; only a container nested in itself is cut.
            if id(node) in ancestors:
                continue
            inner = ancestors | {id(node)}
            if isinstance(node, Mapping):
                children = [(child, (*path, str(key)), inner) for key, child in node.items()]
            else:
                children = [(child, (*path, str(index)), inner) for index, child in enumerate(node)]
            stack.extend(reversed(children))
    return output


def derive_metrics(usage: Mapping[str, Any]) -> UsageMetrics:
    """Derive canonical counters from one usage object.

    Flattened numeric leaves are mapped through :data:`TOKEN_ALIASES`
    (full normalized path first, then its last segment); unmapped leaves go
    to ``additional_breakdown``. Common top-level fields are read directly as
    well and replace the flattened value only when larger, so a provider
    that reports both a flat total and a detailed breakdown is never counted
    twice.
    """
    metrics = UsageMetrics()

    for raw_key, value in flatten_numeric_fields(usage).items():
        key = normalize_breakdown_key(raw_key)
        metric = TOKEN_ALIASES.get(key) or TOKEN_ALIASES.get(key.rsplit(".", 1)[-1])
        if metric:
            setattr(metrics, metric, getattr(metrics, metric) + value)
        else:
            metrics.additional_breakdown[key] = metrics.additional_breakdown.get(key, 0) + value

    direct_input = sum(_safe_number(usage.get(key)) for key in DIRECT_INPUT_KEYS)
    direct_output = sum(_safe_number(usage.get(key)) for key in DIRECT_OUTPUT_KEYS)
    direct_total = sum(_safe_number(usage.get(key)) for key in DIRECT_TOTAL_KEYS)

    if direct_input > 0:
        metrics.input_tokens = max(metrics.input_tokens, direct_input)
    if direct_output > 0:
        metrics.output_tokens = max(metrics.output_tokens, direct_output)
    if direct_total > 0:
        metrics.total_tokens = max(metrics.total_tokens, direct_total)
    if not metrics.total_tokens and (metrics.input_tokens or metrics.output_tokens):
        metrics.total_tokens = metrics.input_tokens + metrics.output_tokens

    return metrics


def resolve_model(obj: Mapping[str, Any], inherited: str | None = None) -> str | None:
    """Return the model named on ``obj`` or its response metadata, else ``inherited``."""
    for key in MODEL_KEYS:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value

    for metadata_key in RESPONSE_METADATA_KEYS:
        metadata = obj.get(metadata_key)
        if isinstance(metadata, Mapping):
            for key in MODEL_KEYS:
                value = metadata.get(key)
                if isinstance(value, str) and value:
                    return value
            break

    return inherited


def has_usage_signals(obj: Mapping[str, Any]) -> bool:
    return any(key in obj for key in USAGE_SIGNAL_KEYS)


def _candidate_priority(normalized_key: str) -> int:
    if normalized_key in ACTUAL_USAGE_CONTAINERS:
        return 1
    if normalized_key in ESTIMATED_USAGE_CONTAINERS:
        return 2
    return 3


def pick_preferred_usage(obj: Mapping[str, Any], model: str | None = None) -> UsageEntry | None:
    """Select the single best usage container among ``obj``'s direct children.

    Actual usage containers outrank estimated ones; within a rank the larger
    derived total wins. With no container, ``obj`` itself is used when it
    carries usage fields directly.
    """
    candidates: list[tuple[int, float, int, str, Mapping[str, Any]]] = []

    for position, (key, child) in enumerate(obj.items()):
        if not isinstance(child, Mapping):
            continue
        normalized = normalize_container_key(key)
        if normalized is None:
            continue
        total = derive_metrics(child).total_tokens
        candidates.append((_candidate_priority(normalized), -total, position, normalized, child))

    if not candidates:
        if has_usage_signals(obj):
            return UsageEntry(usage=dict(obj), model=model, source=DIRECT_SOURCE)
        return None

    _, _, _, source, usage = min(candidates, key=lambda c: c[:3])
    return UsageEntry(usage=dict(usage), model=model, source=source)


def extract_usage_entries(payload: Any) -> list[UsageEntry]:
    """Walk ``payload`` and return usage entries in visitation order.

    The model resolved on an object is inherited by its descendants unless a
    descendant names its own.
    """
    entries: list[UsageEntry] = []
    stack: list[tuple[Any, str | None, frozenset[int]]] = [(payload, None, frozenset())]

    while stack:
        node, inherited_model, ancestors = stack.pop()
        if not isinstance(node, (Mapping, list, tuple)):
            continue
        if id(node) in ancestors:
            continue
        inner = ancestors | {id(node)}

        if not isinstance(node, Mapping):
            stack.extend((item, inherited_model, inner) for item in reversed(node))
            continue

        model = resolve_model(node, inherited_model)
        entry = pick_preferred_usage(node, model)
        if entry is not None:
            entries.append(entry)
            continue

        children = [child for child in node.values() if isinstance(child, (Mapping, list, tuple))]
        stack.extend((child, model, inner) for child in reversed(children))

    return entries
