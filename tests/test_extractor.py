"""Tests for usage extraction from provider payloads."""

import pytest

from tokenledger.metering.extractor import (
    DIRECT_SOURCE,
    derive_metrics,
    extract_usage_entries,
    flatten_numeric_fields,
    normalize_breakdown_key,
    normalize_container_key,
    pick_preferred_usage,
    resolve_model,
)


class TestNormalization:
    """Key normalization helpers."""

    @pytest.mark.parametrize(
        "key, expected",
        [
            ("usage", "usage"),
            ("usageMetadata", "usage_metadata"),
            ("usage_metadata", "usage_metadata"),
            ("estimatedTokenUsage", "estimated_token_usage"),
            ("tokenUsage", "token_usage"),
            ("amazon-bedrock-invocationMetrics", "amazon-bedrock-invocationmetrics"),
            ("metadata", None),
            ("usages", None),
        ],
    )
    def test_normalize_container_key(self, key, expected):
        assert normalize_container_key(key) == expected

    def test_normalize_breakdown_key_strips_indices_and_snake_cases(self):
        assert (
            normalize_breakdown_key("completionTokensDetails.0.reasoningTokens")
            == "completion_tokens_details.reasoning_tokens"
        )

    def test_normalize_breakdown_key_strips_leading_underscore(self):
        assert normalize_breakdown_key("InputTokens") == "input_tokens"

    def test_flatten_sums_array_items_at_same_path(self):
        flat = flatten_numeric_fields({"a": [{"b": 1}, {"b": 2}], "c": True, "d": "7"})
        assert flat == {"a.0.b": 1, "a.1.b": 2}


class TestDeriveMetrics:
    """Metric derivation from a single usage object."""

    def test_openai_usage(self):
        metrics = derive_metrics(
            {
                "prompt_tokens": 100,
                "completion_tokens": 20,
                "total_tokens": 120,
                "prompt_tokens_details": {"cached_tokens": 40, "audio_tokens": 0},
                "completion_tokens_details": {
                    "reasoning_tokens": 8,
                    "accepted_prediction_tokens": 2,
                    "rejected_prediction_tokens": 1,
                },
            }
        )
        assert metrics.input_tokens == 100
        assert metrics.output_tokens == 20
        assert metrics.total_tokens == 120
        assert metrics.cache_read_tokens == 40
        assert metrics.reasoning_tokens == 8
        assert metrics.accepted_prediction_tokens == 2
        assert metrics.rejected_prediction_tokens == 1
        assert metrics.additional_breakdown == {}

    def test_langchain_usage_metadata_details(self):
        metrics = derive_metrics(
            {
                "input_tokens": 50,
                "output_tokens": 10,
                "input_token_details": {"cache_read": 5, "cache_creation": 3, "audio": 2},
                "output_token_details": {"reasoning": 4, "audio": 1},
            }
        )
        assert metrics.cache_read_tokens == 5
        assert metrics.cache_write_tokens == 3
        assert metrics.audio_input_tokens == 2
        assert metrics.reasoning_tokens == 4
        assert metrics.audio_output_tokens == 1
        assert metrics.total_tokens == 60

    def test_gemini_counts(self):
        metrics = derive_metrics(
            {"promptTokenCount": 10, "candidatesTokenCount": 5, "totalTokenCount": 15}
        )
        assert (metrics.input_tokens, metrics.output_tokens, metrics.total_tokens) == (10, 5, 15)

    def test_total_falls_back_to_input_plus_output(self):
        metrics = derive_metrics({"prompt_tokens": 100, "completion_tokens": 50})
        assert metrics.total_tokens == 150

    def test_direct_numeric_string_wins_when_larger(self):
        metrics = derive_metrics({"input_tokens": "12", "output_tokens": 3})
        assert metrics.input_tokens == 12
        assert metrics.total_tokens == 15

    def test_unmapped_fields_go_to_breakdown(self):
        metrics = derive_metrics(
            {
                "input_tokens": 5,
                "output_tokens": 5,
                "server_tool_use": {"web_search_requests": 2},
                "iterations": [{"tool_calls": 1}, {"tool_calls": 2}],
            }
        )
        assert metrics.additional_breakdown == {
            "server_tool_use.web_search_requests": 2,
            "iterations.tool_calls": 3,
        }
        assert metrics.total_tokens == 10

    def test_booleans_are_not_numbers(self):
        metrics = derive_metrics({"input_tokens": True, "output_tokens": 4})
        assert metrics.input_tokens == 0
        assert metrics.total_tokens == 4

    def test_key_order_does_not_matter(self):
        usage = {
            "prompt_tokens": 70,
            "completion_tokens": 30,
            "total_tokens": 100,
            "prompt_tokens_details": {"cached_tokens": 11, "audio_tokens": 3},
            "completion_tokens_details": {"reasoning_tokens": 6, "audio_tokens": 2},
            "server_tool_use": {"web_search_requests": 5, "code_runs": 1},
        }

        def reverse_keys(value):
            if isinstance(value, dict):
                return {key: reverse_keys(value[key]) for key in reversed(list(value))}
            return value

        reversed_usage = reverse_keys(usage)
        assert list(reversed_usage) != list(usage)
        assert derive_metrics(reversed_usage) == derive_metrics(usage)

    def test_shared_details_object_counts_for_both_sides(self):
        details = {"audio_tokens": 7}
        metrics = derive_metrics(
            {
                "prompt_tokens": 10,
                "completion_tokens": 10,
                "prompt_tokens_details": details,
                "completion_tokens_details": details,
            }
        )
        assert metrics.audio_input_tokens == 7
        assert metrics.audio_output_tokens == 7

    def test_flatten_stops_at_cycles(self):
        usage: dict = {"input_tokens": 3, "details": {}}
        usage["details"]["back"] = usage
        assert flatten_numeric_fields(usage) == {"input_tokens": 3}


class TestResolveModel:
    def test_prefers_own_model_key(self):
        assert resolve_model({"model": "gpt-4o", "modelName": "other"}, "parent") == "gpt-4o"

    def test_reads_response_metadata(self):
        obj = {"response_metadata": {"model_name": "gpt-4o-mini"}}
        assert resolve_model(obj, "parent") == "gpt-4o-mini"

    def test_ignores_empty_and_non_string(self):
        assert resolve_model({"model": "", "modelName": 3}, "parent") == "parent"


class TestPickPreferredUsage:
    def test_actual_outranks_estimated_even_when_smaller(self):
        entry = pick_preferred_usage(
            {"usage": {"total_tokens": 10}, "estimatedTokenUsage": {"totalTokens": 999}}
        )
        assert entry.source == "usage"
        assert entry.usage == {"total_tokens": 10}

    def test_larger_total_wins_within_rank(self):
        entry = pick_preferred_usage(
            {"usage": {"total_tokens": 5}, "usage_metadata": {"total_tokens": 9}}
        )
        assert entry.source == "usage_metadata"

    def test_tie_keeps_first_container(self):
        entry = pick_preferred_usage(
            {"usage": {"total_tokens": 5}, "usage_metadata": {"total_tokens": 5}}
        )
        assert entry.source == "usage"

    def test_direct_object(self):
        entry = pick_preferred_usage({"prompt_tokens": 7}, "gpt-4o")
        assert entry.source == DIRECT_SOURCE
        assert entry.model == "gpt-4o"

    def test_no_usage(self):
        assert pick_preferred_usage({"content": "hi"}) is None


class TestExtractUsageEntries:
    """End-to-end extraction over nested payloads."""

    def test_usage_container(self):
        entries = extract_usage_entries({"usage": {"prompt_tokens": 100, "completion_tokens": 50}})
        assert len(entries) == 1
        assert entries[0].source == "usage"
        metrics = derive_metrics(entries[0].usage)
        assert (metrics.input_tokens, metrics.output_tokens, metrics.total_tokens) == (100, 50, 150)

    def test_bedrock_invocation_metrics(self):
        entries = extract_usage_entries(
            {"amazon-bedrock-invocationMetrics": {"inputTokenCount": 7, "outputTokenCount": 3}}
        )
        assert entries[0].source == "amazon-bedrock-invocationmetrics"
        assert derive_metrics(entries[0].usage).total_tokens == 10

    def test_nested_trace_inherits_model(self):
        payload = {
            "model": "gpt-4o",
            "steps": [
                {"output": {"usage": {"input_tokens": 10, "output_tokens": 5}}},
                {"model": "claude-sonnet", "usage_metadata": {"input_tokens": 3, "output_tokens": 2}},
            ],
        }
        entries = extract_usage_entries(payload)
        assert [entry.model for entry in entries] == ["gpt-4o", "claude-sonnet"]
        assert [entry.source for entry in entries] == ["usage", "usage_metadata"]

    def test_winning_container_is_terminal(self):
        payload = {
            "usage": {"input_tokens": 1, "output_tokens": 1},
            "children": [{"usage": {"input_tokens": 100}}],
        }
        assert len(extract_usage_entries(payload)) == 1

    def test_direct_usage_inside_list(self):
        entries = extract_usage_entries([{"prompt_tokens": 7, "completion_tokens": 3}])
        assert entries[0].source == DIRECT_SOURCE

    def test_empty_container_still_selected(self):
        entries = extract_usage_entries({"usage": {}, "estimatedTokenUsage": {"totalTokens": 5}})
        assert entries[0].source == "usage"

    @pytest.mark.parametrize("payload", [None, "text", 42, 3.5, True, [], {}, [None, "x"]])
    def test_non_usage_values_yield_nothing(self, payload):
        assert extract_usage_entries(payload) == []

    def test_cyclic_payload_terminates(self):
        payload: dict = {"data": {}}
        payload["data"]["parent"] = payload
        assert extract_usage_entries(payload) == []

    def test_shared_message_counted_per_reference(self):
        message = {"usage": {"input_tokens": 4, "output_tokens": 1}}
        entries = extract_usage_entries({"messages": [message, message]})
        assert len(entries) == 2
        assert [entry.usage["input_tokens"] for entry in entries] == [4, 4]
