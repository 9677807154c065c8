"""
Unit tests for token path parsing and token extraction.
"""

import pytest

from ai_gateway.core.token_counter import TokenFieldMap, TokenPath, extract_token_usage


def _mapping(prompt="usage.prompt_tokens", completion="usage.completion_tokens", total=None):
    return TokenFieldMap(
        prompt=TokenPath.parse(prompt),
        completion=TokenPath.parse(completion),
        total=TokenPath.parse(total) if total else None,
    )


class TestTokenPath:
    """Test token path validation."""

    def test_parse_keys_and_indices(self):
        """Verify keys and list indices are recognised."""
        path = TokenPath.parse("choices.0.usage.total")
        assert path.segments == ("choices", 0, "usage", "total")
        assert str(path) == "choices.0.usage.total"

    @pytest.mark.parametrize("raw", ["", "  ", "usage..tokens", "usage.-1", "usage.tok ens", "1abc.x"])
    def test_invalid_paths_rejected(self, raw):
        """Verify malformed paths raise ValueError."""
        with pytest.raises(ValueError):
            TokenPath.parse(raw)

    def test_resolve_misses_return_none(self):
        """Verify missing keys, short lists and wrong types resolve to None."""
        body = {"choices": [{"usage": {"total": 5}}]}
        assert TokenPath.parse("choices.0.usage.total").resolve(body) == 5
        assert TokenPath.parse("choices.3.usage.total").resolve(body) is None
        assert TokenPath.parse("choices.missing").resolve(body) is None
        assert TokenPath.parse("usage.total").resolve(["not", "a", "dict"]) is None


class TestExtractTokenUsage:
    """Test token extraction from response bodies."""

    def test_openai_shape(self):
        """Verify counts are read from their configured paths."""
        body = {"usage": {"prompt_tokens": 12, "completion_tokens": 30, "total_tokens": 42}}
        usage = extract_token_usage(body, _mapping(total="usage.total_tokens"))

        assert usage.prompt_tokens == 12
        assert usage.completion_tokens == 30
        assert usage.total_tokens == 42

    def test_total_falls_back_when_absent(self):
        """Verify total defaults to prompt + completion without a total path."""
        body = {"usage": {"prompt_tokens": 12, "completion_tokens": 30}}
        assert extract_token_usage(body, _mapping()).total_tokens == 42

    def test_total_falls_back_when_zero(self):
        """Verify a reported zero total is replaced by the sum."""
        body = {"usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 0}}
        assert extract_token_usage(body, _mapping(total="usage.total_tokens")).total_tokens == 7

    def test_bad_values_become_zero(self):
        """Verify strings, booleans, negatives and non-finite numbers count as zero."""
        body = {"usage": {"prompt_tokens": "12", "completion_tokens": True, "total_tokens": -5}}
        usage = extract_token_usage(body, _mapping(total="usage.total_tokens"))
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (0, 0, 0)

        infinite = {"usage": {"prompt_tokens": float("inf"), "completion_tokens": float("nan")}}
        usage = extract_token_usage(infinite, _mapping())
        assert (usage.prompt_tokens, usage.completion_tokens) == (0, 0)

    @pytest.mark.parametrize("body", [None, "text", [], {}, {"usage": None}])
    def test_never_raises(self, body):
        """Verify any body shape yields zero usage."""
        usage = extract_token_usage(body, _mapping())
        assert usage.total_tokens == 0

    def test_float_counts_truncate(self):
        """Verify float counts are converted to integers."""
        body = {"usage": {"prompt_tokens": 10.0, "completion_tokens": 2.7}}
        usage = extract_token_usage(body, _mapping())
        assert (usage.prompt_tokens, usage.completion_tokens) == (10, 2)
