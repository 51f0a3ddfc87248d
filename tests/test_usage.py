"""
Tests for the usage accumulator and cost reporting.

Merging must be associative and commutative so usage from nested
calls composes the same way regardless of fold order.
"""

import pytest

from ralphloop.usage import (
    PriceTable,
    TokenRates,
    Usage,
    calculate_cost,
    format_usage_report,
    merge_usage,
    sum_usage,
)


class TestMergeUsage:
    """Test field-wise merging."""

    def test_merge_sums_every_field(self) -> None:
        """Test that merge sums every field."""
        a = Usage(input_tokens=10, output_tokens=5, total_tokens=15, cache_read_tokens=3, cache_write_tokens=1)
        b = Usage(input_tokens=7, output_tokens=2, total_tokens=9, cache_read_tokens=4, cache_write_tokens=2)

        merged = merge_usage(a, b)

        assert merged == Usage(
            input_tokens=17,
            output_tokens=7,
            total_tokens=24,
            cache_read_tokens=7,
            cache_write_tokens=3,
        )

    def test_optional_fields_propagate_from_either_side(self) -> None:
        """A cache count present on only one operand is kept."""
        a = Usage.from_counts(10, 5, cache_read_tokens=4)
        b = Usage.from_counts(1, 1)

        merged = merge_usage(a, b)

        assert merged.cache_read_tokens == 4
        assert merged.cache_write_tokens is None

    def test_absent_optional_fields_stay_absent(self) -> None:
        """Test that missing cache fields stay missing."""
        merged = merge_usage(Usage.from_counts(1, 2), Usage.from_counts(3, 4))
        assert merged.cache_read_tokens is None
        assert merged.cache_write_tokens is None

    def test_merge_is_commutative(self) -> None:
        """Test merge commutativity."""
        a = Usage.from_counts(10, 20, cache_read_tokens=5)
        b = Usage.from_counts(3, 4, cache_write_tokens=2)
        assert merge_usage(a, b) == merge_usage(b, a)

    def test_merge_is_associative(self) -> None:
        """Test merge associativity."""
        samples = [
            Usage.from_counts(10, 20, cache_read_tokens=5),
            Usage.from_counts(0, 0),
            Usage.from_counts(3, 4, cache_write_tokens=2),
            Usage(input_tokens=1, output_tokens=1, total_tokens=9),
        ]
        for a in samples:
            for b in samples:
                for c in samples:
                    assert merge_usage(merge_usage(a, b), c) == merge_usage(a, merge_usage(b, c))

    def test_plus_operator(self) -> None:
        """Test the + operator."""
        assert Usage.from_counts(1, 2) + Usage.from_counts(3, 4) == Usage.from_counts(4, 6)

    def test_sum_usage_of_nothing_is_zero(self) -> None:
        """Test summing no usage."""
        assert sum_usage([]) == Usage()

    def test_sum_usage(self) -> None:
        """Test summing several usages."""
        total = sum_usage(Usage.from_counts(i, i) for i in range(1, 4))
        assert total == Usage.from_counts(6, 6)


class TestApiUsageParsing:
    """Test parsing the usage object of OpenAI-compatible responses."""

    def test_parses_basic_counts(self) -> None:
        """Test parsing API usage counts."""
        usage = Usage.from_api_usage({"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20})
        assert usage == Usage(input_tokens=12, output_tokens=8, total_tokens=20)

    def test_parses_cache_details(self) -> None:
        """Test parsing cache details."""
        usage = Usage.from_api_usage({
            "prompt_tokens": 100,
            "completion_tokens": 10,
            "prompt_tokens_details": {"cached_tokens": 60},
            "cache_creation_input_tokens": 5,
        })
        assert usage.total_tokens == 110
        assert usage.cache_read_tokens == 60
        assert usage.cache_write_tokens == 5

    def test_missing_usage_is_zero(self) -> None:
        """Test that a missing usage block is zero."""
        assert Usage.from_api_usage(None) == Usage()

    def test_to_dict_omits_absent_fields(self) -> None:
        """Test that to_dict leaves out missing fields."""
        assert Usage.from_counts(1, 2).to_dict() == {"input_tokens": 1, "output_tokens": 2, "total_tokens": 3}


class TestCost:
    """Test cost calculation with injected rates."""

    def test_cost_per_million_tokens(self) -> None:
        """Test cost per million tokens."""
        rates = TokenRates(input=3.0, output=15.0)
        usage = Usage.from_counts(1_000_000, 100_000)
        assert calculate_cost(usage, rates) == pytest.approx(3.0 + 1.5)

    def test_cached_input_billed_at_cache_rate(self) -> None:
        """Test that cached input uses the cache rate."""
        rates = TokenRates(input=2.0, output=0.0, cache_read=0.5)
        usage = Usage.from_counts(1_000_000, 0, cache_read_tokens=400_000)
        assert calculate_cost(usage, rates) == pytest.approx(0.6 * 2.0 + 0.4 * 0.5)

    def test_cache_count_without_rate_billed_as_input(self) -> None:
        """Test that cached input without a rate is billed as input."""
        rates = TokenRates(input=2.0, output=0.0)
        usage = Usage.from_counts(1_000_000, 0, cache_read_tokens=400_000)
        assert calculate_cost(usage, rates) == pytest.approx(2.0)

    def test_price_table_lookup(self) -> None:
        """Test price table lookup."""
        table = PriceTable({"model-a": TokenRates(input=1.0, output=2.0)})
        assert table.rates_for("model-a").output == 2.0
        assert table.rates_for("provider/model-a").input == 1.0
        assert "provider/model-a" in table
        assert "model-b" not in table

    def test_price_table_unknown_model_raises(self) -> None:
        """Test an unknown model in the price table."""
        table = PriceTable()
        table.register("known", TokenRates(input=1.0, output=1.0))
        with pytest.raises(KeyError):
            table.rates_for("unknown")


class TestUsageReport:
    def test_report_without_rates(self) -> None:
        """Test the usage report without rates."""
        report = format_usage_report(Usage.from_counts(10, 5), label="Run")
        assert report == "Run: in=10 out=5 total=15"

    def test_report_with_cache_and_cost(self) -> None:
        """Test the usage report with cache and cost."""
        usage = Usage.from_counts(1_000_000, 0, cache_read_tokens=0)
        report = format_usage_report(usage, TokenRates(input=1.0, output=1.0))
        assert "cache_read=0" in report
        assert "cost=$1.0000" in report
