"""
Tests for the EU SME classification decision tree.
"""

import math

import pytest

from subsidy_signing.core.errors import ValidationError
from subsidy_signing.forms.classification import (
    NOT_INDEPENDENT_RATIONALE,
    CompanySize,
    classify,
)


class TestClassify:
    """Thresholds are exclusive on headcount and inclusive on money."""

    def test_small_company(self):
        result = classify(10, 1_000_000, 500_000, True)

        assert result.category is CompanySize.SMALL
        assert result.criteria["fte_under_50"] is True
        assert result.criteria["turnover_under_10m"] is True
        assert result.rationale.startswith("Employees: 10 < 50")

    def test_fifty_employees_is_not_small(self):
        result = classify(50, 1_000_000, 1_000_000, True)

        assert result.category is CompanySize.MEDIUM

    def test_small_boundary_is_inclusive_on_turnover(self):
        result = classify(49, 10_000_000, 10_000_001, True)

        assert result.category is CompanySize.SMALL
        assert result.criteria["balance_under_10m"] is False

    def test_small_needs_turnover_or_balance(self):
        result = classify(49, 10_000_001, 10_000_001, True)

        assert result.category is CompanySize.MEDIUM
        assert result.criteria == {
            "fte_under_250": True,
            "turnover_under_50m": True,
            "balance_under_43m": True,
        }

    def test_medium_upper_boundaries(self):
        assert classify(249, 50_000_000, 99_000_000, True).category is CompanySize.MEDIUM
        assert classify(249, 99_000_000, 43_000_000, True).category is CompanySize.MEDIUM
        assert classify(250, 1_000_000, 1_000_000, True).category is CompanySize.LARGE

    def test_large_when_both_money_thresholds_exceeded(self):
        result = classify(100, 50_000_001, 43_000_001, True)

        assert result.category is CompanySize.LARGE
        assert result.rationale == "Exceeds medium enterprise thresholds"
        assert result.criteria == {"exceeds_thresholds": True}

    def test_not_independent_is_always_large(self):
        result = classify(3, 100_000, 50_000, False)

        assert result.category is CompanySize.LARGE
        assert result.rationale == NOT_INDEPENDENT_RATIONALE

    def test_numeric_strings_are_accepted(self):
        assert classify("12", "1000000.50", "0", True).category is CompanySize.SMALL

    def test_fractional_fte_in_rationale(self):
        result = classify(12.5, 1_000_000, 1_000_000, True)

        assert "12.5 < 50" in result.rationale

    @pytest.mark.parametrize("bad_value", [math.nan, math.inf, "twelve", None, True])
    def test_non_numeric_metrics_are_rejected(self, bad_value):
        with pytest.raises(ValidationError) as exc_info:
            classify(bad_value, 1_000_000, 1_000_000, True)

        assert exc_info.value.http_status == 400
        assert "employees" in exc_info.value.error_message

    def test_every_input_gets_a_category(self):
        for employees in (0, 49, 50, 249, 250, 10_000):
            for money in (0, 10_000_000, 43_000_000, 50_000_000, 10**9):
                for independent in (True, False):
                    result = classify(employees, money, money, independent)
                    assert result.category in CompanySize
                    assert result.rationale


class TestCompanySizeLabel:
    def test_dutch_labels(self):
        assert CompanySize.SMALL.label == "Kleine onderneming"
        assert CompanySize.MEDIUM.label == "Middelgrote onderneming"
        assert CompanySize.LARGE.label == "Grote onderneming"
