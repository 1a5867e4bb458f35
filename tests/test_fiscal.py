"""
Tests for the April → March fiscal calendar.

Run: pytest tests/test_fiscal.py -v
"""

import pytest

from optoreports.fiscal import (
    canonical_month,
    fiscal_year_start,
    is_on_or_before,
    month_index,
    report_sort_key,
)


class TestCanonicalMonth:

    @pytest.mark.parametrize("label,expected", [
        ("April", "April"),
        ("april", "April"),
        ("  APRIL ", "April"),
        ("Apr", "April"),
        ("sept", "September"),
        ("dec", "December"),
        ("Mar", "March"),
        ("feb", "February"),
    ])
    def test_names_and_prefixes(self, label, expected):
        assert canonical_month(label) == expected

    @pytest.mark.parametrize("label,expected", [
        ("4", "April"),
        ("04", "April"),
        ("12", "December"),
        ("1", "January"),
        ("3", "March"),
        ("03", "March"),
    ])
    def test_calendar_numerals(self, label, expected):
        assert canonical_month(label) == expected

    @pytest.mark.parametrize("label", ["Q1", "13", "0", "Smarch"])
    def test_unrecognised_labels_pass_through(self, label):
        assert canonical_month(label) == label

    def test_empty(self):
        assert canonical_month("") == ""
        assert canonical_month(None) == ""

    def test_ambiguous_prefix_takes_first_in_fiscal_order(self):
        # May precedes March in the fiscal sequence
        assert canonical_month("ma") == "May"
        assert canonical_month("ju") == "June"


class TestMonthIndex:

    def test_april_is_first_march_is_last(self):
        assert month_index("April") == 0
        assert month_index("March") == 11
        assert month_index("1") == 9

    def test_unknown(self):
        assert month_index("Smarch") is None


class TestFiscalYearStart:

    @pytest.mark.parametrize("month", ["January", "February", "March", "jan", "3"])
    def test_first_quarter_of_calendar_belongs_to_previous_fy(self, month):
        assert fiscal_year_start("2025", month) == 2024

    @pytest.mark.parametrize("month", ["April", "September", "December"])
    def test_rest_of_year_starts_fy(self, month):
        assert fiscal_year_start("2025", month) == 2025

    def test_numeric_year(self):
        assert fiscal_year_start(2025, "February") == 2024

    def test_garbage_year_does_not_raise(self):
        assert fiscal_year_start("n/a", "May") == 0


class TestIsOnOrBefore:

    def test_january_before_march_same_fy(self):
        assert is_on_or_before("January", "2025", "March", "2025") is True

    def test_march_not_before_january_same_fy(self):
        assert is_on_or_before("March", "2025", "January", "2025") is False

    def test_same_month_is_on_or_before(self):
        assert is_on_or_before("May", "2024", "May", "2024") is True

    def test_december_before_january_across_calendar_year(self):
        assert is_on_or_before("December", "2024", "January", "2025") is True

    def test_april_after_march_of_same_calendar_year(self):
        # April 2024 opens FY 2024; March 2024 closed FY 2023
        assert is_on_or_before("April", "2024", "March", "2024") is False

    def test_earlier_fiscal_year_orders_first(self):
        assert is_on_or_before("March", "2024", "April", "2024") is True
        assert fiscal_year_start("2024", "March") != fiscal_year_start("2024", "April")

    def test_unknown_month_sorts_last(self):
        assert is_on_or_before("April", "2024", "Smarch", "2024") is True
        assert is_on_or_before("Smarch", "2024", "April", "2024") is False


class TestReportSortKey:

    def test_newest_year_then_fiscal_month_then_institution(self):
        docs = [
            {"year": "2023", "month": "May", "institution": "B"},
            {"year": "2024", "month": "January", "institution": "A"},
            {"year": "2024", "month": "April", "institution": "b"},
            {"year": "2024", "month": "April", "institution": "a"},
        ]
        ordered = sorted(docs, key=report_sort_key)
        assert [(d["year"], d["month"], d["institution"]) for d in ordered] == [
            ("2024", "April", "a"),
            ("2024", "April", "b"),
            ("2024", "January", "A"),
            ("2023", "May", "B"),
        ]
