import pytest

from margin_recon.fields import (
    MatchStrategy,
    coerce_number,
    eligible_keys,
    extract_core_words,
    is_excluded_key,
    normalize_field_name,
    resolve_field,
    resolve_first,
    resolve_value,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("TotalRevenue_$mm", "totalrevenue"),
        ("Total Revenue", "totalrevenue"),
        ("Headcount_fte", "headcount"),
        ("Salary_annual", "salary"),
        ("Churn_bps", "churn"),
        ("Margin_pct", "margin"),
    ],
)
def test_normalize_field_name_strips_units_and_punctuation(raw, expected):
    assert normalize_field_name(raw) == expected


def test_extract_core_words_splits_on_punctuation_and_drops_short_words():
    assert extract_core_words("Rev_TransactionalFees_$mm") == [
        "rev",
        "transactionalfees",
    ]
    assert extract_core_words("Rev Transaction Fees") == ["rev", "transaction", "fees"]
    assert extract_core_words("A Big_Number") == ["big", "number"]


@pytest.mark.parametrize(
    "key",
    ["GeographyID", "LOBID", "Period", "ReportDate", "Quarter", "fiscal_quarter"],
)
def test_identifier_period_date_quarter_columns_are_excluded(key):
    assert is_excluded_key(key)


def test_eligible_keys_keep_record_order():
    record = {"Quarter": "2024-Q1", "B_Rev": 1, "GeographyID": 3, "A_Exp": 2}
    assert eligible_keys(record) == ["B_Rev", "A_Exp"]


@pytest.mark.parametrize(
    "value, expected",
    [
        (12, 12.0),
        (3.5, 3.5),
        ("42", 42.0),
        ("$1,234.5", 1234.5),
        ("12%", 12.0),
        ("-7.25", -7.25),
        (" 8 ", 8.0),
    ],
)
def test_coerce_number_accepts_numeric_prefixes(value, expected):
    assert coerce_number(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", [None, True, False, "", "n/a", float("nan")])
def test_coerce_number_rejects_non_numeric(value):
    assert coerce_number(value) is None


def test_exact_match_wins_over_earlier_fuzzy_candidates():
    record = {"Revenue_Total_$mm": 5.0, "TotalRevenue_$mm": 10.0}

    m = resolve_field(record, "TotalRevenue_$mm")

    assert m.matched
    assert m.strategy is MatchStrategy.EXACT
    assert m.key == "TotalRevenue_$mm"
    assert m.value == 10.0
    assert m.confidence == 1.0


def test_exact_match_is_case_insensitive():
    m = resolve_field({"totalrevenue_$MM": 3}, "TotalRevenue_$mm")
    assert m.strategy is MatchStrategy.EXACT
    assert m.value == 3.0


def test_normalized_match_ignores_units_and_spacing():
    m = resolve_field({"TotalRevenue_$mm": 100}, "Total Revenue")
    assert m.strategy is MatchStrategy.NORMALIZED
    assert m.value == 100.0


def test_containment_match():
    m = resolve_field({"TotalRevenue_$mm": 100}, "Revenue")
    assert m.strategy is MatchStrategy.CONTAINMENT
    assert m.key == "TotalRevenue_$mm"
    assert m.confidence == pytest.approx(0.8)


def test_containment_requires_more_than_three_characters():
    # "fee" is too short for containment; the core-word strategy picks it up.
    m = resolve_field({"FeeIncome_$mm": 4}, "Fee")
    assert m.strategy is not MatchStrategy.CONTAINMENT


def test_core_words_match_tolerates_word_forms():
    m = resolve_field({"Rev_TransactionalFees_$mm": 7.5}, "Rev Transaction Fees")
    assert m.strategy is MatchStrategy.CORE_WORDS
    assert m.value == 7.5


def test_two_letter_core_word_falls_through_to_majority_words():
    m = resolve_field({"Technology_Costs_$mm": 9}, "IT Costs")
    assert m.strategy is MatchStrategy.MAJORITY_WORDS
    assert m.value == 9.0
    assert m.confidence < 0.5


def test_excluded_columns_never_match():
    record = {"RevenueID": 3, "Quarter": "2024-Q1"}
    m = resolve_field(record, "Revenue")
    assert not m.matched
    assert m.value is None
    assert m.strategy is MatchStrategy.NONE
    assert m.candidates == ()


def test_non_numeric_cell_is_skipped_and_scanning_continues():
    record = {"Revenue": "n/a", "TotalRevenue": 7}
    m = resolve_field(record, "Revenue")
    assert m.key == "TotalRevenue"
    assert m.value == 7.0


def test_numeric_strings_are_coerced():
    assert resolve_value({"TotalExpense_$mm": "$1,250.75"}, "TotalExpense_$mm") == (
        pytest.approx(1250.75)
    )


def test_missing_field_is_none_not_zero():
    assert resolve_value({"TotalExpense_$mm": 5}, "Headcount") is None


def test_empty_record_or_target():
    assert not resolve_field({}, "Revenue").matched
    assert not resolve_field({"Revenue": 1}, "").matched


def test_zero_value_is_a_match():
    m = resolve_field({"TotalRevenue_$mm": 0}, "TotalRevenue_$mm")
    assert m.matched
    assert m.value == 0.0


def test_candidates_list_eligible_keys():
    record = {"Quarter": "2024-Q1", "GeographyID": 1, "TotalRevenue_$mm": 1}
    m = resolve_field(record, "Headcount")
    assert m.candidates == ("TotalRevenue_$mm",)


def test_resolve_first_skips_zero_values():
    record = {"MarginPct": 0, "Margin_%": 0.25}
    m = resolve_first(record, ["MarginPct", "Margin_%"])
    assert m is not None
    assert m.key == "Margin_%"
    assert m.value == pytest.approx(0.25)


def test_resolve_first_returns_none_when_nothing_is_non_zero():
    assert resolve_first({"MarginPct": 0}, ["MarginPct", "Margin_%"]) is None


def test_normalized_match_beats_an_earlier_containment_candidate():
    record = {"Total_Revenue_Adjusted": 1.0, "Total Revenue": 2.0}
    m = resolve_field(record, "TotalRevenue_$mm")
    assert m.strategy is MatchStrategy.NORMALIZED
    assert m.value == 2.0


def test_resolver_is_deterministic():
    record = {"Rev_TransactionalFees_$mm": 7.5, "Other": 1}
    assert resolve_field(record, "Rev Transaction Fees") == resolve_field(
        record, "Rev Transaction Fees"
    )


def test_strategies_restrict_the_cascade():
    record = {"Margin_$mm": 40}
    assert resolve_field(record, "MarginPct").matched
    strict = resolve_field(record, "MarginPct", [MatchStrategy.EXACT])
    assert not strict.matched
