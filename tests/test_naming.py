from margin_recon.naming import (
    TOTAL_EXPENSE_FIELD,
    TOTAL_REVENUE_FIELD,
    build_line_items,
    classify_naming_records,
    discover_columns,
)


def row(name, impact="", category="Financial Result"):
    return {"Category": category, "Fact_Margin Naming": name, "P&L Impact": impact}


NAMING = [
    row("TotalRevenue_$mm", "Revenue"),
    row("TotalExpense_$mm", "Expense"),
    row("Rev_Subscription_$mm", "Revenue"),
    row("Rev_Services_$mm", "Revenue"),
    row("Exp_Hosting_$mm", "Expense"),
    row("Margin_$mm", "Margin"),
    row("TotalCompensation_$mm", "Expense"),
    row("VariableCompensation_$mm", "Expense"),
    row("BaseCompensation_$mm", "Expense"),
    row("Headcount_fte", "", category="Operational"),
]


def test_discover_columns_is_case_insensitive():
    records = [{"category": "x", "FACT_MARGIN NAMING": "y", "PL Impact": "z"}]
    cols = discover_columns(records)
    assert cols.naming == "FACT_MARGIN NAMING"
    assert cols.category == "category"
    assert cols.impact == "PL Impact"


def test_build_line_items_structure_and_order():
    items = build_line_items(NAMING)

    assert [(i.label, i.indent) for i in items] == [
        ("Revenue", 0),
        ("Rev_Subscription_$mm", 2),
        ("Rev_Services_$mm", 2),
        ("Expenses", 0),
        ("Exp_Hosting_$mm", 2),
        ("Total Compensation", 1),
        ("BaseCompensation_$mm", 2),
        ("VariableCompensation_$mm", 2),
    ]
    assert items[0].field_name == TOTAL_REVENUE_FIELD
    assert items[3].field_name == TOTAL_EXPENSE_FIELD
    assert items[0].is_total and items[3].is_total
    assert items[5].is_total


def test_section_totals_and_margin_rows_are_not_detail_rows():
    items = build_line_items(NAMING)
    detail_fields = [i.field_name for i in items if i.indent == 2]
    assert TOTAL_REVENUE_FIELD not in detail_fields
    assert TOTAL_EXPENSE_FIELD not in detail_fields
    assert "Margin_$mm" not in [i.field_name for i in items]


def test_non_financial_rows_are_ignored():
    items = build_line_items(NAMING)
    assert "Headcount_fte" not in [i.field_name for i in items]


def test_impact_fallback_uses_field_name_hints():
    records = [
        row("Rev_Licenses_$mm", ""),
        row("Exp_Travel_$mm", "unknown"),
        row("Other_Items_$mm", ""),
    ]
    classification = classify_naming_records(records)

    assert [i.field_name for i in classification.revenue] == ["Rev_Licenses_$mm"]
    assert [i.field_name for i in classification.expense] == ["Exp_Travel_$mm"]
    assert [i.field_name for i in classification.unclassified] == ["Other_Items_$mm"]


def test_unclassified_rows_are_listed_under_expenses():
    items = build_line_items([row("Other_Items_$mm", "")])
    labels = [i.label for i in items]
    assert labels == ["Revenue", "Expenses", "Other_Items_$mm"]
    assert items[-1].classification == "unclassified"


def test_headers_emitted_with_only_section_totals():
    items = build_line_items(
        [row("TotalRevenue_$mm", "Revenue"), row("TotalExpense_$mm", "Expense")]
    )
    assert [i.field_name for i in items] == [TOTAL_REVENUE_FIELD, TOTAL_EXPENSE_FIELD]


def test_missing_naming_column_is_distinguishable_from_no_financial_rows():
    no_column = [{"Category": "Financial Result", "Label": "TotalRevenue_$mm"}]
    no_financial = [row("TotalRevenue_$mm", "Revenue", category="Operational")]

    assert classify_naming_records(no_column) is None
    classification = classify_naming_records(no_financial)
    assert classification is not None
    assert classification.is_empty

    assert build_line_items(no_column) == []
    assert build_line_items(no_financial) == []
    assert build_line_items([]) == []


def test_all_rows_used_when_sheet_has_no_category_column():
    records = [{"Naming": "Rev_Ads_$mm", "P&L Impact": "Revenue"}]
    items = build_line_items(records)
    assert [i.field_name for i in items] == [
        TOTAL_REVENUE_FIELD,
        "Rev_Ads_$mm",
        TOTAL_EXPENSE_FIELD,
    ]


def test_compensation_parts_without_total_are_dropped():
    items = build_line_items([row("BaseCompensation_$mm", "Expense")])
    assert [i.field_name for i in items] == [TOTAL_REVENUE_FIELD, TOTAL_EXPENSE_FIELD]
