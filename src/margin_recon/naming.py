# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Naming-convention resolution for Margin Recon.

The naming-convention sheet lists, for every report field, the label used
in the fact table ("Fact_Margin naming"), a category and a P&L impact
(Revenue / Expense / Margin). This module turns that sheet into the ordered
list of P&L line items consumed by the aggregation engine.

Structure produced
------------------

    indent 0  Revenue                (field TotalRevenue_$mm)
    indent 2    <revenue detail rows>
    indent 0  Expenses               (field TotalExpense_$mm)
    indent 2    <expense detail rows>
    indent 1    Total Compensation   (field TotalCompensation_$mm)
    indent 2      BaseCompensation_$mm
    indent 2      VariableCompensation_$mm

Section headers display the workbook totals directly; there is no separate
total row. Margin and Margin % are never line items: the engine computes
them.

Only rows whose category is "Financial Result" are used (all rows when the
sheet has no category column).
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

NAMING_COLUMN_VARIANTS = [
    "Fact_Margin Naming",
    "Fact_Margin naming",
    "Fact Margin Naming",
    "Fact Margin naming",
    "Naming",
    "Field Name",
    "Fact_Margin Field Name",
]
CATEGORY_COLUMN_VARIANTS = ["Category", "category"]
IMPACT_COLUMN_VARIANTS = [
    "P&L Impact",
    "P&L impact",
    "P and L Impact",
    "PL Impact",
    "PL impact",
]

FINANCIAL_RESULT = "financial result"

TOTAL_REVENUE_FIELD = "TotalRevenue_$mm"
TOTAL_EXPENSE_FIELD = "TotalExpense_$mm"
TOTAL_COMPENSATION_FIELD = "TotalCompensation_$mm"
BASE_COMPENSATION_FIELD = "BaseCompensation_$mm"
VARIABLE_COMPENSATION_FIELD = "VariableCompensation_$mm"

_SECTION_TOTALS = {TOTAL_REVENUE_FIELD.lower(), TOTAL_EXPENSE_FIELD.lower()}
_COMPENSATION_PARTS = [BASE_COMPENSATION_FIELD, VARIABLE_COMPENSATION_FIELD]


@dataclass(frozen=True)
class LineItem:
    """One row (or section header) of the P&L.

    Attributes:
        label: Text displayed for the row.
        field_name: Fact-table field aggregated for this row.
        indent: 0 = section header, 1 = sub-total, 2 = detail item.
        is_total: True for section headers and sub-totals.
        is_margin: True for margin rows; the engine never aggregates them.
        classification: "revenue", "expense" or "unclassified" for detail
            rows; "section" for headers and "compensation" for the
            compensation hierarchy.
    """

    label: str
    field_name: str
    indent: int = 2
    is_total: bool = False
    is_margin: bool = False
    classification: str = "expense"


@dataclass(frozen=True)
class NamingColumns:
    """Columns of the naming-convention sheet discovered from its headers."""

    naming: Optional[str]
    category: Optional[str]
    impact: Optional[str]


@dataclass
class NamingClassification:
    """Financial-Result rows sorted into P&L buckets.

    ``unclassified`` holds rows whose impact column is missing or
    unrecognized and whose field name gives no hint either.
    """

    revenue: list[LineItem] = field(default_factory=list)
    expense: list[LineItem] = field(default_factory=list)
    margin: list[LineItem] = field(default_factory=list)
    unclassified: list[LineItem] = field(default_factory=list)
    total_compensation: Optional[LineItem] = None
    compensation_parts: dict[str, LineItem] = field(default_factory=dict)
    row_count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.row_count == 0


def find_column(
    records: Sequence[Mapping[str, Any]], variants: Sequence[str]
) -> Optional[str]:
    """Return the first header of ``records[0]`` matching one of ``variants``.

    Variants are tried in order and compared case-insensitively.
    """
    if not records:
        return None
    keys = [str(k) for k in records[0].keys()]
    for variant in variants:
        for key in keys:
            if key.lower() == variant.lower():
                return key
    return None


def discover_columns(records: Sequence[Mapping[str, Any]]) -> NamingColumns:
    """Locate the naming, category and P&L impact columns."""
    return NamingColumns(
        naming=find_column(records, NAMING_COLUMN_VARIANTS),
        category=find_column(records, CATEGORY_COLUMN_VARIANTS),
        impact=find_column(records, IMPACT_COLUMN_VARIANTS),
    )


def _cell_text(record: Mapping[str, Any], column: Optional[str]) -> str:
    if column is None:
        return ""
    value = record.get(column)
    if value is None:
        return ""
    return str(value).strip()


def _bucket_for(impact: str, field_name: str) -> str:
    impact = impact.lower()
    if "revenue" in impact:
        return "revenue"
    if "expense" in impact:
        return "expense"
    if "margin" in impact:
        return "margin"

    lower = field_name.lower()
    if "rev" in lower:
        return "revenue"
    if "exp" in lower:
        return "expense"
    return "unclassified"


def classify_naming_records(
    records: Sequence[Mapping[str, Any]],
) -> Optional[NamingClassification]:
    """Sort the Financial-Result rows of a naming-convention sheet.

    Args:
        records: Naming-convention rows (header → cell value).

    Returns:
        None when the fact-field naming column cannot be found. Otherwise
        a NamingClassification; its ``row_count`` is 0 when no row has the
        "Financial Result" category.
    """
    if not records:
        return None

    columns = discover_columns(records)
    if columns.naming is None:
        logger.warning("Naming convention: fact field naming column not found")
        return None

    result = NamingClassification()

    for record in records:
        if columns.category is not None:
            category = _cell_text(record, columns.category).lower()
            if category != FINANCIAL_RESULT:
                continue

        field_name = _cell_text(record, columns.naming)
        if not field_name:
            continue
        result.row_count += 1

        lower = field_name.lower()
        if lower in _SECTION_TOTALS:
            # Attached to the section headers, never a detail row.
            continue

        if lower == TOTAL_COMPENSATION_FIELD.lower():
            result.total_compensation = LineItem(
                label="Total Compensation",
                field_name=field_name,
                indent=1,
                is_total=True,
                classification="compensation",
            )
            continue

        if lower in {p.lower() for p in _COMPENSATION_PARTS}:
            result.compensation_parts[lower] = LineItem(
                label=field_name,
                field_name=field_name,
                indent=2,
                classification="compensation",
            )
            continue

        bucket = _bucket_for(_cell_text(record, columns.impact), field_name)
        item = LineItem(
            label=field_name, field_name=field_name, indent=2, classification=bucket
        )
        getattr(result, bucket).append(item)

    if result.row_count == 0:
        logger.warning('Naming convention: no rows with Category = "Financial Result"')

    for item in result.unclassified:
        logger.warning(
            "Naming convention: %s has no recognizable P&L impact; "
            "listed under Expenses",
            item.field_name,
        )

    return result


def build_line_items(records: Sequence[Mapping[str, Any]]) -> list[LineItem]:
    """Build the ordered P&L line items from a naming-convention sheet.

    Final ordering::

        [Revenue header] [revenue details...]
        [Expenses header] [expense details...] [unclassified details...]
        [Total Compensation] [Base Compensation] [Variable Compensation]

    Returns:
        The line items, or an empty list when the naming column is missing
        or no Financial-Result row exists.
    """
    classification = classify_naming_records(records)
    if classification is None or classification.is_empty:
        return []

    items: list[LineItem] = [
        LineItem(
            label="Revenue",
            field_name=TOTAL_REVENUE_FIELD,
            indent=0,
            is_total=True,
            classification="section",
        )
    ]
    items.extend(classification.revenue)

    items.append(
        LineItem(
            label="Expenses",
            field_name=TOTAL_EXPENSE_FIELD,
            indent=0,
            is_total=True,
            classification="section",
        )
    )
    items.extend(classification.expense)
    items.extend(classification.unclassified)

    if classification.total_compensation is not None:
        items.append(classification.total_compensation)
        for part in _COMPENSATION_PARTS:
            child = classification.compensation_parts.get(part.lower())
            if child is not None:
                items.append(child)

    logger.debug(
        "Built %d line items (%d revenue, %d expense, %d unclassified)",
        len(items),
        len(classification.revenue),
        len(classification.expense),
        len(classification.unclassified),
    )
    return items
