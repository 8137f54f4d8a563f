# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
View utilities for Margin Recon.

This module turns the nested aggregate table produced by
``engine.aggregate`` into DataFrames ready for display or CSV export.

- ``statement_frame``: the P&L statement of one row key, one column per
  period, followed by the computed Margin and Margin % rows.
- ``apply_view_level_filter``: detail-level slicing based on the line-item
  indent:

  - summary:  section headers (indent 0) and margin rows,
  - regular:  indent <= 1 (adds sub-totals such as Total Compensation),
  - detailed: every row.

- ``table_to_long_frame``: one row per (row key, period, field).
- ``trend_direction``: period-over-period arrow hint.
"""

from collections.abc import Sequence
from typing import Optional

import pandas as pd

from .engine import MARGIN_FIELD, MARGIN_PCT_FIELD, AggregateTable
from .naming import LineItem

BASE_COLUMNS = ["display_order", "label", "field", "indent"]
LONG_COLUMNS = ["row_key", "period", "field", "value"]

MARGIN_ROWS = [("Margin", MARGIN_FIELD), ("Margin %", MARGIN_PCT_FIELD)]
_MARGIN_FIELDS = {field for _, field in MARGIN_ROWS}


def statement_frame(
    table: AggregateTable,
    line_items: Sequence[LineItem],
    row_key: str,
    periods: Sequence[str],
) -> pd.DataFrame:
    """Build the P&L statement of one row key.

    Args:
        table: Aggregate table returned by ``engine.aggregate``.
        line_items: Line items, in display order.
        row_key: Row key to render (e.g. "Total" or "EMEA | Retail").
        periods: Periods to render as columns, in order.

    Returns:
        A DataFrame with columns ``display_order, label, field, indent``
        followed by one column per period. Missing values are 0.0.

    Raises:
        ValueError: if ``row_key`` is not in the table.
    """
    if row_key not in table:
        raise ValueError(f"Unknown row key: {row_key!r}")

    by_period = table[row_key]
    rows: list[dict[str, object]] = []

    def _values(field_name: str) -> dict[str, float]:
        return {
            str(p): float(by_period.get(str(p), {}).get(field_name, 0.0) or 0.0)
            for p in periods
        }

    for item in line_items:
        if item.is_margin:
            continue
        rows.append(
            {
                "label": item.label,
                "field": item.field_name,
                "indent": item.indent,
                **_values(item.field_name),
            }
        )

    for label, field_name in MARGIN_ROWS:
        rows.append(
            {"label": label, "field": field_name, "indent": 0, **_values(field_name)}
        )

    columns = BASE_COLUMNS + [str(p) for p in periods]
    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows)
    df = _renumber_display_order(df)
    return df[columns]


def _renumber_display_order(
    df: pd.DataFrame, start: int = 10, step: int = 10
) -> pd.DataFrame:
    """Reassign display_order to be strictly sequential: start, start+step, ...
    Preserves the current order of the lines.
    """
    df = df.copy().reset_index(drop=True)
    df["display_order"] = [start + i * step for i in range(len(df))]
    return df


def apply_view_level_filter(out: pd.DataFrame, view: str) -> pd.DataFrame:
    """Return a view-specific slice of a statement frame.

    - "summary":  keep indent 0 rows and the margin rows,
    - "regular":  keep rows with indent <= 1,
    - any other value (e.g. "detailed"): keep all rows.

    display_order is renumbered 10, 20, 30, ... in the current row order.
    """
    if view == "summary":
        mask = (out["indent"] == 0) | out["field"].isin(_MARGIN_FIELDS)
        df = out[mask]
    elif view == "regular":
        df = out[out["indent"] <= 1]
    else:
        df = out

    if "display_order" in df.columns:
        df = df.sort_values("display_order", ascending=True, kind="stable")
    return _renumber_display_order(df)


def round_statement(df: pd.DataFrame, decimals: int) -> pd.DataFrame:
    """Round the period columns of a statement frame."""
    out = df.copy()
    period_cols = [c for c in out.columns if c not in BASE_COLUMNS]
    if period_cols:
        out[period_cols] = out[period_cols].astype(float).round(decimals)
    return out


def table_to_long_frame(table: AggregateTable) -> pd.DataFrame:
    """Flatten the aggregate table to one row per (row key, period, field)."""
    rows = [
        {"row_key": row_key, "period": period, "field": field_name, "value": value}
        for row_key, by_period in table.items()
        for period, fields in by_period.items()
        for field_name, value in fields.items()
    ]
    if not rows:
        return pd.DataFrame(columns=LONG_COLUMNS)
    return pd.DataFrame(rows, columns=LONG_COLUMNS)


def trend_direction(
    previous: Optional[float], current: Optional[float], tolerance: float = 0.0
) -> str:
    """Return "up", "down" or "flat" for a period-over-period change.

    Missing values are reported as "flat".
    """
    if previous is None or current is None:
        return "flat"
    delta = current - previous
    if delta > tolerance:
        return "up"
    if delta < -tolerance:
        return "down"
    return "flat"
