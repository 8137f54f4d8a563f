# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Core P&L aggregation engine for Margin Recon.

The engine folds fact records into a nested aggregate table::

    row_key → period → field_name → float

``row_key`` is either ``"Total"`` or the " | "-joined display values of the
selected dimensions (one token per dimension, in selection order).
``period`` is the string value of the record's Quarter column.

Algorithm
---------
1. Dimension value discovery
   For each selected dimension, collect the distinct display values found
   in the fact records (raw foreign-key value when the join fails).

2. Row-key enumeration
   Cartesian product of the non-empty value sets, first dimension varying
   slowest, plus the grand total key ``"Total"``. With no dimension
   selected the only key is ``"Total"``.

3. Initialization
   Every row key × period × line-item field starts at 0.0, together with
   the derived fields ``Margin``, ``MarginPct`` and ``Margin_$mm``.

4. Per-record folding
   Records without a selected period are skipped. Each line-item field is
   resolved with the fuzzy field resolver and added to its partition.
   ``Margin_$mm`` is accumulated and ``MarginPct`` recorded (first
   non-zero value wins) when the record carries those exact columns.

5. Phase 1: per-partition derivation
   ``Margin`` comes from the accumulated ``Margin_$mm`` when non-zero,
   otherwise ``TotalRevenue_$mm - TotalExpense_$mm``. ``MarginPct`` comes
   from the source value (scaled by 100 when expressed as a fraction),
   otherwise ``Margin / TotalRevenue_$mm * 100``.

6. Phase 2: grand-total re-derivation
   When dimensions are selected, the ``"Total"`` partition is rebuilt by
   re-summing every line-item field over the other partitions and its
   margin is always recomputed from the summed revenue and expense, never
   taken from source data.

Sums are computed with ``math.fsum`` over the collected contributions, so
the result does not depend on the order of the fact records.

Faults raised while processing one record or one partition are logged,
counted in ``AggregationDiagnostics`` and skipped; the run continues.
"""

import logging
import math
from collections import defaultdict
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from .dimensions import DimensionTables, resolve_dimension_label
from .fields import FieldMatch, MatchStrategy, resolve_field, resolve_first
from .naming import TOTAL_EXPENSE_FIELD, TOTAL_REVENUE_FIELD, LineItem

logger = logging.getLogger(__name__)

AggregateTable = dict[str, dict[str, dict[str, float]]]

TOTAL_ROW_KEY = "Total"
ROW_KEY_SEPARATOR = " | "

MARGIN_FIELD = "Margin"
MARGIN_PCT_FIELD = "MarginPct"
SOURCE_MARGIN_FIELD = "Margin_$mm"
MARGIN_PCT_SOURCE_LABELS = ("MarginPct", "Margin_%")

# Source margins override computed ones, so only literal columns are used.
SOURCE_MARGIN_STRATEGIES = (MatchStrategy.EXACT,)

DERIVED_FIELDS = (MARGIN_FIELD, MARGIN_PCT_FIELD, SOURCE_MARGIN_FIELD)

DEFAULT_LOW_CONFIDENCE_THRESHOLD = 0.5


@dataclass
class AggregationDiagnostics:
    """
    Structured account of an aggregation run.

    Attributes
    ----------
    records_processed :
        Records folded into the table.
    records_skipped :
        Records without a usable period, outside the selected periods, or
        that raised while being folded.
    field_misses :
        Line-item field → number of processed records where it was absent.
    low_confidence :
        Distinct weak matches (below the configured confidence threshold).
    errors :
        Messages of the faults that were caught and skipped.
    """

    records_processed: int = 0
    records_skipped: int = 0
    field_misses: dict[str, int] = field(default_factory=dict)
    low_confidence: list[FieldMatch] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def note_low_confidence(self, match: FieldMatch) -> bool:
        """Record a weak match once per (target, column); True if new."""
        for known in self.low_confidence:
            if known.target == match.target and known.key == match.key:
                return False
        self.low_confidence.append(match)
        return True


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


def period_key(record: Mapping[str, Any]) -> Optional[str]:
    """Return the name of the record's Quarter column (case-insensitive)."""
    for key in record.keys():
        if str(key).lower() == "quarter":
            return str(key)
    return None


def record_period(record: Mapping[str, Any]) -> Optional[str]:
    """Return the period of a fact record, or None if absent or empty."""
    key = period_key(record)
    if key is None:
        return None
    value = record.get(key)
    if value is None or value == "" or value == 0:
        return None
    return str(value)


def available_periods(fact_records: Sequence[Mapping[str, Any]]) -> list[str]:
    """Return the sorted distinct periods found in the fact records."""
    periods: set[str] = set()
    for record in fact_records:
        if not record:
            continue
        period = record_period(record)
        if period is not None:
            periods.add(period)
    return sorted(periods)


# ---------------------------------------------------------------------------
# Row keys
# ---------------------------------------------------------------------------


def discover_dimension_values(
    fact_records: Sequence[Mapping[str, Any]],
    dimension_tables: DimensionTables,
    selected_dimensions: Sequence[str],
) -> dict[str, list[str]]:
    """Collect, per selected dimension, the distinct row-key tokens.

    Values are kept in first-seen order.
    """
    values: dict[str, dict[str, None]] = {dim: {} for dim in selected_dimensions}
    for record in fact_records:
        if not record:
            continue
        for dim in selected_dimensions:
            try:
                label = resolve_dimension_label(record, dimension_tables, dim)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Error processing dimension %s: %s", dim, exc)
                continue
            if label is not None:
                values[dim][label] = None
    return {dim: list(found) for dim, found in values.items()}


def iter_row_keys(value_lists: Sequence[Sequence[str]]) -> Iterator[str]:
    """Yield the " | "-joined combinations of dimension values.

    Empty value lists are ignored. The first list varies slowest. The
    generator is lazy; call it again to restart the sequence.
    """
    lists = [list(v) for v in value_lists if v]
    if not lists:
        return

    def _combine(index: int, prefix: list[str]) -> Iterator[list[str]]:
        if index == len(lists):
            yield prefix
            return
        for value in lists[index]:
            yield from _combine(index + 1, prefix + [value])

    for combo in _combine(0, []):
        yield ROW_KEY_SEPARATOR.join(combo)


def enumerate_row_keys(
    dimension_values: Mapping[str, Sequence[str]],
    selected_dimensions: Sequence[str],
) -> list[str]:
    """Return every row key of the table, ``"Total"`` last."""
    if not selected_dimensions:
        return [TOTAL_ROW_KEY]
    ordered = [dimension_values.get(dim, []) for dim in selected_dimensions]
    keys = [k for k in iter_row_keys(ordered) if k != TOTAL_ROW_KEY]
    keys.append(TOTAL_ROW_KEY)
    return keys


def record_row_key(
    record: Mapping[str, Any],
    dimension_tables: DimensionTables,
    selected_dimensions: Sequence[str],
) -> str:
    """Compute the row key a single fact record contributes to.

    Dimensions that cannot be resolved for this record are left out of the
    key; when none resolves the record goes to ``"Total"``.
    """
    tokens: list[str] = []
    for dim in selected_dimensions:
        try:
            label = resolve_dimension_label(record, dimension_tables, dim)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error processing dimension %s for record: %s", dim, exc)
            continue
        if label is not None:
            tokens.append(label)
    if not tokens:
        return TOTAL_ROW_KEY
    return ROW_KEY_SEPARATOR.join(tokens)


# ---------------------------------------------------------------------------
# Table construction
# ---------------------------------------------------------------------------


def aggregated_fields(line_items: Sequence[LineItem]) -> list[str]:
    """Return the distinct fields the engine accumulates, in line-item order."""
    fields: dict[str, None] = {}
    for item in line_items:
        if item.field_name and not item.is_margin:
            fields[item.field_name] = None
    return list(fields)


def _empty_period(fields: Sequence[str]) -> dict[str, float]:
    data = {f: 0.0 for f in fields}
    for derived in DERIVED_FIELDS:
        data[derived] = 0.0
    return data


def initialize_table(
    row_keys: Sequence[str],
    periods: Sequence[str],
    line_items: Sequence[LineItem],
) -> AggregateTable:
    """Build the zero-initialized table.

    Every row key × period holds every non-margin line-item field plus
    ``Margin``, ``MarginPct`` and ``Margin_$mm``, all set to 0.0.
    """
    fields = aggregated_fields(line_items)
    return {
        row_key: {period: _empty_period(fields) for period in periods}
        for row_key in row_keys
    }


class _Accumulator:
    """Contributions per (row key, period, field), summed with fsum."""

    def __init__(self) -> None:
        self._values: dict[tuple[str, str, str], list[float]] = defaultdict(list)
        self.margin_pct: dict[tuple[str, str], float] = {}

    def add(self, row_key: str, period: str, field_name: str, value: float) -> None:
        self._values[(row_key, period, field_name)].append(value)

    def set_margin_pct(self, row_key: str, period: str, value: float) -> None:
        # First non-zero value wins.
        self.margin_pct.setdefault((row_key, period), value)

    def write_into(self, table: AggregateTable) -> None:
        for (row_key, period, field_name), values in self._values.items():
            table[row_key][period][field_name] = math.fsum(values)
        for (row_key, period), value in self.margin_pct.items():
            table[row_key][period][MARGIN_PCT_FIELD] = value


def _fold_record(
    record: Mapping[str, Any],
    period: str,
    row_key: str,
    fields: Sequence[str],
    acc: _Accumulator,
    diagnostics: AggregationDiagnostics,
    low_confidence_threshold: float,
) -> None:
    # Resolve everything first so a failing record contributes nothing.
    contributions: list[tuple[str, float]] = []
    for field_name in fields:
        match = resolve_field(record, field_name)
        if not match.matched or match.value is None:
            diagnostics.field_misses[field_name] = (
                diagnostics.field_misses.get(field_name, 0) + 1
            )
            continue
        if match.confidence < low_confidence_threshold:
            if diagnostics.note_low_confidence(match):
                logger.warning(
                    "Low-confidence match for %s: column %s (%s)",
                    field_name,
                    match.key,
                    match.strategy.value,
                )
        contributions.append((field_name, match.value))

    margin = resolve_field(record, SOURCE_MARGIN_FIELD, SOURCE_MARGIN_STRATEGIES)
    if margin.matched and margin.value is not None:
        contributions.append((SOURCE_MARGIN_FIELD, margin.value))

    margin_pct = resolve_first(
        record, MARGIN_PCT_SOURCE_LABELS, SOURCE_MARGIN_STRATEGIES
    )

    for field_name, value in contributions:
        acc.add(row_key, period, field_name, value)
    if margin_pct is not None and margin_pct.value is not None:
        acc.set_margin_pct(row_key, period, margin_pct.value)


def compute_margin(total_revenue: float, total_expense: float) -> float:
    """Margin computed from the section totals."""
    return total_revenue - total_expense


def compute_margin_pct(margin: float, total_revenue: float) -> float:
    """Margin % of revenue, 0.0 when revenue is zero."""
    return (margin / total_revenue) * 100 if total_revenue != 0 else 0.0


def scale_source_margin_pct(value: float) -> float:
    """Express a source margin percentage in percent.

    Values with an absolute value of at least 1 are already percentages;
    smaller values are fractions and are multiplied by 100.
    """
    return value if abs(value) >= 1 else value * 100


def derive_partition_margins(
    table: AggregateTable,
    periods: Sequence[str],
    diagnostics: Optional[AggregationDiagnostics] = None,
) -> None:
    """Phase 1: derive Margin and MarginPct for every partition in place.

    Source-provided ``Margin_$mm`` / ``MarginPct`` values are trusted when
    non-zero.
    """
    for row_key, by_period in table.items():
        for period in periods:
            try:
                data = by_period.get(period)
                if data is None:
                    continue
                total_revenue = data.get(TOTAL_REVENUE_FIELD) or 0.0
                total_expense = data.get(TOTAL_EXPENSE_FIELD) or 0.0

                source_margin = data.get(SOURCE_MARGIN_FIELD) or 0.0
                if source_margin != 0:
                    data[MARGIN_FIELD] = source_margin
                else:
                    data[MARGIN_FIELD] = compute_margin(total_revenue, total_expense)

                source_pct = data.get(MARGIN_PCT_FIELD) or 0.0
                if source_pct != 0:
                    data[MARGIN_PCT_FIELD] = scale_source_margin_pct(source_pct)
                else:
                    data[MARGIN_PCT_FIELD] = compute_margin_pct(
                        data[MARGIN_FIELD], total_revenue
                    )
            except Exception as exc:  # noqa: BLE001
                msg = f"Error calculating totals for {row_key}, {period}: {exc}"
                logger.warning(msg)
                if diagnostics is not None:
                    diagnostics.errors.append(msg)


def derive_grand_totals(
    table: AggregateTable,
    periods: Sequence[str],
    line_items: Sequence[LineItem],
    diagnostics: Optional[AggregationDiagnostics] = None,
) -> None:
    """Phase 2: rebuild the ``"Total"`` partition from the other partitions.

    Every line-item field is re-summed across the non-Total row keys; the
    grand-total margin is always computed from the summed revenue and
    expense.
    """
    fields = aggregated_fields(line_items)
    partitions = [k for k in table if k != TOTAL_ROW_KEY]

    for period in periods:
        try:
            total = _empty_period(fields)
            for field_name in list(fields) + [SOURCE_MARGIN_FIELD]:
                total[field_name] = math.fsum(
                    table[k].get(period, {}).get(field_name, 0.0) or 0.0
                    for k in partitions
                )
            revenue = total.get(TOTAL_REVENUE_FIELD) or 0.0
            expense = total.get(TOTAL_EXPENSE_FIELD) or 0.0
            total[MARGIN_FIELD] = compute_margin(revenue, expense)
            total[MARGIN_PCT_FIELD] = compute_margin_pct(total[MARGIN_FIELD], revenue)
            table.setdefault(TOTAL_ROW_KEY, {})[period] = total
        except Exception as exc:  # noqa: BLE001
            msg = f"Error calculating grand total for {period}: {exc}"
            logger.warning(msg)
            if diagnostics is not None:
                diagnostics.errors.append(msg)


def aggregate(
    line_items: Sequence[LineItem],
    fact_records: Sequence[Mapping[str, Any]],
    dimension_tables: DimensionTables,
    selected_dimensions: Sequence[str],
    selected_periods: Sequence[str],
    diagnostics: Optional[AggregationDiagnostics] = None,
    low_confidence_threshold: float = DEFAULT_LOW_CONFIDENCE_THRESHOLD,
) -> AggregateTable:
    """Aggregate fact records into the P&L table.

    Args:
        line_items: Line items built by ``naming.build_line_items``.
        fact_records: Flat fact records.
        dimension_tables: Table name → (ID → dimension record).
        selected_dimensions: Dimensions to group by, in display order.
        selected_periods: Periods (Quarter values) to include.
        diagnostics: Optional object filled with processing statistics.
        low_confidence_threshold: Matches below this confidence are
            reported in ``diagnostics.low_confidence``.

    Returns:
        The aggregate table. Empty when there are no fact records, no
        periods or no line items.
    """
    if diagnostics is None:
        diagnostics = AggregationDiagnostics()

    if not fact_records or not selected_periods or not line_items:
        return {}

    dims = list(dict.fromkeys(selected_dimensions))
    periods = list(dict.fromkeys(str(p) for p in selected_periods))
    period_set = set(periods)
    fields = aggregated_fields(line_items)

    # 1-3) Discover dimension values, enumerate row keys, zero-initialize.
    dim_values = discover_dimension_values(fact_records, dimension_tables, dims)
    row_keys = enumerate_row_keys(dim_values, dims)
    table = initialize_table(row_keys, periods, line_items)

    # 4) Fold every record into its partition.
    acc = _Accumulator()
    for index, record in enumerate(fact_records):
        if not record:
            diagnostics.records_skipped += 1
            continue
        try:
            period = record_period(record)
            if period is None or period not in period_set:
                diagnostics.records_skipped += 1
                continue

            row_key = record_row_key(record, dimension_tables, dims)
            if row_key not in table:
                # Partial dimension resolution produced an unlisted key.
                table[row_key] = {p: _empty_period(fields) for p in periods}

            _fold_record(
                record,
                period,
                row_key,
                fields,
                acc,
                diagnostics,
                low_confidence_threshold,
            )
            diagnostics.records_processed += 1
        except Exception as exc:  # noqa: BLE001
            msg = f"Error processing record {index}: {exc}"
            logger.warning(msg)
            diagnostics.errors.append(msg)
            diagnostics.records_skipped += 1

    acc.write_into(table)
    logger.info(
        "Processed %d records, skipped %d records",
        diagnostics.records_processed,
        diagnostics.records_skipped,
    )

    # 5) Phase 1: per-partition margins.
    derive_partition_margins(table, periods, diagnostics)

    # 6) Phase 2: grand totals, only when partitions exist.
    if dims:
        derive_grand_totals(table, periods, line_items, diagnostics)

    return table
