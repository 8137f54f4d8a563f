# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Deterministic question answering over the fact records.

A short question ("top 3 cost centers by margin in 2024Q3") is turned
into a ``QueryPlan`` by keyword rules, then executed against the fact
records. Every figure in the answer is computed here; nothing is guessed.

1. Planning (``plan_query``)
   -------------------------
   - metric: "margin" means ``MarginPct`` unless the question asks for
     dollars/amount; otherwise a measure key or synonym from ``MEASURES``
     or ``DERIVED``; otherwise revenue/expense keywords; revenue by
     default.
   - operation: ``trend``, ``top``, ``bottom`` or ``single``.
   - group-by: "by X" / "per X" plus dimensions mentioned by synonym;
     trends always group by Quarter.
   - time window: explicit quarter, year, latest, all, the caller's
     selected quarter, then latest.
   - filters: known dimension values mentioned in the question.

2. Execution (``execute_query``)
   ------------------------------
   Records are filtered by time window and dimension values, grouped,
   and each group is aggregated according to the measure definition:

   - ``sum``: plain sum (``Margin_$mm`` falls back to revenue minus
     expense on records without the column),
   - ``weighted_avg``: sum(value * weight) / sum(weight),
   - ``weighted_ratio`` and derived ``ratio``: sum(numerator) /
     sum(denominator), a fraction in [0, 1] for percentages.

   Ranked ratio results put groups with less than ``MIN_REVENUE_MM`` of
   revenue last.

Measure columns are looked up by exact name (case-insensitive) through
the field resolver; dimension labels come from the dimension joiner.
"""

import logging
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from .dimensions import DimensionTables, resolve_dimension_label
from .engine import record_period
from .fields import MatchStrategy, resolve_field

logger = logging.getLogger(__name__)

# Measures share name fragments (Margin_$mm / MarginPct), so only literal
# column names are used.
MEASURE_STRATEGIES = (MatchStrategy.EXACT,)

REVENUE_KEY = "TotalRevenue_$mm"
EXPENSE_KEY = "TotalExpense_$mm"
MARGIN_KEY = "Margin_$mm"
MARGIN_PCT_KEY = "MarginPct"

QUARTER_DIMENSION = "Quarter"

# Values are already in $mm.
MIN_REVENUE_MM = 1.0

DEFAULT_TOP_N = 10

NO_DATA_ANSWER = "No data available to answer this question."
NO_RESULTS_ANSWER = "No results found matching the query criteria."


@dataclass(frozen=True)
class Measure:
    """
    Fact-table measure known to the question planner.

    Attributes:
        key: Fact column name (e.g. 'TotalRevenue_$mm').
        unit: 'usd_mm', 'percent' or 'count'.
        aggregation: 'sum', 'weighted_avg', 'weighted_ratio' or 'ratio'.
        weight_by: Weight column for 'weighted_avg'.
        numerator: Numerator column for ratios.
        denominator: Denominator column for ratios.
        synonyms: Phrases that designate the measure in a question.
    """

    key: str
    unit: str
    aggregation: str = "sum"
    weight_by: Optional[str] = None
    numerator: Optional[str] = None
    denominator: Optional[str] = None
    synonyms: tuple[str, ...] = ()

    @property
    def is_ratio(self) -> bool:
        return self.aggregation in {"weighted_ratio", "ratio"}


@dataclass(frozen=True)
class QueryDimension:
    key: str
    synonyms: tuple[str, ...] = ()


DIMENSIONS: tuple[QueryDimension, ...] = (
    QueryDimension(QUARTER_DIMENSION, ("quarter", "q", "period")),
    QueryDimension("Scenario", ("scenario", "actual", "forecast", "plan")),
    QueryDimension("LegalEntity", ("entity", "legal entity")),
    QueryDimension("CostCenter", ("cost center", "cost centre", "cc")),
    QueryDimension("LineOfBusiness", ("lob", "line of business", "business line")),
    QueryDimension("Geography", ("geo", "region", "market")),
    QueryDimension("ProductType", ("product", "product type", "offering")),
)


def _weighted(key: str, unit: str, weight_by: str) -> Measure:
    return Measure(key, unit, "weighted_avg", weight_by=weight_by)


MEASURES: tuple[Measure, ...] = (
    Measure("AvgAUM_$mm", "usd_mm", synonyms=("aum",)),
    Measure("NetFlows_$mm", "usd_mm", synonyms=("net flows",)),
    _weighted("MarketReturn_pct", "percent", "AvgAUM_$mm"),
    _weighted("AdvisoryFeeRate_pct", "percent", "AvgAUM_$mm"),
    Measure("AdvisoryRevenue_$mm", "usd_mm", synonyms=("advisory revenue",)),
    Measure("TradingVolume_$mm", "usd_mm"),
    _weighted("AvgFeePerTrade_pct", "percent", "TradingVolume_$mm"),
    Measure("TransactionRevenue_$mm", "usd_mm", synonyms=("trading revenue",)),
    Measure("InterestEarningAssets_$mm", "usd_mm"),
    _weighted("NetInterestMargin_pct", "percent", "InterestEarningAssets_$mm"),
    Measure("NetInterestRevenue_$mm", "usd_mm"),
    Measure("EligibleAUM_$mm", "usd_mm"),
    _weighted("PerformanceFeeRate_pct", "percent", "EligibleAUM_$mm"),
    Measure("PerformanceFees_$mm", "usd_mm"),
    Measure("Headcount_FTE", "count", synonyms=("headcount", "fte")),
    _weighted("AvgBaseSalary_$mm", "usd_mm", "Headcount_FTE"),
    Measure("BaseCompensation_$mm", "usd_mm"),
    _weighted("PayoutPct_pct", "percent", "BaseCompensation_$mm"),
    Measure("VariableCompensation_$mm", "usd_mm"),
    Measure("TotalCompensation_$mm", "usd_mm"),
    Measure("NumberOfApplications", "count"),
    _weighted("AvgCostPerApplication_$mm", "usd_mm", "NumberOfApplications"),
    Measure("ApplicationSpend_$mm", "usd_mm"),
    Measure("NewClients_Count", "count"),
    _weighted("AcquisitionCostPerClient_$mm", "usd_mm", "NewClients_Count"),
    Measure("ClientAcquisitionSpend_$mm", "usd_mm"),
    Measure(REVENUE_KEY, "usd_mm", synonyms=("revenue",)),
    Measure(EXPENSE_KEY, "usd_mm", synonyms=("expense",)),
    Measure(
        MARGIN_KEY,
        "usd_mm",
        synonyms=(
            "margin dollars",
            "margin amount",
            "profit dollars",
            "profit amount",
            "margin $",
            "profit $",
        ),
    ),
    Measure(
        MARGIN_PCT_KEY,
        "percent",
        "weighted_ratio",
        numerator=MARGIN_KEY,
        denominator=REVENUE_KEY,
        synonyms=(
            "margin",
            "margin %",
            "margin percent",
            "margin pct",
            "operating margin",
        ),
    ),
)

DERIVED: tuple[Measure, ...] = (
    Measure("ExpenseRatio", "percent", "ratio", None, EXPENSE_KEY, REVENUE_KEY),
    Measure("RevenuePerFTE", "usd_mm", "ratio", None, REVENUE_KEY, "Headcount_FTE"),
    Measure("CostPerFTE", "usd_mm", "ratio", None, EXPENSE_KEY, "Headcount_FTE"),
    Measure(
        "CAC", "usd_mm", "ratio", None, "ClientAcquisitionSpend_$mm", "NewClients_Count"
    ),
)

_MEASURES_BY_KEY = {m.key: m for m in MEASURES + DERIVED}


@dataclass(frozen=True)
class TimeWindow:
    kind: str  # 'quarter', 'year', 'latest' or 'all'
    value: Optional[str] = None

    def describe(self) -> str:
        return f"{self.kind} ({self.value})" if self.value else self.kind


@dataclass
class QueryPlan:
    metric: str
    operation: str = "single"
    group_by: list[str] = field(default_factory=list)
    filters: dict[str, list[str]] = field(default_factory=dict)
    time_window: TimeWindow = field(default_factory=lambda: TimeWindow("latest"))
    top_n: Optional[int] = None
    sort_direction: str = "desc"


@dataclass(frozen=True)
class QueryRow:
    dimension_values: dict[str, str]
    measures: dict[str, float]
    record_count: int


@dataclass(frozen=True)
class QueryResult:
    plan: QueryPlan
    rows: list[QueryRow]
    time_window_used: TimeWindow
    filters_used: dict[str, list[str]]
    aggregation_definition: str
    answer_text: str

    @property
    def measure(self) -> Optional[Measure]:
        return measure_by_key(self.plan.metric)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def normalize_text(text: str) -> str:
    """Lower-case, drop unit markers and underscores, collapse spaces."""
    out = text.lower()
    for token in ("$mm", "_pct", "%", "_"):
        out = out.replace(token, "")
    return re.sub(r"\s+", " ", out).strip()


def _compact(text: str) -> str:
    return normalize_text(text).replace(" ", "")


def contains_any(text: str, keywords: Sequence[str]) -> bool:
    """True when one of the keywords appears as whole words in ``text``.

    A plural "s"/"es" is accepted ("cost centers" mentions "cost center").
    """
    normalized = normalize_text(text)
    for keyword in keywords:
        pattern = r"\b" + re.escape(normalize_text(keyword)) + r"(?:s|es)?\b"
        if re.search(pattern, normalized):
            return True
    return False


def extract_quarter(text: str) -> Optional[str]:
    """Return a quarter as '2024Q1' (accepts '2024 q1' and '2024-Q1')."""
    match = re.search(r"(\d{4})\s*-?\s*[Qq]\s*(\d)", text)
    if match:
        return f"{match.group(1)}Q{match.group(2)}"
    return None


def extract_year(text: str) -> Optional[str]:
    match = re.search(r"\b(20\d{2})\b", text)
    return match.group(1) if match else None


def extract_number(text: str) -> Optional[int]:
    """Return the first small standalone number (years are ignored)."""
    match = re.search(r"\b(\d{1,3})\b", text)
    return int(match.group(1)) if match else None


def extract_group_by(text: str) -> Optional[str]:
    """Return the word following "by" or "per", if any."""
    for word in ("by", "per"):
        match = re.search(rf"\b{word}\s+([a-z]+)", text, flags=re.IGNORECASE)
        if match:
            return match.group(1)
    return None


def quarter_token(value: Any) -> str:
    """Canonical form used to compare quarters ('2024-Q1' → '2024Q1')."""
    return re.sub(r"[^0-9A-Z]", "", str(value).upper())


# ---------------------------------------------------------------------------
# Dictionary lookups
# ---------------------------------------------------------------------------


def measure_by_key(key: str) -> Optional[Measure]:
    """Exact lookup, used once a plan has been built."""
    return _MEASURES_BY_KEY.get(key)


def find_measure(text: str) -> Optional[Measure]:
    """Find the measure a phrase refers to, by key then by synonym.

    Keys and synonyms mentioned in the phrase win over keys that merely
    contain the phrase ("revenue" is total revenue, not advisory revenue).
    """
    query = _compact(text)
    if not query:
        return None
    for measure in MEASURES + DERIVED:
        names = [_compact(measure.key)] + [_compact(s) for s in measure.synonyms]
        if any(name and name in query for name in names):
            return measure
    for measure in MEASURES + DERIVED:
        names = [_compact(measure.key)] + [_compact(s) for s in measure.synonyms]
        if any(query in name for name in names):
            return measure
    return None


def find_dimension(text: str) -> Optional[QueryDimension]:
    """Find the dimension a phrase refers to, by key then by synonym."""
    query = _compact(text)
    if not query:
        return None
    for dim in DIMENSIONS:
        if _compact(dim.key) == query:
            return dim
        for synonym in dim.synonyms:
            syn = _compact(synonym)
            if syn in query or query in syn:
                return dim
    return None


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def pick_margin_metric(question: str) -> str:
    """'margin' means margin % unless dollars are asked for."""
    q = question.lower()
    if any(token in q for token in ("%", "percent", "pct")):
        return MARGIN_PCT_KEY
    if any(token in q for token in ("$", "dollar", "amount", "mm")):
        return MARGIN_KEY
    return MARGIN_PCT_KEY


def _pick_metric(question: str) -> str:
    if "margin" in question.lower():
        return pick_margin_metric(question)
    measure = find_measure(question)
    if measure is not None:
        return measure.key
    if contains_any(question, ["revenue", "sales", "income"]):
        return REVENUE_KEY
    if contains_any(question, ["expense", "cost", "spend"]):
        return EXPENSE_KEY
    return REVENUE_KEY


def _pick_time_window(question: str, selected_quarter: Optional[str]) -> TimeWindow:
    quarter = extract_quarter(question)
    if quarter:
        return TimeWindow("quarter", quarter)
    year = extract_year(question)
    if year:
        return TimeWindow("year", year)
    if contains_any(question, ["latest", "most recent", "current"]):
        return TimeWindow("latest")
    if contains_any(question, ["all", "every"]):
        return TimeWindow("all")
    if selected_quarter:
        return TimeWindow("quarter", selected_quarter)
    return TimeWindow("latest")


def plan_query(
    question: str,
    selected_quarter: Optional[str] = None,
    dimension_values: Optional[Mapping[str, Sequence[str]]] = None,
) -> QueryPlan:
    """Build a query plan from a question.

    Args:
        question: Free-text question.
        selected_quarter: Quarter used when the question names no period.
        dimension_values: Known labels per dimension, used to detect
            filters ("revenue for EMEA").
    """
    plan = QueryPlan(metric=_pick_metric(question))

    if contains_any(question, ["trend", "over time", "change", "historical"]):
        plan.operation = "trend"
    elif contains_any(question, ["best", "highest", "top", "maximum", "max"]):
        plan.operation = "top"
        plan.top_n = extract_number(question) or DEFAULT_TOP_N
    elif contains_any(question, ["worst", "lowest", "bottom", "minimum", "min"]):
        plan.operation = "bottom"
        plan.top_n = extract_number(question) or DEFAULT_TOP_N
        plan.sort_direction = "asc"

    group_text = extract_group_by(question)
    if group_text:
        dim = find_dimension(group_text)
        if dim is not None:
            plan.group_by.append(dim.key)
    for dim in DIMENSIONS:
        if dim.key not in plan.group_by and contains_any(question, dim.synonyms):
            plan.group_by.append(dim.key)
    if plan.operation == "trend" and QUARTER_DIMENSION not in plan.group_by:
        plan.group_by.append(QUARTER_DIMENSION)

    plan.time_window = _pick_time_window(question, selected_quarter)

    lowered = question.lower()
    for dim_key, values in (dimension_values or {}).items():
        for value in values:
            needle = normalize_text(str(value))
            if len(needle) > 2 and needle in lowered:
                found = plan.filters.setdefault(dim_key, [])
                if value not in found:
                    found.append(value)

    logger.debug("Planned %r as %s", question, plan)
    return plan


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def dimension_label(
    record: Mapping[str, Any],
    dimension_tables: DimensionTables,
    dimension: str,
) -> Optional[str]:
    """Label of a record for a query dimension.

    Quarter comes from the period column, joined dimensions from their
    tables; otherwise a column named after the dimension is used.
    """
    if dimension == QUARTER_DIMENSION:
        return record_period(record)
    label = resolve_dimension_label(record, dimension_tables, dimension)
    if label is not None:
        return label
    for key, value in record.items():
        if str(key).lower() == dimension.lower() and value not in (None, ""):
            return str(value)
    return None


def measure_value(record: Mapping[str, Any], key: str) -> float:
    """Numeric value of a measure column, 0.0 when absent."""
    match = resolve_field(record, key, MEASURE_STRATEGIES)
    if match.value is None:
        return 0.0
    return match.value


def _record_margin(record: Mapping[str, Any]) -> float:
    match = resolve_field(record, MARGIN_KEY, MEASURE_STRATEGIES)
    if match.value is not None:
        return match.value
    return measure_value(record, REVENUE_KEY) - measure_value(record, EXPENSE_KEY)


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator != 0 else 0.0


def aggregate_measure(
    records: Sequence[Mapping[str, Any]], metric: str
) -> dict[str, float]:
    """Aggregate one metric over a group of records.

    Ratio metrics also report the revenue of the group, used for ranking;
    ``MarginPct`` reports the summed ``Margin_$mm`` as well.
    """
    measure = measure_by_key(metric)
    if measure is None:
        return {}

    out: dict[str, float] = {}
    if metric == MARGIN_KEY:
        out[metric] = math.fsum(_record_margin(r) for r in records)
    elif measure.aggregation == "sum":
        out[metric] = math.fsum(measure_value(r, metric) for r in records)
    elif measure.aggregation == "weighted_avg":
        weights = [measure_value(r, measure.weight_by or "") for r in records]
        weighted = math.fsum(
            measure_value(r, metric) * w for r, w in zip(records, weights)
        )
        out[metric] = _ratio(weighted, math.fsum(weights))
    else:
        if metric == MARGIN_PCT_KEY:
            numerator = math.fsum(_record_margin(r) for r in records)
            out[MARGIN_KEY] = numerator
        else:
            numerator = math.fsum(
                measure_value(r, measure.numerator or "") for r in records
            )
        denominator = math.fsum(
            measure_value(r, measure.denominator or "") for r in records
        )
        out[metric] = _ratio(numerator, denominator)
        out[REVENUE_KEY] = math.fsum(measure_value(r, REVENUE_KEY) for r in records)
    return out


def _latest_quarter(records: Sequence[Mapping[str, Any]]) -> Optional[str]:
    periods = {record_period(r) for r in records}
    periods.discard(None)
    if not periods:
        return None
    return max(periods, key=quarter_token)


def _filter_time_window(
    records: list[Mapping[str, Any]], window: TimeWindow
) -> tuple[list[Mapping[str, Any]], TimeWindow]:
    if window.kind == "latest":
        latest = _latest_quarter(records)
        if latest is None:
            return records, TimeWindow("all")
        window = TimeWindow("quarter", latest)

    tokens = [quarter_token(record_period(r) or "") for r in records]
    if window.kind == "quarter" and window.value:
        wanted = quarter_token(window.value)
        return [r for r, t in zip(records, tokens) if t == wanted], window
    if window.kind == "year" and window.value:
        year = window.value
        return [r for r, t in zip(records, tokens) if t.startswith(year)], window
    return records, TimeWindow("all")


def _sort_rows(rows: list[QueryRow], plan: QueryPlan) -> list[QueryRow]:
    if plan.operation in {"top", "bottom"}:
        measure = measure_by_key(plan.metric)
        ratio = measure is not None and measure.is_ratio
        sign = 1 if plan.sort_direction == "asc" else -1

        def rank(row: QueryRow) -> tuple[bool, float]:
            small = ratio and row.measures.get(REVENUE_KEY, 0.0) < MIN_REVENUE_MM
            return small, sign * row.measures.get(plan.metric, 0.0)

        ranked = sorted(rows, key=rank)
        return ranked[: plan.top_n] if plan.top_n else ranked
    if plan.operation == "trend":
        return sorted(
            rows,
            key=lambda r: quarter_token(r.dimension_values.get(QUARTER_DIMENSION, "")),
        )
    return rows


def aggregation_definition(plan: QueryPlan, result_count: int) -> str:
    parts: list[str] = []
    if plan.group_by:
        parts.append(f"Grouped by: {', '.join(plan.group_by)}")
    if plan.operation == "top" and plan.top_n:
        parts.append(f"Top {plan.top_n} results")
    elif plan.operation == "bottom" and plan.top_n:
        parts.append(f"Bottom {plan.top_n} results")
    elif plan.operation == "trend":
        parts.append("Trend over time")
    if plan.time_window.kind != "all":
        parts.append(f"Time window: {plan.time_window.describe()}")
    parts.append(f"Total results: {result_count}")
    return " | ".join(parts)


def format_metric_value(value: Optional[float], unit: str) -> str:
    """Format by unit: percentages are fractions, $mm values are millions."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "N/A"
    if unit == "percent":
        return f"{value * 100:.2f}%"
    if unit == "usd_mm":
        return f"${value:.2f}M"
    return f"{round(value)}"


def metric_label(key: str) -> str:
    labels = {
        MARGIN_KEY: "Margin ($mm)",
        MARGIN_PCT_KEY: "Margin %",
        REVENUE_KEY: "Revenue",
        EXPENSE_KEY: "Expense",
    }
    if key in labels:
        return labels[key]
    out = re.sub(r"_?\$mm", "", key)
    out = re.sub(r"_?pct", "", out, flags=re.IGNORECASE)
    return out.replace("_", " ")


def answer_text(rows: Sequence[QueryRow], plan: QueryPlan) -> str:
    if not rows:
        return NO_RESULTS_ANSWER
    top = rows[0]
    value = top.measures.get(plan.metric)
    if value is None:
        return "Unable to compute metric value."
    measure = measure_by_key(plan.metric)
    unit = measure.unit if measure is not None else "count"
    dims = ", ".join(f"{k}: {v}" for k, v in top.dimension_values.items())
    if not dims:
        dims = "Top result" if plan.operation in {"top", "bottom"} else "Result"
    return f"{dims} - {metric_label(plan.metric)}: {format_metric_value(value, unit)}"


def execute_query(
    records: Sequence[Mapping[str, Any]],
    plan: QueryPlan,
    dimension_tables: Optional[DimensionTables] = None,
) -> QueryResult:
    """Run a query plan against the fact records."""
    tables = dimension_tables or {}
    if not records:
        return QueryResult(
            plan=plan,
            rows=[],
            time_window_used=TimeWindow("all"),
            filters_used={},
            aggregation_definition="No data available",
            answer_text=NO_DATA_ANSWER,
        )

    selected, window_used = _filter_time_window(
        [r for r in records if r], plan.time_window
    )

    for dim, values in plan.filters.items():
        wanted = {str(v).lower() for v in values}
        selected = [
            r
            for r in selected
            if (dimension_label(r, tables, dim) or "").strip().lower() in wanted
        ]

    groups: dict[tuple[str, ...], list[Mapping[str, Any]]] = {}
    if plan.group_by:
        for record in selected:
            key = tuple(
                (dimension_label(record, tables, dim) or "").strip()
                for dim in plan.group_by
            )
            groups.setdefault(key, []).append(record)
    else:
        groups[()] = selected

    rows = [
        QueryRow(
            dimension_values=dict(zip(plan.group_by, key)),
            measures=aggregate_measure(group, plan.metric),
            record_count=len(group),
        )
        for key, group in groups.items()
    ]
    rows = _sort_rows(rows, plan)

    return QueryResult(
        plan=plan,
        rows=rows,
        time_window_used=window_used,
        filters_used={k: list(v) for k, v in plan.filters.items()},
        aggregation_definition=aggregation_definition(plan, len(rows)),
        answer_text=answer_text(rows, plan),
    )


def answer_question(
    question: str,
    records: Sequence[Mapping[str, Any]],
    dimension_tables: Optional[DimensionTables] = None,
    dimension_values: Optional[Mapping[str, Sequence[str]]] = None,
    selected_quarter: Optional[str] = None,
) -> QueryResult:
    """Plan and execute a question in one call."""
    plan = plan_query(question, selected_quarter, dimension_values)
    return execute_query(records, plan, dimension_tables)
