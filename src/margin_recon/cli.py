# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for Margin Recon.

This module wires together the building blocks of Margin Recon:

- application configuration (database, report and display options),
- workbook parsing and payload storage,
- naming-convention resolution (P&L line items),
- the aggregation engine,
- view helpers (statement frames, detail levels, CSV export).

The CLI is intentionally thin: it does not implement reconciliation logic
itself. It orchestrates the underlying modules based on command-line
arguments and the configuration file.


Commands
--------

``import WORKBOOK``
    Parse an Excel workbook (or a directory of CSV sheets) and store it as
    the latest dataset.

``pnl``
    Aggregate the latest dataset and render the P&L statement.

    - ``--dimension NAME`` (repeatable): group by dimensions, in order.
      Defaults to ``report.default_dimensions`` from the configuration.
    - ``--period Q`` (repeatable): restrict to these quarters. Defaults to
      every quarter found in the fact records.
    - ``--row-key KEY``: render a single row key (e.g. "EMEA | Retail").
      Without it, every row key is rendered, grand total last.
    - ``--view summary|regular|detailed``: level of detail.
    - ``--display-mode table|csv|both`` and ``--output DIR``.

``periods``, ``dimensions``, ``line-items``
    List what the latest dataset offers.

``match FIELD [--record-index N]``
    Show how a field label resolves against one fact record.

``ask QUESTION [--quarter Q]``
    Answer a short question ("top 3 cost centers by margin in 2024Q3")
    with figures computed from the fact records.


Missing data
------------

When a required input is missing, the CLI prints a specific message and
exits with status 0:

- no workbook has been imported,
- the workbook has no naming-convention sheet,
- the naming-convention sheet has no fact-field naming column,
- no naming row has the "Financial Result" category,
- no quarter was found in the fact records.

Invalid arguments or unreadable files print ``Error: ...`` on stderr and
exit with status 1.


Output
------

In ``csv`` / ``both`` mode, statements are written with a timestamp-based
name in ``--output`` (``data/output`` by default):

    pnl_<row key>_YYYY-MM-DD-HH-MM-SS.csv


Examples
--------

    python -m margin_recon.cli import data/input/margin_workbook.xlsx
    python -m margin_recon.cli pnl --view summary
    python -m margin_recon.cli pnl --dimension Geography --dimension LineOfBusiness
    python -m margin_recon.cli match "Total Revenue" --record-index 3
    python -m margin_recon.cli ask "revenue by region in 2024Q1"
"""

import argparse
import logging
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from . import __version__
from .config import DISPLAY_MODES, VIEWS, AppConfig, load_app_config
from .dimensions import available_dimensions
from .engine import (
    TOTAL_ROW_KEY,
    AggregationDiagnostics,
    aggregate,
    available_periods,
    discover_dimension_values,
)
from .fields import resolve_field
from .io import read_workbook
from .naming import build_line_items, classify_naming_records
from .query import answer_question
from .storage import load_workbook_payload, save_workbook_payload
from .views import apply_view_level_filter, round_statement, statement_frame
from .workbook import Workbook

logger = logging.getLogger(__name__)

NO_WORKBOOK_MESSAGE = (
    "No workbook loaded. Use 'import WORKBOOK' to load a margin workbook."
)
NO_NAMING_SHEET_MESSAGE = (
    "No naming-convention sheet in the workbook. Add a 'NamingConvention' "
    "sheet listing the Financial Result fields."
)
NO_NAMING_COLUMN_MESSAGE = (
    "Naming convention not usable: no 'Fact_Margin Naming' column found "
    "in the naming-convention sheet."
)
NO_FINANCIAL_RESULT_MESSAGE = (
    'Naming convention has no rows with Category = "Financial Result".'
)
NO_PERIODS_MESSAGE = "No quarters found in the fact records."


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="python -m margin_recon.cli",
        description=(
            "Margin Recon - reconcile a margin workbook into a P&L. "
            "Joins fact records to dimension tables, matches naming-convention "
            "fields to fact columns and aggregates by dimension and quarter."
        ),
    )

    ap.add_argument(
        "--version",
        action="version",
        version=f"margin_recon version {__version__}",
    )
    ap.add_argument(
        "--config",
        dest="config_path",
        help=(
            "Path to the TOML configuration file. If omitted, "
            "'margin_recon_config.toml' in the current directory is used "
            "when present."
        ),
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v: info, -vv: debug).",
    )

    subparsers = ap.add_subparsers(dest="command", metavar="command")

    # ------------------------------------------------------------------
    # import
    # ------------------------------------------------------------------
    import_parser = subparsers.add_parser(
        "import",
        help="Parse a workbook and store it as the latest dataset.",
    )
    import_parser.add_argument(
        "workbook",
        help="Path to an .xlsx/.xlsm file or a directory of CSV sheets.",
    )

    # ------------------------------------------------------------------
    # pnl
    # ------------------------------------------------------------------
    pnl_parser = subparsers.add_parser(
        "pnl",
        help="Aggregate the latest dataset and render the P&L.",
    )
    pnl_parser.add_argument(
        "--dimension",
        dest="dimensions",
        action="append",
        metavar="NAME",
        help=(
            "Dimension to group by (repeatable, in display order). "
            "Defaults to report.default_dimensions."
        ),
    )
    pnl_parser.add_argument(
        "--period",
        dest="periods",
        action="append",
        metavar="QUARTER",
        help="Quarter to include (repeatable). Defaults to all quarters.",
    )
    pnl_parser.add_argument(
        "--row-key",
        dest="row_key",
        help="Render a single row key (e.g. 'Total' or 'EMEA | Retail').",
    )
    pnl_parser.add_argument(
        "--view",
        choices=list(VIEWS),
        help=(
            "Level of detail. summary: section headers and margin; "
            "regular: adds sub-totals; detailed: every line item. "
            "Defaults to display.view."
        ),
    )
    pnl_parser.add_argument(
        "--display-mode",
        dest="display_mode",
        choices=list(DISPLAY_MODES),
        help=(
            "Override display.mode. 'table' prints to stdout, "
            "'csv' writes CSV files only, 'both' does both."
        ),
    )
    pnl_parser.add_argument(
        "--output",
        dest="output_dir",
        help="Directory for CSV files. If omitted, 'data/output' is used.",
    )

    # ------------------------------------------------------------------
    # listings
    # ------------------------------------------------------------------
    subparsers.add_parser("periods", help="List the quarters of the dataset.")
    subparsers.add_parser("dimensions", help="List the available dimensions.")
    subparsers.add_parser("line-items", help="List the resolved P&L line items.")

    # ------------------------------------------------------------------
    # match
    # ------------------------------------------------------------------
    match_parser = subparsers.add_parser(
        "match",
        help="Show how a field label resolves against a fact record.",
    )
    match_parser.add_argument("field", help="Field label to resolve.")
    match_parser.add_argument(
        "--record-index",
        dest="record_index",
        type=int,
        default=0,
        help="Index of the fact record to inspect (default: 0).",
    )

    # ------------------------------------------------------------------
    # ask
    # ------------------------------------------------------------------
    ask_parser = subparsers.add_parser(
        "ask",
        help="Answer a question with figures computed from the fact records.",
    )
    ask_parser.add_argument(
        "question", help="Question, e.g. 'top 3 regions by margin'."
    )
    ask_parser.add_argument(
        "--quarter",
        help="Quarter used when the question names no period (default: latest).",
    )

    return ap


def _configure_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level, format="%(levelname)s %(name)s: %(message)s", force=True
    )


def _load_latest(config: AppConfig) -> Optional[Workbook]:
    """Return the latest stored workbook, or None when nothing is stored."""
    stored = load_workbook_payload(config.database)
    if stored is None:
        return None
    workbook = Workbook.from_payload(stored.data)
    if workbook.is_empty:
        return None
    return workbook


def _safe_filename(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", text).strip("_") or "row"


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _handle_import(args: argparse.Namespace, config: AppConfig) -> int:
    path = Path(args.workbook)
    print(f"Importing workbook from {path} ...")
    workbook = read_workbook(path)
    stored = save_workbook_payload(
        config.database, workbook.to_payload(), source_label=path.name
    )
    print(
        f"Stored upload {stored.upload_id}: "
        f"{stored.record_count} fact records, "
        f"{len(workbook.dimension_tables)} dimension tables, "
        f"{len(workbook.naming_convention_records)} naming rows."
    )
    if stored.quarter_range:
        print(f"Quarters: {stored.quarter_range}")
    return 0


def _handle_periods(args: argparse.Namespace, config: AppConfig) -> int:
    workbook = _load_latest(config)
    if workbook is None:
        print(NO_WORKBOOK_MESSAGE)
        return 0
    periods = available_periods(workbook.fact_records)
    if not periods:
        print(NO_PERIODS_MESSAGE)
        return 0
    for period in periods:
        print(period)
    return 0


def _handle_dimensions(args: argparse.Namespace, config: AppConfig) -> int:
    workbook = _load_latest(config)
    if workbook is None:
        print(NO_WORKBOOK_MESSAGE)
        return 0
    dims = available_dimensions(workbook.dimension_tables.keys())
    if not dims:
        print("No dimension tables in the dataset.")
        return 0
    for dim in dims:
        print(dim)
    return 0


def _handle_line_items(args: argparse.Namespace, config: AppConfig) -> int:
    workbook = _load_latest(config)
    if workbook is None:
        print(NO_WORKBOOK_MESSAGE)
        return 0
    line_items = build_line_items(workbook.naming_convention_records)
    if not line_items:
        print(_line_items_banner(workbook))
        return 0
    df = pd.DataFrame(
        [
            {
                "label": item.label,
                "field": item.field_name,
                "indent": item.indent,
                "classification": item.classification,
            }
            for item in line_items
        ]
    )
    print(df.to_string(index=False))
    return 0


def _line_items_banner(workbook: Workbook) -> str:
    """Explain why no line item could be built."""
    if not workbook.naming_convention_records:
        return NO_NAMING_SHEET_MESSAGE
    classification = classify_naming_records(workbook.naming_convention_records)
    if classification is None:
        return NO_NAMING_COLUMN_MESSAGE
    return NO_FINANCIAL_RESULT_MESSAGE


def _handle_match(args: argparse.Namespace, config: AppConfig) -> int:
    workbook = _load_latest(config)
    if workbook is None:
        print(NO_WORKBOOK_MESSAGE)
        return 0
    records = workbook.fact_records
    if not 0 <= args.record_index < len(records):
        raise ValueError(
            f"Record index {args.record_index} out of range "
            f"(0..{len(records) - 1})."
        )

    match = resolve_field(records[args.record_index], args.field)
    print(f"Target     : {match.target}")
    print(f"Matched    : {match.matched}")
    print(f"Strategy   : {match.strategy.value}")
    print(f"Column     : {match.key if match.key is not None else ''}")
    print(f"Value      : {match.value if match.value is not None else ''}")
    print(f"Confidence : {match.confidence:.2f}")
    print(f"Candidates : {', '.join(match.candidates)}")
    return 0


def _handle_ask(args: argparse.Namespace, config: AppConfig) -> int:
    workbook = _load_latest(config)
    if workbook is None:
        print(NO_WORKBOOK_MESSAGE)
        return 0

    dims = available_dimensions(workbook.dimension_tables.keys())
    known_values = discover_dimension_values(
        workbook.fact_records, workbook.dimension_tables, dims
    )
    result = answer_question(
        args.question,
        workbook.fact_records,
        workbook.dimension_tables,
        known_values,
        args.quarter,
    )

    print(result.answer_text)
    print(f"Metric      : {result.plan.metric}")
    print(f"Time window : {result.time_window_used.describe()}")
    for dim, values in result.filters_used.items():
        print(f"Filter      : {dim} = {', '.join(values)}")
    print(f"Aggregation : {result.aggregation_definition}")

    if result.rows:
        df = pd.DataFrame(
            [
                {
                    **row.dimension_values,
                    result.plan.metric: row.measures.get(result.plan.metric),
                    "records": row.record_count,
                }
                for row in result.rows
            ]
        )
        print()
        print(df.to_string(index=False))
    return 0


def _handle_pnl(args: argparse.Namespace, config: AppConfig) -> int:
    workbook = _load_latest(config)
    if workbook is None:
        print(NO_WORKBOOK_MESSAGE)
        return 0

    line_items = build_line_items(workbook.naming_convention_records)
    if not line_items:
        print(_line_items_banner(workbook))
        return 0

    all_periods = available_periods(workbook.fact_records)
    if not all_periods:
        print(NO_PERIODS_MESSAGE)
        return 0

    periods = list(args.periods) if args.periods else all_periods
    unknown = [p for p in periods if p not in all_periods]
    if unknown:
        raise ValueError(
            f"Unknown quarter(s): {', '.join(unknown)}. "
            f"Available: {', '.join(all_periods)}."
        )

    dims = (
        list(args.dimensions)
        if args.dimensions
        else list(config.report.default_dimensions)
    )
    known_dims = available_dimensions(workbook.dimension_tables.keys())
    for dim in dims:
        if dim not in known_dims:
            logger.warning("Dimension %s has no dimension table; raw IDs are used", dim)

    diagnostics = AggregationDiagnostics()
    table = aggregate(
        line_items,
        workbook.fact_records,
        workbook.dimension_tables,
        dims,
        periods,
        diagnostics=diagnostics,
        low_confidence_threshold=config.report.low_confidence_threshold,
    )

    print(
        f"Processed {diagnostics.records_processed} records, "
        f"skipped {diagnostics.records_skipped}."
    )
    for match in diagnostics.low_confidence:
        print(
            f"Warning: '{match.target}' matched column '{match.key}' "
            f"with low confidence ({match.strategy.value})."
        )

    if args.row_key:
        row_keys = [args.row_key]
    else:
        row_keys = [k for k in table if k != TOTAL_ROW_KEY] + [TOTAL_ROW_KEY]

    view = args.view or config.display.view
    frames = []
    for row_key in row_keys:
        df = statement_frame(table, line_items, row_key, periods)
        df = apply_view_level_filter(df, view)
        frames.append((row_key, round_statement(df, config.display.decimals)))

    display_mode = args.display_mode or config.display.mode

    if display_mode in {"table", "both"}:
        for row_key, df in frames:
            print()
            print(f"=== P&L - {row_key} ===")
            print(df.to_string(index=False))

    if display_mode in {"csv", "both"}:
        output_dir = Path(args.output_dir) if args.output_dir else Path("data/output")
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
        for row_key, df in frames:
            path = output_dir / f"pnl_{_safe_filename(row_key)}_{timestamp}.csv"
            df.to_csv(path, index=False)
            print(f"Wrote {path} ({len(df)} rows)")

    return 0


_HANDLERS = {
    "import": _handle_import,
    "pnl": _handle_pnl,
    "periods": _handle_periods,
    "dimensions": _handle_dimensions,
    "line-items": _handle_line_items,
    "match": _handle_match,
    "ask": _handle_ask,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the Margin Recon CLI.

    Parses command-line arguments, loads the configuration, configures
    logging and dispatches to the selected command.

    Returns:
        The process exit status.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    try:
        config = load_app_config(args.config_path)
        return _HANDLERS[args.command](args, config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
