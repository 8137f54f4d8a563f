# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
I/O module for Margin Recon.

This module reads an uploaded margin workbook and turns its sheets into the
in-memory ``Workbook`` snapshot used by the reconciliation core.

Expected sheets
---------------

Sheet names are matched case-insensitively.

1) Fact sheet (required)
   ----------------------
   ``Fact_Margin``, or the first sheet whose name contains both "fact" and
   "margin". One row per period and combination of dimension foreign keys:

       Quarter, GeographyID, LOBID, ..., TotalRevenue_$mm, TotalExpense_$mm, ...

2) Naming-convention sheet (optional)
   ----------------------------------
   ``NamingConvention``, or the first sheet whose name contains "naming".

       Category, Fact_Margin naming, P&L Impact, ...

3) Dimension sheets (optional)
   ---------------------------
   Every sheet whose name starts with ``Dim_`` (any casing). Each row is
   keyed by its ID column:

   - the dimension's foreign key (``<Dimension>ID``, ``LOBID`` for
     LineOfBusiness) when present,
   - otherwise the first column whose name ends with "id",
   - otherwise the first column.

Input formats
-------------
- ``.xlsx`` / ``.xlsm`` files, read with ``pandas.read_excel`` (openpyxl).
- A directory of CSV files, one sheet per file (file stem = sheet name).

Cell normalization
------------------
- empty cells (NaN) become None,
- whole-number floats become ints (spreadsheets store IDs as floats),
- timestamps become ISO-8601 strings,
- column names are stripped of surrounding spaces.

If no fact sheet can be found, a clear ValueError is raised.
"""

import logging
import math
import os
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from .dimensions import foreign_key_for, id_to_key, strip_table_prefix
from .workbook import Record, Workbook

logger = logging.getLogger(__name__)

FACT_SHEET_NAME = "Fact_Margin"
NAMING_SHEET_NAME = "NamingConvention"
DIMENSION_SHEET_PREFIX = "dim_"

EXCEL_SUFFIXES = {".xlsx", ".xlsm"}


def read_sheets(path: Union[str, "os.PathLike[str]"]) -> dict[str, pd.DataFrame]:
    """Read every sheet of a workbook (or CSV directory) into DataFrames.

    Raises:
        FileNotFoundError: if the path does not exist.
        ValueError: if the file type is not supported or cannot be parsed.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Workbook not found: {p}")

    if p.is_dir():
        sheets = {}
        for csv_path in sorted(p.glob("*.csv")):
            sheets[csv_path.stem] = pd.read_csv(csv_path)
        return sheets

    if p.suffix.lower() not in EXCEL_SUFFIXES:
        raise ValueError(
            f"Unsupported workbook type '{p.suffix}'. Expected one of: "
            + ", ".join(sorted(EXCEL_SUFFIXES))
            + " or a directory of CSV files."
        )

    try:
        return pd.read_excel(p, sheet_name=None, engine="openpyxl")
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to read workbook: {p}") from exc


def _find_sheet(names: list[str], exact: str, *fragments: str) -> Optional[str]:
    for name in names:
        if name.strip().lower() == exact.lower():
            return name
    for name in names:
        lower = name.lower()
        if all(f in lower for f in fragments):
            return name
    return None


def normalize_cell(value: Any) -> Any:
    """Convert a pandas cell into a plain JSON-compatible value."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalar → Python scalar
        value = value.item()
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def frame_to_records(df: pd.DataFrame) -> list[Record]:
    """Turn a sheet into a list of records, dropping fully empty rows."""
    d = df.copy()
    d.columns = [str(c).strip() for c in d.columns]
    d = d.dropna(how="all")
    records: list[Record] = []
    for row in d.to_dict(orient="records"):
        records.append({k: normalize_cell(v) for k, v in row.items()})
    return records


def _id_column(columns: list[str], dimension: str) -> Optional[str]:
    fk = foreign_key_for(dimension).lower()
    for col in columns:
        if col.lower() == fk:
            return col
    for col in columns:
        if col.lower().endswith("id"):
            return col
    return columns[0] if columns else None


def dimension_table_from_frame(
    df: pd.DataFrame, table_name: str
) -> dict[str, Record]:
    """Key the rows of a dimension sheet by their synthesized ID."""
    records = frame_to_records(df)
    if not records:
        return {}
    id_col = _id_column(list(records[0].keys()), strip_table_prefix(table_name))
    table: dict[str, Record] = {}
    for record in records:
        key = record.get(id_col)
        if key is None or key == "":
            continue
        table[id_to_key(key)] = record
    return table


def read_workbook(path: Union[str, "os.PathLike[str]"]) -> Workbook:
    """
    Read a margin workbook and build the in-memory snapshot.

    Parameters
    ----------
    path:
        Path to an Excel workbook, or to a directory of CSV sheets.

    Returns
    -------
    Workbook
        Fact records, dimension tables and naming-convention records.

    Raises
    ------
    ValueError
        If no fact sheet is present.
    """
    sheets = read_sheets(path)
    names = list(sheets.keys())

    fact_name = _find_sheet(names, FACT_SHEET_NAME, "fact", "margin")
    if fact_name is None:
        raise ValueError(
            "Fact sheet not found. Expected a sheet named 'Fact_Margin' "
            "(or containing 'fact' and 'margin')."
        )
    naming_name = _find_sheet(names, NAMING_SHEET_NAME, "naming")

    dimension_tables: dict[str, dict[str, Record]] = {}
    for name in names:
        if name.lower().startswith(DIMENSION_SHEET_PREFIX):
            dimension_tables[name] = dimension_table_from_frame(sheets[name], name)

    naming_records = (
        frame_to_records(sheets[naming_name]) if naming_name is not None else []
    )
    if naming_name is None:
        logger.warning("No naming-convention sheet found in %s", path)

    workbook = Workbook(
        fact_records=frame_to_records(sheets[fact_name]),
        dimension_tables=dimension_tables,
        naming_convention_records=naming_records,
    )
    logger.info(
        "Read %d fact records, %d dimension tables, %d naming rows from %s",
        len(workbook.fact_records),
        len(dimension_tables),
        len(naming_records),
        path,
    )
    return workbook
