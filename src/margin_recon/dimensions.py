# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Dimension joins for Margin Recon.

Fact records reference dimension tables through synthesized foreign keys:
a record carries ``GeographyID`` and the workbook holds a ``Dim_Geography``
table keyed by that ID. This module resolves those joins and extracts the
human-readable label used as a row-key token.

Conventions
-----------
- Foreign key: ``<Dimension>ID``, except for the names listed in
  ``FOREIGN_KEY_EXCEPTIONS`` (Line of Business uses ``LOBID``).
- Table name: ``Dim_<Dimension>`` first, then ``DIM_<Dimension>``; source
  workbooks do not use consistent casing.
- Display value: first non-ID attribute whose name contains "name",
  "description" or "code"; otherwise the first non-ID attribute.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional

logger = logging.getLogger(__name__)

DimensionRecord = Mapping[str, Any]
DimensionTables = Mapping[str, Mapping[str, DimensionRecord]]

FOREIGN_KEY_EXCEPTIONS: dict[str, str] = {
    "LineOfBusiness": "LOBID",
}

TABLE_PREFIXES = ("Dim_", "DIM_")

_DISPLAY_HINTS = ("name", "description", "code")


def foreign_key_for(dimension: str) -> str:
    """Return the fact-table foreign-key column for a dimension name."""
    return FOREIGN_KEY_EXCEPTIONS.get(dimension, f"{dimension}ID")


def dimension_table_candidates(dimension: str) -> list[str]:
    """Return the table names to try for a dimension, in lookup order."""
    return [f"{prefix}{dimension}" for prefix in TABLE_PREFIXES]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def join(
    fact_record: Mapping[str, Any],
    dimension_tables: DimensionTables,
    foreign_key_field: str,
    dimension_table_name: str,
) -> Optional[DimensionRecord]:
    """Resolve the dimension record referenced by a fact record.

    Args:
        fact_record: Flat fact record.
        dimension_tables: Table name → (ID → dimension record).
        foreign_key_field: Column of ``fact_record`` holding the ID.
        dimension_table_name: Name of the table to look the ID up in.

    Returns:
        The dimension record, or None if the foreign key is absent/empty,
        the table does not exist or has no entry for that ID.
    """
    fk_value = fact_record.get(foreign_key_field)
    if _is_blank(fk_value):
        return None
    table = dimension_tables.get(dimension_table_name)
    if table is None:
        return None
    return table.get(id_to_key(fk_value))


def id_to_key(value: Any) -> str:
    """Stringify an identifier the way dimension tables are keyed.

    Whole-number floats lose their fractional part so that a spreadsheet
    ID read as 5.0 still matches the key "5".
    """
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def join_dimension(
    fact_record: Mapping[str, Any],
    dimension_tables: DimensionTables,
    dimension: str,
) -> Optional[DimensionRecord]:
    """Join a fact record to a logical dimension, trying every table name."""
    fk = foreign_key_for(dimension)
    for table_name in dimension_table_candidates(dimension):
        found = join(fact_record, dimension_tables, fk, table_name)
        if found is not None:
            return found
    return None


def display_field(dimension_record: DimensionRecord) -> Optional[str]:
    """Return the attribute name to use as the display label, or None."""
    non_id = [str(k) for k in dimension_record.keys() if "id" not in str(k).lower()]
    for key in non_id:
        lower = key.lower()
        if any(hint in lower for hint in _DISPLAY_HINTS):
            return key
    return non_id[0] if non_id else None


def display_value(dimension_record: DimensionRecord) -> Optional[str]:
    """Return the display label of a dimension record, or None."""
    key = display_field(dimension_record)
    if key is None:
        return None
    return str(dimension_record[key])


def resolve_dimension_label(
    fact_record: Mapping[str, Any],
    dimension_tables: DimensionTables,
    dimension: str,
) -> Optional[str]:
    """Return the row-key token of a fact record for one dimension.

    - display value of the joined dimension record when available,
    - the raw foreign-key value when the join fails or the dimension
      record has no usable attribute,
    - None when the fact record has no foreign key for the dimension.
    """
    fk_value = fact_record.get(foreign_key_for(dimension))
    if _is_blank(fk_value):
        return None

    dim_record = join_dimension(fact_record, dimension_tables, dimension)
    if dim_record is None:
        logger.debug(
            "Join failed for %s=%r (tables: %s)",
            foreign_key_for(dimension),
            fk_value,
            list(dimension_tables.keys()),
        )
        return id_to_key(fk_value)

    label = display_value(dim_record)
    return label if label is not None else id_to_key(fk_value)


def strip_table_prefix(table_name: str) -> str:
    """Return the dimension name of a table ("Dim_Geography" → "Geography")."""
    for prefix in TABLE_PREFIXES:
        if table_name.startswith(prefix):
            return table_name[len(prefix) :]
    return table_name


def available_dimensions(table_names: Iterable[str]) -> list[str]:
    """List the dimensions offered by a set of dimension tables.

    Table prefixes are stripped and duplicates (``Dim_X`` and ``DIM_X``)
    collapse to one entry, in first-seen order.
    """
    seen: list[str] = []
    for name in table_names:
        dim = strip_table_prefix(str(name))
        if dim not in seen:
            seen.append(dim)
    return seen
