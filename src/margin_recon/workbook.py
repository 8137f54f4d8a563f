# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
In-memory workbook snapshot.

A ``Workbook`` holds the three inputs of the reconciliation core:

- ``fact_records``: list of flat fact records (one per period and
  combination of dimension foreign keys),
- ``dimension_tables``: table name → (dimension ID → attribute mapping),
- ``naming_convention_records``: rows of the naming-convention sheet.

The persisted form is an opaque JSON payload::

    {
        "factMarginRecords": [ {...}, ... ],
        "dimensionTables": { "Dim_Geography": { "1": {...}, ... }, ... },
        "namingConventionRecords": [ {...}, ... ]
    }

``Workbook.from_payload`` rebuilds live structures from that payload and
``Workbook.to_payload`` produces it. The snapshot is treated as read-only
once built.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from .dimensions import id_to_key

Record = dict[str, Any]


@dataclass(frozen=True)
class Workbook:
    """Parsed workbook consumed by the naming resolver and the engine."""

    fact_records: list[Record] = field(default_factory=list)
    dimension_tables: dict[str, dict[str, Record]] = field(default_factory=dict)
    naming_convention_records: list[Record] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.fact_records

    @staticmethod
    def from_payload(payload: Optional[Mapping[str, Any]]) -> "Workbook":
        """Rebuild a Workbook from its persisted JSON payload.

        Args:
            payload: Decoded JSON object, or None when nothing is stored.

        Returns:
            A Workbook; missing sections are empty.

        Raises:
            ValueError: if a section does not have the expected shape.
        """
        if payload is None:
            return Workbook()
        if not isinstance(payload, Mapping):
            raise ValueError("Workbook payload must be a JSON object.")

        facts = _record_list(payload.get("factMarginRecords"), "factMarginRecords")
        naming = _record_list(
            payload.get("namingConventionRecords"), "namingConventionRecords"
        )
        tables = _dimension_tables(payload.get("dimensionTables"))

        return Workbook(
            fact_records=facts,
            dimension_tables=tables,
            naming_convention_records=naming,
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize the snapshot to its JSON-compatible payload."""
        return {
            "factMarginRecords": [dict(r) for r in self.fact_records],
            "dimensionTables": {
                name: {key: dict(rec) for key, rec in table.items()}
                for name, table in self.dimension_tables.items()
            },
            "namingConventionRecords": [
                dict(r) for r in self.naming_convention_records
            ],
        }


def _record_list(raw: Any, section: str) -> list[Record]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"Workbook payload section '{section}' must be a list.")
    out: list[Record] = []
    for item in raw:
        # Null rows are dropped, as the parser drops empty sheet rows.
        if item is None:
            continue
        if not isinstance(item, Mapping):
            raise ValueError(
                f"Workbook payload section '{section}' must contain objects."
            )
        out.append({str(k): v for k, v in item.items()})
    return out


def _dimension_tables(raw: Any) -> dict[str, dict[str, Record]]:
    """Decode dimension tables.

    Accepts a mapping of mappings, or a list of ``[name, mapping]`` pairs
    (the serialized form of an ordered map).
    """
    if raw is None:
        return {}
    if isinstance(raw, list):
        try:
            raw = {str(name): table for name, table in raw}
        except (TypeError, ValueError) as exc:
            raise ValueError(
                "Workbook payload 'dimensionTables' pairs must be [name, table]."
            ) from exc
    if not isinstance(raw, Mapping):
        raise ValueError("Workbook payload 'dimensionTables' must be an object.")

    tables: dict[str, dict[str, Record]] = {}
    for name, table in raw.items():
        if not isinstance(table, Mapping):
            raise ValueError(f"Dimension table '{name}' must be an object.")
        tables[str(name)] = {
            id_to_key(key): {str(k): v for k, v in (rec or {}).items()}
            for key, rec in table.items()
        }
    return tables
