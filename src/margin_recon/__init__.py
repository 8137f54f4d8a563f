# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Margin Recon
------------

Reconciliation core for margin workbooks. A workbook holds a fact table of
financial records, dimension lookup tables and a naming-convention sheet
maintained by finance teams. Margin Recon turns it into a Profit & Loss
statement grouped by any combination of dimensions and quarters.

Main capabilities:
- fuzzy matching of naming-convention labels to fact-table columns,
- dimension joins through synthesized foreign keys (``<Dimension>ID``),
- P&L line-item construction from the naming convention,
- two-phase aggregation with margin derivation and grand totals,
- deterministic answers to short questions over the fact records,
- workbook payload storage (SQLite) and a command-line interface.

Version: 0.1.0

Usage:
    python -m margin_recon.cli --help
"""

__all__ = ["fields", "dimensions", "naming", "engine", "query", "views", "io"]

__version__ = "0.1.0"
