# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Storage layer for Margin Recon.

The dashboard persists the parsed workbook as an opaque JSON payload and
reads it back at start-up. This module keeps those payloads in a SQLite
database and exposes the two operations of the excel-data endpoint:

- ``get_excel_data(cfg)``  → ``{"data": <payload | None>}``
- ``post_excel_data(cfg, body)`` → ``({"success": True}, 200)`` or
  ``({"error": "..."}, 500)``

------------------------------------------------------------------------------
Schema
------------------------------------------------------------------------------

uploads
   One row per stored workbook payload. The most recent row is the
   "latest" dataset served to the dashboard.

   Columns:
   - id             INTEGER PRIMARY KEY AUTOINCREMENT
   - upload_id      TEXT    NOT NULL UNIQUE  -- "upload_<epoch ms>_<random>"
   - uploaded_at    TEXT    NOT NULL         -- ISO datetime, UTC
   - source_label   TEXT                     -- file name, "api", ...
   - record_count   INTEGER NOT NULL         -- number of fact records
   - quarter_range  TEXT                     -- "first → last" period
   - payload        TEXT    NOT NULL         -- JSON document

------------------------------------------------------------------------------
Notes
------------------------------------------------------------------------------

- The payload is stored verbatim; decoding into live structures is the job
  of ``Workbook.from_payload``.
- There is no retry policy: a failed read is reported to the caller, which
  treats it like an empty workbook.
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd

from .engine import available_periods

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Database configuration for Margin Recon.

    Attributes
    ----------
    engine:
        Database engine identifier. Only "sqlite" is supported.
    path:
        Path to the SQLite database file.
    """

    engine: str
    path: Path


@dataclass(frozen=True)
class StoredPayload:
    """A workbook payload read back from the database."""

    upload_id: str
    uploaded_at: datetime
    source_label: str | None
    record_count: int
    quarter_range: str | None
    data: dict[str, Any]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ensure_sqlite(cfg: DatabaseConfig) -> None:
    """Raise if the configuration does not refer to a supported engine."""
    if cfg.engine.lower() != "sqlite":
        msg = (
            f"Unsupported database engine: {cfg.engine!r}. "
            "Only 'sqlite' is supported for now."
        )
        raise ValueError(msg)


def _connect(cfg: DatabaseConfig) -> sqlite3.Connection:
    """
    Open a SQLite connection.

    The caller is responsible for closing the connection.
    """
    _ensure_sqlite(cfg)
    return sqlite3.connect(cfg.path)


def _create_schema_if_needed(conn: sqlite3.Connection) -> None:
    """Create the uploads table if it does not exist yet (idempotent)."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS uploads (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            upload_id     TEXT    NOT NULL UNIQUE,
            uploaded_at   TEXT    NOT NULL,
            source_label  TEXT,
            record_count  INTEGER NOT NULL DEFAULT 0,
            quarter_range TEXT,
            payload       TEXT    NOT NULL
        );
        """
    )
    conn.commit()


def _now_utc() -> datetime:
    """Return the current UTC datetime (isolated for easier testing)."""
    return datetime.now(timezone.utc)


def generate_upload_id() -> str:
    """Return a unique upload identifier such as 'upload_1718000000000_k3j9x2a'."""
    millis = int(_now_utc().timestamp() * 1000)
    return f"upload_{millis}_{secrets.token_hex(4)[:7]}"


def _summarize(payload: dict[str, Any]) -> tuple[int, str | None]:
    """Return (fact record count, quarter range) for upload metadata."""
    facts = payload.get("factMarginRecords") or []
    if not isinstance(facts, list):
        return 0, None
    periods = available_periods([f for f in facts if isinstance(f, dict)])
    if not periods:
        return len(facts), None
    return len(facts), f"{periods[0]} → {periods[-1]}"


def _row_to_stored_payload(row: tuple) -> StoredPayload:
    upload_id, uploaded_at, source_label, record_count, quarter_range, raw = row
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Stored payload {upload_id} is not valid JSON.") from exc
    return StoredPayload(
        upload_id=upload_id,
        uploaded_at=datetime.fromisoformat(uploaded_at),
        source_label=source_label,
        record_count=int(record_count),
        quarter_range=quarter_range,
        data=data,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def init_storage(cfg: DatabaseConfig) -> None:
    """
    Initialize the storage schema if needed.

    - Creates the SQLite file (and its parent directory) if missing.
    - Creates the uploads table if missing.

    Raises
    ------
    ValueError
        If cfg.engine is not supported.
    sqlite3.Error
        If schema creation fails.
    """
    cfg.path.parent.mkdir(parents=True, exist_ok=True)

    conn = _connect(cfg)
    try:
        _create_schema_if_needed(conn)
    finally:
        conn.close()


def save_workbook_payload(
    cfg: DatabaseConfig,
    payload: dict[str, Any],
    *,
    source_label: str | None = None,
    upload_id: str | None = None,
) -> StoredPayload:
    """
    Store a workbook payload as the latest dataset.

    Parameters
    ----------
    cfg:
        Database configuration.
    payload:
        JSON-compatible workbook payload (see ``Workbook.to_payload``).
    source_label:
        Optional origin of the payload (file name, "api", ...).
    upload_id:
        Optional identifier; generated when omitted.

    Returns
    -------
    StoredPayload
        The stored row.

    Raises
    ------
    ValueError
        If the payload is not a JSON object or cannot be serialized.
    """
    if not isinstance(payload, dict):
        raise ValueError("Workbook payload must be a JSON object.")
    try:
        raw = json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError("Workbook payload is not JSON-serializable.") from exc

    init_storage(cfg)
    uid = upload_id or generate_upload_id()
    uploaded_at = _now_utc().isoformat(timespec="seconds")
    record_count, quarter_range = _summarize(payload)

    conn = _connect(cfg)
    try:
        conn.execute(
            """
            INSERT INTO uploads (
                upload_id, uploaded_at, source_label,
                record_count, quarter_range, payload
            )
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (uid, uploaded_at, source_label, record_count, quarter_range, raw),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Stored workbook payload %s (%d records)", uid, record_count)
    return StoredPayload(
        upload_id=uid,
        uploaded_at=datetime.fromisoformat(uploaded_at),
        source_label=source_label,
        record_count=record_count,
        quarter_range=quarter_range,
        data=payload,
    )


def load_workbook_payload(
    cfg: DatabaseConfig, upload_id: str | None = None
) -> StoredPayload | None:
    """
    Return the latest stored payload, or the one with ``upload_id``.

    Returns None when nothing matches.
    """
    init_storage(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.cursor()
        columns = (
            "upload_id, uploaded_at, source_label, record_count, "
            "quarter_range, payload"
        )
        if upload_id is None:
            cur.execute(f"SELECT {columns} FROM uploads ORDER BY id DESC LIMIT 1;")
        else:
            cur.execute(
                f"SELECT {columns} FROM uploads WHERE upload_id = ?;", (upload_id,)
            )
        row = cur.fetchone()
    finally:
        conn.close()

    if row is None:
        return None
    return _row_to_stored_payload(row)


def has_workbook_payload(cfg: DatabaseConfig) -> bool:
    """Return True if at least one payload has been stored."""
    init_storage(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM uploads LIMIT 1;")
        return cur.fetchone() is not None
    finally:
        conn.close()


def list_uploads(cfg: DatabaseConfig) -> pd.DataFrame:
    """
    Return the stored uploads, most recent first.

    Columns:
    - upload_id
    - uploaded_at
    - source_label
    - record_count
    - quarter_range
    """
    init_storage(cfg)
    columns = [
        "upload_id",
        "uploaded_at",
        "source_label",
        "record_count",
        "quarter_range",
    ]

    conn = _connect(cfg)
    try:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT upload_id, uploaded_at, source_label, record_count, quarter_range
              FROM uploads
             ORDER BY id DESC;
            """
        )
        rows = cur.fetchall()
    finally:
        conn.close()

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    df["uploaded_at"] = pd.to_datetime(df["uploaded_at"])
    return df


# ---------------------------------------------------------------------------
# Endpoint semantics
# ---------------------------------------------------------------------------


def get_excel_data(cfg: DatabaseConfig) -> dict[str, Any]:
    """Return ``{"data": payload}`` for the latest upload, or ``{"data": None}``."""
    stored = load_workbook_payload(cfg)
    return {"data": stored.data if stored is not None else None}


def post_excel_data(
    cfg: DatabaseConfig, body: Any
) -> tuple[dict[str, Any], int]:
    """
    Store ``body["data"]`` and return a (response body, status code) pair.

    Returns ``({"success": True}, 200)`` on success and
    ``({"error": "Failed to save data"}, 500)`` on any failure.
    """
    try:
        if not isinstance(body, dict) or "data" not in body:
            raise ValueError("Request body must be an object with a 'data' key.")
        save_workbook_payload(cfg, body["data"], source_label="api")
    except (ValueError, OSError, sqlite3.Error) as exc:
        logger.error("Error saving Excel data: %s", exc)
        return {"error": "Failed to save data"}, 500
    return {"success": True}, 200
