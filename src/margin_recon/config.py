# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for Margin Recon.

This module is responsible for:
- loading the application configuration from a TOML file,
- applying defaults when the default config file is absent,
- exposing typed dataclasses used by the rest of the application.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore[import]

from .engine import DEFAULT_LOW_CONFIDENCE_THRESHOLD
from .storage import DatabaseConfig

DEFAULT_CONFIG_FILE = "margin_recon_config.toml"
DEFAULT_DB_PATH = "data/db/margin_recon.sqlite"

DISPLAY_MODES = ("table", "csv", "both")
VIEWS = ("summary", "regular", "detailed")


@dataclass(frozen=True)
class ReportConfig:
    """
    Report options.

    Attributes:
        default_dimensions: Dimensions to group by when none is given on
            the command line (e.g. ["Geography"]).
        low_confidence_threshold: Fuzzy matches below this confidence are
            reported as warnings.
    """

    default_dimensions: list[str] = field(default_factory=list)
    low_confidence_threshold: float = DEFAULT_LOW_CONFIDENCE_THRESHOLD


@dataclass(frozen=True)
class DisplayConfig:
    """Display options for the CLI table rendering and CSV export."""

    mode: str = "table"
    decimals: int = 2
    view: str = "detailed"


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for Margin Recon.

    This aggregates:
    - the database configuration (where workbook payloads are stored),
    - report options (default dimensions, match confidence threshold),
    - display options for tables and CSV exports.
    """

    database: DatabaseConfig
    report: ReportConfig
    display: DisplayConfig


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        return {}
    return section


def _parse_report(section: Mapping[str, Any]) -> ReportConfig:
    raw_dims = section.get("default_dimensions", [])
    if isinstance(raw_dims, str):
        raw_dims = [raw_dims]
    if not isinstance(raw_dims, list):
        raise ValueError(
            "Invalid value for 'report.default_dimensions'. Expected a list of names."
        )
    dims = [str(d).strip() for d in raw_dims if str(d).strip()]

    raw_threshold = section.get(
        "low_confidence_threshold", DEFAULT_LOW_CONFIDENCE_THRESHOLD
    )
    try:
        threshold = float(raw_threshold)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid value for 'report.low_confidence_threshold'. Expected a number."
        ) from exc
    if not 0.0 <= threshold <= 1.0:
        raise ValueError("'report.low_confidence_threshold' must be between 0 and 1.")

    return ReportConfig(default_dimensions=dims, low_confidence_threshold=threshold)


def _parse_display(section: Mapping[str, Any]) -> DisplayConfig:
    mode = str(section.get("mode", "table"))
    if mode not in DISPLAY_MODES:
        raise ValueError(
            f"Invalid display mode {mode!r}. "
            f"Expected one of: {', '.join(DISPLAY_MODES)}."
        )

    view = str(section.get("view", "detailed"))
    if view not in VIEWS:
        raise ValueError(
            f"Invalid view {view!r}. Expected one of: {', '.join(VIEWS)}."
        )

    try:
        decimals = int(section.get("decimals", 2))
    except (TypeError, ValueError):
        decimals = 2

    return DisplayConfig(mode=mode, decimals=decimals, view=view)


def config_from_mapping(raw: Mapping[str, Any], base_dir: Path) -> AppConfig:
    """
    Build an AppConfig from parsed TOML data.

    Relative paths are resolved against ``base_dir``.
    """
    database_section = _section(raw, "database")
    db_engine = str(database_section.get("engine") or "sqlite")
    db_path_raw = database_section.get("path") or DEFAULT_DB_PATH
    db_path = (base_dir / str(db_path_raw)).resolve()

    return AppConfig(
        database=DatabaseConfig(engine=db_engine, path=db_path),
        report=_parse_report(_section(raw, "report")),
        display=_parse_display(_section(raw, "display")),
    )


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the Margin Recon application configuration from a TOML file.

    Expected sections
    -----------------
    [database]
        ``engine`` ("sqlite") and ``path`` of the SQLite file holding the
        stored workbook payloads.

    [report]
        ``default_dimensions``: list of dimension names to group by.
        ``low_confidence_threshold``: between 0 and 1 (default 0.5).

    [display]
        ``mode``: "table" | "csv" | "both".
        ``view``: "summary" | "regular" | "detailed".
        ``decimals``: number of decimals in rendered tables.

    All sections are optional. When ``config_path`` is None and
    ``margin_recon_config.toml`` does not exist in the current directory,
    defaults are used. An explicit path that does not exist is an error.

    Raises
    ------
    FileNotFoundError
        If an explicit config path does not exist.
    ValueError
        If the configuration is invalid.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
        if not config_file.is_file():
            return config_from_mapping({}, Path.cwd())
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    return config_from_mapping(raw, config_file.parent)
