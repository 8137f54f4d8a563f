import math

import numpy as np
import pandas as pd
import pytest

from margin_recon.io import (
    dimension_table_from_frame,
    frame_to_records,
    normalize_cell,
    read_workbook,
)


def _fact_frame() -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "Quarter": "2024-Q1",
                "GeographyID": 1,
                "LOBID": 5,
                "TotalRevenue_$mm": 100.5,
                "TotalExpense_$mm": 60,
            },
            {
                "Quarter": "2024-Q2",
                "GeographyID": 2,
                "LOBID": None,
                "TotalRevenue_$mm": 80,
                "TotalExpense_$mm": 50,
            },
        ]
    )


def _naming_frame() -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "Category": "Financial Result",
                "Fact_Margin Naming": "TotalRevenue_$mm",
                "P&L Impact": "Revenue",
            }
        ]
    )


def _write_xlsx(path, sheets: dict[str, pd.DataFrame]) -> None:
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name, df in sheets.items():
            df.to_excel(writer, sheet_name=name, index=False)


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, None),
        (float("nan"), None),
        (np.float64(5.0), 5),
        (np.int64(7), 7),
        (2.5, 2.5),
        ("EMEA", "EMEA"),
        (pd.Timestamp("2024-03-31"), "2024-03-31T00:00:00"),
    ],
)
def test_normalize_cell(value, expected):
    assert normalize_cell(value) == expected


def test_frame_to_records_strips_headers_and_drops_empty_rows():
    df = pd.DataFrame({" Quarter ": ["2024-Q1", None], "Value": [1.0, None]})
    assert frame_to_records(df) == [{"Quarter": "2024-Q1", "Value": 1}]


def test_dimension_table_keyed_by_foreign_key_column():
    df = pd.DataFrame({"Name": ["Retail", "Wholesale"], "LOBID": [5.0, 6.0]})
    table = dimension_table_from_frame(df, "Dim_LineOfBusiness")
    assert set(table) == {"5", "6"}
    assert table["5"]["Name"] == "Retail"


def test_dimension_table_falls_back_to_first_column():
    df = pd.DataFrame({"Code": ["A", "B"], "Label": ["Alpha", "Beta"]})
    table = dimension_table_from_frame(df, "Dim_Segment")
    assert set(table) == {"A", "B"}


def test_read_workbook_from_xlsx(tmp_path):
    path = tmp_path / "margin.xlsx"
    _write_xlsx(
        path,
        {
            "Fact_Margin": _fact_frame(),
            "Dim_Geography": pd.DataFrame(
                {"GeographyID": [1, 2], "GeographyName": ["EMEA", "APAC"]}
            ),
            "DIM_LineOfBusiness": pd.DataFrame(
                {"LOBID": [5], "LineOfBusiness": ["Retail"]}
            ),
            "NamingConvention": _naming_frame(),
            "Notes": pd.DataFrame({"Text": ["ignored"]}),
        },
    )

    wb = read_workbook(path)

    assert len(wb.fact_records) == 2
    first = wb.fact_records[0]
    assert first["GeographyID"] == 1
    assert first["TotalRevenue_$mm"] == pytest.approx(100.5)
    assert wb.fact_records[1]["LOBID"] is None
    assert set(wb.dimension_tables) == {"Dim_Geography", "DIM_LineOfBusiness"}
    assert wb.dimension_tables["Dim_Geography"]["2"]["GeographyName"] == "APAC"
    assert wb.dimension_tables["DIM_LineOfBusiness"]["5"]["LineOfBusiness"] == (
        "Retail"
    )
    assert wb.naming_convention_records[0]["P&L Impact"] == "Revenue"


def test_read_workbook_from_csv_directory(tmp_path):
    _fact_frame().to_csv(tmp_path / "Fact_Margin.csv", index=False)
    _naming_frame().to_csv(tmp_path / "Naming_Convention.csv", index=False)

    wb = read_workbook(tmp_path)

    assert [r["Quarter"] for r in wb.fact_records] == ["2024-Q1", "2024-Q2"]
    assert wb.dimension_tables == {}
    assert len(wb.naming_convention_records) == 1


def test_fact_sheet_found_by_name_fragments(tmp_path):
    path = tmp_path / "wb.xlsx"
    _write_xlsx(path, {"fact margin 2024": _fact_frame()})
    wb = read_workbook(path)
    assert len(wb.fact_records) == 2
    assert wb.naming_convention_records == []


def test_missing_fact_sheet_raises(tmp_path):
    path = tmp_path / "wb.xlsx"
    _write_xlsx(path, {"NamingConvention": _naming_frame()})
    with pytest.raises(ValueError, match="Fact sheet not found"):
        read_workbook(path)


def test_missing_or_unsupported_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_workbook(tmp_path / "missing.xlsx")

    txt = tmp_path / "data.txt"
    txt.write_text("x", encoding="utf-8")
    with pytest.raises(ValueError):
        read_workbook(txt)


def test_cells_are_json_compatible(tmp_path):
    path = tmp_path / "wb.xlsx"
    _write_xlsx(path, {"Fact_Margin": _fact_frame()})
    wb = read_workbook(path)
    for record in wb.fact_records:
        for value in record.values():
            assert value is None or isinstance(value, (str, int, float))
            if isinstance(value, float):
                assert not math.isnan(value)


def test_legacy_xls_is_rejected(tmp_path):
    legacy = tmp_path / "margin.xls"
    legacy.write_bytes(b"\xd0\xcf\x11\xe0")
    with pytest.raises(ValueError, match="Unsupported workbook type"):
        read_workbook(legacy)
