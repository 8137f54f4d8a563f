from pathlib import Path

import pandas as pd
import pytest

from margin_recon.cli import (
    NO_FINANCIAL_RESULT_MESSAGE,
    NO_NAMING_COLUMN_MESSAGE,
    NO_NAMING_SHEET_MESSAGE,
    NO_PERIODS_MESSAGE,
    NO_WORKBOOK_MESSAGE,
    main,
)


def _write_config(tmp_path: Path) -> Path:
    path = tmp_path / "margin_recon_config.toml"
    path.write_text(
        '[database]\npath = "db/recon.sqlite"\n\n[display]\nmode = "table"\n',
        encoding="utf-8",
    )
    return path


def _write_workbook(tmp_path: Path, naming: pd.DataFrame, facts=None) -> Path:
    if facts is None:
        facts = pd.DataFrame(
            [
                {
                    "Quarter": "2024-Q1",
                    "GeographyID": 1,
                    "TotalRevenue_$mm": 100,
                    "TotalExpense_$mm": 60,
                },
                {
                    "Quarter": "2024-Q1",
                    "GeographyID": 2,
                    "TotalRevenue_$mm": 50,
                    "TotalExpense_$mm": 45,
                },
            ]
        )
    path = tmp_path / "margin.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        facts.to_excel(writer, sheet_name="Fact_Margin", index=False)
        pd.DataFrame(
            {"GeographyID": [1, 2], "GeographyName": ["EMEA", "APAC"]}
        ).to_excel(writer, sheet_name="Dim_Geography", index=False)
        if naming is not None:
            naming.to_excel(writer, sheet_name="NamingConvention", index=False)
    return path


NAMING = pd.DataFrame(
    [
        {
            "Category": "Financial Result",
            "Fact_Margin naming": "TotalRevenue_$mm",
            "P&L Impact": "Revenue",
        }
    ]
)


@pytest.fixture
def config_path(tmp_path) -> str:
    return str(_write_config(tmp_path))


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage" in capsys.readouterr().out.lower()


def test_pnl_without_workbook_prints_banner(config_path, capsys):
    assert main(["--config", config_path, "pnl"]) == 0
    assert NO_WORKBOOK_MESSAGE in capsys.readouterr().out


def test_import_then_pnl_by_dimension(tmp_path, config_path, capsys):
    workbook = _write_workbook(tmp_path, NAMING)

    assert main(["--config", config_path, "import", str(workbook)]) == 0
    out = capsys.readouterr().out
    assert "2 fact records" in out

    assert main(["--config", config_path, "pnl", "--dimension", "Geography"]) == 0
    out = capsys.readouterr().out
    assert "=== P&L - EMEA ===" in out
    assert "=== P&L - APAC ===" in out
    assert "=== P&L - Total ===" in out
    assert out.index("P&L - APAC") < out.index("P&L - Total")


def test_pnl_csv_export(tmp_path, config_path, capsys):
    workbook = _write_workbook(tmp_path, NAMING)
    main(["--config", config_path, "import", str(workbook)])
    output_dir = tmp_path / "out"

    rc = main(
        [
            "--config",
            config_path,
            "pnl",
            "--display-mode",
            "csv",
            "--output",
            str(output_dir),
            "--view",
            "summary",
        ]
    )

    assert rc == 0
    files = list(output_dir.glob("pnl_Total_*.csv"))
    assert len(files) == 1
    df = pd.read_csv(files[0])
    assert list(df["label"]) == ["Revenue", "Expenses", "Margin", "Margin %"]
    assert df.loc[df["label"] == "Margin", "2024-Q1"].iloc[0] == pytest.approx(45.0)


def test_listing_commands(tmp_path, config_path, capsys):
    workbook = _write_workbook(tmp_path, NAMING)
    main(["--config", config_path, "import", str(workbook)])
    capsys.readouterr()

    assert main(["--config", config_path, "periods"]) == 0
    assert capsys.readouterr().out.strip() == "2024-Q1"

    assert main(["--config", config_path, "dimensions"]) == 0
    assert capsys.readouterr().out.strip() == "Geography"

    assert main(["--config", config_path, "line-items"]) == 0
    out = capsys.readouterr().out
    assert "Revenue" in out
    assert "Expenses" in out


def test_match_command(tmp_path, config_path, capsys):
    workbook = _write_workbook(tmp_path, NAMING)
    main(["--config", config_path, "import", str(workbook)])
    capsys.readouterr()

    assert main(["--config", config_path, "match", "Total Revenue"]) == 0
    out = capsys.readouterr().out
    assert "normalized" in out
    assert "TotalRevenue_$mm" in out

    assert main(["--config", config_path, "match", "X", "--record-index", "9"]) == 1
    assert "Error:" in capsys.readouterr().err


def test_naming_banners(tmp_path, config_path, capsys):
    main(["--config", config_path, "import", str(_write_workbook(tmp_path, None))])
    capsys.readouterr()
    assert main(["--config", config_path, "pnl"]) == 0
    out = capsys.readouterr().out
    assert NO_NAMING_SHEET_MESSAGE in out
    assert NO_NAMING_COLUMN_MESSAGE not in out
    assert main(["--config", config_path, "line-items"]) == 0
    assert NO_NAMING_SHEET_MESSAGE in capsys.readouterr().out

    no_column = pd.DataFrame([{"Category": "Financial Result", "Label": "X"}])
    main(["--config", config_path, "import", str(_write_workbook(tmp_path, no_column))])
    capsys.readouterr()
    assert main(["--config", config_path, "pnl"]) == 0
    assert NO_NAMING_COLUMN_MESSAGE in capsys.readouterr().out

    no_rows = pd.DataFrame(
        [{"Category": "Operational", "Fact_Margin naming": "Headcount"}]
    )
    main(["--config", config_path, "import", str(_write_workbook(tmp_path, no_rows))])
    capsys.readouterr()
    assert main(["--config", config_path, "pnl"]) == 0
    assert NO_FINANCIAL_RESULT_MESSAGE in capsys.readouterr().out


def test_no_quarters_banner(tmp_path, config_path, capsys):
    facts = pd.DataFrame([{"GeographyID": 1, "TotalRevenue_$mm": 100}])
    main(["--config", config_path, "import", str(_write_workbook(tmp_path, NAMING, facts))])
    capsys.readouterr()
    assert main(["--config", config_path, "pnl"]) == 0
    assert NO_PERIODS_MESSAGE in capsys.readouterr().out


def test_errors_exit_with_status_one(tmp_path, config_path, capsys):
    assert main(["--config", config_path, "import", str(tmp_path / "missing.xlsx")]) == 1
    assert "Error:" in capsys.readouterr().err

    assert main(["--config", str(tmp_path / "missing.toml"), "periods"]) == 1

    workbook = _write_workbook(tmp_path, NAMING)
    main(["--config", config_path, "import", str(workbook)])
    assert main(["--config", config_path, "pnl", "--period", "1999-Q1"]) == 1
    assert main(["--config", config_path, "pnl", "--row-key", "Nowhere"]) == 1


def test_ask_command(tmp_path, config_path, capsys):
    assert main(["--config", config_path, "ask", "revenue"]) == 0
    assert NO_WORKBOOK_MESSAGE in capsys.readouterr().out

    main(["--config", config_path, "import", str(_write_workbook(tmp_path, NAMING))])
    capsys.readouterr()

    assert main(["--config", config_path, "ask", "revenue by region"]) == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0] == "Geography: EMEA - Revenue: $100.00M"
    assert "Time window : quarter (2024-Q1)" in out
    assert "APAC" in out

    assert main(["--config", config_path, "ask", "margin dollars for APAC"]) == 0
    out = capsys.readouterr().out
    assert "Filter      : Geography = APAC" in out
    assert out.splitlines()[0] == "Result - Margin ($mm): $5.00M"
