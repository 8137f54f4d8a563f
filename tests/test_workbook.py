import pytest

from margin_recon.workbook import Workbook


def test_none_payload_gives_empty_workbook():
    wb = Workbook.from_payload(None)
    assert wb.is_empty
    assert wb.dimension_tables == {}
    assert wb.naming_convention_records == []


def test_from_payload_decodes_all_sections():
    payload = {
        "factMarginRecords": [{"Quarter": "2024-Q1", "GeographyID": 1}, None],
        "dimensionTables": {"Dim_Geography": {1: {"GeographyName": "EMEA"}}},
        "namingConventionRecords": [{"Naming": "TotalRevenue_$mm"}],
    }

    wb = Workbook.from_payload(payload)

    assert wb.fact_records == [{"Quarter": "2024-Q1", "GeographyID": 1}]
    assert wb.dimension_tables == {"Dim_Geography": {"1": {"GeographyName": "EMEA"}}}
    assert wb.naming_convention_records == [{"Naming": "TotalRevenue_$mm"}]
    assert not wb.is_empty


def test_dimension_tables_as_pairs():
    payload = {"dimensionTables": [["Dim_LineOfBusiness", {"5": {"LOBName": "Retail"}}]]}
    wb = Workbook.from_payload(payload)
    assert wb.dimension_tables["Dim_LineOfBusiness"]["5"]["LOBName"] == "Retail"


def test_missing_sections_are_empty():
    wb = Workbook.from_payload({"factMarginRecords": [{"Quarter": "Q1"}]})
    assert wb.dimension_tables == {}
    assert wb.naming_convention_records == []


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"factMarginRecords": {"a": 1}},
        {"factMarginRecords": [1, 2]},
        {"dimensionTables": "Dim_Geography"},
        {"dimensionTables": {"Dim_Geography": [1, 2]}},
        {"dimensionTables": [["only-a-name"]]},
    ],
)
def test_invalid_payload_shapes_raise(payload):
    with pytest.raises(ValueError):
        Workbook.from_payload(payload)


def test_to_payload_uses_persisted_keys():
    wb = Workbook(
        fact_records=[{"Quarter": "2024-Q1"}],
        dimension_tables={"Dim_Geography": {"1": {"GeographyName": "EMEA"}}},
        naming_convention_records=[{"Naming": "X"}],
    )
    payload = wb.to_payload()
    assert set(payload) == {
        "factMarginRecords",
        "dimensionTables",
        "namingConventionRecords",
    }
    assert Workbook.from_payload(payload) == wb
