from __future__ import annotations

from datetime import date, datetime

import pytest

from territory.reconcile import reference


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("01/15/2020", 45),
        ("1/15/20", 45),
        ("6/1/95", 340),
        ("2020-01-15", 45),
        (datetime(2020, 1, 15, 9, 30), 45),
        (43845, 45),
        (None, None),
        ("not a date", None),
    ],
)
def test_tenure_months_accepts_common_hire_date_shapes(value: object, expected: int | None) -> None:
    assert reference.tenure_months(value, today=date(2023, 10, 2)) == expected


def test_tenure_never_negative_for_future_hire_dates() -> None:
    assert reference.tenure_months("2030-01-01", today=date(2024, 1, 1)) == 0


def test_derive_coordinates_prefers_state_then_country() -> None:
    state = reference.state_table()["NY"]
    country = reference.country_table()["DE"]

    assert reference.derive_coordinates("NY", "US") == (state["latitude"], state["longitude"])
    assert reference.derive_coordinates(None, "DE") == (country["latitude"], country["longitude"])
    assert reference.derive_coordinates("Distributed", "N/A") == (None, None)


def test_supplied_coordinates_are_kept() -> None:
    assert reference.derive_coordinates("NY", "US", 1.5, 2.5) == (1.5, 2.5)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("ESG", "ESG"),
        ("msg_us", "MSG_US"),
        ("MSG US", "MSG_US"),
        ("Mixed", "MIXED"),
        ("Retail", None),
        (None, None),
    ],
)
def test_normalize_division(value: str | None, expected: str | None) -> None:
    assert reference.normalize_division(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, "original"),
        ("Original", "original"),
        ("for discussion", "for_discussion"),
        ("TO_BE_PEELED", "to_be_peeled"),
        ("to-be-peeled", "to_be_peeled"),
        ("assigned", None),
    ],
)
def test_normalize_status(value: str | None, expected: str | None) -> None:
    assert reference.normalize_status(value) == expected


def test_parse_bool_defaults_blank_cells() -> None:
    assert reference.parse_bool(None, default=True) is True
    assert reference.parse_bool("", default=True) is True
    assert reference.parse_bool("No", default=True) is False
    assert reference.parse_bool("YES", default=False) is True


def test_reference_sheets_start_with_no_data_row() -> None:
    countries = reference.country_reference_rows()
    states = reference.state_reference_rows()

    assert countries[0] == {"country_name": "No data", "country_code": "N/A"}
    assert {"country_name": "United States", "country_code": "US"} in countries
    assert states[0] == {"state_name": "No data", "state_code": "N/A"}
    assert all(row["state_code"] != "WI" for row in states)
