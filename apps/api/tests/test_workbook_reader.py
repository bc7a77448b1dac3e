from __future__ import annotations

from io import BytesIO
from typing import Any

import pytest
from openpyxl import Workbook as XlsxWorkbook
from openpyxl import load_workbook

from territory.reconcile.errors import ParseError
from territory.reconcile.workbook import read_workbook, write_workbook


def _xlsx(sheets: dict[str, list[list[Any]]]) -> bytes:
    book = XlsxWorkbook()
    book.remove(book.active)
    for name, rows in sheets.items():
        worksheet = book.create_sheet(title=name)
        for row in rows:
            worksheet.append(row)
    output = BytesIO()
    book.save(output)
    return output.getvalue()


def test_reads_named_sheets_with_trimmed_values_and_row_numbers() -> None:
    content = _xlsx(
        {
            "Accounts": [
                ["account_name", " size ", "current_division"],
                ["  Acme  ", "enterprise", "ESG"],
                [None, None, None],
                ["Globex", "", "GDT"],
            ],
            "Notes": [["free text"]],
        }
    )

    workbook = read_workbook(content)

    assert workbook.sheet_names == ["Accounts", "Notes"]
    accounts = workbook.get("Accounts")
    assert accounts is not None
    assert accounts.headers == ["account_name", "size", "current_division"]
    assert accounts.rows[0] == {"account_name": "Acme", "size": "enterprise", "current_division": "ESG"}
    assert accounts.rows[1]["size"] is None
    # The blank row is skipped but numbering keeps the worksheet position.
    assert accounts.row_numbers == [2, 4]
    assert accounts.row_count == 3


def test_header_only_sheet_has_no_rows() -> None:
    workbook = read_workbook(_xlsx({"Managers": [["manager_name", "manager_email"]]}))

    managers = workbook.get("Managers")
    assert managers is not None
    assert managers.rows == []
    assert managers.row_count == 1


def test_missing_sheet_lookup_returns_none() -> None:
    workbook = read_workbook(_xlsx({"Sellers": [["seller_name"], ["J. Doe"]]}))

    assert workbook.get("Accounts") is None


@pytest.mark.parametrize("content", [b"", b"definitely not a spreadsheet"])
def test_unreadable_payload_raises_parse_error(content: bytes) -> None:
    with pytest.raises(ParseError):
        read_workbook(content)


def test_write_workbook_produces_styled_header_and_rows() -> None:
    payload = write_workbook(
        [
            ("Accounts", ["account_name", "revenue"], [{"account_name": "Acme", "revenue": 10.5}]),
            ("Empty", ["a", "b"], []),
        ]
    )

    book = load_workbook(BytesIO(payload))
    assert book.sheetnames == ["Accounts", "Empty"]
    sheet = book["Accounts"]
    assert [cell.value for cell in sheet[1]] == ["account_name", "revenue"]
    assert [cell.value for cell in sheet[2]] == ["Acme", 10.5]
    assert sheet["A1"].font.bold is True
    assert sheet.freeze_panes == "A2"

    assert read_workbook(payload).get("Accounts").rows == [{"account_name": "Acme", "revenue": 10.5}]
