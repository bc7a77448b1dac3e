from __future__ import annotations

import zipfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from io import BytesIO
from typing import Any
from uuid import UUID

from openpyxl import Workbook as XlsxWorkbook
from openpyxl import load_workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

from territory.reconcile.errors import ParseError

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_ALIGNMENT = Alignment(horizontal="center", vertical="center")
MAX_COLUMN_WIDTH = 50


@dataclass
class Sheet:
    name: str
    headers: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)
    # Worksheet row number of each entry in ``rows``; the header is row 1.
    row_numbers: list[int] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        """Header plus data rows, the way the operator counts them."""
        return (1 if self.headers else 0) + len(self.rows)

    def numbered_rows(self) -> Iterable[tuple[int, dict[str, Any]]]:
        return zip(self.row_numbers, self.rows)


@dataclass
class Workbook:
    sheets: dict[str, Sheet]

    @property
    def sheet_names(self) -> list[str]:
        return list(self.sheets)

    def get(self, name: str) -> Sheet | None:
        return self.sheets.get(name)


def _cell_value(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def read_workbook(content: bytes) -> Workbook:
    """Load an .xlsx payload into named sheets of row mappings; empty cells become None."""
    if not content:
        raise ParseError("Uploaded file is empty")
    try:
        book = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise ParseError(f"Unable to read workbook: {exc}") from exc

    sheets: dict[str, Sheet] = {}
    try:
        for worksheet in book.worksheets:
            rows_iter = worksheet.iter_rows(values_only=True)
            header_cells = next(rows_iter, None)
            if header_cells is None:
                sheets[worksheet.title] = Sheet(name=worksheet.title, headers=[])
                continue

            columns = [
                (index, str(cell).strip())
                for index, cell in enumerate(header_cells)
                if cell is not None and str(cell).strip()
            ]
            sheet = Sheet(name=worksheet.title, headers=[name for _, name in columns])
            for offset, values in enumerate(rows_iter, start=2):
                record = {
                    name: _cell_value(values[index]) if index < len(values) else None
                    for index, name in columns
                }
                if all(value is None for value in record.values()):
                    continue
                sheet.rows.append(record)
                sheet.row_numbers.append(offset)
            sheets[worksheet.title] = sheet
    finally:
        book.close()

    return Workbook(sheets=sheets)


def _excel_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        # openpyxl cannot store tz-aware datetimes.
        return value.replace(tzinfo=None)
    if isinstance(value, (str, int, float, bool, date)):
        return value
    return str(value)


def _style_header(worksheet, num_cols: int) -> None:
    for col in range(1, num_cols + 1):
        cell = worksheet.cell(row=1, column=col)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = HEADER_ALIGNMENT


def _auto_width(worksheet, headers: Sequence[str], rows: Sequence[Mapping[str, Any]]) -> None:
    for col, header in enumerate(headers, start=1):
        longest = max([len(header), *(len(str(row.get(header) or "")) for row in rows)])
        worksheet.column_dimensions[get_column_letter(col)].width = min(longest + 2, MAX_COLUMN_WIDTH)


def write_workbook(sheets: Sequence[tuple[str, Sequence[str], Sequence[Mapping[str, Any]]]]) -> bytes:
    """Write ``(sheet name, headers, rows)`` triples to .xlsx bytes, one worksheet each."""
    book = XlsxWorkbook()
    book.remove(book.active)
    for name, headers, rows in sheets:
        worksheet = book.create_sheet(title=name[:31])
        worksheet.append(list(headers))
        for row in rows:
            worksheet.append([_excel_value(row.get(header)) for header in headers])
        if headers:
            _style_header(worksheet, len(headers))
            worksheet.freeze_panes = "A2"
            _auto_width(worksheet, headers, rows)

    if not book.worksheets:
        book.create_sheet(title="Sheet1")

    output = BytesIO()
    book.save(output)
    return output.getvalue()
