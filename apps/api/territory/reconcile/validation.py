from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from territory.reconcile import reference
from territory.reconcile.errors import ReferenceDataWarning, RowValidationError, SchemaError
from territory.reconcile.schemas import (
    SHEET_NAMES,
    AccountRow,
    ManagerRow,
    ManagerTeamRow,
    RelationshipRow,
    SellerRow,
    SheetRow,
    ValidationResult,
)
from territory.reconcile.workbook import Sheet, Workbook

logger = logging.getLogger("territory.reconcile.validation")

COMPREHENSIVE = "comprehensive"


@dataclass(frozen=True)
class ColumnContract:
    required: tuple[str, ...]
    optional: tuple[str, ...] = ()

    @property
    def expected(self) -> tuple[str, ...]:
        return self.required + self.optional


COLUMN_CONTRACTS: dict[str, ColumnContract] = {
    "managers": ColumnContract(required=("manager_name", "manager_email")),
    "accounts": ColumnContract(
        required=("account_name", "size", "current_division"),
        optional=(
            "industry",
            "tier",
            "type",
            "state",
            "city",
            "country",
            "revenue_ESG",
            "revenue_GDT",
            "revenue_GVC",
            "revenue_MSG_US",
            "latitude",
            "longitude",
        ),
    ),
    "sellers": ColumnContract(
        required=("seller_name", "division", "size"),
        optional=(
            "industry_specialty",
            "state",
            "city",
            "country",
            "hire_date",
            "seniority_type",
            "latitude",
            "longitude",
        ),
    ),
    "relationships": ColumnContract(required=("account_name", "seller_name"), optional=("status",)),
    "manager_team": ColumnContract(required=("manager_name", "seller_name"), optional=("is_primary",)),
}

_LOCATION_CHECKED = ("accounts", "sellers")


@dataclass
class SheetCheck:
    entity_type: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise SchemaError(self.entity_type, self.errors)


class SchemaValidator:
    """Checks sheet presence, column headers and location codes before anything is written."""

    def check_sheet(self, sheet: Sheet, entity_type: str, *, mode: str = "replace") -> SheetCheck:
        contract = COLUMN_CONTRACTS[entity_type]
        check = SheetCheck(entity_type=entity_type)

        if sheet.row_count < 2:
            message = f"{sheet.name} sheet must have at least a header row and one data row"
            if entity_type == "managers" and mode == "add":
                check.warnings.append(f"{sheet.name} sheet has no data rows; existing managers will be used")
            else:
                check.errors.append(message)
            return check

        headers = set(sheet.headers)
        missing = [column for column in contract.required if column not in headers]
        if missing:
            check.errors.append(f"{sheet.name} sheet is missing required columns: {', '.join(missing)}")

        unexpected = [column for column in sheet.headers if column not in contract.expected]
        if unexpected:
            check.warnings.append(f"{sheet.name} sheet has unexpected columns: {', '.join(unexpected)}")

        if entity_type in _LOCATION_CHECKED:
            check.warnings.extend(str(item) for item in self.reference_warnings(sheet))
        return check

    def reference_warnings(self, sheet: Sheet) -> list[ReferenceDataWarning]:
        warnings: list[ReferenceDataWarning] = []
        for row_number, row in sheet.numbered_rows():
            country = reference.clean_text(row.get("country"))
            if country and not reference.is_exempt_country(country) and not reference.is_known_country(country):
                warnings.append(ReferenceDataWarning(sheet.name, row_number, "Country", country))
            state = reference.clean_text(row.get("state"))
            if state and not reference.is_exempt_state(state) and not reference.is_known_state(state):
                warnings.append(ReferenceDataWarning(sheet.name, row_number, "State", state))
        return warnings

    def validate(self, workbook: Workbook, target: str = COMPREHENSIVE, *, mode: str = "replace") -> ValidationResult:
        if target == COMPREHENSIVE:
            entity_types = list(SHEET_NAMES)
        elif target in SHEET_NAMES:
            entity_types = [target]
        else:
            raise ValueError(f"Unknown import target: {target}")

        errors: list[str] = []
        warnings: list[str] = []
        present = 0
        for entity_type in entity_types:
            sheet = workbook.get(SHEET_NAMES[entity_type])
            if sheet is None:
                if target != COMPREHENSIVE:
                    errors.append(f"Required sheet '{SHEET_NAMES[entity_type]}' not found")
                continue
            present += 1
            check = self.check_sheet(sheet, entity_type, mode=mode)
            errors.extend(check.errors)
            warnings.extend(check.warnings)

        if target == COMPREHENSIVE and present == 0:
            expected = ", ".join(SHEET_NAMES.values())
            errors.append(f"No importable sheets found. Expected any of: {expected}")

        logger.info(
            "import.validated",
            extra={"entity_type": target, "error_count": len(errors), "mode": mode},
        )
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def _pydantic_reason(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else str(first.get("msg"))


def _account_row(row_number: int, row: dict[str, Any]) -> AccountRow:
    name = reference.clean_text(row.get("account_name"))
    if name is None:
        raise RowValidationError("accounts", row_number, "account_name is required")
    division = reference.normalize_division(row.get("current_division"))
    if division is None:
        raise RowValidationError("accounts", row_number, f"Invalid division: {row.get('current_division')}")
    size = reference.normalize_size(row.get("size"), placeholder="no_data")
    if size is None:
        raise RowValidationError(
            "accounts", row_number, f"Invalid size: {row.get('size')}. Must be 'enterprise' or 'midmarket'"
        )
    state = reference.clean_text(row.get("state"))
    country = reference.clean_text(row.get("country"))
    lat, lng = reference.derive_coordinates(
        state,
        country,
        reference.parse_coordinate(row.get("latitude")),
        reference.parse_coordinate(row.get("longitude")),
    )
    return AccountRow(
        row_number=row_number,
        name=name,
        industry=reference.clean_text(row.get("industry")),
        size=size,
        tier=reference.clean_text(row.get("tier")),
        type=reference.clean_text(row.get("type")),
        state=state,
        city=reference.clean_text(row.get("city")),
        country=country,
        lat=lat,
        lng=lng,
        current_division=division,
        revenue_esg=reference.parse_amount(row.get("revenue_ESG")),
        revenue_gdt=reference.parse_amount(row.get("revenue_GDT")),
        revenue_gvc=reference.parse_amount(row.get("revenue_GVC")),
        revenue_msg_us=reference.parse_amount(row.get("revenue_MSG_US")),
    )


def _seller_row(row_number: int, row: dict[str, Any]) -> SellerRow:
    name = reference.clean_text(row.get("seller_name"))
    if name is None:
        raise RowValidationError("sellers", row_number, "seller_name is required")
    division = reference.normalize_division(row.get("division"))
    if division is None:
        raise RowValidationError("sellers", row_number, f"Invalid division: {row.get('division')}")
    size = reference.normalize_size(row.get("size"), placeholder="midmarket")
    if size is None:
        raise RowValidationError(
            "sellers", row_number, f"Invalid size: {row.get('size')}. Must be 'enterprise' or 'midmarket'"
        )
    state = reference.clean_text(row.get("state"))
    country = reference.clean_text(row.get("country"))
    lat, lng = reference.derive_coordinates(
        state,
        country,
        reference.parse_coordinate(row.get("latitude")),
        reference.parse_coordinate(row.get("longitude")),
    )
    return SellerRow(
        row_number=row_number,
        name=name,
        division=division,
        size=size,
        industry_specialty=reference.clean_text(row.get("industry_specialty")),
        state=state,
        city=reference.clean_text(row.get("city")),
        country=country,
        lat=lat,
        lng=lng,
        tenure_months=reference.tenure_months(row.get("hire_date")),
        seniority_type=reference.normalize_seniority(row.get("seniority_type")),
    )


def _manager_row(row_number: int, row: dict[str, Any]) -> ManagerRow:
    name = reference.clean_text(row.get("manager_name"))
    if name is None:
        raise RowValidationError("managers", row_number, "manager_name is required")
    email = reference.clean_text(row.get("manager_email"))
    if email is None:
        raise RowValidationError("managers", row_number, f"Manager '{name}' has no email")
    return ManagerRow(row_number=row_number, name=name, email=email.lower())


def _relationship_builder(legacy: bool) -> Callable[[int, dict[str, Any]], RelationshipRow]:
    def build(row_number: int, row: dict[str, Any]) -> RelationshipRow:
        account_name = reference.clean_text(row.get("account_name"))
        seller_name = reference.clean_text(row.get("seller_name"))
        if account_name is None or seller_name is None:
            raise RowValidationError("relationships", row_number, "account_name and seller_name are required")
        status = reference.normalize_status(row.get("status"), legacy=legacy)
        if status is None:
            raise RowValidationError("relationships", row_number, f"Invalid status: {row.get('status')}")
        return RelationshipRow(
            row_number=row_number,
            account_name=account_name,
            seller_name=seller_name,
            status=status,
        )

    return build


def _manager_team_row(row_number: int, row: dict[str, Any]) -> ManagerTeamRow:
    manager_name = reference.clean_text(row.get("manager_name"))
    seller_name = reference.clean_text(row.get("seller_name"))
    if manager_name is None or seller_name is None:
        raise RowValidationError("manager_team", row_number, "manager_name and seller_name are required")
    return ManagerTeamRow(
        row_number=row_number,
        manager_name=manager_name,
        seller_name=seller_name,
        is_primary=reference.parse_bool(row.get("is_primary"), default=True),
    )


def build_rows(
    entity_type: str,
    sheet: Sheet,
    *,
    legacy_statuses: bool = False,
) -> tuple[list[SheetRow], list[RowValidationError]]:
    """Turn a sheet's untyped mappings into checked row types, collecting per-row failures."""
    builders: dict[str, Callable[[int, dict[str, Any]], SheetRow]] = {
        "managers": _manager_row,
        "accounts": _account_row,
        "sellers": _seller_row,
        "relationships": _relationship_builder(legacy_statuses),
        "manager_team": _manager_team_row,
    }
    builder = builders[entity_type]

    rows: list[SheetRow] = []
    failures: list[RowValidationError] = []
    for row_number, raw in sheet.numbered_rows():
        try:
            rows.append(builder(row_number, raw))
        except RowValidationError as exc:
            failures.append(exc)
        except ValidationError as exc:
            failures.append(RowValidationError(entity_type, row_number, _pydantic_reason(exc)))
    return rows, failures
