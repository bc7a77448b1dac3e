from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


EntityType = Literal["managers", "accounts", "sellers", "relationships", "manager_team"]
ImportMode = Literal["replace", "add"]
ImportTarget = Literal["comprehensive", "managers", "accounts", "sellers", "relationships", "manager_team"]
Division = Literal["ESG", "GDT", "GVC", "MSG_US", "MIXED"]
SizeClass = Literal["enterprise", "midmarket", "no_data"]
Seniority = Literal["junior", "senior"]

SHEET_NAMES: dict[str, str] = {
    "managers": "Managers",
    "accounts": "Accounts",
    "sellers": "Sellers",
    "relationships": "Relationship_Map",
    "manager_team": "Manager_Team",
}


class _SheetRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    row_number: int = Field(ge=2)


class AccountRow(_SheetRow):
    kind: Literal["account"] = "account"
    name: str = Field(min_length=1)
    industry: str | None = None
    size: SizeClass
    tier: str | None = None
    type: str | None = None
    state: str | None = None
    city: str | None = None
    country: str | None = None
    lat: float | None = None
    lng: float | None = None
    current_division: Division
    revenue_esg: Decimal = Decimal("0")
    revenue_gdt: Decimal = Decimal("0")
    revenue_gvc: Decimal = Decimal("0")
    revenue_msg_us: Decimal = Decimal("0")


class SellerRow(_SheetRow):
    kind: Literal["seller"] = "seller"
    name: str = Field(min_length=1)
    division: Division
    size: SizeClass
    industry_specialty: str | None = None
    state: str | None = None
    city: str | None = None
    country: str | None = None
    lat: float | None = None
    lng: float | None = None
    tenure_months: int | None = Field(default=None, ge=0)
    seniority_type: Seniority | None = None


class ManagerRow(_SheetRow):
    kind: Literal["manager"] = "manager"
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)


class RelationshipRow(_SheetRow):
    kind: Literal["relationship"] = "relationship"
    account_name: str = Field(min_length=1)
    seller_name: str = Field(min_length=1)
    status: str

    @property
    def is_original(self) -> bool:
        return self.status == "original"


class ManagerTeamRow(_SheetRow):
    kind: Literal["manager_team"] = "manager_team"
    manager_name: str = Field(min_length=1)
    seller_name: str = Field(min_length=1)
    is_primary: bool = True


SheetRow = AccountRow | SellerRow | ManagerRow | RelationshipRow | ManagerTeamRow


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class EntityResult(BaseModel):
    imported: int = 0
    errors: list[str] = Field(default_factory=list)
    skipped: bool = False


class ImportResult(BaseModel):
    run_id: str
    mode: ImportMode
    target: str = "comprehensive"
    state: str
    results: dict[str, EntityResult] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    progress: list[str] = Field(default_factory=list)
    fatal_error: str | None = None
    lock_acquired: bool = False
    views_refreshed: bool = False

    @property
    def total_imported(self) -> int:
        return sum(item.imported for item in self.results.values())

    @property
    def total_errors(self) -> int:
        return sum(len(item.errors) for item in self.results.values())

    def summary(self) -> dict[str, dict[str, object]]:
        return {name: {"imported": item.imported, "errors": list(item.errors)} for name, item in self.results.items()}


class ImportLockRead(BaseModel):
    is_importing: bool
    holder: str | None
    acquired_at: datetime | None
    expires_at: datetime | None
