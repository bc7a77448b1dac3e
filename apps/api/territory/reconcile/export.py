from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any

from territory.reconcile import reference
from territory.reconcile.resolver import paginate
from territory.reconcile.schemas import SHEET_NAMES
from territory.reconcile.store import ReconcileStore
from territory.reconcile.validation import COLUMN_CONTRACTS
from territory.reconcile.workbook import write_workbook

logger = logging.getLogger("territory.reconcile.export")

ASSIGNMENTS_SHEET = "Accounts_With_Assigned_Sellers"
ASSIGNMENT_COLUMNS = [
    "account_id",
    "account_name",
    "account_city",
    "account_country",
    "account_current_division",
    "account_industry",
    "account_lat",
    "account_lng",
    "account_size",
    "account_state",
    "account_tier",
    "account_type",
    "account_created_at",
    "revenue_esg",
    "revenue_gdt",
    "revenue_gvc",
    "revenue_msg_us",
    "total_revenue",
    "assigned_seller_id",
    "assigned_seller_name",
    "assigned_seller_division",
    "assigned_seller_size",
    "assigned_seller_industry_specialty",
    "assigned_seller_city",
    "assigned_seller_state",
    "assigned_seller_country",
    "assigned_seller_manager_id",
    "assigned_seller_manager_name",
    "relationship_status",
]

COLUMN_NOTES: dict[str, str] = {
    "manager_email": "Must match an existing user profile email",
    "size": "enterprise, midmarket or no_data",
    "current_division": "ESG, GDT, GVC, MSG_US or MIXED",
    "division": "ESG, GDT, GVC, MSG_US or MIXED",
    "country": "Country code from the Country_Reference sheet",
    "state": "State code from the State_Reference sheet",
    "hire_date": "mm/dd/yyyy; used to compute tenure",
    "seniority_type": "junior or senior",
    "status": "original, must_keep, for_discussion or to_be_peeled",
    "is_primary": "true or false; defaults to true",
}

TEMPLATE_EXAMPLES: dict[str, list[dict[str, Any]]] = {
    "managers": [{"manager_name": "Jane Smith", "manager_email": "jane.smith@example.com"}],
    "accounts": [
        {
            "account_name": "Example Corp",
            "industry": "Technology",
            "size": "enterprise",
            "tier": "Tier 1",
            "type": "Customer",
            "state": "CA",
            "city": "San Francisco",
            "country": "US",
            "current_division": "ESG",
            "revenue_ESG": 100000,
            "revenue_GDT": 0,
            "revenue_GVC": 0,
            "revenue_MSG_US": 0,
        }
    ],
    "sellers": [
        {
            "seller_name": "John Doe",
            "division": "ESG",
            "size": "enterprise",
            "industry_specialty": "Financial Services",
            "state": "NY",
            "city": "New York",
            "country": "US",
            "hire_date": "01/15/2020",
            "seniority_type": "senior",
        }
    ],
    "relationships": [{"account_name": "Example Corp", "seller_name": "John Doe", "status": "original"}],
    "manager_team": [{"manager_name": "Jane Smith", "seller_name": "John Doe", "is_primary": "true"}],
}


def _float(value: Decimal | None) -> float:
    return float(value) if value is not None else 0.0


def _hire_date_for(tenure_months: int | None, today: date) -> str | None:
    if tenure_months is None:
        return None
    months = today.year * 12 + (today.month - 1) - tenure_months
    return date(months // 12, months % 12 + 1, 1).strftime("%m/%d/%Y")


class ExportAssembler:
    """Reads whole tables page by page and flattens them back into workbook rows."""

    def __init__(self, store: ReconcileStore, *, page_size: int = 1000, max_rows: int = 100000) -> None:
        self.store = store
        self.page_size = page_size
        self.max_rows = max_rows

    def _all(self, table: str, columns: list[str] | None = None) -> list[dict[str, Any]]:
        return list(paginate(self.store, table, columns, page_size=self.page_size, max_rows=self.max_rows))

    def _manager_names(self) -> dict[uuid.UUID, str]:
        return {row["id"]: row["name"] for row in self._all("managers", ["id", "name"])}

    def assignment_rows(self) -> list[dict[str, Any]]:
        accounts = sorted(self._all("accounts"), key=lambda row: row["name"])
        revenues = {row["account_id"]: row for row in self._all("account_revenues")}
        sellers = {row["id"]: row for row in self._all("sellers")}
        manager_names = self._manager_names()

        assigned: dict[uuid.UUID, tuple[uuid.UUID, str]] = {}
        active = sorted(self._all("relationship_maps"), key=lambda row: (row["created_at"], str(row["id"])))
        for row in active:
            assigned.setdefault(row["account_id"], (row["seller_id"], row["status"] or ""))
        originals = sorted(self._all("original_relationships"), key=lambda row: (row["created_at"], str(row["id"])))
        for row in originals:
            assigned.setdefault(row["account_id"], (row["seller_id"], reference.ORIGINAL_STATUS))

        rows: list[dict[str, Any]] = []
        for account in accounts:
            revenue = revenues.get(account["id"], {})
            amounts = [_float(revenue.get(name)) for name in ("revenue_esg", "revenue_gdt", "revenue_gvc", "revenue_msg_us")]
            seller_id, status = assigned.get(account["id"], (None, ""))
            seller = sellers.get(seller_id, {}) if seller_id else {}
            manager_id = seller.get("manager_id")
            rows.append(
                {
                    "account_id": account["id"],
                    "account_name": account["name"],
                    "account_city": account["city"] or "",
                    "account_country": account["country"] or "",
                    "account_current_division": account["current_division"],
                    "account_industry": account["industry"] or "",
                    "account_lat": account["lat"],
                    "account_lng": account["lng"],
                    "account_size": account["size"],
                    "account_state": account["state"] or "",
                    "account_tier": account["tier"] or "",
                    "account_type": account["type"] or "",
                    "account_created_at": account["created_at"],
                    "revenue_esg": amounts[0],
                    "revenue_gdt": amounts[1],
                    "revenue_gvc": amounts[2],
                    "revenue_msg_us": amounts[3],
                    "total_revenue": sum(amounts),
                    "assigned_seller_id": seller.get("id") or "",
                    "assigned_seller_name": seller.get("name") or "",
                    "assigned_seller_division": seller.get("division") or "",
                    "assigned_seller_size": seller.get("size") or "",
                    "assigned_seller_industry_specialty": seller.get("industry_specialty") or "",
                    "assigned_seller_city": seller.get("city") or "",
                    "assigned_seller_state": seller.get("state") or "",
                    "assigned_seller_country": seller.get("country") or "",
                    "assigned_seller_manager_id": manager_id or "",
                    "assigned_seller_manager_name": manager_names.get(manager_id, "") if manager_id else "",
                    "relationship_status": status,
                }
            )
        logger.info("export.assignments", extra={"rows": len(rows)})
        return rows

    def assignments_workbook(self) -> bytes:
        return write_workbook([(ASSIGNMENTS_SHEET, ASSIGNMENT_COLUMNS, self.assignment_rows())])

    def backup_sheets(self, *, today: date | None = None) -> dict[str, list[dict[str, Any]]]:
        """Every entity table in the shape the comprehensive import reads back."""
        current = today or date.today()
        profiles = {row["id"]: row["email"] for row in self._all("profiles", ["id", "email"])}
        managers = self._all("managers", ["id", "user_id", "name"])
        manager_names = {row["id"]: row["name"] for row in managers}
        accounts = self._all("accounts")
        account_names = {row["id"]: row["name"] for row in accounts}
        revenues = {row["account_id"]: row for row in self._all("account_revenues")}
        sellers = self._all("sellers")
        seller_names = {row["id"]: row["name"] for row in sellers}

        sheets: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in managers:
            sheets["managers"].append({"manager_name": row["name"], "manager_email": profiles.get(row["user_id"], "")})
        for row in accounts:
            revenue = revenues.get(row["id"], {})
            sheets["accounts"].append(
                {
                    "account_name": row["name"],
                    "industry": row["industry"],
                    "size": row["size"],
                    "tier": row["tier"],
                    "type": row["type"],
                    "state": row["state"],
                    "city": row["city"],
                    "country": row["country"],
                    "current_division": row["current_division"],
                    "revenue_ESG": _float(revenue.get("revenue_esg")),
                    "revenue_GDT": _float(revenue.get("revenue_gdt")),
                    "revenue_GVC": _float(revenue.get("revenue_gvc")),
                    "revenue_MSG_US": _float(revenue.get("revenue_msg_us")),
                    "latitude": row["lat"],
                    "longitude": row["lng"],
                }
            )
        for row in sellers:
            sheets["sellers"].append(
                {
                    "seller_name": row["name"],
                    "division": row["division"],
                    "size": row["size"],
                    "industry_specialty": row["industry_specialty"],
                    "state": row["state"],
                    "city": row["city"],
                    "country": row["country"],
                    "hire_date": _hire_date_for(row["tenure_months"], current),
                    "seniority_type": row["seniority_type"],
                    "latitude": row["lat"],
                    "longitude": row["lng"],
                }
            )
        for row in self._all("original_relationships", ["account_id", "seller_id"]):
            sheets["relationships"].append(
                {
                    "account_name": account_names.get(row["account_id"], ""),
                    "seller_name": seller_names.get(row["seller_id"], ""),
                    "status": reference.ORIGINAL_STATUS,
                }
            )
        for row in self._all("relationship_maps", ["account_id", "seller_id", "status"]):
            sheets["relationships"].append(
                {
                    "account_name": account_names.get(row["account_id"], ""),
                    "seller_name": seller_names.get(row["seller_id"], ""),
                    "status": row["status"],
                }
            )
        for row in self._all("seller_managers", ["seller_id", "manager_id", "is_primary"]):
            sheets["manager_team"].append(
                {
                    "manager_name": manager_names.get(row["manager_id"], ""),
                    "seller_name": seller_names.get(row["seller_id"], ""),
                    "is_primary": "true" if row["is_primary"] else "false",
                }
            )
        return dict(sheets)

    def backup_workbook(self, *, today: date | None = None) -> bytes:
        return render_backup(self.backup_sheets(today=today))


def render_backup(data: dict[str, list[dict[str, Any]]]) -> bytes:
    sheets = [
        (SHEET_NAMES[entity], list(COLUMN_CONTRACTS[entity].expected), data.get(entity, []))
        for entity in SHEET_NAMES
    ]
    sheets.append(("Instructions", ["sheet", "column", "required", "notes"], instruction_rows()))
    logger.info("export.backup", extra={"rows": sum(len(rows) for rows in data.values())})
    return write_workbook(sheets)


def instruction_rows() -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for entity, sheet_name in SHEET_NAMES.items():
        contract = COLUMN_CONTRACTS[entity]
        for column in contract.expected:
            rows.append(
                {
                    "sheet": sheet_name,
                    "column": column,
                    "required": "yes" if column in contract.required else "no",
                    "notes": COLUMN_NOTES.get(column, ""),
                }
            )
    return rows


def template_workbook() -> bytes:
    sheets: list[tuple[str, list[str], list[dict[str, Any]]]] = [
        (SHEET_NAMES[entity], list(COLUMN_CONTRACTS[entity].expected), TEMPLATE_EXAMPLES[entity])
        for entity in SHEET_NAMES
    ]
    sheets.append(("Instructions", ["sheet", "column", "required", "notes"], instruction_rows()))
    sheets.append(("Country_Reference", ["country_name", "country_code"], reference.country_reference_rows()))
    sheets.append(("State_Reference", ["state_name", "state_code"], reference.state_reference_rows()))
    return write_workbook(sheets)
