"""Reference tables and value normalization shared by validation, import and export.

Location codes come from the bundled ``countries.json`` / ``states.json`` tables.
Division, size and relationship-status aliases follow what operators actually type
into the workbook ("MSG US", "Must Keep", "N/A" ...).
"""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from importlib import resources
from typing import Any

DIVISIONS = ("ESG", "GDT", "GVC", "MSG_US", "MIXED")
ACCOUNT_SIZES = ("enterprise", "midmarket", "no_data")
SENIORITY_TYPES = ("junior", "senior")
ORIGINAL_STATUS = "original"
ACTIVE_STATUSES = ("must_keep", "for_discussion", "to_be_peeled")
LEGACY_STATUSES = (
    "approval_for_pinning",
    "pinned",
    "approval_for_assigning",
    "assigned",
    "up_for_debate",
    "peeled",
    "available",
)

# Placeholder cells operators use for "unknown"; never checked against the tables.
COUNTRY_EXEMPT_VALUES = frozenset({"N/A", "No data"})
STATE_EXEMPT_VALUES = frozenset({"N/A", "No data", "Distributed"})

_DIVISION_ALIASES = {
    "ESG": "ESG",
    "GDT": "GDT",
    "GVC": "GVC",
    "MSG_US": "MSG_US",
    "MSG US": "MSG_US",
    "MIXED": "MIXED",
}

_SIZE_ALIASES = {
    "enterprise": "enterprise",
    "midmarket": "midmarket",
    "mid-market": "midmarket",
    "mid market": "midmarket",
    "no_data": "no_data",
    "no data": "no_data",
}

_SIZE_PLACEHOLDERS = frozenset({"", "-", "n/a", "unknown"})


@lru_cache
def _load_table(filename: str) -> tuple[dict[str, Any], ...]:
    raw = resources.files("territory.reconcile").joinpath("data", filename).read_text(encoding="utf-8")
    return tuple(json.loads(raw))


@lru_cache
def country_table() -> dict[str, dict[str, Any]]:
    return {item["code"]: item for item in _load_table("countries.json")}


@lru_cache
def state_table() -> dict[str, dict[str, Any]]:
    return {item["code"]: item for item in _load_table("states.json")}


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def is_exempt_country(value: str) -> bool:
    return value in COUNTRY_EXEMPT_VALUES


def is_exempt_state(value: str) -> bool:
    return value in STATE_EXEMPT_VALUES or value.upper() == "WI"


def is_known_country(value: str) -> bool:
    return value in country_table()


def is_known_state(value: str) -> bool:
    return value.upper() in state_table()


def normalize_division(value: Any) -> str | None:
    text = clean_text(value)
    if text is None:
        return None
    return _DIVISION_ALIASES.get(text.upper())


def normalize_size(value: Any, *, placeholder: str) -> str | None:
    """Map a size cell to a size class; blank and placeholder cells map to ``placeholder``."""
    text = clean_text(value)
    if text is None or text.lower() in _SIZE_PLACEHOLDERS:
        return placeholder
    return _SIZE_ALIASES.get(text.lower())


def normalize_seniority(value: Any) -> str | None:
    text = clean_text(value)
    if text is None:
        return None
    lowered = text.lower()
    return lowered if lowered in SENIORITY_TYPES else None


def normalize_status(value: Any, *, legacy: bool = False) -> str | None:
    """Return the canonical relationship status, ``original`` for blanks, or None when unknown."""
    text = clean_text(value)
    if text is None:
        return ORIGINAL_STATUS
    key = "_".join(text.lower().replace("-", " ").split())
    if key == ORIGINAL_STATUS:
        return ORIGINAL_STATUS
    allowed = ACTIVE_STATUSES + LEGACY_STATUSES if legacy else ACTIVE_STATUSES
    return key if key in allowed else None


def parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if not text:
        return default
    return text in {"true", "yes", "y", "1", "primary"}


def parse_amount(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    text = str(value).strip().replace(",", "").replace("$", "")
    if not text or text == "-":
        return Decimal("0")
    try:
        return Decimal(text)
    except InvalidOperation:
        return Decimal("0")


def parse_coordinate(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number or None


def derive_coordinates(
    state: str | None,
    country: str | None,
    lat: float | None = None,
    lng: float | None = None,
) -> tuple[float | None, float | None]:
    """Fill missing coordinates from the state table first, then the country table."""
    if lat and lng:
        return lat, lng

    if state and not is_exempt_state(state):
        match = state_table().get(state.upper())
        if match is not None:
            lat = lat or match["latitude"]
            lng = lng or match["longitude"]

    if country and not is_exempt_country(country) and not (lat and lng):
        match = country_table().get(country)
        if match is not None:
            lat = lat or match["latitude"]
            lng = lng or match["longitude"]

    return lat, lng


_EXCEL_EPOCH = date(1900, 1, 1)


def _parse_hire_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Excel serials count from 1900-01-01 and include the phantom 1900-02-29.
        if 1 < value < 100000:
            return _EXCEL_EPOCH + timedelta(days=int(value) - 2)
        return None

    text = clean_text(value)
    if text is None:
        return None
    if "/" in text:
        parts = text.split("/")
        if len(parts) != 3:
            return None
        try:
            month, day, year = (int(part) for part in parts)
        except ValueError:
            return None
        if year < 100:
            year += 2000 if year <= 30 else 1900
        try:
            return date(year, month, day)
        except ValueError:
            return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def tenure_months(value: Any, *, today: date | None = None) -> int | None:
    hire = _parse_hire_date(value)
    if hire is None:
        return None
    current = today or date.today()
    months = (current.year - hire.year) * 12 + (current.month - hire.month)
    return max(0, months)


def country_reference_rows() -> list[dict[str, str]]:
    rows = [{"country_name": "No data", "country_code": "N/A"}]
    rows.extend({"country_name": item["name"], "country_code": code} for code, item in country_table().items())
    return rows


def state_reference_rows() -> list[dict[str, str]]:
    rows = [{"state_name": "No data", "state_code": "N/A"}]
    rows.extend({"state_name": item["name"], "state_code": code} for code, item in state_table().items())
    return rows
