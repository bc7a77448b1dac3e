from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import ColumnElement

from territory.reconcile.errors import NameResolutionError
from territory.reconcile.store import ReconcileStore

logger = logging.getLogger("territory.reconcile.resolver")


def paginate(
    store: ReconcileStore,
    table: str,
    columns: Sequence[str] | None = None,
    *,
    page_size: int = 1000,
    max_rows: int = 100000,
    where: Sequence[ColumnElement[bool]] = (),
) -> Iterator[dict[str, Any]]:
    """Yield every row of ``table`` page by page until a short page or the safety cap."""
    fetched = 0
    while fetched < max_rows:
        limit = min(page_size, max_rows - fetched)
        page = store.select(table, columns, start=fetched, end=fetched + limit - 1, where=where)
        yield from page
        fetched += len(page)
        if len(page) < limit:
            return
    # A table holding exactly max_rows rows was read in full.
    if store.select(table, columns, start=fetched, end=fetched, where=where):
        logger.warning("fetch.capped", extra={"entity_type": table, "rows": fetched})


@dataclass
class NameIndex:
    kind: str
    exact: dict[str, uuid.UUID] = field(default_factory=dict)
    folded: dict[str, set[uuid.UUID]] = field(default_factory=dict)

    def add(self, name: str, identifier: uuid.UUID) -> None:
        self.exact.setdefault(name, identifier)
        self.folded.setdefault(name.casefold(), set()).add(identifier)

    def __len__(self) -> int:
        return len(self.exact)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self.exact

    def resolve(self, name: str, *, entity_type: str, row_number: int) -> uuid.UUID:
        """Exact match first, then a case-insensitive match; anything else raises."""
        identifier = self.exact.get(name)
        if identifier is not None:
            return identifier
        candidates = self.folded.get(name.casefold(), set())
        if len(candidates) == 1:
            return next(iter(candidates))
        raise NameResolutionError(entity_type, row_number, self.kind, name, ambiguous=len(candidates) > 1)


class NameResolver:
    """Builds name -> id indexes from full-table paginated fetches."""

    def __init__(self, store: ReconcileStore, *, page_size: int = 1000, max_rows: int = 100000) -> None:
        self.store = store
        self.page_size = page_size
        self.max_rows = max_rows

    def _index(self, table: str, kind: str) -> NameIndex:
        index = NameIndex(kind=kind)
        for row in paginate(self.store, table, ["id", "name"], page_size=self.page_size, max_rows=self.max_rows):
            index.add(row["name"], row["id"])
        logger.debug("resolver.indexed", extra={"entity_type": table, "rows": len(index)})
        return index

    def accounts(self) -> NameIndex:
        return self._index("accounts", "Account")

    def sellers(self) -> NameIndex:
        return self._index("sellers", "Seller")

    def managers(self) -> NameIndex:
        return self._index("managers", "Manager")

    def profiles_by_email(self) -> dict[str, uuid.UUID]:
        # Emails are matched exactly after lower-casing; a typo must surface as a failure.
        profiles: dict[str, uuid.UUID] = {}
        for row in paginate(self.store, "profiles", ["id", "email"], page_size=self.page_size, max_rows=self.max_rows):
            profiles.setdefault(str(row["email"]).strip().lower(), row["id"])
        return profiles

    def resolve_profile(
        self,
        profiles: dict[str, uuid.UUID],
        email: str,
        *,
        entity_type: str,
        row_number: int,
    ) -> uuid.UUID:
        identifier = profiles.get(email.strip().lower())
        if identifier is None:
            raise NameResolutionError(entity_type, row_number, "Profile with email", email)
        return identifier
