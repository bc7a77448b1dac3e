from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import ColumnElement, Table, delete, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from territory.reconcile.models import (
    Account,
    AccountRevenue,
    ImportStatus,
    Manager,
    OriginalRelationship,
    Profile,
    RelationshipMap,
    Seller,
    SellerChatMessage,
    SellerManager,
    SellerPerformance,
    utcnow,
)
from territory.reconcile.schemas import ImportLockRead

logger = logging.getLogger("territory.reconcile.store")

IMPORT_LOCK_ID = "current_import"

TABLES: dict[str, Any] = {
    "profiles": Profile,
    "managers": Manager,
    "accounts": Account,
    "account_revenues": AccountRevenue,
    "sellers": Seller,
    "relationship_maps": RelationshipMap,
    "original_relationships": OriginalRelationship,
    "seller_managers": SellerManager,
    "seller_chat_messages": SellerChatMessage,
    "seller_performance": SellerPerformance,
}


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ReconcileStore:
    """Table-level read/write surface used by the import pipeline.

    Every write commits on success and rolls back on failure, so a failed chunk
    never leaves half of its rows behind and earlier chunks stay persisted.
    """

    def __init__(self, session: Session, *, now: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self._now = now

    def _table(self, name: str) -> Table:
        try:
            return TABLES[name].__table__
        except KeyError as exc:
            raise ValueError(f"Unknown table: {name}") from exc

    def _write(self, statement, params: Sequence[Mapping[str, Any]] | None = None) -> int:  # type: ignore[no-untyped-def]
        try:
            if params is None:
                result = self.session.execute(statement)
            else:
                result = self.session.execute(statement, list(params))
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return max(result.rowcount or 0, 0)

    def select(
        self,
        table: str,
        columns: Sequence[str] | None = None,
        *,
        start: int = 0,
        end: int = 999,
        where: Sequence[ColumnElement[bool]] = (),
    ) -> list[dict[str, Any]]:
        """Rows ``start..end`` inclusive, ordered by primary key."""
        target = self._table(table)
        selected = [target.c[name] for name in columns] if columns else list(target.c)
        stmt = select(*selected).where(*where).order_by(*target.primary_key.columns)
        stmt = stmt.offset(start).limit(max(end - start + 1, 0))
        return [dict(row._mapping) for row in self.session.execute(stmt)]

    def _dialect_insert(self, target: Table):  # type: ignore[no-untyped-def]
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(target)
        if dialect == "sqlite":
            return sqlite.insert(target)
        raise NotImplementedError(f"upsert is not supported on {dialect}")

    def upsert(self, table: str, rows: Sequence[Mapping[str, Any]], conflict_key: Sequence[str]) -> int:
        if not rows:
            return 0
        target = self._table(table)
        stmt = self._dialect_insert(target).values([dict(row) for row in rows])
        update_columns = {
            name: stmt.excluded[name]
            for name in rows[0]
            if name not in conflict_key and name != "id"
        }
        if update_columns and "updated_at" in target.c:
            update_columns["updated_at"] = self._now()
        if update_columns:
            stmt = stmt.on_conflict_do_update(index_elements=list(conflict_key), set_=update_columns)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_key))
        self._write(stmt)
        return len(rows)

    def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        if not rows:
            return 0
        self._write(insert(self._table(table)), rows)
        return len(rows)

    def delete(self, table: str, *criteria: ColumnElement[bool]) -> int:
        return self._write(delete(self._table(table)).where(*criteria))

    def update(self, table: str, values: Mapping[str, Any], *criteria: ColumnElement[bool]) -> int:
        return self._write(update(self._table(table)).where(*criteria).values(**values))

    def _ensure_lock_row(self) -> None:
        if self.session.get(ImportStatus, IMPORT_LOCK_ID) is not None:
            return
        self.session.add(ImportStatus(id=IMPORT_LOCK_ID, is_importing=False))
        try:
            self.session.commit()
        except IntegrityError:
            # Another process created the row first.
            self.session.rollback()

    def acquire_import_lock(self, holder: str, ttl_minutes: int) -> bool:
        """Take the advisory lock unless a non-expired lock exists. Never raises on contention."""
        self._ensure_lock_row()
        now = self._now()
        table = ImportStatus.__table__
        stmt = (
            update(table)
            .where(
                table.c.id == IMPORT_LOCK_ID,
                or_(
                    table.c.is_importing.is_(False),
                    table.c.expires_at.is_(None),
                    table.c.expires_at <= now,
                ),
            )
            .values(
                is_importing=True,
                holder=holder,
                acquired_at=now,
                expires_at=now + timedelta(minutes=ttl_minutes),
                updated_at=now,
            )
        )
        return self._write(stmt) == 1

    def release_import_lock(self, holder: str) -> bool:
        table = ImportStatus.__table__
        stmt = (
            update(table)
            .where(table.c.id == IMPORT_LOCK_ID, table.c.holder == holder, table.c.is_importing.is_(True))
            .values(is_importing=False, holder=None, expires_at=None, updated_at=self._now())
        )
        return self._write(stmt) == 1

    def import_lock_state(self) -> ImportLockRead:
        record = self.session.execute(
            select(ImportStatus)
            .where(ImportStatus.id == IMPORT_LOCK_ID)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            return ImportLockRead(is_importing=False, holder=None, acquired_at=None, expires_at=None)

        expires_at = as_utc(record.expires_at)
        active = bool(record.is_importing) and expires_at is not None and expires_at > self._now()
        return ImportLockRead(
            is_importing=active,
            holder=record.holder if active else None,
            acquired_at=as_utc(record.acquired_at),
            expires_at=expires_at,
        )

    def is_import_in_progress(self) -> bool:
        return self.import_lock_state().is_importing

    def refresh_views(self) -> int:
        """Recompute the per-seller performance table from whatever is persisted."""
        sellers = self.session.execute(select(Seller.id, Seller.name, Seller.manager_id)).all()
        active = self.session.execute(
            select(RelationshipMap.seller_id, RelationshipMap.account_id, RelationshipMap.status)
        ).all()
        originals = self.session.execute(select(OriginalRelationship.seller_id, OriginalRelationship.account_id)).all()
        revenues = {
            row.account_id: row.revenue_esg + row.revenue_gdt + row.revenue_gvc + row.revenue_msg_us
            for row in self.session.execute(
                select(
                    AccountRevenue.account_id,
                    AccountRevenue.revenue_esg,
                    AccountRevenue.revenue_gdt,
                    AccountRevenue.revenue_gvc,
                    AccountRevenue.revenue_msg_us,
                )
            )
        }

        stats: dict[Any, dict[str, Any]] = defaultdict(
            lambda: {
                "account_count": 0,
                "original_account_count": 0,
                "must_keep_count": 0,
                "for_discussion_count": 0,
                "to_be_peeled_count": 0,
                "total_revenue": Decimal("0"),
            }
        )
        for seller_id, account_id, status in active:
            entry = stats[seller_id]
            entry["account_count"] += 1
            entry["total_revenue"] += Decimal(revenues.get(account_id, 0))
            counter = f"{status}_count"
            if counter in entry:
                entry[counter] += 1
        for seller_id, _account_id in originals:
            stats[seller_id]["original_account_count"] += 1

        refreshed_at = self._now()
        rows = [
            {
                "seller_id": seller.id,
                "seller_name": seller.name,
                "manager_id": seller.manager_id,
                "refreshed_at": refreshed_at,
                **stats[seller.id],
            }
            for seller in sellers
        ]
        try:
            self.session.execute(delete(SellerPerformance.__table__))
            if rows:
                self.session.execute(insert(SellerPerformance.__table__), rows)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.info("views.refreshed", extra={"rows": len(rows)})
        return len(rows)
