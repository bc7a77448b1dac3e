"""Per-entity import phases.

Each phase turns one sheet into store writes. The mode decides the policy:
replace clears the phase's tables (dependents first) and upserts; add leaves
existing rows alone and inserts only natural keys the store does not have yet.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from territory.reconcile.batching import BatchOutcome, BatchUpsertEngine, RateLimiter
from territory.reconcile.dedup import deduplicate
from territory.reconcile.errors import NameResolutionError, WriteError
from territory.reconcile.models import Seller, SellerChatMessage, SellerManager
from territory.reconcile.resolver import NameResolver, paginate
from territory.reconcile.run_context import RunContext
from territory.reconcile.schemas import (
    AccountRow,
    EntityResult,
    ManagerRow,
    ManagerTeamRow,
    RelationshipRow,
    SellerRow,
    SheetRow,
)
from territory.reconcile.store import ReconcileStore
from territory.reconcile.validation import build_rows
from territory.reconcile.workbook import Sheet

logger = logging.getLogger("territory.reconcile.phases")


class EntityPhase:
    entity_type: str = ""
    label: str = ""

    def __init__(self, store: ReconcileStore, engine: BatchUpsertEngine) -> None:
        self.store = store
        self.engine = engine

    def resolver(self, ctx: RunContext) -> NameResolver:
        return NameResolver(self.store, page_size=ctx.page_size, max_rows=ctx.max_fetch_rows)

    def _existing(self, ctx: RunContext, table: str, columns: Sequence[str]) -> set[tuple[Any, ...]]:
        return {
            tuple(row[name] for name in columns)
            for row in paginate(self.store, table, columns, page_size=ctx.page_size, max_rows=ctx.max_fetch_rows)
        }

    def _record(self, result: EntityResult, outcome: BatchOutcome) -> None:
        result.errors.extend(str(error) for error in outcome.errors)

    def run(self, ctx: RunContext, sheet: Sheet) -> EntityResult:
        result = ctx.result_for(self.entity_type)
        rows, failures = build_rows(self.entity_type, sheet, legacy_statuses=ctx.legacy_statuses)
        result.errors.extend(str(failure) for failure in failures)
        if ctx.mode == "replace":
            self.clear(ctx)
        self.write(ctx, rows, result)
        return result

    def clear(self, ctx: RunContext) -> None:
        raise NotImplementedError

    def write(self, ctx: RunContext, rows: list[SheetRow], result: EntityResult) -> None:
        raise NotImplementedError


class ManagersPhase(EntityPhase):
    entity_type = "managers"
    label = "Managers"

    def clear(self, ctx: RunContext) -> None:
        # Sellers outlive their managers; the Manager_Team phase re-links them.
        self.store.update("sellers", {"manager_id": None}, Seller.manager_id.is_not(None))
        self.store.delete("seller_managers")
        self.store.delete("managers")
        ctx.report("Cleared existing managers")

    def write(self, ctx: RunContext, rows: list[SheetRow], result: EntityResult) -> None:
        managers: list[ManagerRow] = deduplicate(
            [row for row in rows if isinstance(row, ManagerRow)],
            key=lambda row: row.email,
            entity_type=self.entity_type,
        ).rows
        resolver = self.resolver(ctx)
        profiles = resolver.profiles_by_email()

        records: list[dict[str, Any]] = []
        for row in managers:
            try:
                user_id = resolver.resolve_profile(profiles, row.email, entity_type=self.entity_type, row_number=row.row_number)
            except NameResolutionError as exc:
                result.errors.append(str(exc))
                continue
            records.append({"user_id": user_id, "name": row.name})
        records = deduplicate(records, key=lambda record: record["user_id"], entity_type=self.entity_type).rows

        if ctx.mode == "add":
            existing = {user_id for (user_id,) in self._existing(ctx, "managers", ["user_id"])}
            records = [record for record in records if record["user_id"] not in existing]
            outcome = self.engine.write(
                "managers", records, batch_size=ctx.entity_batch_size, mode="insert", entity_type=self.entity_type
            )
        else:
            outcome = self.engine.write(
                "managers",
                records,
                batch_size=ctx.entity_batch_size,
                conflict_key=["user_id"],
                entity_type=self.entity_type,
            )
        result.imported += outcome.imported
        self._record(result, outcome)


class AccountsPhase(EntityPhase):
    entity_type = "accounts"
    label = "Accounts"

    def clear(self, ctx: RunContext) -> None:
        for table in ("account_revenues", "original_relationships", "relationship_maps", "accounts"):
            self.store.delete(table)
        ctx.report("Cleared existing accounts, revenues and relationships")

    def write(self, ctx: RunContext, rows: list[SheetRow], result: EntityResult) -> None:
        accounts: list[AccountRow] = deduplicate(
            [row for row in rows if isinstance(row, AccountRow)],
            key=lambda row: row.name,
            entity_type=self.entity_type,
        ).rows

        if ctx.mode == "add":
            existing = self.resolver(ctx).accounts()
            accounts = [row for row in accounts if row.name not in existing]

        records = [
            row.model_dump(
                include={
                    "name",
                    "industry",
                    "size",
                    "tier",
                    "type",
                    "state",
                    "city",
                    "country",
                    "lat",
                    "lng",
                    "current_division",
                }
            )
            for row in accounts
        ]
        if ctx.mode == "add":
            outcome = self.engine.write(
                "accounts", records, batch_size=ctx.entity_batch_size, mode="insert", entity_type=self.entity_type
            )
        else:
            outcome = self.engine.write(
                "accounts", records, batch_size=ctx.entity_batch_size, conflict_key=["name"], entity_type=self.entity_type
            )
        result.imported += outcome.imported
        self._record(result, outcome)
        self._write_revenues(ctx, accounts, result)

    def _write_revenues(self, ctx: RunContext, accounts: list[AccountRow], result: EntityResult) -> None:
        if not accounts:
            return
        index = self.resolver(ctx).accounts()
        revenues = [
            {
                "account_id": index.exact[row.name],
                "revenue_esg": row.revenue_esg,
                "revenue_gdt": row.revenue_gdt,
                "revenue_gvc": row.revenue_gvc,
                "revenue_msg_us": row.revenue_msg_us,
            }
            for row in accounts
            if row.name in index
        ]
        outcome = self.engine.write(
            "account_revenues",
            revenues,
            batch_size=ctx.entity_batch_size,
            conflict_key=["account_id"],
            entity_type="account_revenues",
        )
        self._record(result, outcome)
        ctx.report(f"Accounts: wrote {outcome.imported} revenue records")


class SellersPhase(EntityPhase):
    entity_type = "sellers"
    label = "Sellers"

    def __init__(self, store: ReconcileStore, engine: BatchUpsertEngine) -> None:
        super().__init__(store, engine)
        self._chat_backup: list[dict[str, Any]] = []

    def _backup_chat(self, ctx: RunContext) -> None:
        stmt = select(
            Seller.name.label("seller_name"),
            SellerChatMessage.user_id,
            SellerChatMessage.content,
            SellerChatMessage.role,
            SellerChatMessage.created_at,
        ).join(Seller, Seller.id == SellerChatMessage.seller_id)
        try:
            self._chat_backup = [dict(row._mapping) for row in self.store.session.execute(stmt)]
        except SQLAlchemyError as exc:
            self.store.session.rollback()
            self._chat_backup = []
            ctx.warnings.append(f"Seller chat backup failed: {exc}")
            logger.warning("import.chat_backup_failed", extra={"entity_type": self.entity_type, "error": str(exc)})
            return
        if self._chat_backup:
            ctx.report(f"Backed up {len(self._chat_backup)} seller chat messages")

    def clear(self, ctx: RunContext) -> None:
        self._backup_chat(ctx)
        for table in (
            "seller_chat_messages",
            "seller_managers",
            "original_relationships",
            "relationship_maps",
            "sellers",
        ):
            self.store.delete(table)
        ctx.report("Cleared existing sellers and their relationships")

    def _restore_chat(self, ctx: RunContext) -> None:
        if not self._chat_backup:
            return
        index = self.resolver(ctx).sellers()
        restored = [
            {
                "seller_id": index.exact[message["seller_name"]],
                "user_id": message["user_id"],
                "content": message["content"],
                "role": message["role"],
                "created_at": message["created_at"],
            }
            for message in self._chat_backup
            if message["seller_name"] in index
        ]
        dropped = len(self._chat_backup) - len(restored)
        try:
            self.store.insert("seller_chat_messages", restored)
        except SQLAlchemyError as exc:
            ctx.warnings.append(f"Seller chat restore failed: {exc}")
            logger.warning("import.chat_restore_failed", extra={"entity_type": self.entity_type, "error": str(exc)})
            return
        finally:
            self._chat_backup = []
        ctx.report(f"Restored {len(restored)} seller chat messages ({dropped} dropped for removed sellers)")

    def write(self, ctx: RunContext, rows: list[SheetRow], result: EntityResult) -> None:
        sellers: list[SellerRow] = deduplicate(
            [row for row in rows if isinstance(row, SellerRow)],
            key=lambda row: row.name,
            entity_type=self.entity_type,
        ).rows

        if ctx.mode == "add":
            existing = self.resolver(ctx).sellers()
            sellers = [row for row in sellers if row.name not in existing]

        records = [
            {
                **row.model_dump(
                    include={
                        "name",
                        "division",
                        "size",
                        "industry_specialty",
                        "state",
                        "city",
                        "country",
                        "lat",
                        "lng",
                        "tenure_months",
                        "seniority_type",
                    }
                ),
                "manager_id": None,
                "book_finalized": False,
            }
            for row in sellers
        ]
        if ctx.mode == "add":
            outcome = self.engine.write(
                "sellers", records, batch_size=ctx.entity_batch_size, mode="insert", entity_type=self.entity_type
            )
        else:
            outcome = self.engine.write(
                "sellers", records, batch_size=ctx.entity_batch_size, conflict_key=["name"], entity_type=self.entity_type
            )
        result.imported += outcome.imported
        self._record(result, outcome)
        self._restore_chat(ctx)


class RelationshipsPhase(EntityPhase):
    entity_type = "relationships"
    label = "Relationship_Map"

    def clear(self, ctx: RunContext) -> None:
        self.store.delete("original_relationships")
        self.store.delete("relationship_maps")
        ctx.report("Cleared existing relationships and original snapshots")

    def write(self, ctx: RunContext, rows: list[SheetRow], result: EntityResult) -> None:
        unique = deduplicate(
            [row for row in rows if isinstance(row, RelationshipRow)],
            key=lambda row: (row.account_name, row.seller_name),
            entity_type=self.entity_type,
        )
        relationships: list[RelationshipRow] = unique.rows

        # Always a fresh index: earlier phases of this run may have just created the rows.
        resolver = self.resolver(ctx)
        accounts = resolver.accounts()
        sellers = resolver.sellers()

        resolved: list[tuple[uuid.UUID, uuid.UUID, str]] = []
        for row in relationships:
            try:
                account_id = accounts.resolve(row.account_name, entity_type=self.entity_type, row_number=row.row_number)
                seller_id = sellers.resolve(row.seller_name, entity_type=self.entity_type, row_number=row.row_number)
            except NameResolutionError as exc:
                result.errors.append(str(exc))
                continue
            resolved.append((account_id, seller_id, row.status))
        # Case-insensitive matches can fold two spellings onto one pair.
        folded = deduplicate(resolved, key=lambda item: (item[0], item[1]), entity_type=self.entity_type)
        resolved = folded.rows
        dropped = unique.removed + folded.removed
        if dropped:
            ctx.report(f"Relationship_Map: dropped {dropped} duplicate account/seller rows")

        snapshots = [
            {"account_id": account_id, "seller_id": seller_id}
            for account_id, seller_id, status in resolved
            if status == "original"
        ]
        active = [
            {"account_id": account_id, "seller_id": seller_id, "status": status}
            for account_id, seller_id, status in resolved
            if status != "original"
        ]

        if ctx.mode == "add":
            # A pair lives in exactly one of the two tables.
            existing_active = self._existing(ctx, "relationship_maps", ["account_id", "seller_id"])
            existing_snapshots = self._existing(ctx, "original_relationships", ["account_id", "seller_id"])
            taken = existing_active | existing_snapshots
            snapshots = [record for record in snapshots if (record["account_id"], record["seller_id"]) not in taken]
            active = [record for record in active if (record["account_id"], record["seller_id"]) not in taken]

        limiter = RateLimiter(ctx.relationship_min_interval, sleep=self.engine.sleep)
        snapshot_outcome = self.engine.write(
            "original_relationships",
            snapshots,
            batch_size=ctx.relationship_batch_size,
            conflict_key=["account_id", "seller_id"],
            limiter=limiter,
            entity_type=self.entity_type,
        )
        self._record(result, snapshot_outcome)
        ctx.report(f"Relationship_Map: recorded {snapshot_outcome.imported} original relationships")

        if ctx.mode == "add":
            active_outcome = self.engine.write(
                "relationship_maps",
                active,
                batch_size=ctx.relationship_batch_size,
                mode="insert",
                limiter=limiter,
                entity_type=self.entity_type,
            )
        else:
            active_outcome = self.engine.write(
                "relationship_maps",
                active,
                batch_size=ctx.relationship_batch_size,
                conflict_key=["account_id", "seller_id"],
                limiter=limiter,
                entity_type=self.entity_type,
            )
        result.imported += active_outcome.imported
        self._record(result, active_outcome)


class ManagerTeamPhase(EntityPhase):
    entity_type = "manager_team"
    label = "Manager_Team"

    def clear(self, ctx: RunContext) -> None:
        self.store.delete("seller_managers")
        self.store.update("sellers", {"manager_id": None}, Seller.manager_id.is_not(None))
        ctx.report("Cleared existing manager-team assignments")

    def write(self, ctx: RunContext, rows: list[SheetRow], result: EntityResult) -> None:
        assignments: list[ManagerTeamRow] = deduplicate(
            [row for row in rows if isinstance(row, ManagerTeamRow)],
            key=lambda row: (row.manager_name, row.seller_name),
            entity_type=self.entity_type,
        ).rows

        resolver = self.resolver(ctx)
        managers = resolver.managers()
        sellers = resolver.sellers()

        records: list[dict[str, Any]] = []
        for row in assignments:
            try:
                manager_id = managers.resolve(row.manager_name, entity_type=self.entity_type, row_number=row.row_number)
                seller_id = sellers.resolve(row.seller_name, entity_type=self.entity_type, row_number=row.row_number)
            except NameResolutionError as exc:
                result.errors.append(str(exc))
                continue
            records.append({"seller_id": seller_id, "manager_id": manager_id, "is_primary": row.is_primary})
        records = deduplicate(
            records, key=lambda record: (record["seller_id"], record["manager_id"]), entity_type=self.entity_type
        ).rows

        if ctx.mode == "add":
            existing = self._existing(ctx, "seller_managers", ["seller_id", "manager_id"])
            records = [record for record in records if (record["seller_id"], record["manager_id"]) not in existing]
            outcome = self.engine.write(
                "seller_managers", records, batch_size=ctx.entity_batch_size, mode="insert", entity_type=self.entity_type
            )
        else:
            outcome = self.engine.write(
                "seller_managers",
                records,
                batch_size=ctx.entity_batch_size,
                conflict_key=["seller_id", "manager_id"],
                entity_type=self.entity_type,
            )
        result.imported += outcome.imported
        self._record(result, outcome)
        self._link_primary_managers(ctx, result)

    def _link_primary_managers(self, ctx: RunContext, result: EntityResult) -> None:
        primary = self.store.session.execute(
            select(SellerManager.seller_id, SellerManager.manager_id)
            .where(SellerManager.is_primary.is_(True))
            .order_by(SellerManager.created_at, SellerManager.id)
        ).all()
        by_seller: dict[uuid.UUID, uuid.UUID] = {}
        for seller_id, manager_id in primary:
            by_seller.setdefault(seller_id, manager_id)

        by_manager: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
        for seller_id, manager_id in by_seller.items():
            by_manager[manager_id].append(seller_id)

        linked = 0
        for index, (manager_id, seller_ids) in enumerate(by_manager.items()):
            try:
                linked += self.store.update("sellers", {"manager_id": manager_id}, Seller.id.in_(seller_ids))
            except SQLAlchemyError as exc:
                result.errors.append(str(WriteError(self.entity_type, index, f"linking primary manager: {exc}")))
        ctx.report(f"Manager_Team: linked {linked} sellers to their primary manager")


PHASES: dict[str, type[EntityPhase]] = {
    "managers": ManagersPhase,
    "accounts": AccountsPhase,
    "sellers": SellersPhase,
    "relationships": RelationshipsPhase,
    "manager_team": ManagerTeamPhase,
}
