from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from territory import events
from territory.core.config import get_settings
from territory.core.database import Base
from territory.core.events import InProcessEventBus, InternalEvent
from territory.models.audit import AuditLog
from territory.reconcile.coordinator import ImportCoordinator
from territory.reconcile.models import (
    Account,
    AccountRevenue,
    Manager,
    OriginalRelationship,
    Profile,
    RelationshipMap,
    Seller,
    SellerChatMessage,
    SellerPerformance,
)
from territory.reconcile.store import ReconcileStore
from territory.reconcile.workbook import write_workbook


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


def build_workbook(sheets: dict[str, list[dict[str, Any]]]) -> bytes:
    return write_workbook([(name, list(rows[0]), rows) for name, rows in sheets.items()])


MANAGERS = [{"manager_name": "Jane Smith", "manager_email": "Jane.Smith@example.com"}]
ACCOUNTS = [
    {
        "account_name": "Acme",
        "size": "enterprise",
        "current_division": "ESG",
        "state": "NY",
        "country": "US",
        "revenue_ESG": 1000,
        "revenue_GDT": 250,
    }
]
SELLERS = [
    {"seller_name": "J. Doe", "division": "ESG", "size": "enterprise", "hire_date": "01/15/2020"},
    {"seller_name": "R. Roe", "division": "ESG", "size": "midmarket", "hire_date": None},
]
RELATIONSHIPS = [
    {"account_name": "Acme", "seller_name": "J. Doe", "status": "original"},
    {"account_name": "Acme", "seller_name": "R. Roe", "status": "must_keep"},
    {"account_name": "Globex", "seller_name": "J. Doe", "status": None},
]
MANAGER_TEAM = [{"manager_name": "Jane Smith", "seller_name": "J. Doe", "is_primary": "true"}]


def full_workbook() -> bytes:
    return build_workbook(
        {
            "Managers": MANAGERS,
            "Accounts": ACCOUNTS,
            "Sellers": SELLERS,
            "Relationship_Map": RELATIONSHIPS,
            "Manager_Team": MANAGER_TEAM,
        }
    )


def seed_profile(session: Session) -> Profile:
    profile = Profile(email="jane.smith@example.com", full_name="Jane Smith")
    session.add(profile)
    session.commit()
    return profile


def coordinator_for(session: Session) -> ImportCoordinator:
    return ImportCoordinator(session, sleep=lambda seconds: None)


def import_events() -> list[dict[str, Any]]:
    return [event for event in events.published_events if str(event.get("event_type", "")).startswith("reconcile.import.")]


def test_replace_import_end_to_end(db_session: Session) -> None:
    seed_profile(db_session)

    result = coordinator_for(db_session).run(full_workbook(), mode="replace", actor_id="admin-1", file_name="book.xlsx")

    assert result.state == "Complete"
    assert result.fatal_error is None
    assert result.lock_acquired is True
    assert result.views_refreshed is True
    assert result.results["managers"].imported == 1
    assert result.results["accounts"].imported == 1
    assert result.results["sellers"].imported == 2
    assert result.results["relationships"].imported == 1
    assert result.results["relationships"].errors == ["Row 4: Account 'Globex' not found"]
    assert result.results["manager_team"].imported == 1
    assert result.total_errors == 1

    acme = db_session.scalars(select(Account)).one()
    assert acme.lat is not None and acme.lng is not None
    revenue = db_session.scalars(select(AccountRevenue)).one()
    assert revenue.revenue_esg == Decimal("1000")
    assert revenue.revenue_gdt == Decimal("250")

    sellers = {seller.name: seller for seller in db_session.scalars(select(Seller))}
    manager = db_session.scalars(select(Manager)).one()
    assert sellers["J. Doe"].tenure_months is not None
    assert sellers["R. Roe"].tenure_months is None
    assert sellers["J. Doe"].manager_id == manager.id
    assert sellers["R. Roe"].manager_id is None

    snapshots = db_session.execute(select(OriginalRelationship.account_id, OriginalRelationship.seller_id)).all()
    active = db_session.execute(
        select(RelationshipMap.account_id, RelationshipMap.seller_id, RelationshipMap.status)
    ).all()
    assert snapshots == [(acme.id, sellers["J. Doe"].id)]
    assert active == [(acme.id, sellers["R. Roe"].id, "must_keep")]

    performance = {row.seller_name: row for row in db_session.scalars(select(SellerPerformance))}
    assert performance["R. Roe"].account_count == 1
    assert performance["R. Roe"].must_keep_count == 1
    assert performance["J. Doe"].original_account_count == 1


def test_original_status_never_lands_in_active_table(db_session: Session) -> None:
    seed_profile(db_session)
    content = build_workbook(
        {
            "Accounts": ACCOUNTS,
            "Sellers": SELLERS,
            "Relationship_Map": [
                {"account_name": "Acme", "seller_name": "J. Doe", "status": None},
                {"account_name": "Acme", "seller_name": "R. Roe", "status": "Original"},
            ],
        }
    )

    result = coordinator_for(db_session).run(content, mode="replace", actor_id="admin-1")

    assert result.results["relationships"].imported == 0
    assert db_session.scalars(select(RelationshipMap)).all() == []
    assert len(db_session.scalars(select(OriginalRelationship)).all()) == 2


def test_phases_run_in_dependency_order(db_session: Session) -> None:
    seed_profile(db_session)
    content = build_workbook(
        {
            "Manager_Team": MANAGER_TEAM,
            "Relationship_Map": RELATIONSHIPS,
            "Sellers": SELLERS,
            "Accounts": ACCOUNTS,
            "Managers": MANAGERS,
        }
    )
    progress: list[str] = []

    coordinator_for(db_session).run(content, mode="replace", actor_id="admin-1", on_progress=progress.append)

    importing = [line.split("importing", 1)[1].split()[1] for line in progress if ": importing " in line]
    assert importing == ["Managers", "Accounts", "Sellers", "Relationship_Map", "Manager_Team"]


def test_add_mode_is_idempotent(db_session: Session) -> None:
    seed_profile(db_session)
    coordinator = coordinator_for(db_session)

    first = coordinator.run(full_workbook(), mode="add", actor_id="admin-1")
    second = coordinator.run(full_workbook(), mode="add", actor_id="admin-1")

    assert first.total_imported == 6
    assert first.lock_acquired is False
    assert second.total_imported == 0
    assert len(db_session.scalars(select(Account)).all()) == 1
    assert len(db_session.scalars(select(Seller)).all()) == 2
    assert len(db_session.scalars(select(RelationshipMap)).all()) == 1
    assert len(db_session.scalars(select(OriginalRelationship)).all()) == 1


def test_add_mode_keeps_existing_rows(db_session: Session) -> None:
    seed_profile(db_session)
    db_session.add(Account(name="Initech", size="midmarket", current_division="GDT"))
    db_session.commit()

    coordinator_for(db_session).run(build_workbook({"Accounts": ACCOUNTS}), mode="add", actor_id="admin-1")

    assert set(db_session.scalars(select(Account.name))) == {"Acme", "Initech"}


def test_replace_clears_and_restores_chat_for_surviving_sellers(db_session: Session) -> None:
    seed_profile(db_session)
    doe = Seller(name="J. Doe", division="GDT", size="midmarket")
    gone = Seller(name="Old Seller", division="GVC", size="midmarket")
    db_session.add_all([doe, gone, Account(name="Old Co", size="enterprise", current_division="GVC")])
    db_session.flush()
    db_session.add_all(
        [
            SellerChatMessage(seller_id=doe.id, user_id="u-1", content="keep me", role="user"),
            SellerChatMessage(seller_id=gone.id, user_id="u-1", content="drop me", role="user"),
        ]
    )
    db_session.commit()

    result = coordinator_for(db_session).run(
        build_workbook({"Accounts": ACCOUNTS, "Sellers": SELLERS}), mode="replace", actor_id="admin-1"
    )

    assert result.total_errors == 0
    assert set(db_session.scalars(select(Account.name))) == {"Acme"}
    sellers = {seller.name: seller for seller in db_session.scalars(select(Seller))}
    assert set(sellers) == {"J. Doe", "R. Roe"}
    assert sellers["J. Doe"].division == "ESG"
    messages = db_session.scalars(select(SellerChatMessage)).all()
    assert [(message.seller_id, message.content) for message in messages] == [(sellers["J. Doe"].id, "keep me")]


def test_invalid_sheet_skips_only_its_phase(db_session: Session) -> None:
    content = build_workbook(
        {
            "Accounts": ACCOUNTS,
            "Sellers": [{"seller_name": "J. Doe", "size": "enterprise"}],
        }
    )

    result = coordinator_for(db_session).run(content, mode="replace", actor_id="admin-1")

    assert result.state == "Complete"
    assert result.results["accounts"].imported == 1
    assert result.results["sellers"].skipped is True
    assert result.results["sellers"].errors == ["Sellers sheet is missing required columns: division"]


def test_lock_is_released_before_views_refresh(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    coordinator = coordinator_for(db_session)
    observed: list[bool] = []
    refresh = coordinator.store.refresh_views

    def checking_refresh() -> int:
        observed.append(coordinator.store.import_lock_state().is_importing)
        return refresh()

    monkeypatch.setattr(coordinator.store, "refresh_views", checking_refresh)

    result = coordinator.run(build_workbook({"Accounts": ACCOUNTS}), mode="replace", actor_id="admin-1")

    assert result.lock_acquired is True
    assert observed == [False]


def test_lock_contention_warns_and_continues(db_session: Session) -> None:
    ReconcileStore(db_session).acquire_import_lock("other-admin", 30)

    result = coordinator_for(db_session).run(build_workbook({"Accounts": ACCOUNTS}), mode="replace", actor_id="admin-1")

    assert result.lock_acquired is False
    assert result.results["accounts"].imported == 1
    assert any("Import lock is held by another run" in warning for warning in result.warnings)
    assert ReconcileStore(db_session).import_lock_state().holder == "other-admin"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        (b"", "Uploaded file is empty"),
        (b"definitely not a zip", "Unable to read workbook"),
    ],
)
def test_unreadable_file_fails_the_run(db_session: Session, content: bytes, message: str) -> None:
    result = coordinator_for(db_session).run(content, mode="replace", actor_id="admin-1")

    assert result.state == "Failed"
    assert result.fatal_error is not None and result.fatal_error.startswith(message)
    assert result.results == {}
    assert [event["event_type"] for event in import_events()] == ["reconcile.import.failed"]
    assert db_session.scalars(select(AuditLog)).all() == []
    assert ReconcileStore(db_session).import_lock_state().is_importing is False


def test_workbook_without_known_sheets_fails(db_session: Session) -> None:
    result = coordinator_for(db_session).run(
        build_workbook({"Notes": [{"text": "hello"}]}), mode="replace", actor_id="admin-1"
    )

    assert result.state == "Failed"
    assert result.fatal_error is not None
    assert result.fatal_error.startswith("No importable sheets found")


def test_exactly_one_completion_event_and_audit_per_run(db_session: Session) -> None:
    seed_profile(db_session)
    coordinator = coordinator_for(db_session)

    replace = coordinator.run(full_workbook(), mode="replace", actor_id="admin-1", file_name="book.xlsx")
    coordinator.run(full_workbook(), mode="add", actor_id="admin-2")

    published = import_events()
    assert [event["event_type"] for event in published] == ["reconcile.import.completed"] * 2
    assert published[0]["run_id"] == replace.run_id
    assert published[0]["total_imported"] == replace.total_imported
    assert published[0]["results"]["relationships"]["errors"] == ["Row 4: Account 'Globex' not found"]

    audit_rows = db_session.scalars(select(AuditLog).order_by(AuditLog.id)).all()
    assert [(row.action, row.entity_type, row.actor_id) for row in audit_rows] == [
        ("data_import", "COMPREHENSIVE", "admin-1"),
        ("data_import", "COMPREHENSIVE_ADD", "admin-2"),
    ]
    assert audit_rows[0].event_metadata["file_name"] == "book.xlsx"
    assert audit_rows[0].event_metadata["results"]["accounts"]["imported"] == 1


def test_unknown_mode_is_rejected(db_session: Session) -> None:
    with pytest.raises(ValueError):
        coordinator_for(db_session).run(full_workbook(), mode="merge", actor_id="admin-1")  # type: ignore[arg-type]


def test_single_original_relationship_lands_only_in_snapshot(db_session: Session) -> None:
    content = build_workbook(
        {
            "Accounts": [{"account_name": "Acme", "size": "enterprise", "current_division": "ESG", "revenue_ESG": 100}],
            "Sellers": [{"seller_name": "J. Doe", "division": "ESG", "size": "enterprise"}],
            "Relationship_Map": [{"account_name": "Acme", "seller_name": "J. Doe", "status": "original"}],
        }
    )

    result = coordinator_for(db_session).run(content, mode="replace", actor_id="admin-1")

    assert result.summary() == {
        "accounts": {"imported": 1, "errors": []},
        "sellers": {"imported": 1, "errors": []},
        "relationships": {"imported": 0, "errors": []},
    }
    revenue = db_session.scalars(select(AccountRevenue)).one()
    assert revenue.revenue_esg == Decimal("100")
    assert len(db_session.scalars(select(OriginalRelationship)).all()) == 1
    assert db_session.scalars(select(RelationshipMap)).all() == []


def _pairs(session: Session, model: type) -> set[tuple[Any, Any]]:
    return set(session.execute(select(model.account_id, model.seller_id)).all())


def test_same_pair_in_one_workbook_keeps_first_row_only(db_session: Session) -> None:
    seed_profile(db_session)
    content = build_workbook(
        {
            "Accounts": ACCOUNTS,
            "Sellers": SELLERS,
            "Relationship_Map": [
                {"account_name": "Acme", "seller_name": "J. Doe", "status": "original"},
                {"account_name": "Acme", "seller_name": "J. Doe", "status": "must_keep"},
            ],
        }
    )

    result = coordinator_for(db_session).run(content, mode="replace", actor_id="admin-1")

    assert result.results["relationships"].imported == 0
    assert len(_pairs(db_session, OriginalRelationship)) == 1
    assert _pairs(db_session, RelationshipMap) == set()
    assert any("dropped 1 duplicate account/seller rows" in line for line in result.progress)


def test_add_mode_never_puts_a_pair_in_both_tables(db_session: Session) -> None:
    seed_profile(db_session)
    coordinator = coordinator_for(db_session)
    base = {"Accounts": ACCOUNTS, "Sellers": SELLERS}

    coordinator.run(
        build_workbook({**base, "Relationship_Map": [{"account_name": "Acme", "seller_name": "J. Doe", "status": "must_keep"}]}),
        mode="add",
        actor_id="admin-1",
    )
    coordinator.run(
        build_workbook({**base, "Relationship_Map": [{"account_name": "Acme", "seller_name": "J. Doe", "status": "original"}]}),
        mode="add",
        actor_id="admin-1",
    )
    coordinator.run(
        build_workbook({**base, "Relationship_Map": [{"account_name": "Acme", "seller_name": "R. Roe", "status": "original"}]}),
        mode="add",
        actor_id="admin-1",
    )
    coordinator.run(
        build_workbook({**base, "Relationship_Map": [{"account_name": "Acme", "seller_name": "R. Roe", "status": "to_be_peeled"}]}),
        mode="add",
        actor_id="admin-1",
    )

    active = _pairs(db_session, RelationshipMap)
    snapshots = _pairs(db_session, OriginalRelationship)
    assert len(active) == 1
    assert len(snapshots) == 1
    assert active.isdisjoint(snapshots)


def test_failing_event_subscriber_does_not_fail_the_run(
    db_session: Session, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    bus = InProcessEventBus()

    def broken_handler(event: InternalEvent) -> None:
        raise RuntimeError("subscriber exploded")

    bus.subscribe("reconcile.import.completed", broken_handler)
    monkeypatch.setattr(events, "event_bus", bus)

    result = coordinator_for(db_session).run(build_workbook({"Accounts": ACCOUNTS}), mode="replace", actor_id="admin-1")

    assert result.state == "Complete"
    assert result.fatal_error is None
    assert [event["event_type"] for event in import_events()] == ["reconcile.import.completed"]
    assert any(
        record.name == "territory.reconcile.coordinator" and record.getMessage() == "import.event.publish_failed"
        for record in caplog.records
    )
    assert db_session.scalars(select(Account.name)).all() == ["Acme"]


def test_single_target_runs_only_its_phase(db_session: Session) -> None:
    seed_profile(db_session)

    result = coordinator_for(db_session).run(full_workbook(), mode="add", actor_id="admin-1", target="accounts")

    assert result.target == "accounts"
    assert list(result.results) == ["accounts"]
    assert result.results["accounts"].imported == 1
    assert db_session.scalars(select(Seller)).all() == []
    assert db_session.scalars(select(Manager)).all() == []
    audit_row = db_session.scalars(select(AuditLog)).one()
    assert audit_row.entity_type == "ACCOUNTS_ADD"
    assert audit_row.event_metadata["import_type"] == "accounts"
    assert import_events()[0]["target"] == "accounts"


def test_single_target_requires_its_sheet(db_session: Session) -> None:
    result = coordinator_for(db_session).run(
        build_workbook({"Accounts": ACCOUNTS}), mode="replace", actor_id="admin-1", target="sellers"
    )

    assert result.state == "Failed"
    assert result.fatal_error == "Required sheet 'Sellers' not found"
    assert result.results == {}
    assert db_session.scalars(select(Account)).all() == []
    assert [event["event_type"] for event in import_events()] == ["reconcile.import.failed"]


def test_unknown_target_is_rejected(db_session: Session) -> None:
    with pytest.raises(ValueError):
        coordinator_for(db_session).run(full_workbook(), mode="add", actor_id="admin-1", target="opportunities")
