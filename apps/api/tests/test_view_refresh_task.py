from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from territory.core.celery_app import celery_app
from territory.core.database import Base
from territory.reconcile.models import Account, RelationshipMap, Seller, SellerPerformance
from territory.reconcile.store import ReconcileStore
from territory.reconcile.tasks import refresh_views_if_idle


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


def _seed(session: Session) -> None:
    seller = Seller(name="J. Doe", division="ESG", size="enterprise")
    account = Account(name="Acme", size="enterprise", current_division="ESG")
    session.add_all([seller, account])
    session.flush()
    session.add(RelationshipMap(account_id=account.id, seller_id=seller.id, status="to_be_peeled"))
    session.commit()


def test_refresh_runs_when_no_import_holds_the_lock(session_factory: sessionmaker[Session]) -> None:
    session = session_factory()
    _seed(session)

    assert refresh_views_if_idle(session_factory) == "refreshed"

    performance = session.scalars(select(SellerPerformance)).one()
    assert performance.seller_name == "J. Doe"
    assert performance.account_count == 1
    assert performance.to_be_peeled_count == 1
    session.close()


def test_refresh_is_skipped_while_import_holds_the_lock(
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    session = session_factory()
    _seed(session)
    ReconcileStore(session).acquire_import_lock("admin-1", 30)

    with caplog.at_level("INFO", logger="territory.reconcile.tasks"):
        assert refresh_views_if_idle(session_factory) == "skipped"

    assert session.scalars(select(SellerPerformance)).all() == []
    skipped = [record for record in caplog.records if record.getMessage() == "views.refresh.skipped"]
    assert skipped and getattr(skipped[0], "holder") == "admin-1"
    session.close()


def test_refresh_failure_propagates(session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_refresh(self: ReconcileStore) -> int:
        raise OperationalError("DELETE FROM seller_performance", {}, Exception("database is locked"))

    monkeypatch.setattr(ReconcileStore, "refresh_views", broken_refresh)

    with pytest.raises(OperationalError):
        refresh_views_if_idle(session_factory)


def test_refresh_task_is_scheduled() -> None:
    assert "territory.tasks.refresh_views_if_idle" in celery_app.tasks
    schedule = celery_app.conf.beat_schedule["refresh-views-if-idle"]
    assert schedule["task"] == "territory.tasks.refresh_views_if_idle"
