from __future__ import annotations

from collections.abc import Generator, Mapping, Sequence
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from territory.core.database import Base
from territory.reconcile.batching import BatchUpsertEngine, RateLimiter, RetryPolicy, chunked
from territory.reconcile.models import Account
from territory.reconcile.store import ReconcileStore


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


class FlakyStore(ReconcileStore):
    def __init__(self, session: Session, failures: int) -> None:
        super().__init__(session)
        self.failures = failures
        self.calls = 0

    def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        self.calls += 1
        if self.calls <= self.failures:
            raise OperationalError("INSERT INTO accounts", {}, Exception("database is locked"))
        return super().insert(table, rows)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _account(name: str) -> dict[str, Any]:
    return {"name": name, "size": "enterprise", "current_division": "ESG"}


def _account_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(Account)) or 0


def test_chunked_splits_into_fixed_sizes() -> None:
    assert [len(chunk) for chunk in chunked(list(range(5)), 2)] == [2, 2, 1]
    with pytest.raises(ValueError):
        chunked([1], 0)


def test_failed_chunk_is_recorded_and_later_chunks_still_run(db_session: Session) -> None:
    engine = BatchUpsertEngine(ReconcileStore(db_session), sleep=lambda seconds: None)
    rows = [_account("Acme"), _account("Globex"), _account("Initech"), _account("Acme"), _account("Umbrella")]

    outcome = engine.write("accounts", rows, batch_size=2, mode="insert", entity_type="accounts")

    assert outcome.imported == 3
    assert len(outcome.errors) == 1
    assert outcome.errors[0].chunk == 1
    assert str(outcome.errors[0]).startswith("Batch 2 failed: ")
    assert engine.failed_chunks == 1
    names = set(db_session.scalars(select(Account.name)))
    assert names == {"Acme", "Globex", "Umbrella"}


def test_upsert_updates_existing_rows_by_conflict_key(db_session: Session) -> None:
    engine = BatchUpsertEngine(ReconcileStore(db_session), sleep=lambda seconds: None)
    engine.write("accounts", [_account("Acme")], batch_size=10, conflict_key=["name"])

    outcome = engine.write(
        "accounts",
        [{"name": "Acme", "size": "midmarket", "current_division": "GDT"}],
        batch_size=10,
        conflict_key=["name"],
    )

    assert outcome.imported == 1
    assert _account_count(db_session) == 1
    account = db_session.scalars(select(Account).execution_options(populate_existing=True)).one()
    assert (account.size, account.current_division) == ("midmarket", "GDT")


def test_upsert_requires_conflict_key(db_session: Session) -> None:
    engine = BatchUpsertEngine(ReconcileStore(db_session))
    with pytest.raises(ValueError):
        engine.write("accounts", [_account("Acme")], batch_size=10)


def test_transient_failure_is_retried_with_backoff(db_session: Session) -> None:
    sleeps: list[float] = []
    store = FlakyStore(db_session, failures=1)
    engine = BatchUpsertEngine(store, retry=RetryPolicy(attempts=3, backoff_seconds=0.2), sleep=sleeps.append)

    outcome = engine.write("accounts", [_account("Acme")], batch_size=10, mode="insert")

    assert outcome.imported == 1
    assert outcome.errors == []
    assert sleeps == [0.2]
    assert store.calls == 2


def test_retries_exhausted_records_chunk_failure(db_session: Session) -> None:
    sleeps: list[float] = []
    store = FlakyStore(db_session, failures=10)
    engine = BatchUpsertEngine(store, retry=RetryPolicy(attempts=3, backoff_seconds=0.2), sleep=sleeps.append)

    outcome = engine.write("accounts", [_account("Acme")], batch_size=10, mode="insert", entity_type="accounts")

    assert outcome.imported == 0
    assert str(outcome.errors[0]) == "Batch 1 failed: database is locked"
    assert sleeps == pytest.approx([0.2, 0.4])
    assert store.calls == 3


def test_integrity_errors_are_not_retried(db_session: Session) -> None:
    sleeps: list[float] = []
    engine = BatchUpsertEngine(ReconcileStore(db_session), sleep=sleeps.append)

    outcome = engine.write("accounts", [_account("Acme"), _account("Acme")], batch_size=10, mode="insert")

    assert outcome.imported == 0
    assert len(outcome.errors) == 1
    assert sleeps == []
    assert _account_count(db_session) == 0


def test_rate_limiter_spaces_consecutive_writes() -> None:
    clock = FakeClock()
    limiter = RateLimiter(0.1, clock=clock, sleep=clock.sleep)

    limiter.wait()
    clock.now += 0.03
    limiter.wait()
    clock.now += 0.5
    limiter.wait()

    assert clock.sleeps == pytest.approx([0.07])


def test_limiter_is_consulted_once_per_chunk(db_session: Session) -> None:
    clock = FakeClock()
    limiter = RateLimiter(0.1, clock=clock, sleep=clock.sleep)
    engine = BatchUpsertEngine(ReconcileStore(db_session), sleep=clock.sleep)

    engine.write(
        "accounts",
        [_account(f"Account {index}") for index in range(5)],
        batch_size=2,
        mode="insert",
        limiter=limiter,
    )

    assert clock.sleeps == pytest.approx([0.1, 0.1])
    assert _account_count(db_session) == 5
