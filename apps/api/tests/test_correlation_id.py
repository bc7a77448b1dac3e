from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from territory import audit, events
from territory.core.config import get_settings
from territory.core.database import Base, get_db
from territory.files_stub import XLSX_CONTENT_TYPE
from territory.main import app
from territory.models.audit import AuditLog
from territory.reconcile.api import get_current_user
from territory.reconcile.models import ReconcileJob
from territory.reconcile.service import ActorUser
from territory.reconcile.workbook import write_workbook


ALL_PERMISSIONS = {
    "reconcile.import.execute",
    "reconcile.export.execute",
    "reconcile.jobs.read",
}


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("IMPORT_RELATIONSHIP_MIN_INTERVAL_SECONDS", "0")
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _accounts_upload() -> dict[str, tuple[str, bytes, str]]:
    content = write_workbook(
        [
            (
                "Accounts",
                ["account_name", "size", "current_division"],
                [{"account_name": "Corr Co", "size": "midmarket", "current_division": "GDT"}],
            )
        ]
    )
    return {"file": ("corr.xlsx", content, XLSX_CONTENT_TYPE)}


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/reconcile/jobs/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/reconcile/jobs/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/reconcile/jobs/{uuid.uuid4()}", headers={"X-Correlation-Id": "x" * 500})
    header_value = response.headers.get("x-correlation-id")
    assert header_value and header_value != "x" * 500
    uuid.UUID(header_value)


def test_job_audit_and_event_carry_request_correlation_id(client: TestClient, db_session: Session) -> None:
    response = client.post(
        "/api/reconcile/import?mode=add&sync=true",
        files=_accounts_upload(),
        headers={"X-Correlation-Id": "corr-job-1"},
    )
    assert response.status_code == 200

    job = db_session.scalar(select(ReconcileJob).order_by(ReconcileJob.created_at.desc()))
    assert job is not None
    assert job.correlation_id == "corr-job-1"

    job_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "reconcile_job"]
    assert job_audits
    assert job_audits[-1]["correlation_id"] == "corr-job-1"

    import_audit = db_session.scalar(select(AuditLog).where(AuditLog.action == "data_import"))
    assert import_audit is not None
    assert import_audit.correlation_id == "corr-job-1"

    completed = [item for item in events.published_events if item.get("event_type") == "reconcile.import.completed"]
    assert completed
    assert completed[-1].get("correlation_id") == "corr-job-1"
    assert completed[-1].get("run_id") == response.json()["result"]["run_id"]
