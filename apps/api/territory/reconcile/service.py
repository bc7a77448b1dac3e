from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from territory import audit, files_stub
from territory.context import reset_correlation_id, set_correlation_id
from territory.core.config import get_settings
from territory.metrics import observe_job
from territory.reconcile.coordinator import ImportCoordinator
from territory.reconcile.export import ASSIGNMENT_COLUMNS, ASSIGNMENTS_SHEET, ExportAssembler, render_backup
from territory.reconcile.models import ReconcileJob, ReconcileJobArtifact, utcnow
from territory.reconcile.schemas import ImportResult
from territory.reconcile.store import ReconcileStore
from territory.reconcile.validation import COMPREHENSIVE
from territory.reconcile.workbook import write_workbook

logger = logging.getLogger("territory.reconcile.jobs")
tracer = trace.get_tracer("territory.reconcile.jobs")

IMPORT_JOB = "COMPREHENSIVE_IMPORT"
ASSIGNMENTS_JOB = "ACCOUNT_ASSIGNMENTS"
BACKUP_JOB = "FULL_BACKUP"

ERROR_REPORT_ARTIFACT = "ERROR_REPORT_XLSX"
EXPORT_ARTIFACT = "EXPORT_XLSX"


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _actor_with_correlation_id(actor_user: ActorUser, correlation_id: str | None) -> ActorUser:
    return ActorUser(user_id=actor_user.user_id, permissions=actor_user.permissions, correlation_id=correlation_id)


def _job_status(result: dict[str, Any]) -> str:
    if result.get("fatal_error"):
        return "Failed"
    imported = int(result.get("total_imported", 0))
    errors = int(result.get("total_errors", 0))
    if errors > 0 and imported > 0:
        return "PartiallySucceeded"
    if errors > 0:
        return "Failed"
    return "Succeeded"


def _save_artifact(session: Session, job: ReconcileJob, artifact_type: str, payload: bytes, suffix: str) -> uuid.UUID:
    file_id = files_stub.store_bytes(payload, f"reconcile_job_{job.id}_{suffix}.xlsx", files_stub.XLSX_CONTENT_TYPE)
    session.add(ReconcileJobArtifact(job_id=job.id, artifact_type=artifact_type, file_id=file_id))
    return file_id


def _error_report_rows(result: ImportResult) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    if result.fatal_error:
        rows.append({"entity_type": "", "severity": "error", "message": result.fatal_error})
    for entity_type, entity_result in result.results.items():
        for message in entity_result.errors:
            rows.append({"entity_type": entity_type, "severity": "error", "message": message})
    for message in result.warnings:
        rows.append({"entity_type": "", "severity": "warning", "message": message})
    return rows


class ReconcileJobService:
    valid_job_types = {IMPORT_JOB, ASSIGNMENTS_JOB, BACKUP_JOB}
    valid_statuses = {"Queued", "Running", "Succeeded", "Failed", "PartiallySucceeded"}

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.sleep = sleep

    def create_job(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        job_type: str,
        params: dict[str, Any],
        mode: str | None = None,
    ) -> ReconcileJob:
        if job_type not in self.valid_job_types:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid job_type")

        job = ReconcileJob(
            job_type=job_type,
            mode=mode,
            status="Queued",
            requested_by_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
            params_json=json.dumps(params, default=str),
        )
        session.add(job)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="reconcile_job",
            entity_id=str(job.id),
            action="create",
            before=None,
            after={"job_type": job.job_type, "mode": job.mode, "status": job.status},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self._load_job(session, job.id)

    def run_job_sync(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> ReconcileJob:
        job = self._load_job(session, job_id)
        self._assert_job_access(actor_user, job)
        correlation_id = str(job.correlation_id or actor_user.correlation_id or "") or None
        runtime_actor = _actor_with_correlation_id(actor_user, correlation_id)
        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        final_status = "Failed"
        job_type = job.job_type
        with tracer.start_as_current_span("reconcile.job.run") as job_span:
            job_span.set_attribute("job_id", str(job.id))
            job_span.set_attribute("job_type", job_type)
            job_span.set_attribute("correlation_id", correlation_id or "")

            logger.info(
                "job.started",
                extra={
                    "job_id": str(job.id),
                    "job_type": job_type,
                    "status": "Running",
                    "duration_ms": 0.0,
                    "user_id": runtime_actor.user_id,
                },
            )

            try:
                job.status = "Running"
                job.started_at = utcnow()
                job.finished_at = None
                session.add(job)
                session.commit()

                try:
                    result = self._execute(session, runtime_actor, job)
                    job = self._load_job(session, job_id)
                    job.status = _job_status(result)
                    job.result_json = json.dumps(result, default=str)
                    job.finished_at = utcnow()
                    session.add(job)
                    session.commit()
                    final_status = job.status
                    self._audit_status(runtime_actor, job)
                    logger.info(
                        "job.finished",
                        extra={
                            "job_id": str(job.id),
                            "job_type": job_type,
                            "status": job.status,
                            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                            "user_id": runtime_actor.user_id,
                        },
                    )
                except Exception as exc:
                    session.rollback()
                    job = self._load_job(session, job_id)
                    job.status = "Failed"
                    job.finished_at = utcnow()
                    job.result_json = json.dumps({"error": str(exc)})
                    session.add(job)
                    session.commit()
                    self._audit_status(runtime_actor, job)
                    job_span.record_exception(exc)
                    job_span.set_status(Status(StatusCode.ERROR, str(exc)))
                    logger.info(
                        "job.finished",
                        extra={
                            "job_id": str(job.id),
                            "job_type": job_type,
                            "status": "Failed",
                            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                            "error": str(exc)[:500],
                            "user_id": runtime_actor.user_id,
                        },
                    )
                    final_status = "Failed"
            finally:
                observe_job(job_type=job_type, status=final_status, duration=time.perf_counter() - started)
                reset_correlation_id(token)

        return self._load_job(session, job_id)

    def _audit_status(self, actor_user: ActorUser, job: ReconcileJob) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="reconcile_job",
            entity_id=str(job.id),
            action="status_change",
            before={"status": "Running"},
            after={"status": job.status},
            correlation_id=actor_user.correlation_id,
        )

    def _execute(self, session: Session, actor_user: ActorUser, job: ReconcileJob) -> dict[str, Any]:
        params = json.loads(job.params_json)
        if job.job_type == IMPORT_JOB:
            return self._run_import(session, actor_user, job, params)
        if job.job_type in (ASSIGNMENTS_JOB, BACKUP_JOB):
            return self._run_export(session, job)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unsupported job type")

    def _run_import(self, session: Session, actor_user: ActorUser, job: ReconcileJob, params: dict[str, Any]) -> dict[str, Any]:
        source_file_id = uuid.UUID(params["source_file_id"])
        content = files_stub.get_bytes(source_file_id)
        job_id = job.id
        coordinator = ImportCoordinator(session, sleep=self.sleep)
        try:
            result = coordinator.run(
                content,
                mode=params["mode"],
                actor_id=actor_user.user_id,
                file_name=params.get("file_name") or "import.xlsx",
                legacy_statuses=bool(params.get("legacy_statuses", False)),
                target=params.get("target") or COMPREHENSIVE,
            )
        finally:
            files_stub.discard(source_file_id)

        job = self._load_job(session, job_id)
        payload: dict[str, Any] = result.model_dump(mode="json")
        payload["total_imported"] = result.total_imported
        payload["total_errors"] = result.total_errors
        report_rows = _error_report_rows(result)
        if result.total_errors or result.fatal_error:
            file_id = _save_artifact(
                session,
                job,
                ERROR_REPORT_ARTIFACT,
                write_workbook([("Errors", ["entity_type", "severity", "message"], report_rows)]),
                "errors",
            )
            payload["error_report_file_id"] = str(file_id)
        return payload

    def _run_export(self, session: Session, job: ReconcileJob) -> dict[str, Any]:
        settings = get_settings()
        assembler = ExportAssembler(
            ReconcileStore(session),
            page_size=settings.import_page_size,
            max_rows=settings.import_max_fetch_rows,
        )
        if job.job_type == ASSIGNMENTS_JOB:
            rows = assembler.assignment_rows()
            payload = write_workbook([(ASSIGNMENTS_SHEET, ASSIGNMENT_COLUMNS, rows)])
            row_count = len(rows)
        else:
            sheets = assembler.backup_sheets()
            payload = render_backup(sheets)
            row_count = sum(len(items) for items in sheets.values())

        file_id = _save_artifact(session, job, EXPORT_ARTIFACT, payload, job.job_type.lower())
        return {"total_imported": 0, "total_errors": 0, "export_file_id": str(file_id), "row_count": row_count}

    def get_job(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> ReconcileJob:
        job = self._load_job(session, job_id)
        self._assert_job_access(actor_user, job)
        return job

    def get_job_artifact(
        self,
        session: Session,
        actor_user: ActorUser,
        job_id: uuid.UUID,
        artifact_type: str,
    ) -> ReconcileJobArtifact:
        job = self.get_job(session, actor_user, job_id)
        artifact = session.scalar(
            select(ReconcileJobArtifact).where(
                and_(ReconcileJobArtifact.job_id == job.id, ReconcileJobArtifact.artifact_type == artifact_type)
            )
        )
        if artifact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="artifact not found")
        return artifact

    def to_response(self, job: ReconcileJob) -> dict[str, Any]:
        result_data: dict[str, Any] | None = None
        if job.result_json:
            result_data = json.loads(job.result_json)

        artifacts = [
            {
                "artifact_type": artifact.artifact_type,
                "file_id": str(artifact.file_id),
                "created_at": artifact.created_at.isoformat(),
            }
            for artifact in sorted(job.artifacts, key=lambda item: item.created_at)
        ]
        return {
            "id": str(job.id),
            "job_type": job.job_type,
            "mode": job.mode,
            "status": job.status,
            "requested_by_user_id": job.requested_by_user_id,
            "correlation_id": job.correlation_id,
            "params": json.loads(job.params_json),
            "result": result_data,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
            "created_at": job.created_at.isoformat(),
            "artifacts": artifacts,
        }

    def _load_job(self, session: Session, job_id: uuid.UUID) -> ReconcileJob:
        job = session.scalar(
            select(ReconcileJob)
            .where(ReconcileJob.id == job_id)
            .options(selectinload(ReconcileJob.artifacts))
            .execution_options(populate_existing=True)
        )
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
        return job

    def _assert_job_access(self, actor_user: ActorUser, job: ReconcileJob) -> None:
        if "reconcile.jobs.read_all" in actor_user.permissions:
            return
        if job.requested_by_user_id != actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
