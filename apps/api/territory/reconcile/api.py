from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from territory import files_stub
from territory.context import get_correlation_id
from territory.core.auth import AuthUser, get_current_user as get_auth_user
from territory.core.config import get_settings
from territory.core.database import get_db
from territory.reconcile.errors import ParseError
from territory.reconcile.export import template_workbook
from territory.reconcile.schemas import ImportLockRead, ImportMode, ImportTarget, ValidationResult
from territory.reconcile.service import (
    ASSIGNMENTS_JOB,
    BACKUP_JOB,
    IMPORT_JOB,
    ActorUser,
    ReconcileJobService,
)
from territory.reconcile.store import ReconcileStore
from territory.reconcile.validation import COMPREHENSIVE, SchemaValidator
from territory.reconcile.workbook import read_workbook

import_export_router = APIRouter(prefix="/api/reconcile", tags=["reconcile.import_export"])
jobs_router = APIRouter(prefix="/api/reconcile", tags=["reconcile.jobs"])
job_service = ReconcileJobService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=get_correlation_id(),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=get_correlation_id(),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _should_run_inline(sync: bool) -> bool:
    return sync or get_settings().auto_run_jobs


def _read_upload(file: UploadFile) -> bytes:
    content = file.file.read()
    # Rejected here so a broken upload never becomes a queued job.
    read_workbook(content)
    return content


@import_export_router.post("/import", response_model=dict[str, Any])
def import_workbook(
    request: Request,
    file: UploadFile = File(...),
    mode: ImportMode = Query(...),
    target: ImportTarget = Query(default=COMPREHENSIVE),
    confirm: bool = Query(default=False),
    legacy_statuses: bool = Query(default=False),
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "reconcile.import.execute")
        if mode == "replace" and not confirm:
            return error_response(
                request,
                status_code=status.HTTP_409_CONFLICT,
                code="reconcile_import_confirmation_required",
                message="Replace mode deletes existing data; resubmit with confirm=true",
                details={"mode": mode, "target": target},
            )
        content = _read_upload(file)
        file_name = file.filename or "import.xlsx"
        source_file_id = files_stub.store_bytes(content, file_name, file.content_type or files_stub.XLSX_CONTENT_TYPE)

        job = job_service.create_job(
            db,
            user,
            job_type=IMPORT_JOB,
            mode=mode,
            params={
                "source_file_id": str(source_file_id),
                "file_name": file_name,
                "mode": mode,
                "target": target,
                "legacy_statuses": legacy_statuses,
            },
        )
        if _should_run_inline(sync):
            job = job_service.run_job_sync(db, user, job.id)
        return job_service.to_response(job)
    except ParseError as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="reconcile_import_failed",
            message=exc.message,
            details=exc.message,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="reconcile_import_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_export_router.post("/import/validate", response_model=ValidationResult)
def validate_workbook(
    request: Request,
    file: UploadFile = File(...),
    mode: ImportMode = Query(default="replace"),
    target: ImportTarget = Query(default=COMPREHENSIVE),
    user: ActorUser = Depends(get_current_user),
) -> ValidationResult | JSONResponse:
    try:
        require_permission(user, "reconcile.import.execute")
        workbook = read_workbook(file.file.read())
        return SchemaValidator().validate(workbook, target, mode=mode)
    except ParseError as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="reconcile_validate_failed",
            message=exc.message,
            details=exc.message,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="reconcile_validate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


def _export(request: Request, db: Session, user: ActorUser, job_type: str, sync: bool, code: str) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "reconcile.export.execute")
        job = job_service.create_job(db, user, job_type=job_type, params={})
        if _should_run_inline(sync):
            job = job_service.run_job_sync(db, user, job.id)
        return job_service.to_response(job)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=str(exc.detail),
            details=exc.detail,
        )


@import_export_router.post("/export/assignments", response_model=dict[str, Any])
def export_assignments(
    request: Request,
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    return _export(request, db, user, ASSIGNMENTS_JOB, sync, "reconcile_export_assignments_failed")


@import_export_router.post("/export/backup", response_model=dict[str, Any])
def export_backup(
    request: Request,
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    return _export(request, db, user, BACKUP_JOB, sync, "reconcile_export_backup_failed")


@import_export_router.get("/templates/comprehensive", response_model=None)
def download_template(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        require_permission(user, "reconcile.export.execute")
        return Response(
            content=template_workbook(),
            media_type=files_stub.XLSX_CONTENT_TYPE,
            headers={"Content-Disposition": 'attachment; filename="comprehensive_import_template.xlsx"'},
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="reconcile_template_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_export_router.get("/import-lock", response_model=ImportLockRead)
def get_import_lock(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ImportLockRead | JSONResponse:
    try:
        require_permission(user, "reconcile.jobs.read")
        return ReconcileStore(db).import_lock_state()
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="reconcile_import_lock_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.get("/jobs/{job_id}", response_model=dict[str, Any])
def get_job_status(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "reconcile.jobs.read")
        job = job_service.get_job(db, user, job_id)
        return job_service.to_response(job)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="reconcile_job_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.get("/jobs/{job_id}/download/{artifact_type}", response_model=None)
def download_job_artifact(
    request: Request,
    job_id: uuid.UUID,
    artifact_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        require_permission(user, "reconcile.jobs.read")
        artifact = job_service.get_job_artifact(db, user, job_id, artifact_type)
        payload = files_stub.get_bytes(artifact.file_id)
        _, content_type = files_stub.get_metadata(artifact.file_id)
        return Response(
            content=payload,
            media_type=content_type,
            headers={
                "Content-Disposition": f'attachment; filename="{artifact.artifact_type.lower()}_{artifact.file_id}.xlsx"',
            },
        )
    except FileNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="reconcile_job_download_failed",
            message=str(exc),
            details=str(exc),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="reconcile_job_download_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
