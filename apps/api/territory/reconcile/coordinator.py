from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from territory import events
from territory.context import reset_import_run_id, set_import_run_id
from territory.core.config import Settings, get_settings
from territory.metrics import observe_import_phase, observe_import_run, observe_view_refresh
from territory.reconcile.batching import BatchUpsertEngine, RetryPolicy
from territory.reconcile.errors import ParseError
from territory.reconcile.graph import PHASE_ORDER
from territory.reconcile.lock import ImportLock
from territory.reconcile.models import utcnow
from territory.reconcile.phases import PHASES
from territory.reconcile.run_context import PHASE_STATES, ProgressCallback, RunContext, RunState
from territory.reconcile.schemas import SHEET_NAMES, EntityResult, ImportMode, ImportResult
from territory.reconcile.store import ReconcileStore
from territory.reconcile.validation import COMPREHENSIVE, SchemaValidator
from territory.reconcile.workbook import Sheet, Workbook, read_workbook
from territory.services.audit import write_audit_log

logger = logging.getLogger("territory.reconcile.coordinator")
tracer = trace.get_tracer("territory.reconcile.coordinator")

AUDIT_ENTITY_TYPES = {"replace": "COMPREHENSIVE", "add": "COMPREHENSIVE_ADD"}


def audit_entity_type(target: str, mode: str) -> str:
    """`COMPREHENSIVE`, `ACCOUNTS_ADD` and so on."""
    if target == COMPREHENSIVE:
        return AUDIT_ENTITY_TYPES[mode]
    return f"{target.upper()}_ADD" if mode == "add" else target.upper()


class ImportCoordinator:
    """Runs the workbook through its entity phases in dependency order.

    A comprehensive import runs every phase whose sheet is present; a
    single-entity target runs only that phase and requires its sheet.

    Replace mode takes the advisory import lock before the first phase and
    releases it before the derived views are recomputed. Add mode never
    deletes and does not lock. Either way the result is a per-entity map of
    imported counts and collected errors, and exactly one completion or
    failure event is published per run.
    """

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.store = ReconcileStore(session, now=now)
        self.engine = BatchUpsertEngine(
            self.store,
            retry=RetryPolicy(
                attempts=self.settings.import_write_retry_attempts,
                backoff_seconds=self.settings.import_write_retry_backoff_seconds,
            ),
            sleep=sleep,
        )
        self.validator = SchemaValidator()
        self._now = now
        self._clock = clock

    def _context(
        self,
        mode: ImportMode,
        holder: str,
        on_progress: ProgressCallback | None,
        legacy_statuses: bool,
        target: str,
    ) -> RunContext:
        return RunContext(
            run_id=str(uuid.uuid4()),
            mode=mode,
            holder=holder,
            target=target,
            entity_batch_size=self.settings.import_entity_batch_size,
            relationship_batch_size=self.settings.import_relationship_batch_size,
            relationship_min_interval=self.settings.import_relationship_min_interval_seconds,
            page_size=self.settings.import_page_size,
            max_fetch_rows=self.settings.import_max_fetch_rows,
            legacy_statuses=legacy_statuses,
            on_progress=on_progress,
            clock=self._clock,
        )

    def run(
        self,
        content: bytes,
        *,
        mode: ImportMode,
        actor_id: str,
        file_name: str = "import.xlsx",
        on_progress: ProgressCallback | None = None,
        legacy_statuses: bool = False,
        target: str = COMPREHENSIVE,
    ) -> ImportResult:
        if mode not in AUDIT_ENTITY_TYPES:
            raise ValueError(f"Unknown import mode: {mode}")
        if target != COMPREHENSIVE and target not in SHEET_NAMES:
            raise ValueError(f"Unknown import target: {target}")
        entity_types = PHASE_ORDER if target == COMPREHENSIVE else (target,)

        ctx = self._context(mode, actor_id, on_progress, legacy_statuses, target)
        token = set_import_run_id(ctx.run_id)
        lock = ImportLock(self.store, actor_id, ttl_minutes=self.settings.import_lock_ttl_minutes)
        with tracer.start_as_current_span("reconcile.import.run") as span:
            span.set_attribute("run_id", ctx.run_id)
            span.set_attribute("mode", mode)
            span.set_attribute("target", target)
            logger.info("import.started", extra={"mode": mode, "holder": actor_id, "entity_type": target})
            try:
                ctx.enter(RunState.VALIDATING)
                ctx.report(f"Processing file: {file_name} ({len(content)} bytes)")
                try:
                    workbook = read_workbook(content)
                except ParseError as exc:
                    return self._fail(ctx, exc.message, span)

                ctx.report(f"Available sheets: {', '.join(workbook.sheet_names) or 'none'}")
                validation = self.validator.validate(workbook, target, mode=mode)
                ctx.warnings.extend(validation.warnings)
                missing = [entity for entity in entity_types if SHEET_NAMES[entity] not in workbook.sheets]
                # A single-entity import needs its sheet; a comprehensive one needs any of them.
                if target != COMPREHENSIVE and missing:
                    return self._fail(ctx, f"Required sheet '{SHEET_NAMES[target]}' not found", span)
                if len(missing) == len(entity_types):
                    return self._fail(ctx, "; ".join(validation.errors), span)

                if mode == "replace":
                    contention = lock.acquire()
                    if contention is not None:
                        ctx.warnings.append(str(contention))
                        ctx.report("Import lock not acquired; continuing")

                try:
                    self._run_phases(ctx, workbook, entity_types)
                finally:
                    ctx.enter(RunState.RELEASING_LOCK)
                    lock.release()

                ctx.enter(RunState.REFRESHING_VIEWS)
                views_refreshed = self._refresh_views(ctx)

                ctx.enter(RunState.LOGGING_AUDIT)
                self._write_audit(ctx, actor_id, file_name, len(content))

                ctx.enter(RunState.COMPLETE)
                result = self._result(ctx, lock_acquired=lock.acquired, views_refreshed=views_refreshed)
                ctx.report(f"Import finished: {result.total_imported} imported, {result.total_errors} errors")
                result.progress = list(ctx.messages)
                observe_import_run(mode, "partial" if result.total_errors else "succeeded")
                logger.info(
                    "import.finished",
                    extra={
                        "mode": mode,
                        "imported": result.total_imported,
                        "error_count": result.total_errors,
                        "duration_ms": round(ctx.elapsed * 1000, 2),
                    },
                )
            except Exception as exc:
                if ctx.state == RunState.FAILED:
                    raise
                logger.exception("import.crashed", extra={"mode": mode, "error": str(exc)})
                self._fail(ctx, str(exc), span)
                raise
            finally:
                reset_import_run_id(token)

        # Outside the run's try: a subscriber failure must not turn a finished run into a failed one.
        self._publish(ctx, "reconcile.import.completed", result)
        return result

    def _run_phases(self, ctx: RunContext, workbook: Workbook, entity_types: Sequence[str]) -> None:
        total = len(entity_types)
        for step, entity_type in enumerate(entity_types, start=1):
            sheet_name = SHEET_NAMES[entity_type]
            sheet = workbook.get(sheet_name)
            if sheet is None:
                ctx.report(f"Step {step}/{total}: no {sheet_name} sheet, skipping")
                continue

            ctx.enter(PHASE_STATES[entity_type])
            check = self.validator.check_sheet(sheet, entity_type, mode=ctx.mode)
            if check.errors:
                result = ctx.result_for(entity_type)
                result.errors.extend(check.errors)
                result.skipped = True
                ctx.report(f"Step {step}/{total}: {sheet_name} failed validation, skipping")
                continue
            if not sheet.rows:
                ctx.result_for(entity_type).skipped = True
                ctx.report(f"Step {step}/{total}: {sheet_name} has no data rows, skipping")
                continue

            ctx.report(f"Step {step}/{total}: importing {len(sheet.rows)} {sheet_name} rows")
            self._run_phase(ctx, entity_type, sheet)

    def _run_phase(self, ctx: RunContext, entity_type: str, sheet: Sheet) -> None:
        phase = PHASES[entity_type](self.store, self.engine)
        started = ctx.clock()
        failed_chunks_before = self.engine.failed_chunks
        with tracer.start_as_current_span("reconcile.import.phase") as span:
            span.set_attribute("entity_type", entity_type)
            try:
                result = phase.run(ctx, sheet)
            except SQLAlchemyError as exc:
                # A failed delete or lookup ends this phase only.
                self.session.rollback()
                result = ctx.result_for(entity_type)
                result.errors.append(f"{phase.label} phase aborted: {str(exc).splitlines()[0]}")
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.warning("import.phase.aborted", extra={"phase": entity_type, "error": str(exc)})

        duration = ctx.clock() - started
        chunk_failures = self.engine.failed_chunks - failed_chunks_before
        observe_import_phase(
            entity_type,
            imported=result.imported,
            rejected=len(result.errors) - chunk_failures,
            chunk_failures=chunk_failures,
            duration=duration,
        )
        logger.info(
            "import.phase.finished",
            extra={
                "phase": entity_type,
                "imported": result.imported,
                "error_count": len(result.errors),
                "duration_ms": round(duration * 1000, 2),
            },
        )
        ctx.report(f"{phase.label}: imported {result.imported}, {len(result.errors)} errors")

    def _refresh_views(self, ctx: RunContext) -> bool:
        try:
            rows = self.store.refresh_views()
        except SQLAlchemyError as exc:
            observe_view_refresh("failed")
            ctx.warnings.append(f"View refresh failed: {exc}")
            logger.warning("views.refresh.failed", extra={"error": str(exc)})
            return False
        observe_view_refresh("succeeded")
        ctx.report(f"Refreshed performance views ({rows} sellers)")
        return True

    def _write_audit(self, ctx: RunContext, actor_id: str, file_name: str, file_size: int) -> None:
        try:
            write_audit_log(
                self.session,
                actor_id=actor_id,
                action="data_import",
                entity_type=audit_entity_type(ctx.target, ctx.mode),
                entity_id=ctx.run_id,
                metadata={
                    "file_name": file_name,
                    "file_size": file_size,
                    "mode": ctx.mode,
                    "import_type": ctx.target,
                    "results": {name: item.model_dump() for name, item in ctx.results.items()},
                },
            )
        except SQLAlchemyError as exc:
            self.session.rollback()
            ctx.warnings.append(f"Audit record could not be written: {exc}")
            logger.warning("import.audit_failed", extra={"error": str(exc)})

    def _result(self, ctx: RunContext, *, lock_acquired: bool, views_refreshed: bool, fatal_error: str | None = None) -> ImportResult:
        return ImportResult(
            run_id=ctx.run_id,
            mode=ctx.mode,
            target=ctx.target,
            state=ctx.state.value,
            results={name: EntityResult.model_validate(item.model_dump()) for name, item in ctx.results.items()},
            warnings=list(ctx.warnings),
            progress=list(ctx.messages),
            fatal_error=fatal_error,
            lock_acquired=lock_acquired,
            views_refreshed=views_refreshed,
        )

    def _fail(self, ctx: RunContext, message: str, span) -> ImportResult:  # type: ignore[no-untyped-def]
        ctx.enter(RunState.FAILED)
        ctx.report(f"Import failed: {message}")
        span.set_status(Status(StatusCode.ERROR, message))
        observe_import_run(ctx.mode, "failed")
        logger.warning("import.failed", extra={"mode": ctx.mode, "error": message})
        result = self._result(ctx, lock_acquired=False, views_refreshed=False, fatal_error=message)
        self._publish(ctx, "reconcile.import.failed", result)
        return result

    def _publish(self, ctx: RunContext, event_type: str, result: ImportResult) -> None:
        try:
            events.publish(
                {
                    "event_type": event_type,
                    "run_id": ctx.run_id,
                    "mode": ctx.mode,
                    "target": ctx.target,
                    "total_imported": result.total_imported,
                    "total_errors": result.total_errors,
                    "results": result.summary(),
                    "error": result.fatal_error,
                    "timestamp": self._now().isoformat(),
                }
            )
        except Exception as exc:
            # The run's outcome is already settled; a broken subscriber is only logged.
            logger.exception("import.event.publish_failed", extra={"mode": ctx.mode, "error": str(exc)})
