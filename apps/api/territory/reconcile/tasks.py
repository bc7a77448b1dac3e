from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from territory.core.celery_app import celery_app
from territory.core.database import SessionLocal
from territory.metrics import observe_view_refresh
from territory.reconcile.store import ReconcileStore

logger = logging.getLogger("territory.reconcile.tasks")


def refresh_views_if_idle(session_factory: Callable[[], Session] = SessionLocal) -> str:
    """Recompute seller performance unless an import currently holds the lock."""
    session = session_factory()
    try:
        store = ReconcileStore(session)
        state = store.import_lock_state()
        if state.is_importing:
            observe_view_refresh("skipped")
            logger.info("views.refresh.skipped", extra={"holder": state.holder})
            return "skipped"
        try:
            rows = store.refresh_views()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_view_refresh("failed")
            logger.warning("views.refresh.failed", extra={"error": str(exc)})
            raise
        observe_view_refresh("succeeded")
        logger.info("views.refresh.finished", extra={"rows": rows})
        return "refreshed"
    finally:
        session.close()


@celery_app.task(name="territory.tasks.refresh_views_if_idle")
def refresh_views_task() -> str:
    return refresh_views_if_idle()
