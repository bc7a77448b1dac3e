from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from territory.metrics import observe_lock_contention
from territory.reconcile.errors import LockContentionWarning
from territory.reconcile.store import ReconcileStore

logger = logging.getLogger("territory.reconcile.lock")


class ImportLock:
    """Advisory lock signalling the background view refresh to stand down.

    Acquisition is best effort: contention or a store failure is reported and the
    caller decides whether to continue.
    """

    def __init__(self, store: ReconcileStore, holder: str, *, ttl_minutes: int = 30) -> None:
        self.store = store
        self.holder = holder
        self.ttl_minutes = ttl_minutes
        self.held = False
        self.acquired = False

    def acquire(self) -> LockContentionWarning | None:
        try:
            self.held = self.store.acquire_import_lock(self.holder, self.ttl_minutes)
        except SQLAlchemyError as exc:
            logger.warning("import.lock.error", extra={"holder": self.holder, "error": str(exc)})
            self.held = False
        self.acquired = self.held
        if self.held:
            logger.info("import.lock.acquired", extra={"holder": self.holder})
            return None

        observe_lock_contention()
        warning = LockContentionWarning(self.holder)
        logger.warning("import.lock.contention", extra={"holder": self.holder, "error": str(warning)})
        return warning

    def release(self) -> bool:
        if not self.held:
            return False
        try:
            released = self.store.release_import_lock(self.holder)
        except SQLAlchemyError as exc:
            # The TTL frees the lock eventually.
            logger.warning("import.lock.release_failed", extra={"holder": self.holder, "error": str(exc)})
            return False
        self.held = False
        logger.info("import.lock.released", extra={"holder": self.holder})
        return released
