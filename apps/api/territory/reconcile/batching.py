from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from territory.reconcile.errors import WriteError
from territory.reconcile.store import ReconcileStore

logger = logging.getLogger("territory.reconcile.batching")

WriteMode = Literal["upsert", "insert"]


def chunked(rows: Sequence[Any], size: int) -> list[Sequence[Any]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [rows[start : start + size] for start in range(0, len(rows), size)]


class RateLimiter:
    """Enforces a minimum interval between consecutive writes."""

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None

    def wait(self) -> None:
        now = self._clock()
        if self._last is not None and self.min_interval > 0:
            remaining = self.min_interval - (now - self._last)
            if remaining > 0:
                self._sleep(remaining)
                now = self._clock()
        self._last = now


@dataclass
class RetryPolicy:
    attempts: int = 3
    backoff_seconds: float = 0.2
    multiplier: float = 2.0

    def is_transient(self, exc: SQLAlchemyError) -> bool:
        if isinstance(exc, OperationalError):
            return True
        return isinstance(exc, DBAPIError) and exc.connection_invalidated

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (self.multiplier ** (attempt - 1))


@dataclass
class BatchOutcome:
    imported: int = 0
    errors: list[WriteError] = field(default_factory=list)

    @property
    def chunk_failures(self) -> int:
        return len(self.errors)


def _describe(exc: SQLAlchemyError) -> str:
    cause = getattr(exc, "orig", None) or exc
    return str(cause).splitlines()[0][:500] if str(cause) else exc.__class__.__name__


class BatchUpsertEngine:
    """Writes rows in fixed-size chunks; a failed chunk is recorded and the rest still run."""

    def __init__(
        self,
        store: ReconcileStore,
        *,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.failed_chunks = 0

    def _write_chunk(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        mode: WriteMode,
        conflict_key: Sequence[str] | None,
        *,
        entity_type: str,
        chunk: int,
    ) -> None:
        attempt = 1
        while True:
            try:
                if mode == "upsert":
                    self.store.upsert(table, rows, conflict_key or ())
                else:
                    self.store.insert(table, rows)
                return
            except SQLAlchemyError as exc:
                if attempt >= self.retry.attempts or not self.retry.is_transient(exc):
                    raise
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    "import.chunk.retry",
                    extra={"entity_type": entity_type, "chunk": chunk, "attempt": attempt, "error": _describe(exc)},
                )
                self.sleep(delay)
                attempt += 1

    def write(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        batch_size: int,
        mode: WriteMode = "upsert",
        conflict_key: Sequence[str] | None = None,
        limiter: RateLimiter | None = None,
        entity_type: str | None = None,
    ) -> BatchOutcome:
        if mode == "upsert" and not conflict_key:
            raise ValueError("upsert mode requires a conflict key")

        label = entity_type or table
        outcome = BatchOutcome()
        for index, chunk in enumerate(chunked(rows, batch_size)):
            if limiter is not None:
                limiter.wait()
            try:
                self._write_chunk(table, chunk, mode, conflict_key, entity_type=label, chunk=index)
            except SQLAlchemyError as exc:
                failure = WriteError(label, index, _describe(exc))
                outcome.errors.append(failure)
                self.failed_chunks += 1
                logger.warning(
                    "import.chunk.failed",
                    extra={"entity_type": label, "chunk": index, "rows": len(chunk), "error": failure.cause},
                )
                continue
            outcome.imported += len(chunk)
        return outcome
