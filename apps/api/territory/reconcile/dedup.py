from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger("territory.reconcile.dedup")

T = TypeVar("T")


@dataclass
class DedupResult(Generic[T]):
    rows: list[T]
    removed: int


def deduplicate(rows: Iterable[T], key: Callable[[T], Hashable], *, entity_type: str | None = None) -> DedupResult[T]:
    """Keep the first row for every key and drop later ones."""
    seen: set[Hashable] = set()
    kept: list[T] = []
    removed = 0
    for row in rows:
        marker = key(row)
        if marker in seen:
            removed += 1
            continue
        seen.add(marker)
        kept.append(row)

    if removed:
        logger.info("import.duplicates_removed", extra={"entity_type": entity_type, "removed": removed})
    return DedupResult(rows=kept, removed=removed)
