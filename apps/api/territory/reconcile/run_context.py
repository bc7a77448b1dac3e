from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from territory.reconcile.schemas import EntityResult, ImportMode

ProgressCallback = Callable[[str], None]


class RunState(str, Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    MANAGERS_PHASE = "ManagersPhase"
    ACCOUNTS_PHASE = "AccountsPhase"
    SELLERS_PHASE = "SellersPhase"
    RELATIONSHIPS_PHASE = "RelationshipsPhase"
    MANAGER_TEAM_PHASE = "ManagerTeamPhase"
    RELEASING_LOCK = "ReleasingLock"
    REFRESHING_VIEWS = "RefreshingViews"
    LOGGING_AUDIT = "LoggingAudit"
    COMPLETE = "Complete"
    FAILED = "Failed"


PHASE_STATES: dict[str, RunState] = {
    "managers": RunState.MANAGERS_PHASE,
    "accounts": RunState.ACCOUNTS_PHASE,
    "sellers": RunState.SELLERS_PHASE,
    "relationships": RunState.RELATIONSHIPS_PHASE,
    "manager_team": RunState.MANAGER_TEAM_PHASE,
}


@dataclass
class RunContext:
    """Everything one import run knows about itself, passed to each phase."""

    run_id: str
    mode: ImportMode
    holder: str
    target: str = "comprehensive"
    entity_batch_size: int = 500
    relationship_batch_size: int = 100
    relationship_min_interval: float = 0.1
    page_size: int = 1000
    max_fetch_rows: int = 100000
    legacy_statuses: bool = False
    on_progress: ProgressCallback | None = None
    clock: Callable[[], float] = time.monotonic
    state: RunState = RunState.IDLE
    results: dict[str, EntityResult] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    transitions: list[RunState] = field(default_factory=list)
    started_at: float | None = None

    def __post_init__(self) -> None:
        if self.started_at is None:
            self.started_at = self.clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - (self.started_at or 0.0)

    def enter(self, state: RunState) -> None:
        self.state = state
        self.transitions.append(state)

    def report(self, message: str) -> None:
        line = f"[{self.elapsed:.1f}s] {message}"
        self.messages.append(line)
        if self.on_progress is not None:
            self.on_progress(line)

    def result_for(self, entity_type: str) -> EntityResult:
        return self.results.setdefault(entity_type, EntityResult())
