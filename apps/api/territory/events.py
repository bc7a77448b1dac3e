from __future__ import annotations

from typing import Any

from territory.context import get_correlation_id, get_import_run_id
from territory.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("run_id") is None:
        run_id = get_import_run_id()
        if run_id is not None:
            envelope["run_id"] = run_id

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
