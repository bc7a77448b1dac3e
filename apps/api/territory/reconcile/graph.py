from __future__ import annotations

from graphlib import TopologicalSorter

# entity type -> entity types whose rows must exist before it can be written.
# Declaration order breaks ties between phases that become ready together.
ENTITY_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "managers": (),
    "accounts": (),
    "sellers": ("managers",),
    "relationships": ("accounts", "sellers"),
    "manager_team": ("managers", "sellers"),
}


def phase_order(dependencies: dict[str, tuple[str, ...]] | None = None) -> list[str]:
    """Deterministic topological order of the entity phases."""
    graph = dependencies if dependencies is not None else ENTITY_DEPENDENCIES
    declared = list(graph)
    sorter = TopologicalSorter(graph)
    sorter.prepare()
    order: list[str] = []
    while sorter.is_active():
        ready = sorted(
            sorter.get_ready(),
            key=lambda name: declared.index(name) if name in declared else len(declared),
        )
        order.extend(ready)
        sorter.done(*ready)
    return order


PHASE_ORDER: tuple[str, ...] = tuple(phase_order())
