from __future__ import annotations

import pytest
from graphlib import CycleError

from territory.reconcile.graph import ENTITY_DEPENDENCIES, PHASE_ORDER, phase_order


def test_phase_order_is_managers_accounts_sellers_relationships_team() -> None:
    assert PHASE_ORDER == ("managers", "accounts", "sellers", "relationships", "manager_team")


def test_every_phase_runs_after_its_dependencies() -> None:
    position = {name: index for index, name in enumerate(PHASE_ORDER)}
    for entity_type, dependencies in ENTITY_DEPENDENCIES.items():
        for dependency in dependencies:
            assert position[dependency] < position[entity_type]


def test_cycles_are_rejected() -> None:
    with pytest.raises(CycleError):
        phase_order({"a": ("b",), "b": ("a",)})
