from __future__ import annotations

from territory.reconcile.dedup import deduplicate
from territory.reconcile.schemas import RelationshipRow


def test_first_occurrence_wins() -> None:
    rows = [
        {"name": "Acme", "tier": "1"},
        {"name": "Globex", "tier": "2"},
        {"name": "Acme", "tier": "3"},
    ]

    result = deduplicate(rows, key=lambda row: row["name"])

    assert result.rows == [{"name": "Acme", "tier": "1"}, {"name": "Globex", "tier": "2"}]
    assert result.removed == 1


def test_composite_keys_keep_distinct_pairs() -> None:
    rows = [
        RelationshipRow(row_number=2, account_name="Acme", seller_name="J. Doe", status="original"),
        RelationshipRow(row_number=3, account_name="Acme", seller_name="R. Roe", status="original"),
        RelationshipRow(row_number=4, account_name="Acme", seller_name="J. Doe", status="must_keep"),
    ]

    result = deduplicate(rows, key=lambda row: (row.account_name, row.seller_name))

    assert [row.row_number for row in result.rows] == [2, 3]
    assert result.removed == 1


def test_no_duplicates_is_a_no_op() -> None:
    result = deduplicate([1, 2, 3], key=lambda value: value)

    assert result.rows == [1, 2, 3]
    assert result.removed == 0
