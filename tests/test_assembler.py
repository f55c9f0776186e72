"""
Unit tests for merging batch results.
"""
from decimal import Decimal

from core.assembler import assemble, merge_failed_batches
from core.schema import FailedBatch, RowRange, Transaction


def txn(index: int, description: str = "") -> Transaction:
    return Transaction(index=index, row_number=index + 2, description=description, amount=Decimal("-1"))


def failed(batch_index: int, error: str = "down") -> FailedBatch:
    start = batch_index * 10 + 2
    return FailedBatch(batch_index=batch_index, row_range=RowRange(start=start, end=start + 9), error=error)


def test_assemble_orders_by_index():
    slots = {2: [txn(20), txn(21)], 0: [txn(1), txn(0)]}
    items, failures = assemble(slots)

    assert [t.index for t in items] == [0, 1, 20, 21]
    assert failures == []


def test_assemble_merges_prior_items():
    items, _ = assemble({1: [txn(10)]}, prior_items=[txn(0), txn(1)])
    assert [t.index for t in items] == [0, 1, 10]


def test_assemble_drops_duplicates_keeping_first():
    items, _ = assemble({1: [txn(10, "new")]}, prior_items=[txn(10, "old")])

    assert len(items) == 1
    assert items[0].description == "old"


def test_assemble_sorts_failed_batches():
    _, failures = assemble({}, failed_batches=[failed(3), failed(1)])
    assert [f.batch_index for f in failures] == [1, 3]


def test_merge_failed_batches_later_wins():
    merged = merge_failed_batches([failed(1, "first")], [failed(1, "second"), failed(0)])
    assert [(f.batch_index, f.error) for f in merged] == [(0, "down"), (1, "second")]
