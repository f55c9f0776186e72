"""
Tests for checkpoint storage of paused runs.
"""
from decimal import Decimal

import pytest

from core.checkpoint import CheckpointStore
from core.exceptions import DataNotFoundError, PersistenceError
from core.schema import FailedBatch, RawBatch, ResumeState, RowRange, Transaction


@pytest.fixture
def store(tmp_path):
    return CheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def state():
    return ResumeState(
        batches=[RawBatch(batch_index=i, content=f"h\nrow {i}") for i in range(3)],
        next_index=2,
        collected_transactions=[
            Transaction(index=0, row_number=2, description="ROW 0", amount=Decimal("-12.50")),
        ],
        failed_batches=[
            FailedBatch(batch_index=1, row_range=RowRange(start=3, end=3), error="timeout", retry_count=3),
        ],
        retried_batches=1,
    )


def test_save_and_consume(store, state):
    store.save("job-1", state)
    assert store.exists("job-1")

    loaded = store.consume("job-1")

    assert loaded == state
    assert loaded.collected_transactions[0].amount == Decimal("-12.50")
    assert not store.exists("job-1")


def test_consume_twice_fails(store, state):
    store.save("job-1", state)
    store.consume("job-1")

    with pytest.raises(DataNotFoundError):
        store.consume("job-1")


def test_save_replaces_previous(store, state):
    store.save("job-1", state)
    store.save("job-1", state.model_copy(update={"next_index": 3}))

    assert store.consume("job-1").next_index == 3


def test_discard(store, state):
    store.save("job-1", state)

    assert store.discard("job-1") is True
    assert store.discard("job-1") is False
    assert not store.exists("job-1")


def test_unreadable_checkpoint(store):
    (store.directory / "job-1.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError):
        store.consume("job-1")


@pytest.mark.parametrize("job_id", ["../escape", "a/b", ""])
def test_rejects_unsafe_job_ids(store, job_id):
    with pytest.raises(ValueError):
        store.exists(job_id)
