"""
Unit tests for batch splitting.
"""
import pytest

from core.batching import count_data_rows, row_range_for_batch, split_into_batches
from tests.helpers.stubs import HEADER, numbered_statement


def test_split_counts_and_headers():
    """25 rows with N=10 give 3 batches, each starting with the header."""
    content = numbered_statement(25)
    batches = split_into_batches(content, 10)

    assert [b.batch_index for b in batches] == [0, 1, 2]
    assert [b.row_count for b in batches] == [10, 10, 5]
    assert all(b.content.split("\n")[0] == HEADER for b in batches)


def test_split_preserves_row_order():
    content = numbered_statement(7)
    batches = split_into_batches(content, 3)

    rows = [line for b in batches for line in b.content.split("\n")[1:]]
    assert rows == content.split("\n")[1:]


def test_split_is_deterministic():
    content = numbered_statement(42)
    assert split_into_batches(content, 8) == split_into_batches(content, 8)


def test_split_exact_multiple():
    batches = split_into_batches(numbered_statement(20), 10)
    assert [b.row_count for b in batches] == [10, 10]


def test_split_ignores_blank_lines():
    content = HEADER + "\n\n01.03.2024;A;-1,00;\n   \n02.03.2024;B;-2,00;\n"
    batches = split_into_batches(content, 10)

    assert len(batches) == 1
    assert batches[0].row_count == 2
    assert count_data_rows(content) == 2


@pytest.mark.parametrize("content", ["", HEADER, HEADER + "\n\n"])
def test_split_without_data_rows(content):
    assert split_into_batches(content, 10) == []


def test_split_rejects_non_positive_size():
    with pytest.raises(ValueError):
        split_into_batches(numbered_statement(3), 0)


def test_row_range_for_batch():
    """Header is row 1, so batch 1 of size 10 covers rows 12-21."""
    rng = row_range_for_batch(1, 10, 10)
    assert (rng.start, rng.end) == (12, 21)

    short = row_range_for_batch(2, 10, 5)
    assert (short.start, short.end) == (22, 26)
