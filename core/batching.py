"""
Textual batch splitting of line-oriented statement content.
"""
from typing import List

from core.schema import RawBatch, RowRange

# The header occupies row 1, so data row k (0-based) is row k + 2
FIRST_DATA_ROW = 2


def content_lines(content: str) -> List[str]:
    """Return the non-blank lines of the content, trailing whitespace removed."""
    return [line.rstrip() for line in content.splitlines() if line.strip()]


def count_data_rows(content: str) -> int:
    """Number of data lines below the header."""
    return max(len(content_lines(content)) - 1, 0)


def split_into_batches(content: str, batch_size: int) -> List[RawBatch]:
    """
    Divide content into fixed-size row batches, each prefixed with the header.

    The same content and batch size always produce the same batches; row order
    is preserved and only the last batch may be short.

    Args:
        content: Full content, header line first
        batch_size: Data rows per batch (N)

    Returns:
        ceil(data_rows / batch_size) batches; empty when there are no data rows

    Raises:
        ValueError: If batch_size is not positive
    """
    if batch_size < 1:
        raise ValueError("batch_size must be a positive integer")

    lines = content_lines(content)
    if len(lines) < 2:
        return []

    header, rows = lines[0], lines[1:]
    return [
        RawBatch(
            batch_index=batch_index,
            content="\n".join([header, *rows[start:start + batch_size]]),
        )
        for batch_index, start in enumerate(range(0, len(rows), batch_size))
    ]


def row_range_for_batch(batch_index: int, batch_size: int, row_count: int) -> RowRange:
    """
    Inclusive row range covered by a batch.

    Args:
        batch_index: Position of the batch
        batch_size: Data rows per batch (N)
        row_count: Data rows actually in the batch (the last batch may be short)

    Returns:
        RowRange in 1-based row numbers where the header is row 1
    """
    start = batch_index * batch_size + FIRST_DATA_ROW
    return RowRange(start=start, end=start + max(row_count, 1) - 1)
