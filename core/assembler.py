"""
Merging of per-batch results into one globally ordered list.
"""
from operator import attrgetter
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

from core.logger import setup_logger
from core.schema import FailedBatch

logger = setup_logger(__name__)

by_index = attrgetter("index")


def merge_failed_batches(*groups: Iterable[FailedBatch]) -> List[FailedBatch]:
    """
    Combine failure records, one per batch index, ordered by batch index.

    Later groups override earlier ones for the same batch.
    """
    merged: Dict[int, FailedBatch] = {}
    for group in groups:
        for failed in group:
            merged[failed.batch_index] = failed
    return [merged[key] for key in sorted(merged)]


def assemble(
    slots: Mapping[int, Sequence[Any]],
    failed_batches: Iterable[FailedBatch] = (),
    prior_items: Iterable[Any] = (),
    sort_key: Callable[[Any], int] = by_index,
) -> Tuple[List[Any], List[FailedBatch]]:
    """
    Flatten batch slots into a single list sorted by each item's global key.

    Args:
        slots: Items per batch index
        failed_batches: Batches known to have permanently failed
        prior_items: Items collected by an earlier, interrupted run
        sort_key: Global ordering and deduplication key of an item

    Returns:
        Tuple of (items sorted by key, failed batches sorted by batch index)
    """
    seen: Dict[int, Any] = {}

    def add(item: Any) -> None:
        key = sort_key(item)
        if key in seen:
            if seen[key] != item:
                logger.warning(f"Conflicting results for index {key}, keeping the first one")
            return
        seen[key] = item

    for item in prior_items:
        add(item)
    for batch_index in sorted(slots):
        for item in slots[batch_index]:
            add(item)

    items = [seen[key] for key in sorted(seen)]
    return items, merge_failed_batches(failed_batches)
